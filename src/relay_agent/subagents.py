"""Subagent dispatch through a single ``task`` tool.

A parent agent configured with ``subagents=[...]`` gets one extra tool,
``task``, whose ``agent`` argument picks a template by name. Every call
spawns a fresh child from that template (see :meth:`Agent.spawn`), runs it
to completion on the parent's abort signal, and returns the child's last
text wrapped in ``<task_result>`` tags.

Children never get subagents of their own, so delegation is one level deep.
The model may call ``task`` several times in one step; those children run
concurrently like any other tool calls.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import TYPE_CHECKING, Any

from relay_llm.types import Tool, ToolContext
from relay_agent.events import AgentEvent, SubagentEventHandler, TextDone

if TYPE_CHECKING:
    from relay_agent.agent import Agent

logger = logging.getLogger(__name__)

TASK_TOOL_NAME = "task"


# Strong references to in-flight async observer calls.
_observer_tasks: set[asyncio.Future[Any]] = set()


def _observer_finished(task: asyncio.Future[Any]) -> None:
    _observer_tasks.discard(task)
    if not task.cancelled() and task.exception() is not None:
        logger.warning("Subagent event observer failed", exc_info=task.exception())


def _notify(
    handler: SubagentEventHandler | None, agent_name: str, event: AgentEvent
) -> None:
    if handler is None:
        return
    try:
        result = handler(agent_name, event)
    except Exception:  # noqa: BLE001
        logger.warning("Subagent event observer failed for %s", agent_name, exc_info=True)
        return
    if inspect.isawaitable(result):
        task = asyncio.ensure_future(result)
        _observer_tasks.add(task)
        task.add_done_callback(_observer_finished)


def format_task_result(text: str) -> str:
    return f"<task_result>\n{text or '(no output)'}\n</task_result>"


def create_task_tool(
    subagents: list[Agent], on_subagent_event: SubagentEventHandler | None = None
) -> Tool:
    """Build the ``task`` tool that dispatches to the named *subagents*."""
    if not subagents:
        raise ValueError("create_task_tool needs at least one subagent")
    by_name = {agent.name: agent for agent in subagents}
    listing = "\n".join(f"- {a.name}: {a.description or a.name}" for a in subagents)

    async def execute(arguments: dict[str, Any], context: ToolContext) -> str:
        agent_name = arguments["agent"]
        template = by_name[agent_name]
        child = template.spawn()

        last_text = ""
        async for event in child.run(
            [], arguments["prompt"], abort_signal=context.abort_signal
        ):
            _notify(on_subagent_event, agent_name, event)
            if isinstance(event, TextDone):
                last_text = event.text
        return format_task_result(last_text)

    return Tool(
        name=TASK_TOOL_NAME,
        description="\n".join(
            [
                "Spawn a subagent to handle a task autonomously.",
                "The subagent runs with its own tools, completes the work, "
                "and returns the result.",
                "Launch multiple agents concurrently when possible by calling "
                "this tool multiple times in one response.",
                "",
                "Available agents:",
                listing,
            ]
        ),
        parameters={
            "type": "object",
            "properties": {
                "agent": {
                    "type": "string",
                    "enum": list(by_name),
                    "description": "Which agent to use",
                },
                "prompt": {
                    "type": "string",
                    "description": "Detailed task description for the subagent",
                },
            },
            "required": ["agent", "prompt"],
        },
        execute=execute,
    )
