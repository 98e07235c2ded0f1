"""Step-loop executor.

An :class:`Agent` drives one multi-step tool-calling interaction: it streams
the model, executes the tools it asks for, feeds the results back, and
repeats until the model stops asking for tools or the step budget runs out.
Every intermediate happening is surfaced as an event (see
:mod:`relay_agent.events`), and exactly one :class:`~relay_agent.events.Done`
event ends each run.

The executor keeps no conversation state of its own. The caller passes the
history in and gets the extended history back on ``Done``; the only thing an
Agent remembers between runs is the project instructions block, loaded once
per instance.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

from relay_llm.abort import AbortSignal
from relay_llm.client import Client
from relay_llm.errors import SDKError, StreamError
from relay_llm.streaming import StreamAccumulator
from relay_llm.types import (
    ContentPart,
    FinishReason,
    Message,
    Request,
    StreamEventKind,
    Tool,
    Usage,
)
from relay_agent import project_docs
from relay_agent.events import (
    AgentEvent,
    Done,
    ErrorEvent,
    ReasoningDelta,
    ReasoningDone,
    RunResult,
    StepDone,
    StepStart,
    SubagentEventHandler,
    TextDelta,
    TextDone,
    ToolDone,
    ToolError,
    ToolStart,
)
from relay_agent.subagents import create_task_tool
from relay_agent.tools import ApproveFn, ToolOutcome, ToolRegistry

logger = logging.getLogger(__name__)

InstructionsSupplier = Callable[[], str | None | Awaitable[str | None]]


class Agent:
    """A configured executor: client, model, tools and prompt.

    Usage::

        agent = Agent("coder", client, "gpt-4o", tools=[read_file])
        async for event in agent.run([], "Fix the failing test"):
            match event:
                case TextDelta(text=text):
                    print(text, end="")
                case Done(messages=messages):
                    history = messages
    """

    def __init__(
        self,
        name: str,
        client: Client,
        model: str,
        *,
        description: str = "",
        system_prompt: str = "",
        tools: list[Tool] | None = None,
        max_steps: int = 100,
        temperature: float | None = None,
        max_tokens: int | None = None,
        provider: str | None = None,
        instructions: bool | InstructionsSupplier = True,
        approve: ApproveFn | None = None,
        subagents: list[Agent] | None = None,
        on_subagent_event: SubagentEventHandler | None = None,
    ) -> None:
        if max_steps < 1:
            raise ValueError(f"max_steps must be >= 1, got {max_steps}")
        self.name = name
        self.client = client
        self.model = model
        self.description = description
        self.system_prompt = system_prompt
        self.tools: list[Tool] = list(tools or [])
        self.max_steps = max_steps
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.provider = provider
        self.instructions = instructions
        self.approve = approve
        self.subagents: list[Agent] = list(subagents or [])

        self._registry = ToolRegistry(self.tools, approve=approve)
        if self.subagents:
            self._registry.register(create_task_tool(self.subagents, on_subagent_event))

        self._instructions_loaded = False
        self._instructions_text: str | None = None

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    def spawn(self) -> Agent:
        """A fresh, isolated copy of this agent for use as a subagent.

        The copy shares client, model, prompt, tools, limits and the
        instructions setting, but never inherits the approval callback or
        subagents, so delegation is capped at one level.
        """
        return Agent(
            self.name,
            self.client,
            self.model,
            description=self.description,
            system_prompt=self.system_prompt,
            tools=self.tools,
            max_steps=self.max_steps,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            provider=self.provider,
            instructions=self.instructions,
        )

    async def _load_instructions(self) -> str | None:
        if self._instructions_loaded:
            return self._instructions_text
        text: str | None = None
        if self.instructions is True:
            text = project_docs.load_instructions()
        elif callable(self.instructions):
            supplied = self.instructions()
            if inspect.isawaitable(supplied):
                supplied = await supplied
            text = supplied
        self._instructions_text = text
        self._instructions_loaded = True
        return text

    async def build_system_prompt(self) -> str | None:
        """Own system prompt followed by the project instructions block."""
        parts = [self.system_prompt] if self.system_prompt else []
        instructions = await self._load_instructions()
        if instructions:
            parts.append(instructions)
        return "\n\n".join(parts) or None

    async def run(
        self,
        history: list[Message],
        input: str | list[Message],  # noqa: A002
        *,
        abort_signal: AbortSignal | None = None,
    ) -> AsyncIterator[AgentEvent]:
        """Run one interaction, yielding events until the final ``Done``.

        *history* is never mutated. A string *input* becomes a user message;
        a list of messages is appended as-is.
        """
        messages = list(history)
        if isinstance(input, str):
            messages.append(Message.user(input))
        else:
            messages.extend(input)

        total_usage = Usage()
        result: RunResult = "complete"
        step = 0

        try:
            system = await self.build_system_prompt()
            tools = self._registry.definitions() or None

            while True:
                if abort_signal is not None:
                    abort_signal.raise_if_aborted()
                step += 1
                logger.debug("%s: step %d (%d messages)", self.name, step, len(messages))
                yield StepStart(step_number=step)

                request = Request(
                    model=self.model,
                    messages=messages,
                    system=system,
                    tools=tools,
                    temperature=self.temperature,
                    max_tokens=self.max_tokens,
                    provider=self.provider,
                )
                accumulator = StreamAccumulator()
                stream = self.client.stream(request, abort_signal=abort_signal)
                async with contextlib.aclosing(stream):
                    async for chunk in stream:
                        accumulator.feed(chunk)
                        match chunk.kind:
                            case StreamEventKind.TEXT_DELTA if chunk.text:
                                yield TextDelta(text=chunk.text)
                            case StreamEventKind.THINKING_DELTA if chunk.text:
                                yield ReasoningDelta(text=chunk.text)
                            case StreamEventKind.ERROR:
                                raise StreamError(chunk.error or "Stream error")

                response = accumulator.response()
                if accumulator.thinking:
                    yield ReasoningDone(text=accumulator.thinking)
                if accumulator.text:
                    yield TextDone(text=accumulator.text)

                step_messages = [response.message]
                tool_calls = response.tool_calls
                if tool_calls:
                    for call in tool_calls:
                        yield ToolStart(
                            tool_call_id=call.tool_call_id or "",
                            tool_name=call.name or "",
                            input=call.arguments,
                        )
                    outcomes: list[ToolOutcome | None] = [None] * len(tool_calls)
                    batch = self._execute_tool_calls(tool_calls, outcomes, abort_signal)
                    async with contextlib.aclosing(batch):
                        async for event in batch:
                            yield event
                    step_messages.append(
                        Message.tool_results([o.result for o in outcomes if o is not None])
                    )

                # The step is committed only once its tool results are in.
                messages.extend(step_messages)
                total_usage = total_usage + response.usage
                yield StepDone(
                    step_number=step,
                    usage=response.usage,
                    finish_reason=response.finish_reason.value,
                )

                if not tool_calls:
                    result = "complete" if response.finish_reason == FinishReason.STOP else "stopped"
                    break
                if step >= self.max_steps:
                    result = "max_steps"
                    break

        except Exception as exc:
            if isinstance(exc, SDKError):
                logger.debug("%s: run failed at step %d: %s", self.name, step, exc)
            else:
                logger.exception("%s: unexpected failure at step %d", self.name, step)
            yield ErrorEvent(error=exc)
            yield Done(result="error", messages=list(messages), total_usage=total_usage)
            return

        yield Done(result=result, messages=list(messages), total_usage=total_usage)

    async def _execute_tool_calls(
        self,
        tool_calls: list[ContentPart],
        outcomes: list[ToolOutcome | None],
        abort_signal: AbortSignal | None,
    ) -> AsyncIterator[AgentEvent]:
        """Run all calls of one step concurrently, yielding events as each finishes.

        Outcomes are stored by call index so results keep the model's order.
        """
        tasks: dict[asyncio.Future[ToolOutcome], int] = {
            asyncio.ensure_future(self._registry.execute_tool_call(call, abort_signal)): index
            for index, call in enumerate(tool_calls)
        }
        pending: set[asyncio.Future[Any]] = set(tasks)
        try:
            while pending:
                waiting = asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                if abort_signal is not None:
                    done, pending = await abort_signal.guard(waiting)
                else:
                    done, pending = await waiting
                for task in sorted(done, key=tasks.__getitem__):
                    index = tasks[task]
                    call = tool_calls[index]
                    outcome = task.result()
                    outcomes[index] = outcome
                    if outcome.is_error:
                        yield ToolError(
                            tool_call_id=call.tool_call_id or "",
                            tool_name=call.name or "",
                            error=outcome.error or "",
                            denied=outcome.denied,
                        )
                    else:
                        yield ToolDone(
                            tool_call_id=call.tool_call_id or "",
                            tool_name=call.name or "",
                            output=outcome.output,
                        )
        finally:
            unfinished = [task for task in tasks if not task.done()]
            for task in unfinished:
                task.cancel()
            # Tools' own cleanup must finish before the run reports Done.
            await asyncio.gather(*unfinished, return_exceptions=True)
