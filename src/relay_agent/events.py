"""Event types emitted by the step-loop executor and the session.

Events form a closed union of frozen dataclasses. Each class carries a
``kind`` tag (an :class:`EventKind`) so consumers can either ``match`` on
the class or switch on the tag::

    async for event in agent.run(history, "hello"):
        match event:
            case TextDelta(text=text):
                print(text, end="")
            case Done(result=result):
                ...
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Literal

from relay_llm.types import Message, Usage


class EventKind(StrEnum):
    """Event tags."""

    # Step-loop executor
    STEP_START = "step.start"
    STEP_DONE = "step.done"
    TEXT_DELTA = "text.delta"
    TEXT_DONE = "text.done"
    REASONING_DELTA = "reasoning.delta"
    REASONING_DONE = "reasoning.done"
    TOOL_START = "tool.start"
    TOOL_DONE = "tool.done"
    TOOL_ERROR = "tool.error"
    ERROR = "error"
    DONE = "done"

    # Session lifecycle
    TURN_START = "turn.start"
    TURN_DONE = "turn.done"
    COMPACTION_START = "compaction.start"
    COMPACTION_PRUNED = "compaction.pruned"
    COMPACTION_SUMMARY = "compaction.summary"
    COMPACTION_DONE = "compaction.done"
    RETRY = "retry"


RunResult = Literal["complete", "stopped", "max_steps", "error"]
CompactionReason = Literal["overflow", "manual"]


# ------------------------------------------------------------------ #
# Executor events
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class StepStart:
    step_number: int
    kind: Literal[EventKind.STEP_START] = field(default=EventKind.STEP_START, init=False)


@dataclass(frozen=True)
class TextDelta:
    text: str
    kind: Literal[EventKind.TEXT_DELTA] = field(default=EventKind.TEXT_DELTA, init=False)


@dataclass(frozen=True)
class TextDone:
    """Full text produced in one step."""

    text: str
    kind: Literal[EventKind.TEXT_DONE] = field(default=EventKind.TEXT_DONE, init=False)


@dataclass(frozen=True)
class ReasoningDelta:
    text: str
    kind: Literal[EventKind.REASONING_DELTA] = field(
        default=EventKind.REASONING_DELTA, init=False
    )


@dataclass(frozen=True)
class ReasoningDone:
    text: str
    kind: Literal[EventKind.REASONING_DONE] = field(default=EventKind.REASONING_DONE, init=False)


@dataclass(frozen=True)
class ToolStart:
    tool_call_id: str
    tool_name: str
    input: object
    kind: Literal[EventKind.TOOL_START] = field(default=EventKind.TOOL_START, init=False)


@dataclass(frozen=True)
class ToolDone:
    tool_call_id: str
    tool_name: str
    output: object
    kind: Literal[EventKind.TOOL_DONE] = field(default=EventKind.TOOL_DONE, init=False)


@dataclass(frozen=True)
class ToolError:
    """A tool call failed or was denied. The error is also fed back to the model."""

    tool_call_id: str
    tool_name: str
    error: str
    denied: bool = False
    kind: Literal[EventKind.TOOL_ERROR] = field(default=EventKind.TOOL_ERROR, init=False)


@dataclass(frozen=True)
class StepDone:
    step_number: int
    usage: Usage
    finish_reason: str
    kind: Literal[EventKind.STEP_DONE] = field(default=EventKind.STEP_DONE, init=False)


@dataclass(frozen=True)
class ErrorEvent:
    error: BaseException
    kind: Literal[EventKind.ERROR] = field(default=EventKind.ERROR, init=False)


@dataclass(frozen=True)
class Done:
    """Terminal event of one ``Agent.run`` call. Always the last event."""

    result: RunResult
    messages: list[Message]
    total_usage: Usage
    kind: Literal[EventKind.DONE] = field(default=EventKind.DONE, init=False)


AgentEvent = (
    StepStart
    | TextDelta
    | TextDone
    | ReasoningDelta
    | ReasoningDone
    | ToolStart
    | ToolDone
    | ToolError
    | StepDone
    | ErrorEvent
    | Done
)


# ------------------------------------------------------------------ #
# Session lifecycle events
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class TurnStart:
    turn_number: int
    kind: Literal[EventKind.TURN_START] = field(default=EventKind.TURN_START, init=False)


@dataclass(frozen=True)
class TurnDone:
    turn_number: int
    usage: Usage
    kind: Literal[EventKind.TURN_DONE] = field(default=EventKind.TURN_DONE, init=False)


@dataclass(frozen=True)
class CompactionStart:
    reason: CompactionReason
    tokens_before: int
    kind: Literal[EventKind.COMPACTION_START] = field(
        default=EventKind.COMPACTION_START, init=False
    )


@dataclass(frozen=True)
class CompactionPruned:
    tokens_removed: int
    messages_removed: int
    kind: Literal[EventKind.COMPACTION_PRUNED] = field(
        default=EventKind.COMPACTION_PRUNED, init=False
    )


@dataclass(frozen=True)
class CompactionSummary:
    summary: str
    kind: Literal[EventKind.COMPACTION_SUMMARY] = field(
        default=EventKind.COMPACTION_SUMMARY, init=False
    )


@dataclass(frozen=True)
class CompactionDone:
    tokens_before: int
    tokens_after: int
    kind: Literal[EventKind.COMPACTION_DONE] = field(
        default=EventKind.COMPACTION_DONE, init=False
    )


@dataclass(frozen=True)
class Retry:
    """A failed attempt will be retried after ``delay`` seconds."""

    attempt: int
    max_retries: int
    delay: float
    error: BaseException
    kind: Literal[EventKind.RETRY] = field(default=EventKind.RETRY, init=False)


CompactionEvent = CompactionStart | CompactionPruned | CompactionSummary | CompactionDone

SessionLifecycleEvent = TurnStart | TurnDone | CompactionEvent | Retry

SessionEvent = AgentEvent | SessionLifecycleEvent


# Observer for events produced by subagents: (agent_name, event) -> None.
# An async observer is scheduled and not awaited.
SubagentEventHandler = Callable[[str, AgentEvent], Awaitable[None] | None]
