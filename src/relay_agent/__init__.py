"""Relay agent harness.

A step-loop executor with subagent delegation, plus a session layer adding
context compaction, retry with backoff, lifecycle hooks and persistence.
"""

from relay_llm.abort import AbortSignal
from relay_agent.agent import Agent
from relay_agent.compaction import (
    CompactionContext,
    CompactionError,
    CompactionResult,
    CompactionStrategy,
    DefaultCompactionStrategy,
    estimate_tokens,
    prune_tool_results,
)
from relay_agent.events import (
    AgentEvent,
    CompactionDone,
    CompactionPruned,
    CompactionStart,
    CompactionSummary,
    Done,
    ErrorEvent,
    EventKind,
    ReasoningDelta,
    ReasoningDone,
    Retry,
    SessionEvent,
    StepDone,
    StepStart,
    TextDelta,
    TextDone,
    ToolDone,
    ToolError,
    ToolStart,
    TurnDone,
    TurnStart,
)
from relay_agent.project_docs import find_instructions, load_instructions
from relay_agent.session import (
    CompactionCheckInfo,
    Session,
    SessionConfig,
    SessionHooks,
    SessionState,
    TurnInfo,
)
from relay_agent.store import InMemorySessionStore, SessionStore
from relay_agent.subagents import create_task_tool
from relay_agent.tools import ToolCallInfo, ToolDeniedError, ToolRegistry

__all__ = [
    # Executor
    "Agent",
    "create_task_tool",
    # Session
    "Session",
    "SessionConfig",
    "SessionHooks",
    "SessionState",
    "TurnInfo",
    "CompactionCheckInfo",
    "SessionStore",
    "InMemorySessionStore",
    # Compaction
    "CompactionContext",
    "CompactionError",
    "CompactionResult",
    "CompactionStrategy",
    "DefaultCompactionStrategy",
    "estimate_tokens",
    "prune_tool_results",
    # Events
    "EventKind",
    "AgentEvent",
    "SessionEvent",
    "StepStart",
    "StepDone",
    "TextDelta",
    "TextDone",
    "ReasoningDelta",
    "ReasoningDone",
    "ToolStart",
    "ToolDone",
    "ToolError",
    "ErrorEvent",
    "Done",
    "TurnStart",
    "TurnDone",
    "CompactionStart",
    "CompactionPruned",
    "CompactionSummary",
    "CompactionDone",
    "Retry",
    # Tools
    "ToolRegistry",
    "ToolCallInfo",
    "ToolDeniedError",
    # Instructions
    "find_instructions",
    "load_instructions",
    # Abort
    "AbortSignal",
]
