"""Stateful conversation on top of the step-loop executor.

A :class:`Session` owns the message history across turns. Each
:meth:`Session.send` call:

1. compacts the history first when it is about to overflow the model's
   context window (see :mod:`relay_agent.compaction`);
2. runs the agent, retrying with exponential backoff when an attempt fails
   with a transient error before producing any visible output;
3. applies lifecycle hooks, persists the result and accounts usage.

Everything the caller needs to observe arrives as events; a failed turn ends
with ``ErrorEvent`` + ``Done("error")`` rather than an exception. Only
compaction faults and aborting during a backoff sleep raise.
"""

from __future__ import annotations

import contextlib
import inspect
import logging
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from relay_llm.abort import AbortSignal, sleep
from relay_llm.retry import RetryPolicy
from relay_llm.types import Message, Usage
from relay_agent.agent import Agent
from relay_agent.compaction import (
    CompactionContext,
    CompactionStrategy,
    DefaultCompactionStrategy,
    estimate_tokens,
)
from relay_agent.events import (
    CompactionDone,
    CompactionEvent,
    CompactionPruned,
    CompactionReason,
    CompactionStart,
    CompactionSummary,
    Done,
    ErrorEvent,
    Retry,
    SessionEvent,
    StepDone,
    TextDelta,
    ToolStart,
    TurnDone,
    TurnStart,
)
from relay_agent.store import SessionStore

logger = logging.getLogger(__name__)


class SessionState(StrEnum):
    """Session lifecycle states."""

    IDLE = "idle"
    IN_TURN = "in_turn"


@dataclass
class TurnInfo:
    """Passed to ``on_after_response`` once a turn has finished."""

    turn_number: int
    messages: list[Message]
    usage: Usage


@dataclass
class CompactionCheckInfo:
    """Input to a custom ``should_compact`` predicate."""

    last_input_tokens: int
    context_window: int
    reserved_tokens: int
    messages: list[Message]
    turn_number: int


@dataclass
class SessionHooks:
    """Optional lifecycle callbacks. Each may be a plain or an async function.

    - ``on_before_send(messages) -> messages``: rewrite the history handed to
      the agent (it receives a copy).
    - ``on_after_response(TurnInfo)``: observe a finished turn.
    - ``on_compaction(CompactionContext) -> str | None``: supply a custom
      summarization prompt.
    - ``on_error(error, attempt) -> bool | None``: observe failures. Returning
      True for a terminal error suppresses its ``ErrorEvent``.
    """

    on_before_send: Callable[[list[Message]], list[Message] | Awaitable[list[Message]]] | None = (
        None
    )
    on_after_response: Callable[[TurnInfo], Awaitable[None] | None] | None = None
    on_compaction: Callable[[CompactionContext], str | None | Awaitable[str | None]] | None = None
    on_error: Callable[[BaseException, int], bool | None | Awaitable[bool | None]] | None = None


@dataclass
class SessionConfig:
    """Configuration for a session.

    ``reserved_tokens`` defaults to ``min(20_000, agent.max_tokens or 20_000)``
    and ``auto_compact`` defaults to on whenever ``context_window`` is set.
    """

    context_window: int | None = None
    reserved_tokens: int | None = None
    auto_compact: bool | None = None
    should_compact: Callable[[CompactionCheckInfo], bool] | None = None
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    auto_save: bool = True


async def _call_hook(hook: Callable[..., Any] | None, *args: Any) -> Any:
    if hook is None:
        return None
    result = hook(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class Session:
    """A long-lived conversation with one agent.

    Usage::

        session = Session(agent, config=SessionConfig(context_window=128_000))
        async for event in session.send("What changed in v2?"):
            ...
    """

    def __init__(
        self,
        agent: Agent,
        *,
        config: SessionConfig | None = None,
        compaction_strategy: CompactionStrategy | None = None,
        hooks: SessionHooks | None = None,
        store: SessionStore | None = None,
        session_id: str | None = None,
    ) -> None:
        self.agent = agent
        self.config = config or SessionConfig()
        self.compaction_strategy: CompactionStrategy = (
            compaction_strategy or DefaultCompactionStrategy()
        )
        self.hooks = hooks or SessionHooks()
        self.store = store
        self.session_id = session_id or uuid.uuid4().hex

        # Directly readable and replaceable.
        self.messages: list[Message] = []

        self._turns = 0
        self._total_usage = Usage.zero()
        self._last_input_tokens = 0
        self._state = SessionState.IDLE

        cfg = self.config
        self.context_window = cfg.context_window
        self.reserved_tokens = (
            cfg.reserved_tokens
            if cfg.reserved_tokens is not None
            else min(20_000, agent.max_tokens or 20_000)
        )
        self.auto_compact = (
            cfg.auto_compact if cfg.auto_compact is not None else cfg.context_window is not None
        )

    # ------------------------------------------------------------------ #
    # Read-only state
    # ------------------------------------------------------------------ #

    @property
    def turns(self) -> int:
        return self._turns

    @property
    def total_usage(self) -> Usage:
        return self._total_usage

    @property
    def last_input_tokens(self) -> int:
        return self._last_input_tokens

    @property
    def state(self) -> SessionState:
        return self._state

    # ------------------------------------------------------------------ #
    # Persistence
    # ------------------------------------------------------------------ #

    async def load(self) -> bool:
        """Restore messages from the store. Returns whether anything was found."""
        if self.store is None:
            return False
        loaded = await self.store.load(self.session_id)
        if loaded is None:
            return False
        self.messages = list(loaded)
        return True

    async def save(self) -> None:
        if self.store is None:
            return
        await self.store.save(self.session_id, list(self.messages))

    async def delete(self) -> None:
        """Remove the stored session, if the store supports deletion."""
        delete = getattr(self.store, "delete", None)
        if delete is not None:
            await delete(self.session_id)

    # ------------------------------------------------------------------ #
    # Turns
    # ------------------------------------------------------------------ #

    def _begin(self) -> None:
        if self._state != SessionState.IDLE:
            raise RuntimeError(
                f"Session {self.session_id} is busy; wait for the current turn to finish"
            )
        self._state = SessionState.IN_TURN

    async def send(
        self,
        input: str | list[Message],  # noqa: A002
        *,
        abort_signal: AbortSignal | None = None,
    ) -> AsyncIterator[SessionEvent]:
        """Run one turn, yielding lifecycle and agent events.

        Raises:
            RuntimeError: If another turn or compaction is in flight.
            AbortError: If *abort_signal* fires during a backoff sleep.
        """
        self._begin()
        try:
            turn = self._run_turn(input, abort_signal)
            async with contextlib.aclosing(turn):
                async for event in turn:
                    yield event
        finally:
            self._state = SessionState.IDLE

    async def _run_turn(
        self, input: str | list[Message], abort_signal: AbortSignal | None  # noqa: A002
    ) -> AsyncIterator[SessionEvent]:
        self._turns += 1
        turn_number = self._turns
        yield TurnStart(turn_number=turn_number)

        if self.auto_compact and self.context_window and self._should_compact():
            async for event in self._compact(abort_signal):
                yield event

        effective = self.messages
        if self.hooks.on_before_send is not None:
            effective = await _call_hook(self.hooks.on_before_send, list(self.messages))

        snapshot = list(self.messages)
        policy = self.config.retry
        turn_usage = Usage()

        for attempt in range(policy.max_retries + 1):
            has_content = False
            retry_error: BaseException | None = None

            run = self.agent.run(effective, input, abort_signal=abort_signal)
            async with contextlib.aclosing(run):
                async for event in run:
                    match event:
                        case TextDelta() | ToolStart():
                            has_content = True
                        case StepDone(usage=usage):
                            self._last_input_tokens = usage.input_tokens or 0
                        case ErrorEvent(error=error):
                            if (
                                not has_content
                                and attempt < policy.max_retries
                                and policy.should_retry(error)
                            ):
                                retry_error = error
                                break
                            if await _call_hook(self.hooks.on_error, error, attempt) is True:
                                continue
                        case Done(messages=messages, total_usage=usage):
                            self.messages = list(messages)
                            turn_usage = usage
                    yield event

            if retry_error is None:
                break

            delay = policy.compute_delay(attempt, retry_error)
            await _call_hook(self.hooks.on_error, retry_error, attempt)
            logger.info(
                "Session %s turn %d: attempt %d failed (%s); retrying in %.1fs",
                self.session_id,
                turn_number,
                attempt,
                retry_error,
                delay,
            )
            yield Retry(
                attempt=attempt,
                max_retries=policy.max_retries,
                delay=delay,
                error=retry_error,
            )
            self.messages = list(snapshot)
            await sleep(delay, abort_signal)

        await _call_hook(
            self.hooks.on_after_response,
            TurnInfo(turn_number=turn_number, messages=list(self.messages), usage=turn_usage),
        )
        if self.config.auto_save:
            await self.save()

        self._total_usage = self._total_usage + turn_usage
        yield TurnDone(turn_number=turn_number, usage=turn_usage)

    # ------------------------------------------------------------------ #
    # Compaction
    # ------------------------------------------------------------------ #

    def _should_compact(self) -> bool:
        if not self.context_window:
            return False
        if self.config.should_compact is not None:
            info = CompactionCheckInfo(
                last_input_tokens=self._last_input_tokens,
                context_window=self.context_window,
                reserved_tokens=self.reserved_tokens,
                messages=list(self.messages),
                turn_number=self._turns,
            )
            return self.config.should_compact(info)
        return self._last_input_tokens >= self.context_window - self.reserved_tokens

    async def compact(
        self, *, abort_signal: AbortSignal | None = None
    ) -> AsyncIterator[CompactionEvent]:
        """Compact the history now, yielding compaction events.

        Raises:
            RuntimeError: If a turn or another compaction is in flight.
        """
        self._begin()
        try:
            compaction = self._compact(abort_signal)
            async with contextlib.aclosing(compaction):
                async for event in compaction:
                    yield event
        finally:
            self._state = SessionState.IDLE

    async def _compact(self, abort_signal: AbortSignal | None) -> AsyncIterator[CompactionEvent]:
        reason: CompactionReason = "overflow" if self._should_compact() else "manual"
        tokens_before = estimate_tokens(self.messages)
        logger.info(
            "Session %s: compacting (%s, ~%d tokens, %d messages)",
            self.session_id,
            reason,
            tokens_before,
            len(self.messages),
        )
        yield CompactionStart(reason=reason, tokens_before=tokens_before)

        context = CompactionContext(
            messages=list(self.messages),
            client=self.agent.client,
            model=self.agent.model,
            system_prompt=self.agent.system_prompt or None,
            total_tokens=tokens_before,
            target_tokens=(
                self.context_window - self.reserved_tokens
                if self.context_window
                else tokens_before // 2
            ),
            abort_signal=abort_signal,
            provider=self.agent.provider,
        )
        custom_prompt = await _call_hook(self.hooks.on_compaction, context)
        if custom_prompt:
            context.compaction_prompt = custom_prompt

        result = await self.compaction_strategy.compact(context)

        if result.tokens_pruned > 0:
            yield CompactionPruned(
                tokens_removed=result.tokens_pruned,
                messages_removed=result.messages_removed,
            )
        if result.summary:
            yield CompactionSummary(summary=result.summary)

        self.messages = list(result.messages)
        tokens_after = estimate_tokens(self.messages)
        logger.info(
            "Session %s: compaction done (~%d -> ~%d tokens)",
            self.session_id,
            tokens_before,
            tokens_after,
        )
        yield CompactionDone(tokens_before=tokens_before, tokens_after=tokens_after)
