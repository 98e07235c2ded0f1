"""Tests for the session layer: turns, retry, compaction triggers, hooks, persistence."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from relay_agent.agent import Agent
from relay_agent.compaction import (
    CompactionContext,
    CompactionError,
    CompactionResult,
    summary_message,
)
from relay_agent.events import (
    CompactionDone,
    CompactionPruned,
    CompactionStart,
    CompactionSummary,
    Done,
    ErrorEvent,
    EventKind,
    Retry,
    TextDelta,
    TurnDone,
    TurnStart,
)
from relay_agent.session import (
    CompactionCheckInfo,
    Session,
    SessionConfig,
    SessionHooks,
    SessionState,
    TurnInfo,
)
from relay_agent.store import InMemorySessionStore
from relay_llm.abort import AbortSignal
from relay_llm.errors import AbortError, AuthenticationError, RateLimitError, ServerError
from relay_llm.retry import RetryPolicy
from relay_llm.types import Message, Role
from tests.helpers import (
    MockAdapter,
    collect,
    make_client,
    make_text_response,
    make_usage,
    text_then_error,
)

FAST_RETRY = RetryPolicy(initial_delay=0.0, jitter=False)


def _agent(adapter: MockAdapter, **kwargs: Any) -> Agent:
    kwargs.setdefault("instructions", False)
    return Agent("main", make_client(adapter), "mock-model", **kwargs)


def _session(adapter: MockAdapter, *, agent_kwargs: dict | None = None, **kwargs: Any) -> Session:
    kwargs.setdefault("config", SessionConfig(retry=FAST_RETRY))
    return Session(_agent(adapter, **(agent_kwargs or {})), **kwargs)


class RecordingStrategy:
    """Compaction strategy double that returns a canned result."""

    def __init__(self, result: CompactionResult | None = None) -> None:
        self.contexts: list[CompactionContext] = []
        self.result = result or CompactionResult(
            messages=[summary_message("recap")],
            summary="recap",
            messages_removed=3,
            tokens_pruned=120,
        )

    async def compact(self, context: CompactionContext) -> CompactionResult:
        self.contexts.append(context)
        return self.result


# ================================================================== #
# Turns
# ================================================================== #


class TestTurns:
    @pytest.mark.asyncio
    async def test_basic_turn(self):
        adapter = MockAdapter([make_text_response("Hello!")])
        session = _session(adapter)
        events = await collect(session.send("hi"))

        assert events[0] == TurnStart(turn_number=1)
        assert isinstance(events[-2], Done)
        assert events[-1] == TurnDone(turn_number=1, usage=events[-2].total_usage)
        assert [m.role for m in session.messages] == [Role.USER, Role.ASSISTANT]
        assert session.turns == 1
        assert session.state == SessionState.IDLE

    @pytest.mark.asyncio
    async def test_turn_counter_and_history_accumulate(self):
        adapter = MockAdapter([make_text_response("one"), make_text_response("two")])
        session = _session(adapter)
        await collect(session.send("first"))
        await collect(session.send("second"))

        assert session.turns == 2
        assert [m.text for m in session.messages] == ["first", "one", "second", "two"]
        # The second request carried the whole conversation.
        assert [m.text for m in adapter.requests[1].messages] == ["first", "one", "second"]

    @pytest.mark.asyncio
    async def test_usage_accumulates_across_turns(self):
        adapter = MockAdapter([make_text_response("x", usage=make_usage(100, 10))])
        session = _session(adapter)
        await collect(session.send("a"))
        await collect(session.send("b"))
        assert session.total_usage.input_tokens == 200
        assert session.total_usage.output_tokens == 20
        assert session.total_usage.total_tokens == 220
        assert session.last_input_tokens == 100

    def test_session_id(self):
        session = _session(MockAdapter())
        assert len(session.session_id) == 32
        assert _session(MockAdapter(), session_id="fixed").session_id == "fixed"

    def test_reserved_tokens_defaults(self):
        assert _session(MockAdapter()).reserved_tokens == 20_000
        limited = _session(MockAdapter(), agent_kwargs={"max_tokens": 4096})
        assert limited.reserved_tokens == 4096
        explicit = _session(MockAdapter(), config=SessionConfig(reserved_tokens=123))
        assert explicit.reserved_tokens == 123

    def test_auto_compact_defaults_to_window_presence(self):
        assert _session(MockAdapter()).auto_compact is False
        assert _session(MockAdapter(), config=SessionConfig(context_window=1000)).auto_compact
        off = _session(MockAdapter(), config=SessionConfig(context_window=1000, auto_compact=False))
        assert off.auto_compact is False

    @pytest.mark.asyncio
    async def test_concurrent_send_is_refused(self):
        adapter = MockAdapter([make_text_response("ok")])
        session = _session(adapter)
        first = session.send("one")
        assert isinstance(await first.__anext__(), TurnStart)
        assert session.state == SessionState.IN_TURN

        with pytest.raises(RuntimeError, match="busy"):
            await session.send("two").__anext__()
        with pytest.raises(RuntimeError, match="busy"):
            await session.compact().__anext__()

        await first.aclose()
        assert session.state == SessionState.IDLE


# ================================================================== #
# Retry
# ================================================================== #


class TestRetry:
    @pytest.mark.asyncio
    async def test_retry_before_any_content(self):
        adapter = MockAdapter([ServerError("503 overloaded"), make_text_response("recovered")])
        session = _session(adapter)
        events = await collect(session.send("hi"))

        retries = [e for e in events if isinstance(e, Retry)]
        assert len(retries) == 1
        assert retries[0].attempt == 0
        assert retries[0].max_retries == 3
        assert isinstance(retries[0].error, ServerError)
        # The failed attempt's error is not surfaced.
        assert not any(isinstance(e, ErrorEvent) for e in events)
        assert adapter.call_count == 2
        assert events[-2].result == "complete"
        assert [m.text for m in session.messages] == ["hi", "recovered"]

    @pytest.mark.asyncio
    async def test_no_retry_after_visible_text(self):
        adapter = MockAdapter([text_then_error("partial", ServerError("boom"))])
        session = _session(adapter)
        events = await collect(session.send("hi"))

        assert not any(isinstance(e, Retry) for e in events)
        assert TextDelta(text="partial") in events
        assert isinstance(events[-3], ErrorEvent)
        assert events[-2].result == "error"
        assert isinstance(events[-1], TurnDone)
        assert adapter.call_count == 1

    @pytest.mark.asyncio
    async def test_non_retryable_error(self):
        adapter = MockAdapter([AuthenticationError("bad key", status_code=401)])
        session = _session(adapter)
        events = await collect(session.send("hi"))
        assert not any(isinstance(e, Retry) for e in events)
        assert isinstance(events[-3].error, AuthenticationError)
        assert adapter.call_count == 1

    @pytest.mark.asyncio
    async def test_retries_exhausted(self):
        adapter = MockAdapter([ServerError("down")])
        policy = RetryPolicy(max_retries=2, initial_delay=0.0, jitter=False)
        session = _session(adapter, config=SessionConfig(retry=policy))
        events = await collect(session.send("hi"))

        assert [e.attempt for e in events if isinstance(e, Retry)] == [0, 1]
        assert adapter.call_count == 3
        assert isinstance(events[-3], ErrorEvent)
        assert events[-2].result == "error"
        # Rolled back to the pre-turn history plus the input of the last attempt.
        assert [m.text for m in session.messages] == ["hi"]

    @pytest.mark.asyncio
    async def test_custom_predicate_replaces_default(self):
        adapter = MockAdapter([AuthenticationError("flaky auth"), make_text_response("ok")])
        policy = RetryPolicy(
            initial_delay=0.0,
            jitter=False,
            is_retryable=lambda err: isinstance(err, AuthenticationError),
        )
        session = _session(adapter, config=SessionConfig(retry=policy))
        events = await collect(session.send("hi"))
        assert len([e for e in events if isinstance(e, Retry)]) == 1
        assert events[-2].result == "complete"

    @pytest.mark.asyncio
    async def test_retry_after_hint_sets_delay(self):
        adapter = MockAdapter([RateLimitError("slow down", retry_after=0.01), make_text_response("ok")])
        policy = RetryPolicy(initial_delay=5.0, jitter=False)
        session = _session(adapter, config=SessionConfig(retry=policy))
        events = await collect(session.send("hi"))
        retry = next(e for e in events if isinstance(e, Retry))
        assert retry.delay == pytest.approx(0.01)

    @pytest.mark.asyncio
    async def test_messages_roll_back_between_attempts(self):
        adapter = MockAdapter([ServerError("502 bad gateway"), make_text_response("ok")])
        session = _session(adapter)
        session.messages = [Message.user("before"), Message.assistant("earlier")]
        await collect(session.send("now"))

        # Both attempts saw the same history.
        first, second = adapter.requests
        assert [m.text for m in first.messages] == [m.text for m in second.messages]
        assert [m.text for m in session.messages] == ["before", "earlier", "now", "ok"]

    @pytest.mark.asyncio
    async def test_abort_during_backoff_raises(self):
        signal = AbortSignal()
        adapter = MockAdapter([ServerError("down"), make_text_response("never")])
        policy = RetryPolicy(initial_delay=60.0, jitter=False)
        session = _session(
            adapter,
            config=SessionConfig(retry=policy),
            hooks=SessionHooks(on_error=lambda err, attempt: signal.set("giving up")),
        )
        seen: list[Any] = []
        with pytest.raises(AbortError, match="giving up"):
            async for event in session.send("hi", abort_signal=signal):
                seen.append(event)

        assert isinstance(seen[-1], Retry)
        assert adapter.call_count == 1
        assert session.state == SessionState.IDLE

    @pytest.mark.asyncio
    async def test_abort_during_stream_is_not_retried(self):
        signal = AbortSignal()
        signal.set()
        adapter = MockAdapter([make_text_response("never")])
        session = _session(adapter)
        events = await collect(session.send("hi", abort_signal=signal))
        assert not any(isinstance(e, Retry) for e in events)
        assert isinstance(events[-3].error, AbortError)


# ================================================================== #
# Hooks
# ================================================================== #


class TestHooks:
    @pytest.mark.asyncio
    async def test_before_send_and_after_response(self):
        seen_before: list[list[Message]] = []
        infos: list[TurnInfo] = []

        async def before(messages: list[Message]) -> list[Message]:
            seen_before.append(messages)
            return [Message.user("injected context"), *messages]

        adapter = MockAdapter([make_text_response("ok")])
        session = _session(
            adapter,
            hooks=SessionHooks(on_before_send=before, on_after_response=infos.append),
        )
        session.messages = [Message.user("old")]
        await collect(session.send("new"))

        assert seen_before[0] == [Message.user("old")]
        assert seen_before[0] is not session.messages
        assert [m.text for m in adapter.requests[0].messages] == ["injected context", "old", "new"]
        assert len(infos) == 1
        assert infos[0].turn_number == 1
        assert infos[0].messages == session.messages
        assert infos[0].usage.input_tokens == 10

    @pytest.mark.asyncio
    async def test_on_error_sees_retried_errors(self):
        calls: list[tuple[str, int]] = []

        async def on_error(error: BaseException, attempt: int) -> bool:
            calls.append((str(error), attempt))
            return True  # ignored on the retry path

        adapter = MockAdapter([ServerError("first"), make_text_response("ok")])
        session = _session(adapter, hooks=SessionHooks(on_error=on_error))
        events = await collect(session.send("hi"))
        assert calls == [("first", 0)]
        assert any(isinstance(e, Retry) for e in events)

    @pytest.mark.asyncio
    async def test_on_error_can_suppress_terminal_error_event(self):
        adapter = MockAdapter([AuthenticationError("bad key")])
        session = _session(adapter, hooks=SessionHooks(on_error=lambda err, attempt: True))
        events = await collect(session.send("hi"))
        assert not any(isinstance(e, ErrorEvent) for e in events)
        assert events[-2].result == "error"

    @pytest.mark.asyncio
    async def test_on_error_returning_none_keeps_error_event(self):
        seen: list[int] = []
        adapter = MockAdapter([AuthenticationError("bad key")])
        session = _session(
            adapter, hooks=SessionHooks(on_error=lambda err, attempt: seen.append(attempt))
        )
        events = await collect(session.send("hi"))
        assert any(isinstance(e, ErrorEvent) for e in events)
        assert seen == [0]


# ================================================================== #
# Compaction
# ================================================================== #


class TestCompactionTriggers:
    @pytest.mark.asyncio
    async def test_overflow_triggers_compaction_before_next_turn(self):
        adapter = MockAdapter([make_text_response("big", usage=make_usage(900, 10))])
        strategy = RecordingStrategy()
        session = _session(
            adapter,
            config=SessionConfig(context_window=1000, reserved_tokens=200, retry=FAST_RETRY),
            compaction_strategy=strategy,
        )

        first = await collect(session.send("one"))
        assert not any(isinstance(e, CompactionStart) for e in first)
        assert session.last_input_tokens == 900

        second = await collect(session.send("two"))
        kinds = [e.kind for e in second]
        assert kinds[:5] == [
            EventKind.TURN_START,
            EventKind.COMPACTION_START,
            EventKind.COMPACTION_PRUNED,
            EventKind.COMPACTION_SUMMARY,
            EventKind.COMPACTION_DONE,
        ]
        start = second[1]
        assert start.reason == "overflow"
        assert second[2] == CompactionPruned(tokens_removed=120, messages_removed=3)
        assert second[3] == CompactionSummary(summary="recap")

        context = strategy.contexts[0]
        assert context.target_tokens == 800
        assert context.model == "mock-model"
        assert [m.text for m in context.messages] == ["one", "big"]
        # The turn ran against the compacted history.
        assert adapter.requests[1].messages[0].text.startswith("[Previous conversation summary]")
        assert adapter.requests[1].messages[-1].text == "two"

    @pytest.mark.asyncio
    async def test_below_threshold_does_not_compact(self):
        adapter = MockAdapter([make_text_response("small", usage=make_usage(100, 10))])
        strategy = RecordingStrategy()
        session = _session(
            adapter,
            config=SessionConfig(context_window=1000, reserved_tokens=200, retry=FAST_RETRY),
            compaction_strategy=strategy,
        )
        await collect(session.send("one"))
        await collect(session.send("two"))
        assert strategy.contexts == []

    @pytest.mark.asyncio
    async def test_auto_compact_disabled(self):
        adapter = MockAdapter([make_text_response("big", usage=make_usage(999, 1))])
        strategy = RecordingStrategy()
        session = _session(
            adapter,
            config=SessionConfig(context_window=1000, auto_compact=False, retry=FAST_RETRY),
            compaction_strategy=strategy,
        )
        await collect(session.send("one"))
        await collect(session.send("two"))
        assert strategy.contexts == []

    @pytest.mark.asyncio
    async def test_custom_should_compact_predicate(self):
        infos: list[CompactionCheckInfo] = []

        def every_turn_after_first(info: CompactionCheckInfo) -> bool:
            infos.append(info)
            return info.turn_number >= 2

        adapter = MockAdapter([make_text_response("ok", usage=make_usage(1, 1))])
        strategy = RecordingStrategy()
        session = _session(
            adapter,
            config=SessionConfig(
                context_window=100_000,
                should_compact=every_turn_after_first,
                retry=FAST_RETRY,
            ),
            compaction_strategy=strategy,
        )
        await collect(session.send("one"))
        assert strategy.contexts == []
        await collect(session.send("two"))
        assert len(strategy.contexts) == 1
        assert infos[-1].context_window == 100_000
        assert infos[-1].reserved_tokens == 20_000

    @pytest.mark.asyncio
    async def test_manual_compaction(self):
        adapter = MockAdapter()
        strategy = RecordingStrategy()
        prompts: list[CompactionContext] = []

        def on_compaction(context: CompactionContext) -> str:
            prompts.append(context)
            return "Focus on file paths."

        session = _session(
            adapter,
            compaction_strategy=strategy,
            hooks=SessionHooks(on_compaction=on_compaction),
        )
        session.messages = [Message.user("a" * 400), Message.assistant("b" * 400)]
        events = await collect(session.compact())

        start, done = events[0], events[-1]
        assert isinstance(start, CompactionStart)
        assert start.reason == "manual"
        assert isinstance(done, CompactionDone)
        assert done.tokens_before == start.tokens_before
        assert done.tokens_after < done.tokens_before
        # No window: target is half the current estimate.
        assert strategy.contexts[0].target_tokens == start.tokens_before // 2
        assert strategy.contexts[0].compaction_prompt == "Focus on file paths."
        assert session.messages == [summary_message("recap")]
        assert session.state == SessionState.IDLE

    @pytest.mark.asyncio
    async def test_compaction_without_savings_emits_no_pruned_event(self):
        kept = [Message.user("hello")]
        strategy = RecordingStrategy(CompactionResult(messages=kept))
        session = _session(MockAdapter(), compaction_strategy=strategy)
        session.messages = list(kept)
        kinds = [e.kind for e in await collect(session.compact())]
        assert kinds == [EventKind.COMPACTION_START, EventKind.COMPACTION_DONE]

    @pytest.mark.asyncio
    async def test_strategy_failure_propagates(self):
        class Broken:
            async def compact(self, context: CompactionContext) -> CompactionResult:
                raise RuntimeError("summarizer down")

        session = _session(MockAdapter(), compaction_strategy=Broken())
        session.messages = [Message.user("x")]
        with pytest.raises(RuntimeError, match="summarizer down"):
            await collect(session.compact())
        assert session.state == SessionState.IDLE

    @pytest.mark.asyncio
    async def test_empty_summary_keeps_history(self):
        adapter = MockAdapter([make_text_response("")])
        session = _session(adapter)
        history = [Message.user("a" * 400), Message.assistant("b" * 400)]
        session.messages = list(history)

        with pytest.raises(CompactionError):
            await collect(session.compact())
        assert session.messages == history
        assert session.state == SessionState.IDLE

    @pytest.mark.asyncio
    async def test_default_strategy_leaves_minimal_history_alone(self):
        adapter = MockAdapter()
        session = _session(
            adapter, config=SessionConfig(context_window=100_000, reserved_tokens=20_000)
        )
        session.messages = [summary_message("all caught up")]
        events = await collect(session.compact())
        assert session.messages == [summary_message("all caught up")]
        assert adapter.call_count == 0
        assert events[-1].tokens_after == events[-1].tokens_before


# ================================================================== #
# Persistence
# ================================================================== #


class TestPersistence:
    @pytest.mark.asyncio
    async def test_auto_save_and_load(self):
        store = InMemorySessionStore()
        adapter = MockAdapter([make_text_response("saved reply")])
        session = _session(adapter, store=store, session_id="s-1")
        await collect(session.send("remember me"))
        assert "s-1" in store

        restored = _session(adapter, store=store, session_id="s-1")
        assert await restored.load() is True
        assert [m.text for m in restored.messages] == ["remember me", "saved reply"]

    @pytest.mark.asyncio
    async def test_load_missing_session(self):
        session = _session(MockAdapter(), store=InMemorySessionStore())
        assert await session.load() is False
        assert session.messages == []

    @pytest.mark.asyncio
    async def test_load_without_store(self):
        assert await _session(MockAdapter()).load() is False

    @pytest.mark.asyncio
    async def test_auto_save_disabled(self):
        store = InMemorySessionStore()
        session = _session(
            MockAdapter(),
            store=store,
            config=SessionConfig(auto_save=False, retry=FAST_RETRY),
        )
        await collect(session.send("hi"))
        assert len(store) == 0
        await session.save()
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_delete(self):
        store = InMemorySessionStore()
        session = _session(MockAdapter(), store=store, session_id="gone")
        await collect(session.send("hi"))
        await session.delete()
        assert "gone" not in store

    @pytest.mark.asyncio
    async def test_store_copies_lists(self):
        store = InMemorySessionStore()
        messages = [Message.user("a")]
        await store.save("x", messages)
        messages.append(Message.user("b"))
        loaded = await store.load("x")
        assert loaded == [Message.user("a")]
        loaded.append(Message.user("c"))
        assert await store.load("x") == [Message.user("a")]


class TestSendWithTimeouts:
    @pytest.mark.asyncio
    async def test_send_completes_promptly(self):
        adapter = MockAdapter([make_text_response("quick")])
        session = _session(adapter)
        events = await asyncio.wait_for(collect(session.send("hi")), timeout=5)
        assert isinstance(events[-1], TurnDone)
