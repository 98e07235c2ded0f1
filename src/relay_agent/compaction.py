"""Context compaction: shrink a conversation to fit a token budget.

The default strategy works in two phases:

1. **Pruning** -- tool results older than the protected tail of the
   conversation have their output replaced with ``[pruned]``. Message shape
   is kept, so every tool call still has its result. If that alone saves
   enough tokens, no model call is made.
2. **Summarization** -- otherwise the whole history is handed to the model
   and replaced by a single user message carrying the summary.

Token counts are estimates (roughly four characters per token of the JSON
serialization); exact counting is provider-specific and not needed here.
"""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from relay_llm.abort import AbortSignal
from relay_llm.client import Client
from relay_llm.errors import SDKError
from relay_llm.types import ContentPartKind, Message, Request, Role

logger = logging.getLogger(__name__)

PRUNED_PLACEHOLDER = "[pruned]"

DEFAULT_SUMMARY_PROMPT = """Summarize this conversation for the next agent turn:

1. Goal: What the user is trying to accomplish
2. Instructions: Key directives and constraints mentioned
3. Discoveries: Important findings during the conversation
4. Accomplished: What's been completed, files changed, actions taken
5. Current State: Where things stand, pending work
6. Relevant Context: File paths, code snippets, specific details needed to continue"""

TokenEstimator = Callable[[list[Message]], int]


class CompactionError(SDKError):
    """Compaction could not produce a usable history."""


def _dump(message: Message) -> dict:
    return message.model_dump(mode="json", exclude_none=True)


def estimate_tokens(messages: list[Message]) -> int:
    """Cheap token estimate: serialized length divided by four, rounded up."""
    return math.ceil(len(json.dumps([_dump(m) for m in messages])) / 4)


def summary_message(summary: str) -> Message:
    return Message.user(
        f"[Previous conversation summary]\n\n{summary}\n\n[The conversation continues from here]"
    )


@dataclass
class CompactionContext:
    """Everything a strategy may need to compact one conversation."""

    messages: list[Message]
    client: Client
    model: str
    system_prompt: str | None
    total_tokens: int
    target_tokens: int
    compaction_prompt: str | None = None
    abort_signal: AbortSignal | None = None
    provider: str | None = None


@dataclass
class CompactionResult:
    messages: list[Message]
    summary: str | None = None
    messages_removed: int = 0
    tokens_pruned: int = 0


@runtime_checkable
class CompactionStrategy(Protocol):
    async def compact(self, context: CompactionContext) -> CompactionResult: ...


@dataclass
class PruneResult:
    messages: list[Message]
    tokens_saved: int
    messages_modified: int


def prune_tool_results(
    messages: list[Message],
    protected_tokens: int,
    estimate: TokenEstimator = estimate_tokens,
) -> PruneResult:
    """Replace tool outputs outside the protected tail with the placeholder.

    Walks backward summing per-message estimates; the message that reaches
    *protected_tokens* and everything after it is protected. When the whole
    history fits inside the protected tail nothing is pruned. The input list
    is never modified.
    """
    accumulated = 0
    boundary = 0
    for index in range(len(messages) - 1, -1, -1):
        accumulated += estimate([messages[index]])
        if accumulated >= protected_tokens:
            boundary = index
            break

    result = list(messages)
    tokens_saved = 0
    modified = 0
    for index in range(boundary):
        message = result[index]
        if message.role != Role.TOOL:
            continue
        content = [
            part.model_copy(update={"output": PRUNED_PLACEHOLDER})
            if part.kind == ContentPartKind.TOOL_RESULT and part.output != PRUNED_PLACEHOLDER
            else part
            for part in message.content
        ]
        if all(new is old for new, old in zip(content, message.content, strict=True)):
            continue
        pruned = message.model_copy(update={"content": content})
        tokens_saved += estimate([message]) - estimate([pruned])
        result[index] = pruned
        modified += 1

    return PruneResult(messages=result, tokens_saved=tokens_saved, messages_modified=modified)


def serialize_conversation(messages: list[Message]) -> str:
    """One ``role: <json content>`` line per message."""
    return "\n".join(
        f"{m.role.value}: {json.dumps(_dump(m)['content'])}" for m in messages
    )


class DefaultCompactionStrategy:
    """Prune old tool results, falling back to a model-written summary.

    Args:
        protected_tokens: Estimated tokens at the end of the conversation
            that are never pruned.
        min_prune_savings: Pruning is only accepted if it saves at least
            this many tokens.
        summary_model: Model used for summaries (default: the agent's).
        summary_prompt: Default summarization prompt override.
        estimate_tokens: Token estimator for whole message lists.
    """

    def __init__(
        self,
        *,
        protected_tokens: int = 40_000,
        min_prune_savings: int = 20_000,
        summary_model: str | None = None,
        summary_prompt: str | None = None,
        estimate_tokens: TokenEstimator = estimate_tokens,
    ) -> None:
        self.protected_tokens = protected_tokens
        self.min_prune_savings = min_prune_savings
        self.summary_model = summary_model
        self.summary_prompt = summary_prompt
        self.estimate_tokens = estimate_tokens

    async def compact(self, context: CompactionContext) -> CompactionResult:
        pruned = prune_tool_results(
            context.messages, self.protected_tokens, self.estimate_tokens
        )
        if pruned.tokens_saved >= self.min_prune_savings:
            logger.info(
                "Pruned %d tool result message(s), saving ~%d tokens",
                pruned.messages_modified,
                pruned.tokens_saved,
            )
            return CompactionResult(messages=pruned.messages, tokens_pruned=pruned.tokens_saved)

        current = self.estimate_tokens(context.messages)
        if current <= context.target_tokens:
            logger.debug(
                "History already within budget (%d <= %d tokens); leaving it unchanged",
                current,
                context.target_tokens,
            )
            return CompactionResult(messages=list(context.messages))

        logger.info(
            "Summarizing %d message(s) (~%d tokens, target %d)",
            len(context.messages),
            current,
            context.target_tokens,
        )
        summary = await self._summarize(context)
        replacement = [summary_message(summary)]
        return CompactionResult(
            messages=replacement,
            summary=summary,
            messages_removed=max(len(context.messages) - 1, 0),
            tokens_pruned=current - self.estimate_tokens(replacement),
        )

    async def _summarize(self, context: CompactionContext) -> str:
        prompt = context.compaction_prompt or self.summary_prompt or DEFAULT_SUMMARY_PROMPT
        request = Request(
            model=self.summary_model or context.model,
            system=prompt,
            messages=[Message.user(serialize_conversation(context.messages))],
            provider=context.provider,
        )
        response = await context.client.complete(request, abort_signal=context.abort_signal)
        summary = response.text or ""
        if not summary.strip():
            raise CompactionError(
                f"Model {request.model} returned an empty summary; history left unchanged"
            )
        return summary
