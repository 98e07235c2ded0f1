"""Retry policy with exponential backoff.

Used in two places: :meth:`relay_llm.client.Client.complete` wraps single
requests with :func:`retry_with_policy`, and the agent session drives its own
attempt loop around streamed turns using :meth:`RetryPolicy.should_retry` and
:meth:`RetryPolicy.compute_delay`.
"""

from __future__ import annotations

import random
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

from relay_llm.abort import sleep
from relay_llm.errors import (
    AbortError,
    NetworkError,
    ProviderError,
    RateLimitError,
    RequestTimeoutError,
    SDKError,
    ServerError,
)

if TYPE_CHECKING:
    from relay_llm.abort import AbortSignal

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504, 529})

_STATUS_IN_MESSAGE = re.compile(r"\b(429|500|502|503|504|529)\b")
_TRANSIENT_PHRASES = (
    "rate limit",
    "timeout",
    "timed out",
    "econnreset",
    "connection reset",
    "overloaded",
)

# Max fraction of the computed backoff added as random jitter.
JITTER_FRACTION = 0.3


def is_retryable_error(error: BaseException) -> bool:
    """Default transient-failure classifier.

    Matches retryable HTTP status codes (on the error or in its message),
    the well-known transient error types, and common transient phrases.
    Cancellation is never retryable.
    """
    if isinstance(error, AbortError):
        return False
    if isinstance(error, (RateLimitError, ServerError, NetworkError, RequestTimeoutError)):
        return True
    status = getattr(error, "status_code", None)
    if status in RETRYABLE_STATUS_CODES:
        return True
    message = str(error).lower()
    if _STATUS_IN_MESSAGE.search(message):
        return True
    return any(phrase in message for phrase in _TRANSIENT_PHRASES)


def retry_after_hint(error: BaseException) -> float | None:
    """Server-requested delay in seconds, if the error carries one."""
    if isinstance(error, RateLimitError) and error.retry_after is not None:
        return error.retry_after
    if isinstance(error, ProviderError):
        raw = error.headers.get("retry-after")
        if raw:
            try:
                return float(raw)
            except ValueError:
                return None
    return None


@dataclass(frozen=True)
class RetryPolicy:
    """Configuration for retry behavior with exponential backoff.

    Delay for attempt ``n`` (0-indexed) is
    ``initial_delay * backoff_factor ** n`` plus up to 30% random jitter,
    capped at ``max_delay``. A provider ``retry-after`` hint replaces the
    computed delay (still capped). ``is_retryable`` replaces the default
    classifier entirely when set.
    """

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_factor: float = 2.0
    jitter: bool = True
    is_retryable: Callable[[BaseException], bool] | None = None

    def should_retry(self, error: BaseException) -> bool:
        predicate = self.is_retryable or is_retryable_error
        return predicate(error)

    def compute_delay(self, attempt: int, error: BaseException | None = None) -> float:
        """Compute delay in seconds before retrying after attempt *attempt*."""
        if error is not None:
            hint = retry_after_hint(error)
            if hint is not None:
                return min(hint, self.max_delay)

        delay = self.initial_delay * (self.backoff_factor**attempt)
        if self.jitter:
            delay += random.random() * JITTER_FRACTION * delay  # noqa: S311
        return min(delay, self.max_delay)


OnRetryCallback = Callable[[int, SDKError, float], Awaitable[None] | None]


async def retry_with_policy(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    on_retry: OnRetryCallback | None = None,
    abort_signal: AbortSignal | None = None,
) -> T:
    """Execute an async function with retry logic.

    Only SDK errors accepted by ``policy.should_retry`` are retried.

    Raises:
        SDKError: When retries are exhausted or the error is not retryable.
        AbortError: If *abort_signal* fires during a backoff sleep.
        ValueError: If policy.max_retries is negative.
    """
    if policy.max_retries < 0:
        raise ValueError(f"max_retries must be >= 0, got {policy.max_retries}")

    attempt = 0
    while True:
        try:
            return await fn()
        except SDKError as exc:
            if attempt >= policy.max_retries or not policy.should_retry(exc):
                raise

            delay = policy.compute_delay(attempt, exc)
            if on_retry is not None:
                result = on_retry(attempt, exc, delay)
                if isinstance(result, Awaitable):
                    await result

            await sleep(delay, abort_signal)
            attempt += 1
