"""Top-level LLM Client with provider routing.

The Client routes requests to a registered provider adapter, retries
one-shot completions under its retry policy, and makes streamed responses
honour an abort signal chunk by chunk.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Any

from relay_llm.abort import AbortSignal
from relay_llm.adapters.base import ProviderAdapter
from relay_llm.errors import ConfigurationError, SDKError
from relay_llm.retry import RetryPolicy, retry_with_policy
from relay_llm.types import Request, Response, StreamEvent

logger = logging.getLogger(__name__)

# Model-name prefixes used to pick an adapter when the request names none.
_PREFIX_HINTS: dict[str, tuple[str, ...]] = {
    "anthropic": ("claude",),
    "openai": ("gpt", "o1", "o3", "o4"),
    "gemini": ("gemini",),
}


async def _next_event(iterator: AsyncIterator[StreamEvent]) -> StreamEvent:
    return await iterator.__anext__()


class Client:
    """Unified LLM Client with provider routing.

    Usage::

        client = Client()
        client.register_adapter("local", OpenAICompatAdapter(config))

        async for event in client.stream(Request(model="llama3", messages=[...])):
            ...
    """

    def __init__(self, *, retry_policy: RetryPolicy | None = None) -> None:
        self._adapters: dict[str, ProviderAdapter] = {}
        self._retry_policy = retry_policy or RetryPolicy()

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    def register_adapter(self, provider: str, adapter: ProviderAdapter) -> None:
        """Register a provider adapter under *provider*. Overwrites silently."""
        self._adapters[provider] = adapter

    def _resolve_adapter(self, request: Request) -> ProviderAdapter:
        """Resolve which adapter serves *request*.

        Resolution order:
        1. Explicit ``request.provider``
        2. The only registered adapter
        3. Model-name prefix heuristics

        Raises:
            ConfigurationError: If no adapter can be resolved.
        """
        if request.provider:
            adapter = self._adapters.get(request.provider)
            if adapter:
                return adapter
            raise ConfigurationError(
                f"Provider {request.provider!r} not registered. "
                f"Available: {list(self._adapters)}"
            )

        if len(self._adapters) == 1:
            return next(iter(self._adapters.values()))

        model_lower = request.model.lower()
        for provider_name, prefixes in _PREFIX_HINTS.items():
            adapter = self._adapters.get(provider_name)
            if adapter and model_lower.startswith(prefixes):
                return adapter

        raise ConfigurationError(
            f"Cannot resolve provider for model {request.model!r}. "
            f"Set request.provider explicitly or register the provider. "
            f"Available: {list(self._adapters)}"
        )

    async def complete(
        self, request: Request, *, abort_signal: AbortSignal | None = None
    ) -> Response:
        """Send a request and return the complete response, applying the retry policy."""
        adapter = self._resolve_adapter(request)

        async def _do_complete() -> Response:
            if abort_signal is not None:
                return await abort_signal.guard(adapter.complete(request, abort_signal))
            return await adapter.complete(request, abort_signal)

        def _log_retry(attempt: int, exc: SDKError, delay: float) -> None:
            logger.info(
                "Retrying %s completion (attempt %d) in %.1fs: %s",
                request.model,
                attempt + 1,
                delay,
                exc,
            )

        return await retry_with_policy(
            _do_complete, self._retry_policy, on_retry=_log_retry, abort_signal=abort_signal
        )

    async def stream(
        self, request: Request, *, abort_signal: AbortSignal | None = None
    ) -> AsyncIterator[StreamEvent]:
        """Stream a response as StreamEvents.

        Streams are never retried here; a failure mid-stream is raised to the
        caller. When *abort_signal* fires, the pending chunk wait is cancelled
        and AbortError is raised.
        """
        adapter = self._resolve_adapter(request)
        logger.debug(
            "Streaming %s via %s (%d messages)",
            request.model,
            adapter.provider_name,
            len(request.messages),
        )
        events = adapter.stream(request, abort_signal)
        iterator = aiter(events)
        try:
            while True:
                try:
                    if abort_signal is not None:
                        event = await abort_signal.guard(_next_event(iterator))
                    else:
                        event = await _next_event(iterator)
                except StopAsyncIteration:
                    return
                yield event
        finally:
            aclose: Any = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()

    async def close(self) -> None:
        """Close all registered adapters and release resources."""
        errors: list[Exception] = []
        for adapter in self._adapters.values():
            try:
                await adapter.close()
            except Exception as exc:  # noqa: BLE001
                errors.append(exc)
        if errors:
            raise SDKError(f"Errors closing adapters: {errors}")

    async def __aenter__(self) -> Client:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()
