"""Base adapter protocol and configuration for provider adapters."""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from relay_llm.abort import AbortSignal
from relay_llm.types import Request, Response, StreamEvent


@dataclass(frozen=True)
class ProviderConfig:
    """Configuration for a provider adapter.

    Each adapter receives this at construction time.
    """

    api_key: str = ""
    base_url: str | None = None
    timeout: float = 120.0
    default_headers: dict[str, str] = field(default_factory=dict)


@runtime_checkable
class ProviderAdapter(Protocol):
    """Protocol that all provider adapters implement.

    Each adapter translates the unified Request/Response types to and from
    the provider's native API format.
    """

    @property
    def provider_name(self) -> str:
        """The provider identifier (e.g. 'openai-compat')."""
        ...

    async def complete(
        self, request: Request, abort_signal: AbortSignal | None = None
    ) -> Response:
        """Send a request and return the complete response."""
        ...

    def stream(
        self, request: Request, abort_signal: AbortSignal | None = None
    ) -> AsyncIterator[StreamEvent]:
        """Stream a response as StreamEvents.

        The first event should be START; the last FINISH (or ERROR).
        HTTP-level failures are raised as SDKError subclasses.
        """
        ...

    async def close(self) -> None:
        """Release resources (HTTP connections, etc.)."""
        ...
