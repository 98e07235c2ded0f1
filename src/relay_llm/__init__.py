"""Relay LLM client layer.

Provider-neutral messages, streaming, errors and retry policy, plus an
OpenAI-compatible streaming adapter.
"""

from __future__ import annotations

from relay_llm.abort import AbortSignal, sleep
from relay_llm.adapters.base import ProviderAdapter, ProviderConfig
from relay_llm.adapters.openai_compat import OpenAICompatAdapter
from relay_llm.client import Client
from relay_llm.errors import (
    AbortError,
    AccessDeniedError,
    AuthenticationError,
    ConfigurationError,
    ContentFilterError,
    ContextLengthError,
    InvalidRequestError,
    NetworkError,
    NotFoundError,
    ProviderError,
    RateLimitError,
    RequestTimeoutError,
    SDKError,
    ServerError,
    StreamError,
    ToolError,
    classify_http_error,
)
from relay_llm.retry import RetryPolicy, is_retryable_error, retry_with_policy
from relay_llm.streaming import StreamAccumulator
from relay_llm.types import (
    ContentPart,
    ContentPartKind,
    FinishReason,
    Message,
    Request,
    Response,
    Role,
    StreamEvent,
    StreamEventKind,
    Tool,
    ToolContext,
    Usage,
)

__all__ = [
    # Client
    "Client",
    "ProviderAdapter",
    "ProviderConfig",
    "OpenAICompatAdapter",
    # Cancellation
    "AbortSignal",
    "sleep",
    # Types
    "Role",
    "ContentPartKind",
    "ContentPart",
    "Message",
    "Tool",
    "ToolContext",
    "FinishReason",
    "Usage",
    "Request",
    "Response",
    "StreamEventKind",
    "StreamEvent",
    # Errors
    "SDKError",
    "ProviderError",
    "AbortError",
    "AccessDeniedError",
    "AuthenticationError",
    "ConfigurationError",
    "ContentFilterError",
    "ContextLengthError",
    "InvalidRequestError",
    "NetworkError",
    "NotFoundError",
    "RateLimitError",
    "RequestTimeoutError",
    "ServerError",
    "StreamError",
    "ToolError",
    "classify_http_error",
    # Retry
    "RetryPolicy",
    "is_retryable_error",
    "retry_with_policy",
    # Streaming
    "StreamAccumulator",
]
