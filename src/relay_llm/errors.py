"""Error hierarchy for the relay LLM client layer.

Every error carries a ``retryable`` hint. Whether the session layer actually
retries is decided by its retry predicate (see :mod:`relay_llm.retry`), which
also looks at status codes and message text.
"""

from __future__ import annotations


class SDKError(Exception):
    """Base error for all relay errors."""

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        status_code: int | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.retryable = retryable


class ProviderError(SDKError):
    """Error from a provider API response."""

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        status_code: int | None = None,
        retryable: bool = False,
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(message, provider=provider, status_code=status_code, retryable=retryable)
        self.headers = {k.lower(): v for k, v in (headers or {}).items()}


class AuthenticationError(ProviderError):
    """401: Invalid or missing credentials."""


class AccessDeniedError(ProviderError):
    """403: Insufficient permissions."""


class NotFoundError(ProviderError):
    """404: Model or endpoint not found."""


class InvalidRequestError(ProviderError):
    """400/422: Bad request parameters."""


class ContextLengthError(ProviderError):
    """413: Input + output exceeds the context window."""


class ContentFilterError(ProviderError):
    """Content was blocked by safety filters."""


class RateLimitError(ProviderError):
    """429: Rate limited. Retryable, optionally with a server-requested delay."""

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        status_code: int | None = 429,
        retry_after: float | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(
            message,
            provider=provider,
            status_code=status_code,
            retryable=True,
            headers=headers,
        )
        self.retry_after = retry_after


class ServerError(ProviderError):
    """5xx (and 529 overloaded): Provider server error. Retryable."""

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        status_code: int | None = 500,
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(
            message,
            provider=provider,
            status_code=status_code,
            retryable=True,
            headers=headers,
        )


class AbortError(SDKError):
    """Operation cancelled via an abort signal. Never retried."""


class NetworkError(SDKError):
    """Network-level failure (connection reset, DNS, ...). Retryable."""

    def __init__(self, message: str, *, provider: str | None = None) -> None:
        super().__init__(message, provider=provider, retryable=True)


class RequestTimeoutError(SDKError):
    """Request timed out. Retryable."""

    def __init__(
        self, message: str, *, provider: str | None = None, status_code: int | None = None
    ) -> None:
        super().__init__(message, provider=provider, status_code=status_code, retryable=True)


class StreamError(SDKError):
    """The provider reported an error mid-stream."""

    def __init__(self, message: str, *, provider: str | None = None) -> None:
        super().__init__(message, provider=provider, retryable=False)


class ConfigurationError(SDKError):
    """Client misconfiguration, e.g. no adapter can serve a request."""


class ToolError(SDKError):
    """Tool execution failed."""

    def __init__(self, message: str, *, tool_name: str | None = None) -> None:
        super().__init__(message, retryable=False)
        self.tool_name = tool_name


_STATUS_ERRORS: dict[int, type[ProviderError]] = {
    400: InvalidRequestError,
    401: AuthenticationError,
    403: AccessDeniedError,
    404: NotFoundError,
    413: ContextLengthError,
    422: InvalidRequestError,
}


def _parse_retry_after(headers: dict[str, str] | None) -> float | None:
    if not headers:
        return None
    for key, value in headers.items():
        if key.lower() == "retry-after":
            try:
                return float(value)
            except ValueError:
                return None
    return None


def classify_http_error(
    status_code: int,
    body: str,
    provider: str,
    *,
    headers: dict[str, str] | None = None,
) -> SDKError:
    """Map an HTTP status code (and, failing that, the body text) to an error type."""
    if status_code in _STATUS_ERRORS:
        return _STATUS_ERRORS[status_code](
            body, provider=provider, status_code=status_code, headers=headers
        )
    if status_code == 408:
        return RequestTimeoutError(body, provider=provider, status_code=status_code)
    if status_code == 429:
        return RateLimitError(
            body,
            provider=provider,
            status_code=status_code,
            retry_after=_parse_retry_after(headers),
            headers=headers,
        )
    if status_code >= 500:
        return ServerError(body, provider=provider, status_code=status_code, headers=headers)

    body_lower = body.lower()
    if "context length" in body_lower or "too many tokens" in body_lower:
        return ContextLengthError(body, provider=provider, status_code=status_code)
    if "content filter" in body_lower or "safety" in body_lower:
        return ContentFilterError(body, provider=provider, status_code=status_code)

    return ProviderError(body, provider=provider, status_code=status_code, headers=headers)
