"""OpenAI-compatible Chat Completions adapter.

Connects to any server implementing ``/v1/chat/completions`` (OpenAI itself,
Ollama, vLLM, LiteLLM proxy, llama.cpp server, ...). Streaming uses
server-sent events; reasoning deltas are read from ``reasoning_content``
(or ``reasoning``) when the server provides them.

Usage::

    adapter = OpenAICompatAdapter(ProviderConfig(
        base_url="http://localhost:11434/v1",
        api_key="ollama",
    ))
    client.register_adapter("local", adapter)
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

import httpx

from relay_llm.abort import AbortSignal
from relay_llm.adapters.base import ProviderConfig
from relay_llm.errors import (
    InvalidRequestError,
    NetworkError,
    RequestTimeoutError,
    classify_http_error,
)
from relay_llm.streaming import StreamAccumulator
from relay_llm.types import (
    ContentPartKind,
    FinishReason,
    Message,
    Request,
    Response,
    Role,
    StreamEvent,
    StreamEventKind,
    Usage,
)

PROVIDER = "openai-compat"

_FINISH_REASONS: dict[str, FinishReason] = {
    "stop": FinishReason.STOP,
    "length": FinishReason.MAX_TOKENS,
    "tool_calls": FinishReason.TOOL_CALLS,
    "function_call": FinishReason.TOOL_CALLS,
    "content_filter": FinishReason.CONTENT_FILTER,
}


def _map_finish_reason(reason: str | None) -> FinishReason:
    if reason is None:
        return FinishReason.STOP
    return _FINISH_REASONS.get(reason, FinishReason.OTHER)


def _map_usage(data: dict[str, Any] | None) -> Usage | None:
    if not data:
        return None
    return Usage(
        input_tokens=data.get("prompt_tokens"),
        output_tokens=data.get("completion_tokens"),
        total_tokens=data.get("total_tokens"),
    )


class OpenAICompatAdapter:
    """Adapter for OpenAI-compatible Chat Completions API servers."""

    def __init__(
        self, config: ProviderConfig, *, http_client: httpx.AsyncClient | None = None
    ) -> None:
        self._config = config
        base_url = (config.base_url or "https://api.openai.com/v1").rstrip("/")
        self._endpoint = f"{base_url}/chat/completions"
        headers = {"Content-Type": "application/json"}
        if config.api_key:
            headers["Authorization"] = f"Bearer {config.api_key}"
        headers.update(config.default_headers)
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(config.timeout),
            headers=headers,
        )

    @property
    def provider_name(self) -> str:
        return PROVIDER

    async def complete(
        self, request: Request, abort_signal: AbortSignal | None = None
    ) -> Response:
        """Collect a streamed completion into a single Response."""
        accumulator = StreamAccumulator()
        async for event in self.stream(request, abort_signal):
            accumulator.feed(event)
        return accumulator.response()

    async def stream(
        self, request: Request, abort_signal: AbortSignal | None = None
    ) -> AsyncIterator[StreamEvent]:
        """Stream a chat completion response via SSE."""
        body = self._build_request_body(request)
        body["stream"] = True
        body["stream_options"] = {"include_usage": True}

        try:
            async with self._client.stream("POST", self._endpoint, json=body) as resp:
                if resp.status_code != 200:
                    raw = await resp.aread()
                    raise classify_http_error(
                        resp.status_code,
                        self._error_text(raw.decode("utf-8", errors="replace")),
                        PROVIDER,
                        headers=dict(resp.headers),
                    )

                yield StreamEvent(kind=StreamEventKind.START, model=request.model, provider=PROVIDER)

                # Providers send the call id only on the first delta of each call;
                # later deltas are keyed by index.
                ids_by_index: dict[int, str] = {}
                finish: FinishReason | None = None
                usage: Usage | None = None

                async for line in resp.aiter_lines():
                    if abort_signal is not None:
                        abort_signal.raise_if_aborted()
                    if not line.startswith("data:"):
                        continue
                    data = line[5:].strip()
                    if data == "[DONE]":
                        break
                    try:
                        chunk = json.loads(data)
                    except json.JSONDecodeError:
                        continue

                    if err := chunk.get("error"):
                        message = err.get("message") if isinstance(err, dict) else str(err)
                        yield StreamEvent(kind=StreamEventKind.ERROR, error=message)
                        return

                    usage = _map_usage(chunk.get("usage")) or usage

                    for choice in chunk.get("choices") or []:
                        delta = choice.get("delta") or {}
                        reasoning = delta.get("reasoning_content") or delta.get("reasoning")
                        if reasoning:
                            yield StreamEvent(kind=StreamEventKind.THINKING_DELTA, text=reasoning)
                        if content := delta.get("content"):
                            yield StreamEvent(kind=StreamEventKind.TEXT_DELTA, text=content)
                        for tc in delta.get("tool_calls") or []:
                            for event in self._tool_call_events(tc, ids_by_index):
                                yield event
                        if choice.get("finish_reason"):
                            finish = _map_finish_reason(choice["finish_reason"])

                for call_id in ids_by_index.values():
                    yield StreamEvent(kind=StreamEventKind.TOOL_CALL_END, tool_call_id=call_id)
                if usage is not None:
                    yield StreamEvent(kind=StreamEventKind.USAGE, usage=usage)
                yield StreamEvent(
                    kind=StreamEventKind.FINISH,
                    finish_reason=finish or FinishReason.STOP,
                )
        except httpx.TimeoutException as exc:
            raise RequestTimeoutError(f"Request timed out: {exc}", provider=PROVIDER) from exc
        except httpx.TransportError as exc:
            raise NetworkError(f"Connection error: {exc}", provider=PROVIDER) from exc

    @staticmethod
    def _tool_call_events(
        tc: dict[str, Any], ids_by_index: dict[int, str]
    ) -> list[StreamEvent]:
        index = tc.get("index", len(ids_by_index))
        function = tc.get("function") or {}
        events: list[StreamEvent] = []
        if index not in ids_by_index:
            call_id = tc.get("id") or f"call_{index}"
            ids_by_index[index] = call_id
            events.append(
                StreamEvent(
                    kind=StreamEventKind.TOOL_CALL_START,
                    tool_call_id=call_id,
                    tool_name=function.get("name", ""),
                )
            )
        if args := function.get("arguments"):
            events.append(
                StreamEvent(
                    kind=StreamEventKind.TOOL_CALL_DELTA,
                    tool_call_id=ids_by_index[index],
                    arguments_delta=args,
                )
            )
        return events

    async def close(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------ #
    # Request building
    # ------------------------------------------------------------------ #

    @staticmethod
    def _error_text(body: str) -> str:
        try:
            data = json.loads(body)
        except json.JSONDecodeError:
            return body
        if isinstance(data, dict) and isinstance(data.get("error"), dict):
            return str(data["error"].get("message", body))
        return body

    def _build_request_body(self, request: Request) -> dict[str, Any]:
        """Build a Chat Completions API request body."""
        messages: list[dict[str, Any]] = []

        if request.system:
            messages.append({"role": "system", "content": request.system})

        for msg in request.messages:
            messages.extend(self._convert_message(msg))

        body: dict[str, Any] = {"model": request.model, "messages": messages}

        if request.temperature is not None:
            body["temperature"] = request.temperature
        if request.max_tokens:
            body["max_tokens"] = request.max_tokens
        if request.tools:
            body["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": tool.parameters,
                    },
                }
                for tool in request.tools
            ]
        if request.provider_options:
            body.update(request.provider_options)
        return body

    @staticmethod
    def _convert_message(msg: Message) -> list[dict[str, Any]]:
        match msg.role:
            case Role.SYSTEM | Role.USER:
                return [{"role": msg.role.value, "content": msg.text or ""}]

            case Role.ASSISTANT:
                out: dict[str, Any] = {"role": "assistant", "content": msg.text or ""}
                if msg.tool_calls:
                    out["tool_calls"] = [
                        {
                            "id": tc.tool_call_id or "",
                            "type": "function",
                            "function": {
                                "name": tc.name or "",
                                "arguments": (
                                    json.dumps(tc.arguments)
                                    if isinstance(tc.arguments, dict)
                                    else tc.arguments or "{}"
                                ),
                            },
                        }
                        for tc in msg.tool_calls
                    ]
                return [out]

            case Role.TOOL:
                return [
                    {
                        "role": "tool",
                        "tool_call_id": part.tool_call_id or "",
                        "content": part.output or "",
                    }
                    for part in msg.content
                    if part.kind == ContentPartKind.TOOL_RESULT
                ]

        raise InvalidRequestError(f"Unsupported message role: {msg.role}", provider=PROVIDER)
