"""Shared test doubles: a scripted streaming adapter and response builders."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any

from relay_llm.abort import AbortSignal
from relay_llm.client import Client
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
    Usage,
)

# Placed in a scripted event list: the stream blocks here until cancelled.
HANG = object()

ScriptItem = Response | list[Any] | BaseException


def response_to_events(response: Response) -> list[StreamEvent]:
    """Stream events an adapter would emit for *response*."""
    events = [StreamEvent(kind=StreamEventKind.START, model=response.model, provider="mock")]
    for part in response.message.content:
        match part.kind:
            case ContentPartKind.THINKING:
                events.append(StreamEvent(kind=StreamEventKind.THINKING_DELTA, text=part.text))
            case ContentPartKind.TEXT:
                events.append(StreamEvent(kind=StreamEventKind.TEXT_DELTA, text=part.text))
            case ContentPartKind.TOOL_CALL:
                args = part.arguments
                events.append(
                    StreamEvent(
                        kind=StreamEventKind.TOOL_CALL_START,
                        tool_call_id=part.tool_call_id,
                        tool_name=part.name,
                    )
                )
                events.append(
                    StreamEvent(
                        kind=StreamEventKind.TOOL_CALL_DELTA,
                        tool_call_id=part.tool_call_id,
                        arguments_delta=args if isinstance(args, str) else json.dumps(args),
                    )
                )
                events.append(
                    StreamEvent(kind=StreamEventKind.TOOL_CALL_END, tool_call_id=part.tool_call_id)
                )
    events.append(StreamEvent(kind=StreamEventKind.USAGE, usage=response.usage))
    events.append(StreamEvent(kind=StreamEventKind.FINISH, finish_reason=response.finish_reason))
    return events


class MockAdapter:
    """Replays one scripted item per call.

    Each item is a Response (streamed as events), a raw list of
    StreamEvents (which may contain exceptions to raise mid-stream or
    ``HANG``), or an exception raised before anything is streamed. When the
    script runs out the last item is repeated.
    """

    def __init__(self, responses: list[ScriptItem] | None = None) -> None:
        self._script: list[ScriptItem] = list(responses or [make_text_response("ok")])
        self.requests: list[Request] = []
        self.call_count = 0
        self.closed = False

    @property
    def provider_name(self) -> str:
        return "mock"

    def _next_item(self) -> ScriptItem:
        index = min(self.call_count, len(self._script) - 1)
        self.call_count += 1
        return self._script[index]

    async def stream(
        self, request: Request, abort_signal: AbortSignal | None = None
    ) -> AsyncIterator[StreamEvent]:
        self.requests.append(request)
        item = self._next_item()
        if isinstance(item, BaseException):
            raise item
        events = response_to_events(item) if isinstance(item, Response) else item
        for event in events:
            if event is HANG:
                await asyncio.sleep(3600)
            elif isinstance(event, BaseException):
                raise event
            else:
                yield event

    async def complete(
        self, request: Request, abort_signal: AbortSignal | None = None
    ) -> Response:
        accumulator = StreamAccumulator()
        async for event in self.stream(request, abort_signal):
            accumulator.feed(event)
        return accumulator.response()

    async def close(self) -> None:
        self.closed = True


def make_client(adapter: MockAdapter) -> Client:
    client = Client()
    client.register_adapter("mock", adapter)
    return client


def make_usage(input_tokens: int = 10, output_tokens: int = 5) -> Usage:
    return Usage(input_tokens=input_tokens, output_tokens=output_tokens)


def make_text_response(
    text: str,
    *,
    usage: Usage | None = None,
    finish_reason: FinishReason = FinishReason.STOP,
    reasoning: str | None = None,
) -> Response:
    content = [ContentPart.thinking_part(reasoning)] if reasoning else []
    content.append(ContentPart.text_part(text))
    return Response(
        id="resp-text",
        model="mock-model",
        provider="mock",
        message=Message(role=Role.ASSISTANT, content=content),
        finish_reason=finish_reason,
        usage=usage or make_usage(),
    )


def make_tool_call_response(
    tool_name: str,
    arguments: dict[str, Any],
    tool_call_id: str = "tc-1",
    *,
    usage: Usage | None = None,
) -> Response:
    return make_multi_tool_response([(tool_call_id, tool_name, arguments)], usage=usage)


def make_multi_tool_response(
    calls: list[tuple[str, str, dict[str, Any]]], *, usage: Usage | None = None
) -> Response:
    return Response(
        id="resp-tools",
        model="mock-model",
        provider="mock",
        message=Message(
            role=Role.ASSISTANT,
            content=[ContentPart.tool_call_part(cid, name, args) for cid, name, args in calls],
        ),
        finish_reason=FinishReason.TOOL_CALLS,
        usage=usage or make_usage(),
    )


def text_then_error(text: str, error: BaseException) -> list[Any]:
    """A stream that emits some text and then fails."""
    return [
        StreamEvent(kind=StreamEventKind.START, model="mock-model", provider="mock"),
        StreamEvent(kind=StreamEventKind.TEXT_DELTA, text=text),
        error,
    ]


async def collect(events: AsyncIterator[Any]) -> list[Any]:
    return [event async for event in events]
