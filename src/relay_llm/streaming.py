"""Folding a provider stream back into one Response.

Adapters and the step-loop executor both need the same thing: feed every
StreamEvent as it arrives, then ask for the assembled assistant message,
finish reason and usage once the stream ends.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from relay_llm.types import (
    ContentPart,
    FinishReason,
    Message,
    Response,
    Role,
    StreamEvent,
    StreamEventKind,
    Usage,
)


def parse_tool_arguments(raw: str) -> str | dict[str, Any]:
    """Decode streamed argument JSON.

    Empty input means "no arguments". Anything that is not a JSON object is
    returned verbatim so the tool registry can report it to the model.
    """
    if not raw.strip():
        return {}
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError:
        return raw
    return decoded if isinstance(decoded, dict) else raw


@dataclass
class _PendingCall:
    call_id: str
    name: str
    fragments: list[str] = field(default_factory=list)

    def to_part(self) -> ContentPart:
        return ContentPart.tool_call_part(
            self.call_id, self.name, parse_tool_arguments("".join(self.fragments))
        )


class StreamAccumulator:
    """Accumulates StreamEvents into a complete Response.

    Usage::

        acc = StreamAccumulator()
        async for event in stream:
            acc.feed(event)
        response = acc.response()

    Tool calls are kept in the order their START events arrived.
    """

    def __init__(self) -> None:
        self._text: list[str] = []
        self._thinking: list[str] = []
        self._calls: dict[str, _PendingCall] = {}
        self._usage = Usage()
        self._finish: FinishReason | None = None
        self._meta: dict[str, str] = {}
        self._error: str | None = None

    def feed(self, event: StreamEvent) -> None:
        """Process a single stream event."""
        match event:
            case StreamEvent(kind=StreamEventKind.START):
                for key in ("model", "provider", "response_id"):
                    if value := getattr(event, key):
                        self._meta[key] = value

            case StreamEvent(kind=StreamEventKind.TEXT_DELTA, text=str() as text) if text:
                self._text.append(text)

            case StreamEvent(kind=StreamEventKind.THINKING_DELTA, text=str() as text) if text:
                self._thinking.append(text)

            case StreamEvent(kind=StreamEventKind.TOOL_CALL_START, tool_call_id=str() as call_id):
                self._calls[call_id] = _PendingCall(call_id, event.tool_name or "")

            case StreamEvent(kind=StreamEventKind.TOOL_CALL_DELTA, tool_call_id=str() as call_id):
                pending = self._calls.get(call_id)
                if pending is not None and event.arguments_delta:
                    pending.fragments.append(event.arguments_delta)

            case StreamEvent(kind=StreamEventKind.USAGE | StreamEventKind.FINISH):
                if event.usage is not None:
                    self._usage = self._usage + event.usage
                if event.finish_reason is not None:
                    self._finish = event.finish_reason

            case StreamEvent(kind=StreamEventKind.ERROR):
                self._finish = FinishReason.ERROR
                self._error = event.error

    @property
    def text(self) -> str:
        return "".join(self._text)

    @property
    def thinking(self) -> str:
        return "".join(self._thinking)

    @property
    def error(self) -> str | None:
        return self._error

    def _finish_reason(self) -> FinishReason:
        # Some servers report "stop" even when the turn ended in tool calls.
        if self._calls and self._finish in (None, FinishReason.STOP):
            return FinishReason.TOOL_CALLS
        return self._finish or FinishReason.STOP

    def response(self) -> Response:
        """Build the final Response from accumulated events."""
        content: list[ContentPart] = []
        if self._thinking:
            content.append(ContentPart.thinking_part(self.thinking))
        if self._text:
            content.append(ContentPart.text_part(self.text))
        content.extend(call.to_part() for call in self._calls.values())

        return Response(
            id=self._meta.get("response_id", "stream"),
            model=self._meta.get("model", "unknown"),
            provider=self._meta.get("provider", "unknown"),
            message=Message(role=Role.ASSISTANT, content=content),
            finish_reason=self._finish_reason(),
            usage=self._usage,
            warnings=[f"Stream error: {self._error}"] if self._error else [],
        )
