"""Core data model for the relay LLM client layer.

Provider-neutral messages, content parts, tools, usage records, requests,
responses and streaming events. All types use Pydantic v2 for validation
and serialization.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Self

from pydantic import BaseModel, Field, model_validator

from relay_llm.abort import AbortSignal


class Role(StrEnum):
    """Message roles."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ContentPartKind(StrEnum):
    """Content part types."""

    TEXT = "text"
    THINKING = "thinking"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"


class ContentPart(BaseModel):
    """Tagged union for message content parts.

    Each part has a `kind` discriminator and kind-specific fields.
    A model validator enforces required fields per kind at construction time.
    """

    kind: ContentPartKind

    # TEXT / THINKING
    text: str | None = None

    # TOOL_CALL / TOOL_RESULT
    tool_call_id: str | None = None
    name: str | None = None
    arguments: str | dict[str, Any] | None = None  # TOOL_CALL only

    # TOOL_RESULT only
    output: str | None = None
    is_error: bool = False

    @model_validator(mode="after")
    def _validate_kind_fields(self) -> Self:
        match self.kind:
            case ContentPartKind.TEXT | ContentPartKind.THINKING:
                if self.text is None:
                    raise ValueError(f"{self.kind.upper()} content part requires 'text'")
            case ContentPartKind.TOOL_CALL | ContentPartKind.TOOL_RESULT:
                if self.tool_call_id is None or self.name is None:
                    raise ValueError(
                        f"{self.kind.upper()} content part requires 'tool_call_id' and 'name'"
                    )
        return self

    @classmethod
    def text_part(cls, text: str) -> ContentPart:
        return cls(kind=ContentPartKind.TEXT, text=text)

    @classmethod
    def thinking_part(cls, text: str) -> ContentPart:
        return cls(kind=ContentPartKind.THINKING, text=text)

    @classmethod
    def tool_call_part(
        cls, tool_call_id: str, name: str, arguments: str | dict[str, Any]
    ) -> ContentPart:
        return cls(
            kind=ContentPartKind.TOOL_CALL,
            tool_call_id=tool_call_id,
            name=name,
            arguments=arguments,
        )

    @classmethod
    def tool_result_part(
        cls, tool_call_id: str, name: str, output: str, is_error: bool = False
    ) -> ContentPart:
        return cls(
            kind=ContentPartKind.TOOL_RESULT,
            tool_call_id=tool_call_id,
            name=name,
            output=output,
            is_error=is_error,
        )


class Message(BaseModel):
    """A conversation message with role and content parts."""

    model_config = {"frozen": True}

    role: Role
    content: list[ContentPart]

    @classmethod
    def user(cls, text: str) -> Message:
        return cls(role=Role.USER, content=[ContentPart.text_part(text)])

    @classmethod
    def assistant(cls, text: str) -> Message:
        return cls(role=Role.ASSISTANT, content=[ContentPart.text_part(text)])

    @classmethod
    def system(cls, text: str) -> Message:
        return cls(role=Role.SYSTEM, content=[ContentPart.text_part(text)])

    @classmethod
    def tool_results(cls, parts: list[ContentPart]) -> Message:
        """A single TOOL message carrying one result part per tool call."""
        return cls(role=Role.TOOL, content=list(parts))

    @property
    def text(self) -> str | None:
        """Convenience: all TEXT parts joined, or None when there are none."""
        texts = [p.text for p in self.content if p.kind == ContentPartKind.TEXT and p.text]
        return "".join(texts) if texts else None

    @property
    def tool_calls(self) -> list[ContentPart]:
        return [p for p in self.content if p.kind == ContentPartKind.TOOL_CALL]

    @property
    def tool_results_parts(self) -> list[ContentPart]:
        return [p for p in self.content if p.kind == ContentPartKind.TOOL_RESULT]


@dataclass(frozen=True)
class ToolContext:
    """Per-invocation context handed to a tool's execute function."""

    tool_call_id: str
    tool_name: str
    abort_signal: AbortSignal | None = None


# Tool execute function type: (validated arguments, context) -> output
ToolExecuteFunc = Callable[[dict[str, Any], ToolContext], Awaitable[Any]]


class Tool(BaseModel):
    """A named operation the model can call.

    ``parameters`` is a JSON-Schema object describing the input.
    ``execute`` receives the validated arguments and a ToolContext.
    """

    model_config = {"arbitrary_types_allowed": True}

    name: str
    description: str
    parameters: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    execute: ToolExecuteFunc | None = Field(default=None, exclude=True)
    requires_approval: bool = True


class FinishReason(StrEnum):
    """Why the model stopped generating."""

    STOP = "stop"
    TOOL_CALLS = "tool_calls"
    MAX_TOKENS = "max_tokens"
    CONTENT_FILTER = "content_filter"
    ERROR = "error"
    OTHER = "other"


def _add_optional(a: int | None, b: int | None) -> int | None:
    if a is None and b is None:
        return None
    return (a or 0) + (b or 0)


class Usage(BaseModel):
    """Token usage for one step, one run or one session.

    Fields stay ``None`` when a provider omits them. Adding two records is
    field-wise; a field is only ``None`` in the sum when it is ``None`` in
    both operands.
    """

    model_config = {"frozen": True}

    input_tokens: int | None = None
    output_tokens: int | None = None
    total_tokens: int | None = None

    @model_validator(mode="before")
    @classmethod
    def _fill_total(cls, data: Any) -> Any:
        if not isinstance(data, dict) or data.get("total_tokens") is not None:
            return data
        inp, out = data.get("input_tokens"), data.get("output_tokens")
        if inp is None and out is None:
            return data
        return {**data, "total_tokens": (inp or 0) + (out or 0)}

    def __add__(self, other: Usage) -> Usage:
        return Usage(
            input_tokens=_add_optional(self.input_tokens, other.input_tokens),
            output_tokens=_add_optional(self.output_tokens, other.output_tokens),
            total_tokens=_add_optional(self.total_tokens, other.total_tokens),
        )

    @classmethod
    def zero(cls) -> Usage:
        return cls(input_tokens=0, output_tokens=0, total_tokens=0)


class Request(BaseModel):
    """Unified LLM request."""

    model: str
    messages: list[Message] = Field(default_factory=list)
    system: str | None = None
    tools: list[Tool] | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    provider: str | None = None
    provider_options: dict[str, Any] | None = None


class Response(BaseModel):
    """Unified LLM response."""

    id: str = ""
    model: str = ""
    provider: str = ""
    message: Message = Field(default_factory=lambda: Message(role=Role.ASSISTANT, content=[]))
    finish_reason: FinishReason = FinishReason.STOP
    usage: Usage = Field(default_factory=Usage)
    warnings: list[str] = Field(default_factory=list)

    @property
    def text(self) -> str | None:
        return self.message.text

    @property
    def tool_calls(self) -> list[ContentPart]:
        return self.message.tool_calls


class StreamEventKind(StrEnum):
    """Stream event types."""

    START = "start"
    TEXT_DELTA = "text_delta"
    THINKING_DELTA = "thinking_delta"
    TOOL_CALL_START = "tool_call_start"
    TOOL_CALL_DELTA = "tool_call_delta"
    TOOL_CALL_END = "tool_call_end"
    USAGE = "usage"
    FINISH = "finish"
    ERROR = "error"


class StreamEvent(BaseModel):
    """A single event from a streaming response."""

    kind: StreamEventKind

    # START metadata
    response_id: str | None = None
    model: str | None = None
    provider: str | None = None

    # TEXT_DELTA / THINKING_DELTA
    text: str | None = None

    # TOOL_CALL_START / TOOL_CALL_DELTA / TOOL_CALL_END
    tool_call_id: str | None = None
    tool_name: str | None = None
    arguments_delta: str | None = None

    # USAGE
    usage: Usage | None = None

    # FINISH
    finish_reason: FinishReason | None = None

    # ERROR
    error: str | None = None
