"""Tool registry for the step-loop executor.

Manages registration, lookup, argument validation, approval gating and
execution of tools. The registry is the central dispatch point for all tool
calls requested by the model.

Execution pipeline for one call:

1. Lookup: find the tool by name
2. Validate: check the input against the tool's JSON Schema (top level)
3. Approve: ask the approval callback, if one is configured and the tool
   requires approval
4. Execute: run the tool's execute function with a ToolContext
5. Return: a ToolOutcome holding the result part fed back to the model
"""

from __future__ import annotations

import inspect
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from relay_llm.abort import AbortSignal
from relay_llm.errors import AbortError, ToolError
from relay_llm.types import ContentPart, ContentPartKind, Tool, ToolContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolCallInfo:
    """What the approval callback gets to see about a pending tool call."""

    tool_name: str
    tool_call_id: str
    input: Any


# Return True to allow, False to deny. May be async (e.g. to prompt a user).
ApproveFn = Callable[[ToolCallInfo], bool | Awaitable[bool]]


class ToolDeniedError(ToolError):
    """The approval callback refused a tool call."""

    def __init__(self, tool_name: str) -> None:
        super().__init__(f'Tool call to "{tool_name}" was denied.', tool_name=tool_name)


@dataclass(frozen=True)
class ToolOutcome:
    """Result of executing one tool call."""

    result: ContentPart
    output: Any = None
    error: str | None = None
    denied: bool = False

    @property
    def is_error(self) -> bool:
        return self.error is not None


# ------------------------------------------------------------------ #
# Lightweight argument schema validation
# ------------------------------------------------------------------ #

_JSON_TYPE_MAP: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "array": (list,),
    "object": (dict,),
}


def validate_tool_arguments(arguments: dict[str, Any], schema: dict[str, Any]) -> str | None:
    """Validate *arguments* against a JSON-Schema-style *schema*.

    Checks that ``required`` fields are present, that provided values match
    the declared top-level ``type``, and that ``enum`` constraints hold.
    Returns ``None`` when valid, or an error message.
    """
    properties: dict[str, Any] = schema.get("properties", {})
    required: list[str] = schema.get("required", [])

    missing = [f for f in required if f not in arguments]
    if missing:
        return f"Missing required argument(s): {', '.join(missing)}"

    for key, value in arguments.items():
        prop_schema = properties.get(key)
        if prop_schema is None:
            continue
        expected_type_name = prop_schema.get("type")
        expected_types = _JSON_TYPE_MAP.get(expected_type_name or "")
        if expected_types is not None:
            # isinstance(True, int) is True; JSON keeps them distinct.
            if expected_type_name in ("integer", "number") and isinstance(value, bool):
                return f"Argument '{key}' has type bool, expected {expected_type_name}"
            if not isinstance(value, expected_types):
                actual = type(value).__name__
                return f"Argument '{key}' has type {actual}, expected {expected_type_name}"
        allowed = prop_schema.get("enum")
        if allowed is not None and value not in allowed:
            return f"Argument '{key}' must be one of {allowed}, got {value!r}"

    return None


def _parse_arguments(arguments: str | dict[str, Any] | None) -> dict[str, Any] | str:
    """Parsed argument dict, or an error message."""
    if arguments is None:
        return {}
    if isinstance(arguments, dict):
        return arguments
    if not arguments.strip():
        return {}
    try:
        parsed = json.loads(arguments)
    except json.JSONDecodeError as exc:
        return f"Failed to parse JSON arguments: {exc}"
    if not isinstance(parsed, dict):
        return f"Arguments must be a JSON object, got {type(parsed).__name__}"
    return parsed


def _stringify(output: Any) -> str:
    if isinstance(output, str):
        return output
    try:
        return json.dumps(output)
    except (TypeError, ValueError):
        return str(output)


class ToolRegistry:
    """Registry for managing and executing tools."""

    def __init__(self, tools: list[Tool] | None = None, *, approve: ApproveFn | None = None):
        self._tools: dict[str, Tool] = {}
        self._approve = approve
        if tools:
            self.register_many(tools)

    def register(self, tool: Tool) -> None:
        """Register a tool. Overwrites if the name already exists."""
        self._tools[tool.name] = tool

    def register_many(self, tools: list[Tool]) -> None:
        for tool in tools:
            self.register(tool)

    def unregister(self, name: str) -> None:
        """Remove a tool by name. No-op if not found."""
        self._tools.pop(name, None)

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        return name in self._tools

    def definitions(self) -> list[Tool]:
        """All registered tools, in registration order (sent to the model)."""
        return list(self._tools.values())

    async def _is_approved(self, info: ToolCallInfo) -> bool:
        if self._approve is None:
            return True
        decision = self._approve(info)
        if inspect.isawaitable(decision):
            decision = await decision
        return bool(decision)

    async def execute_tool_call(
        self, tool_call: ContentPart, abort_signal: AbortSignal | None = None
    ) -> ToolOutcome:
        """Execute a single TOOL_CALL part and return its outcome.

        Failures (unknown tool, invalid input, denial, exceptions raised by
        the tool) become error outcomes; only cancellation propagates.
        """
        assert tool_call.kind == ContentPartKind.TOOL_CALL  # noqa: S101

        tool_name = tool_call.name or ""
        tool_call_id = tool_call.tool_call_id or ""

        def _failed(message: str, *, denied: bool = False) -> ToolOutcome:
            return ToolOutcome(
                result=ContentPart.tool_result_part(
                    tool_call_id, tool_name, f"Error: {message}", is_error=True
                ),
                error=message,
                denied=denied,
            )

        tool = self.get(tool_name)
        if tool is None:
            return _failed(f"Unknown tool '{tool_name}'")
        if tool.execute is None:
            return _failed(f"Tool '{tool_name}' has no execute handler")

        arguments = _parse_arguments(tool_call.arguments)
        if isinstance(arguments, str):
            return _failed(f"Invalid arguments for '{tool_name}': {arguments}")
        validation_error = validate_tool_arguments(arguments, tool.parameters)
        if validation_error:
            return _failed(f"Invalid arguments for '{tool_name}': {validation_error}")

        if tool.requires_approval:
            info = ToolCallInfo(tool_name=tool_name, tool_call_id=tool_call_id, input=arguments)
            try:
                approved = await self._is_approved(info)
            except AbortError:
                raise
            except Exception as exc:  # noqa: BLE001
                logger.warning("Approval check for %s (%s) failed", tool_call_id, tool_name)
                return _failed(f"{type(exc).__name__}: {exc}")
            if not approved:
                denial = ToolDeniedError(tool_name)
                logger.warning("Tool call %s (%s) denied", tool_call_id, tool_name)
                return _failed(str(denial), denied=True)

        context = ToolContext(
            tool_call_id=tool_call_id, tool_name=tool_name, abort_signal=abort_signal
        )
        logger.debug("Executing tool %s (%s)", tool_name, tool_call_id)
        try:
            output = await tool.execute(arguments, context)
        except AbortError:
            raise
        except Exception as exc:  # noqa: BLE001
            # Only the exception message goes back to the model, not the traceback.
            return _failed(f"{type(exc).__name__}: {exc}")

        return ToolOutcome(
            result=ContentPart.tool_result_part(tool_call_id, tool_name, _stringify(output)),
            output=output,
        )
