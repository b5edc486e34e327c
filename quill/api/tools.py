"""Tool capability interface and registry.

A tool is anything satisfying the Tool protocol: a name, a definition
(name, description, JSON input schema) and an async execute(). Tools are
added by registration; the engine never shape-matches arbitrary objects.

FunctionTool adapts a plain async handler taking **kwargs, which is how
most tools are written.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from quill.abort import AbortSignal
from quill.errors import ValidationError
from quill.permissions.schemas import ToolPermissionContext

logger = logging.getLogger(__name__)


@dataclass
class ToolDefinition:
    name: str
    description: str
    input_schema: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    def to_api(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


@dataclass
class ToolOutput:
    """What a tool returns. is_error=True is a completed call with an error result."""

    content: str | list[dict[str, Any]]
    is_error: bool = False


@dataclass
class ToolContext:
    """Per-call context handed to Tool.execute()."""

    session_id: str
    signal: AbortSignal
    permission_context: ToolPermissionContext
    working_directory: str = "."
    tool_use_id: str = ""


@runtime_checkable
class Tool(Protocol):
    """Capability every tool provides.

    Tools may additionally define `is_concurrency_safe(input) -> bool`
    (default False) and `validate_input(input) -> str | None` returning an
    error message for inputs they reject.
    """

    name: str

    def get_definition(self) -> ToolDefinition: ...

    async def execute(self, tool_input: dict[str, Any], context: ToolContext) -> ToolOutput: ...


ToolHandler = Callable[..., Awaitable[ToolOutput | str]]


class FunctionTool:
    """Tool backed by an async handler called with the input as **kwargs.

    The handler may return a ToolOutput or a plain string.
    """

    def __init__(
        self,
        name: str,
        handler: ToolHandler,
        description: str = "",
        input_schema: dict[str, Any] | None = None,
        concurrency_safe: bool = False,
        pass_context: bool = False,
    ) -> None:
        self.name = name
        self._handler = handler
        self._definition = ToolDefinition(
            name=name,
            description=description,
            input_schema=input_schema or {"type": "object", "properties": {}},
        )
        self._concurrency_safe = concurrency_safe
        self._pass_context = pass_context

    def get_definition(self) -> ToolDefinition:
        return self._definition

    def is_concurrency_safe(self, tool_input: Any) -> bool:
        return self._concurrency_safe

    async def execute(self, tool_input: dict[str, Any], context: ToolContext) -> ToolOutput:
        if self._pass_context:
            result = await self._handler(context=context, **tool_input)
        else:
            result = await self._handler(**tool_input)
        if isinstance(result, ToolOutput):
            return result
        return ToolOutput(content=str(result))


def _schema_errors(schema: dict[str, Any], tool_input: Any) -> str | None:
    """Minimal shape check: object input with every required key present."""
    if not isinstance(tool_input, dict):
        return f"Tool input must be an object, got {type(tool_input).__name__}"
    missing = [key for key in schema.get("required", []) if key not in tool_input]
    if missing:
        return f"Missing required parameter(s): {', '.join(missing)}"
    return None


class ToolRegistry:
    """Registers tools by name and answers questions about them."""

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        """Register a tool. Raises ValueError on a duplicate name."""
        if tool.name in self._tools:
            raise ValueError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool
        logger.debug("Registered tool %s", tool.name)

    def register_function(
        self,
        name: str,
        handler: ToolHandler,
        description: str = "",
        input_schema: dict[str, Any] | None = None,
        concurrency_safe: bool = False,
    ) -> FunctionTool:
        tool = FunctionTool(name, handler, description, input_schema, concurrency_safe)
        self.register(tool)
        return tool

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def definitions(self) -> list[dict[str, Any]]:
        """All tool definitions in API format, in registration order."""
        return [tool.get_definition().to_api() for tool in self._tools.values()]

    def is_concurrency_safe(self, name: str, tool_input: Any) -> bool:
        tool = self._tools.get(name)
        check = getattr(tool, "is_concurrency_safe", None)
        if check is None:
            return False
        try:
            return bool(check(tool_input))
        except Exception:
            logger.exception("is_concurrency_safe failed for %s", name)
            return False

    def validate_input(self, name: str, tool_input: Any) -> None:
        """Raise ValidationError if the call's shape is unacceptable."""
        tool = self._tools.get(name)
        if tool is None:
            raise ValidationError(f"Unknown tool: {name}")
        error = _schema_errors(tool.get_definition().input_schema, tool_input)
        if error is None:
            custom = getattr(tool, "validate_input", None)
            if custom is not None:
                error = custom(tool_input)
        if error:
            raise ValidationError(f"Invalid input for {name}: {error}")
