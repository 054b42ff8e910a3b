"""Tool system types for the orchestration engine.

A :class:`ToolDescriptor` is the static, model-facing description of a tool.
Implementations conform to the :class:`Tool` protocol; :class:`SimpleTool`
wraps a plain sync or async function.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine, Mapping, Protocol, runtime_checkable

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

__all__ = [
    "ToolDescriptor",
    "ToolHandler",
    "AsyncToolHandler",
    "Tool",
    "SimpleTool",
    "ToolCategory",
    "InvalidToolSchemaError",
]


# -----------------------------------------------------------------------------
# Tool Categories
# -----------------------------------------------------------------------------


class ToolCategory:
    """Standard tool categories used for selection scoring."""

    FILE = "file"
    NETWORK = "network"
    CALCULATION = "calculation"
    TERMINAL = "terminal"
    CODE = "code"
    DOCUMENT = "document"
    SPREADSHEET = "spreadsheet"
    GAME = "game"
    MCP = "mcp"
    AGENT = "agent"
    SYSTEM = "system"
    KNOWLEDGE = "knowledge"
    MEMORY = "memory"
    SKILL = "skill"
    GRAPHING = "graphing"
    CANVAS = "canvas"
    SERIAL = "serial"
    INTERACTION = "interaction"
    CREATIVE = "creative"
    ENTERTAINMENT = "entertainment"


class InvalidToolSchemaError(ValueError):
    """Raised when a descriptor's input schema is not a valid JSON Schema."""

    def __init__(self, name: str, detail: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' has an invalid input schema: {detail}")


# -----------------------------------------------------------------------------
# Tool Descriptor
# -----------------------------------------------------------------------------


_EMPTY_SCHEMA: Mapping[str, Any] = {"type": "object", "properties": {}}


@dataclass(slots=True, frozen=True)
class ToolDescriptor:
    """Immutable description of a tool exposed to the model.

    Attributes:
        name: Unique identifier for the tool.
        description: Human-readable description of what the tool does.
        category: Tool category used by the selector.
        sensitive: Whether execution needs an approval decision.
        input_schema: JSON Schema for the tool's arguments.
    """

    name: str
    description: str
    category: str = ToolCategory.SYSTEM
    sensitive: bool = False
    input_schema: Mapping[str, Any] = field(default_factory=lambda: dict(_EMPTY_SCHEMA))

    def validate_schema(self) -> None:
        """Check the input schema against the JSON Schema metaschema."""
        try:
            Draft202012Validator.check_schema(dict(self.input_schema))
        except SchemaError as exc:
            raise InvalidToolSchemaError(self.name, exc.message) from exc

    def to_openai_tool(self) -> dict[str, Any]:
        """Convert to OpenAI tool definition format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": dict(self.input_schema) if self.input_schema else dict(_EMPTY_SCHEMA),
            },
        }

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "sensitive": self.sensitive,
            "input_schema": dict(self.input_schema),
        }


# -----------------------------------------------------------------------------
# Tool Handler Types
# -----------------------------------------------------------------------------

# Synchronous tool handler
ToolHandler = Callable[[Mapping[str, Any]], Any]

# Asynchronous tool handler
AsyncToolHandler = Callable[[Mapping[str, Any]], Coroutine[Any, Any, Any]]


# -----------------------------------------------------------------------------
# Tool Protocol
# -----------------------------------------------------------------------------


@runtime_checkable
class Tool(Protocol):
    """Protocol for tool implementations.

    Attributes:
        name: Unique identifier for the tool.
        descriptor: Static description exposed to the model.
    """

    @property
    def name(self) -> str:
        ...

    @property
    def descriptor(self) -> ToolDescriptor:
        ...

    async def execute(self, arguments: Mapping[str, Any]) -> Any:
        """Execute the tool with the given arguments.

        Args:
            arguments: Tool arguments as a dictionary.

        Returns:
            The tool's result (any JSON-serializable value).

        Raises:
            Exception: If tool execution fails.
        """
        ...


# -----------------------------------------------------------------------------
# Simple Tool Implementation
# -----------------------------------------------------------------------------


@dataclass
class SimpleTool:
    """Tool implementation wrapping a callable.

    Example:
        def read_clipboard(args: Mapping[str, Any]) -> dict:
            return {"ok": True, "text": clipboard.paste()}

        tool = SimpleTool(
            descriptor=ToolDescriptor(name="read_clipboard", description="Read the clipboard"),
            handler=read_clipboard,
        )
    """

    descriptor: ToolDescriptor
    handler: ToolHandler | AsyncToolHandler
    _is_async: bool = field(init=False, default=False)

    def __post_init__(self) -> None:
        self._is_async = inspect.iscoroutinefunction(self.handler)

    @property
    def name(self) -> str:
        return self.descriptor.name

    async def execute(self, arguments: Mapping[str, Any]) -> Any:
        if self._is_async:
            return await self.handler(arguments)  # type: ignore[misc]
        result = self.handler(arguments)
        if inspect.isawaitable(result):
            return await result
        return result
