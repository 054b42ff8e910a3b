"""Tool registry for the orchestration engine.

The registry maps tool names to descriptors and, where one is registered, to
an implementation. Descriptors without an implementation are still listed for
selection; dispatching them yields an "unknown tool" result from the executor.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from .types import AsyncToolHandler, SimpleTool, Tool, ToolDescriptor, ToolHandler

__all__ = [
    "ToolRegistry",
    "ToolRegistration",
    "DuplicateToolError",
    "ToolNotFoundError",
]

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Exceptions
# -----------------------------------------------------------------------------


class DuplicateToolError(Exception):
    """Raised when attempting to register a tool with a name that already exists."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' is already registered")


class ToolNotFoundError(Exception):
    """Raised when a requested tool is not found in the registry."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' not found")


# -----------------------------------------------------------------------------
# Tool Registration
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class ToolRegistration:
    """Record of a registered tool.

    Attributes:
        name: Tool name.
        descriptor: Static description exposed to the model.
        tool: The implementation, or ``None`` for descriptor-only entries.
        metadata: Additional registration metadata.
    """

    name: str
    descriptor: ToolDescriptor
    tool: Tool | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


# -----------------------------------------------------------------------------
# Tool Registry
# -----------------------------------------------------------------------------


class ToolRegistry:
    """Name-keyed catalog of tool descriptors and their implementations.

    Registration happens once at startup (plus dynamic MCP refreshes); during
    a run the registry is only read, so one instance can be shared between the
    main conversation and any sub-agents.

    Example:
        registry = ToolRegistry()
        registry.register_many(default_catalog())
        registry.register_function(
            ToolDescriptor(name="read_clipboard", description="Read the clipboard"),
            handler=lambda args: {"ok": True, "text": ""},
            allow_override=True,
        )
    """

    def __init__(self) -> None:
        self._tools: dict[str, ToolRegistration] = {}

    def register_descriptor(
        self,
        descriptor: ToolDescriptor,
        *,
        allow_override: bool = False,
        metadata: Mapping[str, Any] | None = None,
    ) -> ToolRegistration:
        """Register a descriptor, optionally without an implementation.

        Raises:
            DuplicateToolError: If the name is taken and ``allow_override`` is False.
            InvalidToolSchemaError: If the input schema is not valid JSON Schema.
        """
        return self._store(descriptor, None, allow_override=allow_override, metadata=metadata)

    def register(
        self,
        tool: Tool,
        *,
        allow_override: bool = False,
        metadata: Mapping[str, Any] | None = None,
    ) -> ToolRegistration:
        """Register a tool implementation.

        Args:
            tool: The tool to register.
            allow_override: If True, replaces an existing registration.
            metadata: Additional metadata to store with registration.

        Returns:
            The tool registration record.

        Raises:
            DuplicateToolError: If tool name already registered and allow_override is False.
        """
        return self._store(tool.descriptor, tool, allow_override=allow_override, metadata=metadata)

    def register_function(
        self,
        descriptor: ToolDescriptor,
        handler: ToolHandler | AsyncToolHandler,
        *,
        allow_override: bool = False,
        metadata: Mapping[str, Any] | None = None,
    ) -> ToolRegistration:
        """Register a plain function (sync or async) as a tool."""
        tool = SimpleTool(descriptor=descriptor, handler=handler)
        return self.register(tool, allow_override=allow_override, metadata=metadata)

    def register_many(self, descriptors: Iterable[ToolDescriptor], *, allow_override: bool = False) -> int:
        count = 0
        for descriptor in descriptors:
            self.register_descriptor(descriptor, allow_override=allow_override)
            count += 1
        return count

    def unregister(self, name: str) -> bool:
        if name in self._tools:
            del self._tools[name]
            LOGGER.debug("Unregistered tool: %s", name)
            return True
        return False

    def unregister_prefix(self, prefix: str) -> int:
        """Remove every tool whose name starts with ``prefix``."""
        names = [name for name in self._tools if name.startswith(prefix)]
        for name in names:
            del self._tools[name]
        if names:
            LOGGER.debug("Unregistered %d tool(s) with prefix %s", len(names), prefix)
        return len(names)

    def get(self, name: str) -> Tool | None:
        """Return the implementation for ``name`` if one is registered."""
        registration = self._tools.get(name)
        return registration.tool if registration is not None else None

    def get_required(self, name: str) -> Tool:
        """Return the implementation for ``name``.

        Raises:
            ToolNotFoundError: If the tool is unknown or has no implementation.
        """
        tool = self.get(name)
        if tool is None:
            raise ToolNotFoundError(name)
        return tool

    def get_descriptor(self, name: str) -> ToolDescriptor | None:
        registration = self._tools.get(name)
        return registration.descriptor if registration is not None else None

    def get_registration(self, name: str) -> ToolRegistration | None:
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        return name in self._tools

    def list_descriptors(self, *, enabled: Mapping[str, bool] | None = None) -> list[ToolDescriptor]:
        """List descriptors in registration order.

        Args:
            enabled: Optional name -> flag map; tools mapped to ``False`` are
                left out, unlisted tools count as enabled.
        """
        flags = enabled or {}
        return [
            registration.descriptor
            for registration in self._tools.values()
            if flags.get(registration.name, True)
        ]

    def list_names(self, *, enabled: Mapping[str, bool] | None = None) -> list[str]:
        return [descriptor.name for descriptor in self.list_descriptors(enabled=enabled)]

    def get_openai_tools(self, *, filter_names: Sequence[str] | None = None) -> list[dict[str, Any]]:
        """Get tool definitions in OpenAI format.

        Args:
            filter_names: If provided, only include these tools.
        """
        wanted = set(filter_names) if filter_names is not None else None
        return [
            registration.descriptor.to_openai_tool()
            for registration in self._tools.values()
            if wanted is None or registration.name in wanted
        ]

    def clear(self) -> None:
        self._tools.clear()

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def _store(
        self,
        descriptor: ToolDescriptor,
        tool: Tool | None,
        *,
        allow_override: bool,
        metadata: Mapping[str, Any] | None,
    ) -> ToolRegistration:
        name = descriptor.name
        if not name:
            raise ValueError("Tool descriptors require a name")
        if name in self._tools and not allow_override:
            raise DuplicateToolError(name)
        descriptor.validate_schema()
        registration = ToolRegistration(
            name=name,
            descriptor=descriptor,
            tool=tool,
            metadata=dict(metadata) if metadata else {},
        )
        self._tools[name] = registration
        LOGGER.debug("Registered tool: %s", name)
        return registration
