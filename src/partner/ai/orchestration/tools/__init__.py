"""Tool system for the orchestration engine.

This package provides the tool registry, executor, the stock tool catalog and
the built-in tools that operate on the conversation itself.

Example:
    from partner.ai.orchestration.tools import (
        ToolRegistry,
        ToolExecutor,
        ToolDescriptor,
    )

    registry = ToolRegistry()
    registry.register_function(
        ToolDescriptor(name="greet", description="Greet someone"),
        lambda args: f"Hello, {args.get('name', 'World')}!",
    )

    executor = ToolExecutor(registry)
    result = await executor.execute("greet", {"name": "Alice"})
"""

from .types import (
    Tool,
    ToolDescriptor,
    ToolHandler,
    AsyncToolHandler,
    SimpleTool,
    ToolCategory,
    InvalidToolSchemaError,
)

from .registry import (
    ToolRegistry,
    ToolRegistration,
    DuplicateToolError,
    ToolNotFoundError,
)

from .executor import (
    ToolExecutor,
    ExecutorConfig,
    normalize_result,
)

from .catalog import (
    CORE_TOOL_NAMES,
    MCP_PREFIX,
    REOPTIMIZE_TOOL_NAME,
    default_catalog,
    mcp_descriptors,
    reoptimize_descriptor,
)

__all__ = [
    # types.py
    "Tool",
    "ToolDescriptor",
    "ToolHandler",
    "AsyncToolHandler",
    "SimpleTool",
    "ToolCategory",
    "InvalidToolSchemaError",
    # registry.py
    "ToolRegistry",
    "ToolRegistration",
    "DuplicateToolError",
    "ToolNotFoundError",
    # executor.py
    "ToolExecutor",
    "ExecutorConfig",
    "normalize_result",
    # catalog.py
    "CORE_TOOL_NAMES",
    "MCP_PREFIX",
    "REOPTIMIZE_TOOL_NAME",
    "default_catalog",
    "mcp_descriptors",
    "reoptimize_descriptor",
]
