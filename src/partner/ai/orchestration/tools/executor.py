"""Tool executor for the orchestration engine.

The executor is the dispatch table behind the run loop: it resolves a tool by
name, enforces a per-call timeout and normalizes every outcome into a mapping
with an ``ok`` flag. It never raises for unknown tools or tool failures, so the
model always receives a result it can react to.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Mapping

from .registry import ToolRegistry
from .types import Tool

__all__ = [
    "ToolExecutor",
    "ExecutorConfig",
    "normalize_result",
]

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Executor Configuration
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ExecutorConfig:
    """Configuration for the tool executor.

    Attributes:
        default_timeout: Default timeout for tool execution in seconds.
        log_arguments: Whether to log tool arguments (may contain sensitive data).
        log_results: Whether to log tool results.
    """

    default_timeout: float | None = 60.0
    log_arguments: bool = False
    log_results: bool = False


def normalize_result(value: Any) -> dict[str, Any]:
    """Coerce a handler's return value into an ``{"ok": ...}`` mapping."""

    if isinstance(value, Mapping):
        payload = dict(value)
        payload.setdefault("ok", True)
        return payload
    return {"ok": True, "result": value}


# -----------------------------------------------------------------------------
# Tool Executor
# -----------------------------------------------------------------------------


class ToolExecutor:
    """Executor for running tools from a registry.

    Example:
        executor = ToolExecutor(registry)
        result = await executor.execute("read_file", {"path": "notes.md"})
        if not result["ok"]:
            print(result["error"])
    """

    def __init__(
        self,
        registry: ToolRegistry,
        config: ExecutorConfig | None = None,
    ) -> None:
        self._registry = registry
        self._config = config or ExecutorConfig()

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def config(self) -> ExecutorConfig:
        return self._config

    async def execute(
        self,
        name: str,
        arguments: Mapping[str, Any],
        *,
        call_id: str = "",
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Execute a registered tool by name.

        Args:
            name: Name of the tool to execute.
            arguments: Arguments to pass to the tool.
            call_id: Optional call ID for tracing.
            timeout: Optional timeout override.

        Returns:
            The normalized result; ``{"ok": False, "error": ...}`` for unknown
            tools, failures and timeouts.
        """
        tool = self._registry.get(name)
        if tool is None:
            LOGGER.warning("Tool '%s' not found or has no implementation", name)
            return {"ok": False, "error": f"Unknown tool: {name}"}
        return await self.run(tool, arguments, call_id=call_id, timeout=timeout)

    async def run(
        self,
        tool: Tool,
        arguments: Mapping[str, Any],
        *,
        call_id: str = "",
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Execute ``tool`` directly, with the same timeout and normalization."""

        name = tool.name
        if self._config.log_arguments:
            LOGGER.debug("Executing tool %s (call_id=%s) with arguments: %s", name, call_id, arguments)
        else:
            LOGGER.debug("Executing tool %s (call_id=%s)", name, call_id)

        effective_timeout = timeout if timeout is not None else self._config.default_timeout
        start_time = time.perf_counter()
        try:
            if effective_timeout is not None and effective_timeout > 0:
                result = await asyncio.wait_for(tool.execute(arguments), timeout=effective_timeout)
            else:
                result = await tool.execute(arguments)
        except asyncio.TimeoutError:
            duration_ms = (time.perf_counter() - start_time) * 1000
            LOGGER.warning(
                "Tool %s timed out after %.1fms (timeout=%.1fs)",
                name,
                duration_ms,
                effective_timeout,
            )
            return {"ok": False, "error": f"Tool '{name}' timed out after {effective_timeout:g}s"}
        except Exception as exc:
            duration_ms = (time.perf_counter() - start_time) * 1000
            LOGGER.warning("Tool %s failed after %.1fms: %s", name, duration_ms, exc)
            return {"ok": False, "error": str(exc) or exc.__class__.__name__}

        duration_ms = (time.perf_counter() - start_time) * 1000
        if self._config.log_results:
            LOGGER.debug("Tool %s completed in %.1fms with result: %s", name, duration_ms, result)
        else:
            LOGGER.debug("Tool %s completed in %.1fms", name, duration_ms)
        return normalize_result(result)

    def has_tool(self, name: str) -> bool:
        return self._registry.get(name) is not None
