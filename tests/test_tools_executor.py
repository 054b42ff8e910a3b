"""Tests for orchestration/tools/executor.py."""

from __future__ import annotations

import asyncio

import pytest

from partner.ai.orchestration.tools import (
    ExecutorConfig,
    SimpleTool,
    ToolDescriptor,
    ToolExecutor,
    ToolRegistry,
    normalize_result,
)


# -----------------------------------------------------------------------------
# Test Fixtures and Helpers
# -----------------------------------------------------------------------------


def make_descriptor(name: str = "test_tool", description: str = "A test tool") -> ToolDescriptor:
    """Helper to create a ToolDescriptor."""
    return ToolDescriptor(name=name, description=description)


def make_registry_with_tools() -> ToolRegistry:
    """Create a registry with some test tools."""
    registry = ToolRegistry()

    # Simple sync tool
    registry.register_function(
        make_descriptor("echo", "Echo the input"),
        lambda args: {"echo": args.get("message", "")},
    )

    async def async_greet(args: dict) -> str:
        return f"Hello, {args.get('name', 'World')}!"

    registry.register_function(make_descriptor("greet", "Greet someone"), async_greet)

    def failing_tool(args: dict) -> None:
        raise ValueError("Intentional failure")

    registry.register_function(make_descriptor("fail", "Always fails"), failing_tool)

    async def slow_tool(args: dict) -> dict:
        await asyncio.sleep(args.get("delay", 1.0))
        return {"done": True}

    registry.register_function(make_descriptor("slow", "Slow tool"), slow_tool)

    registry.register_descriptor(make_descriptor("listed_only", "No implementation"))
    return registry


# -----------------------------------------------------------------------------
# Tests: normalize_result
# -----------------------------------------------------------------------------


class TestNormalizeResult:
    """Tests for result normalization."""

    def test_mapping_gets_ok_flag(self) -> None:
        assert normalize_result({"value": 1}) == {"value": 1, "ok": True}

    def test_explicit_failure_is_kept(self) -> None:
        assert normalize_result({"ok": False, "error": "nope"}) == {"ok": False, "error": "nope"}

    def test_plain_values_are_wrapped(self) -> None:
        assert normalize_result("text") == {"ok": True, "result": "text"}
        assert normalize_result(None) == {"ok": True, "result": None}


# -----------------------------------------------------------------------------
# Tests: ToolExecutor
# -----------------------------------------------------------------------------


class TestToolExecutor:
    """Tests for ToolExecutor."""

    @pytest.mark.asyncio
    async def test_sync_and_async_handlers(self) -> None:
        executor = ToolExecutor(make_registry_with_tools())

        assert await executor.execute("echo", {"message": "hi"}) == {"echo": "hi", "ok": True}
        assert await executor.execute("greet", {"name": "Alice"}) == {"ok": True, "result": "Hello, Alice!"}

    @pytest.mark.asyncio
    async def test_unknown_tool_is_an_error_result(self) -> None:
        executor = ToolExecutor(make_registry_with_tools())

        assert await executor.execute("missing", {}) == {"ok": False, "error": "Unknown tool: missing"}
        assert (await executor.execute("listed_only", {}))["ok"] is False
        assert not executor.has_tool("listed_only")

    @pytest.mark.asyncio
    async def test_exception_becomes_error_result(self) -> None:
        executor = ToolExecutor(make_registry_with_tools())

        result = await executor.execute("fail", {})

        assert result == {"ok": False, "error": "Intentional failure"}

    @pytest.mark.asyncio
    async def test_timeout_override(self) -> None:
        executor = ToolExecutor(make_registry_with_tools())

        result = await executor.execute("slow", {"delay": 1.0}, timeout=0.01)

        assert result["ok"] is False
        assert "timed out" in result["error"]

    @pytest.mark.asyncio
    async def test_default_timeout_from_config(self) -> None:
        executor = ToolExecutor(make_registry_with_tools(), ExecutorConfig(default_timeout=0.01))

        result = await executor.execute("slow", {"delay": 1.0})

        assert result["ok"] is False

    @pytest.mark.asyncio
    async def test_non_positive_timeout_disables_limit(self) -> None:
        executor = ToolExecutor(make_registry_with_tools(), ExecutorConfig(default_timeout=0.001))

        result = await executor.execute("slow", {"delay": 0.02}, timeout=0)

        assert result == {"done": True, "ok": True}

    @pytest.mark.asyncio
    async def test_run_executes_unregistered_tool(self) -> None:
        executor = ToolExecutor(ToolRegistry())
        tool = SimpleTool(descriptor=make_descriptor("local"), handler=lambda args: {"local": True})

        assert await executor.run(tool, {}, call_id="c1") == {"local": True, "ok": True}
