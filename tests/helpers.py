"""Shared test helpers and stub classes.

This module contains reusable test stubs that are used across multiple test files.
Import from here instead of duplicating these classes in individual test files.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import json
from collections import deque
from typing import Any, Callable, Iterable, Mapping, Sequence

from partner.ai.orchestration.tools.registry import ToolRegistry
from partner.ai.orchestration.tools.types import ToolCategory, ToolDescriptor
from partner.ai.orchestration.types import ModelReply, ToolCall

_CALL_IDS = itertools.count(1)


def make_call(name: str, arguments: Mapping[str, Any] | None = None, call_id: str | None = None) -> ToolCall:
    """Build a tool call with a unique id unless one is given."""
    return ToolCall(
        id=call_id or f"call_{next(_CALL_IDS)}",
        name=name,
        arguments=json.dumps(dict(arguments or {})),
    )


def text_reply(text: str) -> ModelReply:
    return ModelReply(text=text, finish_reason="stop")


def tool_reply(*calls: ToolCall, text: str = "") -> ModelReply:
    return ModelReply(text=text, tool_calls=calls, finish_reason="tool_calls")


class ScriptedModelClient:
    """Model client stub that replays a script of replies.

    Each script entry is a :class:`ModelReply`, an exception to raise, or a
    callable receiving the messages and returning either of those (sync or
    async). When the script runs dry ``default`` is returned.

    Example:
        client = ScriptedModelClient([tool_reply(make_call("echo")), text_reply("done")])
    """

    def __init__(self, script: Iterable[Any] = (), *, default: ModelReply | None = None) -> None:
        self.script: deque[Any] = deque(script)
        self.default = default or text_reply("done")
        self.calls: list[dict[str, Any]] = []

    async def complete(
        self,
        messages: Sequence[Mapping[str, Any]],
        *,
        tools: Sequence[Mapping[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> ModelReply:
        self.calls.append(
            {
                "messages": [dict(message) for message in messages],
                "tools": [dict(tool) for tool in tools] if tools else None,
                "temperature": temperature,
                "max_tokens": max_tokens,
            }
        )
        item = self.script.popleft() if self.script else self.default
        if callable(item) and not isinstance(item, ModelReply):
            item = item(messages)
            if inspect.isawaitable(item):
                item = await item
        if isinstance(item, BaseException):
            raise item
        return item

    def tool_names(self, call_index: int) -> list[str]:
        tools = self.calls[call_index]["tools"] or []
        return [tool["function"]["name"] for tool in tools]


class RecordingTool:
    """Registers a handler and records every argument mapping it receives."""

    def __init__(
        self,
        name: str = "echo",
        *,
        result: Any = None,
        handler: Callable[[Mapping[str, Any]], Any] | None = None,
        sensitive: bool = False,
        category: str = ToolCategory.SYSTEM,
        description: str = "Echo the given text back.",
    ) -> None:
        self.descriptor = ToolDescriptor(
            name=name,
            description=description,
            category=category,
            sensitive=sensitive,
        )
        self.calls: list[dict[str, Any]] = []
        self._result = result if result is not None else {"ok": True, "echo": name}
        self._handler = handler

    @property
    def name(self) -> str:
        return self.descriptor.name

    async def execute(self, arguments: Mapping[str, Any]) -> Any:
        self.calls.append(dict(arguments))
        if self._handler is not None:
            value = self._handler(arguments)
            if inspect.isawaitable(value):
                value = await value
            return value
        return self._result


class GatedTool(RecordingTool):
    """Tool whose execution blocks until ``release`` is set."""

    def __init__(self, name: str = "slow", **kwargs: Any) -> None:
        super().__init__(name, **kwargs)
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def execute(self, arguments: Mapping[str, Any]) -> Any:
        self.calls.append(dict(arguments))
        self.started.set()
        await self.release.wait()
        return {"ok": True, "slow": True}


def registry_with(*tools: Any) -> ToolRegistry:
    registry = ToolRegistry()
    for tool in tools:
        registry.register(tool)
    return registry


def make_descriptors(count: int, *, category: str = ToolCategory.SYSTEM, prefix: str = "tool") -> list[ToolDescriptor]:
    return [
        ToolDescriptor(name=f"{prefix}_{index}", description=f"Generic helper number {index}.", category=category)
        for index in range(count)
    ]
