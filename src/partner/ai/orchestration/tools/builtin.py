"""Conversation-scoped tools implemented inside the engine.

These tools act on state owned by one conversation (its ledger, its todo
list) or on engine services (sub-agents, user questions), so each run
controller builds its own instances instead of registering shared handlers.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, Awaitable, Callable, Iterable, Mapping, Sequence

from ..ledger import CompactionStrategy, ContextLedger
from ..prompts import build_summary_messages
from ..types import ModelClient, TodoItem
from .catalog import (
    ASK_QUESTIONS_TOOL_NAME,
    AUTO_SUMMARIZE_TOOL_NAME,
    MANAGE_CONTEXT_TOOL_NAME,
    SUBAGENT_TOOL_NAME,
    TODO_LIST_TOOL_NAME,
    default_catalog,
)
from .types import ToolDescriptor

__all__ = [
    "TodoList",
    "TodoListTool",
    "ManageContextTool",
    "AutoSummarizeTool",
    "AskQuestionsTool",
    "SubAgentTool",
    "QuestionHandler",
    "SubAgentRunner",
    "NO_TIMEOUT",
    "live_turn_length",
]

LOGGER = logging.getLogger(__name__)

# Executor timeouts <= 0 disable the per-call limit.
NO_TIMEOUT = 0.0

QuestionHandler = Callable[[Sequence[Mapping[str, Any]]], Awaitable[Any]]
SubAgentRunner = Callable[[str, "str | None"], Awaitable[Mapping[str, Any]]]


@lru_cache(maxsize=1)
def _catalog_index() -> dict[str, ToolDescriptor]:
    return {descriptor.name: descriptor for descriptor in default_catalog()}


def _catalog_descriptor(name: str) -> ToolDescriptor:
    return _catalog_index()[name]


def live_turn_length(ledger: ContextLedger, tool_name: str) -> int:
    """Length of the ledger tail starting at the latest call to ``tool_name``.

    Compaction triggered from inside a tool must keep that tail so the result
    can still be paired with its call.
    """
    entries = ledger.entries
    for offset, message in enumerate(reversed(entries), start=1):
        if message.role == "assistant" and any(call.name == tool_name for call in message.tool_calls):
            return offset
    return 0


class _BuiltinTool:
    """Shared plumbing: a descriptor taken from the stock catalog."""

    tool_name: str = ""
    timeout: float | None = None

    def __init__(self) -> None:
        self._descriptor = _catalog_descriptor(self.tool_name)

    @property
    def name(self) -> str:
        return self.tool_name

    @property
    def descriptor(self) -> ToolDescriptor:
        return self._descriptor


# -----------------------------------------------------------------------------
# Todo list
# -----------------------------------------------------------------------------


class TodoList:
    """Per-conversation todo items with a change listener."""

    def __init__(self, on_update: Callable[[list[TodoItem]], None] | None = None) -> None:
        self._items: list[TodoItem] = []
        self._on_update = on_update

    @property
    def items(self) -> tuple[TodoItem, ...]:
        return tuple(self._items)

    def set_listener(self, callback: Callable[[list[TodoItem]], None] | None) -> None:
        self._on_update = callback

    def add(self, text: str) -> int:
        self._items.append(TodoItem(text=text))
        self._changed()
        return len(self._items) - 1

    def remove(self, index: int) -> TodoItem:
        item = self._items.pop(index)
        self._changed()
        return item

    def toggle(self, index: int) -> TodoItem:
        item = self._items[index]
        item.done = not item.done
        self._changed()
        return item

    def clear(self) -> None:
        self._items.clear()
        self._changed()

    def replace(self, items: Iterable[TodoItem]) -> None:
        self._items = [TodoItem(text=item.text, done=item.done) for item in items]
        self._changed()

    def to_payload(self) -> list[dict[str, Any]]:
        return [{"index": index, **item.to_dict()} for index, item in enumerate(self._items)]

    def __len__(self) -> int:
        return len(self._items)

    def _changed(self) -> None:
        if self._on_update is None:
            return
        try:
            self._on_update(list(self._items))
        except Exception:
            LOGGER.debug("Todo listener raised exception", exc_info=True)


class TodoListTool(_BuiltinTool):
    tool_name = TODO_LIST_TOOL_NAME

    def __init__(self, todos: TodoList) -> None:
        super().__init__()
        self._todos = todos

    async def execute(self, arguments: Mapping[str, Any]) -> dict[str, Any]:
        action = str(arguments.get("action") or "list")
        if action == "add":
            text = str(arguments.get("text") or "").strip()
            if not text:
                return {"ok": False, "error": "'text' is required to add an item"}
            return {"ok": True, "index": self._todos.add(text)}
        if action in ("remove", "toggle"):
            index = arguments.get("index")
            if not isinstance(index, int) or not 0 <= index < len(self._todos):
                return {"ok": False, "error": f"No todo item at index {index!r}"}
            if action == "remove":
                return {"ok": True, "removed": self._todos.remove(index).text}
            return {"ok": True, "done": self._todos.toggle(index).done}
        if action == "list":
            return {"ok": True, "items": self._todos.to_payload()}
        if action == "clear":
            self._todos.clear()
            return {"ok": True}
        return {"ok": False, "error": f"Unknown action: {action}"}


# -----------------------------------------------------------------------------
# Context management
# -----------------------------------------------------------------------------


class ManageContextTool(_BuiltinTool):
    """Model-driven compaction of the conversation's own ledger."""

    tool_name = MANAGE_CONTEXT_TOOL_NAME

    _DEFAULT_KEEP = {"summarize": 4, "clear_old": 6, "clear_tool_results": 4, "keep_essential": 3}

    def __init__(self, ledger: ContextLedger) -> None:
        super().__init__()
        self._ledger = ledger

    async def execute(self, arguments: Mapping[str, Any]) -> dict[str, Any]:
        action = str(arguments.get("action") or "")
        if action == "stats":
            return {"ok": True, **self._ledger.stats().to_dict()}
        if action not in self._DEFAULT_KEEP:
            return {"ok": False, "error": f"Unknown action: {action}"}
        keep_last = arguments.get("keep_last")
        if not isinstance(keep_last, int) or keep_last < 0:
            keep_last = self._DEFAULT_KEEP[action]
        keep_last = max(keep_last, live_turn_length(self._ledger, MANAGE_CONTEXT_TOOL_NAME))
        result = self._ledger.compact(CompactionStrategy(action), keep_last=keep_last)
        return {
            "ok": True,
            "action": action,
            "removed": result.removed,
            "cleared": result.cleared,
            "usage_percent": self._ledger.stats().usage_percent,
        }


class AutoSummarizeTool(_BuiltinTool):
    """Summarize the conversation with a model call and keep only the live turn."""

    tool_name = AUTO_SUMMARIZE_TOOL_NAME
    timeout = NO_TIMEOUT

    def __init__(self, ledger: ContextLedger, client: ModelClient | None, *, max_tokens: int = 1024) -> None:
        super().__init__()
        self._ledger = ledger
        self._client = client
        self._max_tokens = max_tokens

    async def execute(self, arguments: Mapping[str, Any]) -> dict[str, Any]:
        if self._client is None:
            return {"ok": False, "error": "No model endpoint is configured"}
        keep_last = live_turn_length(self._ledger, AUTO_SUMMARIZE_TOOL_NAME)
        older = self._ledger.summarizable_prefix(keep_last)
        if not older:
            return {"ok": True, "summary": "", "removed": 0}
        reply = await self._client.complete(
            build_summary_messages(older),
            temperature=0.2,
            max_tokens=self._max_tokens,
        )
        summary = reply.text.strip()
        if not summary:
            return {"ok": False, "error": "Context summary failed"}
        result = self._ledger.compact(CompactionStrategy.SUMMARIZE, keep_last=keep_last, summary=summary)
        return {"ok": True, "summary": summary, "removed": result.removed}


# -----------------------------------------------------------------------------
# User questions / sub-agents
# -----------------------------------------------------------------------------


class AskQuestionsTool(_BuiltinTool):
    tool_name = ASK_QUESTIONS_TOOL_NAME
    timeout = NO_TIMEOUT

    def __init__(self, handler: QuestionHandler | None) -> None:
        super().__init__()
        self._handler = handler

    def set_handler(self, handler: QuestionHandler | None) -> None:
        self._handler = handler

    async def execute(self, arguments: Mapping[str, Any]) -> dict[str, Any]:
        questions = arguments.get("questions")
        if not isinstance(questions, list) or not questions:
            return {"ok": False, "error": "'questions' must be a non-empty list"}
        if self._handler is None:
            return {"ok": False, "error": "Asking questions is not supported by this front-end"}
        normalized = [
            item if isinstance(item, Mapping) else {"question": str(item)}
            for item in questions
        ]
        answers = await self._handler(normalized)
        return {"ok": True, "answers": answers}


class SubAgentTool(_BuiltinTool):
    tool_name = SUBAGENT_TOOL_NAME
    timeout = NO_TIMEOUT

    def __init__(self, runner: SubAgentRunner) -> None:
        super().__init__()
        self._runner = runner

    async def execute(self, arguments: Mapping[str, Any]) -> Mapping[str, Any]:
        task = str(arguments.get("task") or "").strip()
        if not task:
            return {"ok": False, "error": "'task' is required"}
        context = arguments.get("context")
        return await self._runner(task, str(context) if context else None)
