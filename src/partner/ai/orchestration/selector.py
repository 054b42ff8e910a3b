"""Tool selector: narrows the registry to the tools worth sending this turn.

Every schema sent to the model costs context budget, so the selector keeps a
small working set. Core tools are always kept; the rest are scored by keyword
and category overlap with the user's latest text, optionally refined by a
side-channel model call that is bounded by a timeout.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Sequence

from ...services import telemetry as telemetry_service
from .errors import ConfigurationError
from .prompts import build_selector_messages
from .tools.catalog import CORE_TOOL_NAMES, SEARCH_RETRIEVAL_PAIRS
from .tools.types import ToolCategory, ToolDescriptor
from .types import ModelClient, ToolSelection

__all__ = [
    "ToolSelector",
    "ScoredTool",
    "KEYWORD_GROUPS",
    "MIN_SELECTED_TOOLS",
    "MAX_SELECTED_TOOLS",
    "selection_cap",
    "complete_search_pairs",
]

LOGGER = logging.getLogger(__name__)

MIN_SELECTED_TOOLS = 6
MAX_SELECTED_TOOLS = 16
CATEGORY_BOOST = 5
NAME_TOKEN_WEIGHT = 2
DESCRIPTION_TOKEN_WEIGHT = 1


@dataclass(slots=True, frozen=True)
class _KeywordGroup:
    categories: frozenset[str]
    keywords: tuple[str, ...]


KEYWORD_GROUPS: Mapping[str, _KeywordGroup] = {
    "file": _KeywordGroup(
        frozenset({ToolCategory.FILE}),
        ("file", "files", "folder", "directory", "path", "save", "open", "rename", "copy",
         "文件", "目录", "文件夹", "保存", "打开"),
    ),
    "network": _KeywordGroup(
        frozenset({ToolCategory.NETWORK}),
        ("web", "http", "https", "url", "search", "internet", "online", "website", "download", "fetch",
         "news", "email", "网页", "网站", "搜索", "网络", "下载", "邮件", "新闻"),
    ),
    "calculation": _KeywordGroup(
        frozenset({ToolCategory.CALCULATION, ToolCategory.GRAPHING}),
        ("calculate", "calculation", "math", "compute", "equation", "formula", "plot", "graph",
         "计算", "数学", "公式", "方程", "函数"),
    ),
    "terminal": _KeywordGroup(
        frozenset({ToolCategory.TERMINAL, ToolCategory.CODE}),
        ("terminal", "shell", "command", "script", "bash", "powershell", "install", "python", "javascript",
         "code", "终端", "命令", "脚本", "代码", "运行"),
    ),
    "documents": _KeywordGroup(
        frozenset({ToolCategory.DOCUMENT}),
        ("document", "word", "docx", "pdf", "ppt", "pptx", "slide", "slides", "report", "markdown",
         "文档", "报告", "幻灯片", "演示"),
    ),
    "spreadsheets": _KeywordGroup(
        frozenset({ToolCategory.SPREADSHEET}),
        ("excel", "spreadsheet", "csv", "xlsx", "sheet", "table", "cell", "表格", "电子表格", "单元格"),
    ),
    "games": _KeywordGroup(
        frozenset({ToolCategory.GAME, ToolCategory.ENTERTAINMENT}),
        ("game", "games", "play", "tarot", "card", "游戏", "玩", "塔罗", "飞花令"),
    ),
    "mcp": _KeywordGroup(
        frozenset({ToolCategory.MCP}),
        ("mcp", "server", "plugin", "插件", "服务器"),
    ),
}

_ASCII_TOKEN = re.compile(r"[a-z0-9]+")
_MIN_DESCRIPTION_TOKEN = 3
_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


def selection_cap(enabled_count: int) -> int:
    """Dynamic ceiling: a third of the enabled tools, clamped to [6, 16]."""
    return max(MIN_SELECTED_TOOLS, min(MAX_SELECTED_TOOLS, math.ceil(max(0, enabled_count) / 3)))


def complete_search_pairs(names: Sequence[str], available: Iterable[str]) -> list[str]:
    """Insert a retrieval tool right after any search tool that lacks one."""

    pool = set(available)
    chosen = set(names)
    result: list[str] = []
    for name in names:
        result.append(name)
        retrieval = SEARCH_RETRIEVAL_PAIRS.get(name)
        if not retrieval or chosen.intersection(retrieval):
            continue
        for candidate in retrieval:
            if candidate in pool:
                result.append(candidate)
                chosen.add(candidate)
                break
    return result


def _tokens(text: str) -> set[str]:
    return set(_ASCII_TOKEN.findall((text or "").lower()))


@dataclass(slots=True, frozen=True)
class ScoredTool:
    name: str
    score: int


class ToolSelector:
    """Computes a :class:`ToolSelection` for a conversation.

    Example:
        selector = ToolSelector(client, timeout=8.0)
        selection = await selector.select(registry.list_descriptors(), "fetch the weather page", use_model=True)
    """

    def __init__(self, client: ModelClient | None = None, *, timeout: float = 8.0) -> None:
        self._client = client
        self._timeout = timeout

    @property
    def timeout(self) -> float:
        return self._timeout

    # ------------------------------------------------------------------
    # Heuristic
    # ------------------------------------------------------------------

    def score(self, descriptors: Sequence[ToolDescriptor], user_text: str) -> list[ScoredTool]:
        """Score non-core tools by overlap with ``user_text``, best first.

        Ties keep registration order. Tools scoring zero are left out.
        """
        text = (user_text or "").lower()
        words = _tokens(text)
        boosted = self._matched_categories(text, words)
        scored: list[ScoredTool] = []
        for descriptor in descriptors:
            if descriptor.name in CORE_TOOL_NAMES:
                continue
            points = CATEGORY_BOOST if descriptor.category in boosted else 0
            points += NAME_TOKEN_WEIGHT * len(words & _tokens(descriptor.name.replace("_", " ")))
            description_words = {
                token for token in _tokens(descriptor.description) if len(token) >= _MIN_DESCRIPTION_TOKEN
            }
            points += DESCRIPTION_TOKEN_WEIGHT * len(words & description_words)
            if points > 0:
                scored.append(ScoredTool(descriptor.name, points))
        scored.sort(key=lambda item: item.score, reverse=True)
        return scored

    def heuristic(self, descriptors: Sequence[ToolDescriptor], user_text: str) -> ToolSelection:
        ranked = [item.name for item in self.score(descriptors, user_text)]
        names = self._merge(descriptors, [], ranked)
        return ToolSelection(selected_names=frozenset(names), reason="heuristic")

    # ------------------------------------------------------------------
    # Full selection
    # ------------------------------------------------------------------

    async def select(
        self,
        descriptors: Sequence[ToolDescriptor],
        user_text: str,
        *,
        use_model: bool = False,
        timeout: float | None = None,
    ) -> ToolSelection:
        """Pick the working tool set.

        Args:
            descriptors: The enabled tool descriptors.
            user_text: Latest user text driving the selection.
            use_model: Whether to refine the heuristic with a model call.
            timeout: Overrides the selector's model-call timeout.

        Returns:
            A selection that never exceeds :func:`selection_cap` and always
            contains the registered core tools. Model failures and timeouts fall
            back to the heuristic result.
        """
        ranked = [item.name for item in self.score(descriptors, user_text)]
        picks: list[str] = []
        reason = "heuristic"
        if use_model and self._client is not None and descriptors:
            limit = timeout if timeout is not None else self._timeout
            try:
                picks, model_reason = await asyncio.wait_for(
                    self._ask_model(descriptors, user_text),
                    timeout=limit,
                )
            except asyncio.TimeoutError:
                LOGGER.warning("Tool selection timed out after %.1fs; using heuristic result", limit)
                reason = "heuristic (model selection timed out)"
            except Exception as exc:
                LOGGER.warning("Tool selection via model failed: %s", exc)
                reason = "heuristic (model selection failed)"
            else:
                reason = f"model: {model_reason}" if model_reason else "model"
        names = self._merge(descriptors, picks, ranked)
        selection = ToolSelection(selected_names=frozenset(names), reason=reason)
        LOGGER.debug("Selected %d tool(s) (%s): %s", len(names), reason, ", ".join(names))
        telemetry_service.emit(
            telemetry_service.TOOLS_SELECTED,
            {"count": len(selection), "reason": reason},
        )
        return selection

    async def _ask_model(self, descriptors: Sequence[ToolDescriptor], user_text: str) -> tuple[list[str], str]:
        if self._client is None:
            raise ConfigurationError("Model tool selection needs a model client")
        cap = selection_cap(len(descriptors))
        messages = build_selector_messages(
            descriptors,
            user_text,
            max_tools=cap,
            search_pairs=SEARCH_RETRIEVAL_PAIRS,
        )
        reply = await self._client.complete(messages, temperature=0.0, max_tokens=400)
        payload = _parse_selector_reply(reply.text)
        known = {descriptor.name for descriptor in descriptors}
        picks = [name for name in payload.get("tools", ()) if isinstance(name, str) and name in known]
        return picks, str(payload.get("reason") or "").strip()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _matched_categories(self, text: str, words: set[str]) -> set[str]:
        matched: set[str] = set()
        for group in KEYWORD_GROUPS.values():
            for keyword in group.keywords:
                hit = keyword in words if keyword.isascii() else keyword in text
                if hit:
                    matched.update(group.categories)
                    break
        return matched

    def _merge(
        self,
        descriptors: Sequence[ToolDescriptor],
        picks: Sequence[str],
        ranked: Sequence[str],
    ) -> list[str]:
        available = [descriptor.name for descriptor in descriptors]
        cap = selection_cap(len(available))
        core = [name for name in CORE_TOOL_NAMES if name in available]
        ordered: list[str] = []
        for name in [*core, *picks, *ranked]:
            if name not in ordered:
                ordered.append(name)
        capped = complete_search_pairs(ordered, available)[:cap]
        if capped and capped[-1] in SEARCH_RETRIEVAL_PAIRS and not set(capped).intersection(
            SEARCH_RETRIEVAL_PAIRS[capped[-1]]
        ):
            capped.pop()
        return capped


def _parse_selector_reply(text: str) -> dict[str, Any]:
    cleaned = (text or "").strip()
    match = _JSON_OBJECT.search(cleaned)
    if match is None:
        raise ValueError("Selector reply contained no JSON object")
    payload = json.loads(match.group(0))
    if not isinstance(payload, dict) or not isinstance(payload.get("tools"), list):
        raise ValueError("Selector reply is missing a 'tools' list")
    return payload
