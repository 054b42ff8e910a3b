"""Context ledger: the ordered conversation log plus token budget accounting.

The ledger only executes the compaction it is told to run. Deciding *when* to
compact is the run controller's job, so the budget policy stays replaceable.
"""

from __future__ import annotations

import json
import logging
import math
import re
import uuid
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Iterable, Sequence

from .errors import LedgerIntegrityError
from .types import ContextStats, Message, ToolCall

__all__ = [
    "ContextLedger",
    "CompactionStrategy",
    "CompactionResult",
    "estimate_tokens",
    "estimate_message_tokens",
    "condense_messages",
    "TRUNCATION_MARKER",
    "CLEARED_MARKER",
    "HOT_MESSAGE_PREFIX",
]

LOGGER = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n...[truncated {omitted} characters]"
CLEARED_MARKER = "[tool result cleared]"
HOT_MESSAGE_PREFIX = "[Added while you were working]"
SUMMARY_HEADER = "Summary of the earlier conversation:"

_WIDE_CHARS = re.compile(
    r"[\u3040-\u30ff\u3400-\u4dbf\u4e00-\u9fff\uac00-\ud7af\uf900-\ufaff\uff00-\uffef]"
)
_WIDE_WEIGHT = 1.5
_NARROW_WEIGHT = 0.4
_MESSAGE_OVERHEAD = 4
_SUMMARY_LINE_CHARS = 100
_VISIBLE_SUMMARIES = 3


# -----------------------------------------------------------------------------
# Token Heuristic
# -----------------------------------------------------------------------------


def estimate_tokens(text: str | None) -> int:
    """Approximate token count: wide/CJK characters weigh more than narrow ones."""

    if not text:
        return 0
    wide = len(_WIDE_CHARS.findall(text))
    narrow = len(text) - wide
    return math.ceil(wide * _WIDE_WEIGHT + narrow * _NARROW_WEIGHT)


def estimate_message_tokens(message: Message) -> int:
    total = _MESSAGE_OVERHEAD + estimate_tokens(message.role) + estimate_tokens(message.content)
    if message.tool_calls:
        payload = json.dumps([call.to_chat_param() for call in message.tool_calls], ensure_ascii=False)
        total += estimate_tokens(payload)
    return total


def condense_messages(messages: Iterable[Message]) -> str:
    """Cheap extractive summary used when no model summary is available."""

    lines: list[str] = []
    for message in messages:
        text = " ".join((message.content or "").split())
        if not text:
            continue
        if message.role == "user":
            lines.append(f"User: {text[:_SUMMARY_LINE_CHARS]}")
        elif message.role == "assistant":
            lines.append(f"Assistant: {text[:_SUMMARY_LINE_CHARS]}")
    return "\n".join(lines)


# -----------------------------------------------------------------------------
# Compaction
# -----------------------------------------------------------------------------


class CompactionStrategy(str, Enum):
    CLEAR_TOOL_RESULTS = "clear_tool_results"
    SUMMARIZE = "summarize"
    CLEAR_OLD = "clear_old"
    KEEP_ESSENTIAL = "keep_essential"


@dataclass(slots=True, frozen=True)
class CompactionResult:
    """Outcome of a :meth:`ContextLedger.compact` call.

    Attributes:
        strategy: Strategy that ran.
        removed: Number of messages dropped from the ledger.
        cleared: Number of tool results whose body was blanked.
        summary: Summary text folded into the system message, if any.
    """

    strategy: CompactionStrategy
    removed: int = 0
    cleared: int = 0
    summary: str | None = None

    @property
    def changed(self) -> bool:
        return bool(self.removed or self.cleared)


# -----------------------------------------------------------------------------
# Ledger
# -----------------------------------------------------------------------------


class ContextLedger:
    """Ordered message log with exactly one system message at index 0.

    Conversation summaries produced by compaction are rendered into that single
    system message rather than stored as extra system entries.
    """

    def __init__(
        self,
        max_tokens: int = 8192,
        *,
        tool_result_limit: int = 3000,
        system_prompt: str = "",
    ) -> None:
        self._max_tokens = max(1, int(max_tokens))
        self._tool_result_limit = max(1, int(tool_result_limit))
        self._system_prompt = system_prompt
        self._summaries: list[str] = []
        self._entries: list[Message] = []
        self._system_message = self._render_system_message()

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def messages(self) -> tuple[Message, ...]:
        """All messages, system message first."""
        return (self._system_message, *self._entries)

    @property
    def entries(self) -> tuple[Message, ...]:
        """Conversation messages without the system message."""
        return tuple(self._entries)

    @property
    def system_prompt(self) -> str:
        return self._system_prompt

    @property
    def summaries(self) -> tuple[str, ...]:
        return tuple(self._summaries)

    @property
    def max_tokens(self) -> int:
        return self._max_tokens

    @max_tokens.setter
    def max_tokens(self, value: int) -> None:
        self._max_tokens = max(1, int(value))

    @property
    def tool_result_limit(self) -> int:
        return self._tool_result_limit

    def __len__(self) -> int:
        return len(self._entries) + 1

    def latest_user_text(self) -> str:
        for message in reversed(self._entries):
            if message.role == "user":
                return message.content
        return ""

    def to_chat_params(self) -> list[Any]:
        return [message.to_chat_param() for message in self.messages]

    # ------------------------------------------------------------------
    # Appends
    # ------------------------------------------------------------------

    def set_system_prompt(self, text: str) -> None:
        """Replace the system prompt; the system message is regenerated in place."""
        self._system_prompt = text or ""
        self._system_message = self._render_system_message()

    def append_user(self, text: str, *, hot: bool = False, **metadata: Any) -> Message:
        if hot:
            metadata["hot"] = True
            text = f"{HOT_MESSAGE_PREFIX} {text}"
        message = Message.user(text, **metadata)
        self._entries.append(message)
        return message

    def append_assistant(self, content: str, tool_calls: Sequence[ToolCall] = ()) -> Message:
        known = self._known_call_ids()
        for call in tool_calls:
            if not call.id:
                raise LedgerIntegrityError(f"Tool call '{call.name}' has no id")
            if call.id in known:
                raise LedgerIntegrityError(f"Duplicate tool call id '{call.id}'", tool_call_id=call.id)
            known.add(call.id)
        message = Message.assistant(content or "", tool_calls)
        self._entries.append(message)
        return message

    def assign_unique_call_ids(self, tool_calls: Sequence[ToolCall]) -> tuple[ToolCall, ...]:
        """Return ``tool_calls`` with empty or already used ids replaced.

        Call ids come from the model and some endpoints restart numbering every
        turn, so a reply may reuse an id that an earlier message issued.
        """
        taken = self._known_call_ids()
        unique: list[ToolCall] = []
        for call in tool_calls:
            if not call.id or call.id in taken:
                fresh = f"{call.id or 'call'}_{uuid.uuid4().hex[:12]}"
                LOGGER.debug("Reassigned tool call id %r to %r", call.id, fresh)
                call = replace(call, id=fresh)
            taken.add(call.id)
            unique.append(call)
        return tuple(unique)

    def append_tool_result(self, tool_call_id: str, tool_name: str, text: str) -> Message:
        """Append a tool result, truncating long bodies before storage.

        Raises:
            LedgerIntegrityError: If no earlier assistant message issued
                ``tool_call_id`` or the call already has a result.
        """
        if tool_call_id not in self._known_call_ids():
            raise LedgerIntegrityError(
                f"Tool result '{tool_call_id}' has no matching tool call", tool_call_id=tool_call_id
            )
        if tool_call_id in self._answered_call_ids():
            raise LedgerIntegrityError(
                f"Tool call '{tool_call_id}' already has a result", tool_call_id=tool_call_id
            )
        content, original_length = self._truncate(text or "")
        metadata: dict[str, Any] = {}
        if original_length is not None:
            metadata = {"truncated": True, "original_length": original_length}
        message = Message.tool(content, tool_call_id, name=tool_name, **metadata)
        self._entries.append(message)
        return message

    def pending_tool_calls(self) -> list[ToolCall]:
        """Tool calls that have not received a result yet, in ledger order."""
        answered = self._answered_call_ids()
        return [
            call
            for message in self._entries
            for call in message.tool_calls
            if call.id not in answered
        ]

    def close_dangling_tool_calls(self, content: str) -> int:
        """Answer every unanswered tool call with ``content``.

        A stop that lands mid-batch leaves calls without results; chat endpoints
        reject such histories, so they are closed before the next request.
        """
        pending = self.pending_tool_calls()
        for call in pending:
            self._entries.append(Message.tool(content, call.id, name=call.name, cancelled=True))
        return len(pending)

    # ------------------------------------------------------------------
    # Budget
    # ------------------------------------------------------------------

    def stats(self) -> ContextStats:
        tokens = sum(estimate_message_tokens(message) for message in self.messages)
        usage = round(tokens / self._max_tokens * 100, 1)
        return ContextStats(
            estimated_tokens=tokens,
            max_tokens=self._max_tokens,
            usage_percent=usage,
            message_count=len(self),
        )

    def compact(
        self,
        strategy: CompactionStrategy | str,
        *,
        keep_last: int = 6,
        summary: str | None = None,
    ) -> CompactionResult:
        """Run one compaction strategy.

        Args:
            strategy: Which compaction to run.
            keep_last: Number of most recent messages left untouched.
            summary: Summary text for ``SUMMARIZE``; when omitted an extractive
                summary of the dropped messages is used.

        Returns:
            A :class:`CompactionResult` describing what changed.
        """
        strategy = CompactionStrategy(strategy)
        keep_last = max(0, int(keep_last))
        if strategy is CompactionStrategy.CLEAR_TOOL_RESULTS:
            result = self._clear_tool_results(keep_last)
        elif strategy is CompactionStrategy.KEEP_ESSENTIAL:
            result = self._keep_essential(keep_last)
        else:
            result = self._drop_old(strategy, keep_last, summary)
        if result.changed:
            LOGGER.debug(
                "Compacted ledger via %s (removed=%d, cleared=%d)",
                strategy.value,
                result.removed,
                result.cleared,
            )
        return result

    def summarizable_prefix(self, keep_last: int) -> tuple[Message, ...]:
        """Messages a ``SUMMARIZE`` compaction with ``keep_last`` would drop."""
        cut = self._safe_cut(len(self._entries) - max(0, int(keep_last)))
        return tuple(self._entries[:cut])

    def clear(self) -> None:
        """Drop every message and summary; the system prompt is kept."""
        self._entries.clear()
        self._summaries.clear()
        self._system_message = self._render_system_message()

    def load(self, messages: Iterable[Message], summaries: Iterable[str] = ()) -> None:
        """Replace the ledger contents with saved messages.

        System messages in ``messages`` are ignored; the current system prompt
        stays at index 0.

        Raises:
            LedgerIntegrityError: If the saved messages violate pairing.
        """
        entries = [message for message in messages if message.role != "system"]
        _validate_pairing(entries)
        self._entries = entries
        self._summaries = [text for text in summaries if text]
        self._system_message = self._render_system_message()

    def validate(self) -> None:
        _validate_pairing(self._entries)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _render_system_message(self) -> Message:
        content = self._system_prompt
        if self._summaries:
            recent = "\n---\n".join(self._summaries[-_VISIBLE_SUMMARIES:])
            block = f"{SUMMARY_HEADER}\n{recent}"
            content = f"{content}\n\n{block}" if content else block
        return Message.system(content)

    def _truncate(self, text: str) -> tuple[str, int | None]:
        if len(text) <= self._tool_result_limit:
            return text, None
        omitted = len(text) - self._tool_result_limit
        return text[: self._tool_result_limit] + TRUNCATION_MARKER.format(omitted=omitted), len(text)

    def _known_call_ids(self) -> set[str]:
        return {call.id for message in self._entries for call in message.tool_calls}

    def _answered_call_ids(self) -> set[str]:
        return {message.tool_call_id for message in self._entries if message.role == "tool" and message.tool_call_id}

    def _clear_tool_results(self, keep_last: int) -> CompactionResult:
        boundary = max(0, len(self._entries) - keep_last)
        cleared = 0
        for index in range(boundary):
            message = self._entries[index]
            if message.role != "tool" or message.content == CLEARED_MARKER:
                continue
            self._entries[index] = replace(
                message,
                content=CLEARED_MARKER,
                metadata={**message.metadata, "cleared": True},
            )
            cleared += 1
        return CompactionResult(CompactionStrategy.CLEAR_TOOL_RESULTS, cleared=cleared)

    def _keep_essential(self, keep_last: int) -> CompactionResult:
        # Older than the tail only user text and assistant text survive.
        cut = self._safe_cut(len(self._entries) - keep_last)
        kept: list[Message] = []
        for message in self._entries[:cut]:
            if message.role == "user":
                kept.append(message)
            elif message.role == "assistant" and (message.content or "").strip():
                kept.append(replace(message, tool_calls=()) if message.tool_calls else message)
        removed = cut - len(kept)
        if removed:
            self._entries = kept + self._entries[cut:]
        return CompactionResult(CompactionStrategy.KEEP_ESSENTIAL, removed=removed)

    def _drop_old(self, strategy: CompactionStrategy, keep_last: int, summary: str | None) -> CompactionResult:
        cut = self._safe_cut(len(self._entries) - keep_last)
        if cut <= 0:
            return CompactionResult(strategy)
        dropped = self._entries[:cut]
        self._entries = self._entries[cut:]
        text: str | None = None
        if strategy is CompactionStrategy.SUMMARIZE:
            text = (summary or "").strip() or condense_messages(dropped)
            if text:
                self._summaries.append(text)
        self._system_message = self._render_system_message()
        return CompactionResult(strategy, removed=len(dropped), summary=text)

    def _safe_cut(self, index: int) -> int:
        # Move the cut earlier until no kept tool result points at a dropped call.
        index = max(0, min(index, len(self._entries)))
        while index > 0:
            dropped_ids = {call.id for message in self._entries[:index] for call in message.tool_calls}
            orphaned = any(
                message.role == "tool" and message.tool_call_id in dropped_ids
                for message in self._entries[index:]
            )
            if not orphaned:
                break
            index -= 1
        return index


def _validate_pairing(entries: Sequence[Message]) -> None:
    issued: dict[str, int] = {}
    answered: set[str] = set()
    for message in entries:
        if message.role == "system":
            raise LedgerIntegrityError("System messages are only allowed at index 0")
        if message.role == "assistant":
            for call in message.tool_calls:
                issued[call.id] = issued.get(call.id, 0) + 1
        elif message.role == "tool":
            call_id = message.tool_call_id or ""
            if issued.get(call_id) != 1:
                raise LedgerIntegrityError(
                    f"Tool result '{call_id}' does not match exactly one earlier tool call",
                    tool_call_id=call_id,
                )
            if call_id in answered:
                raise LedgerIntegrityError(f"Tool call '{call_id}' answered twice", tool_call_id=call_id)
            answered.add(call_id)
