"""Prompt builders for the main loop and its side-channel model calls."""

from __future__ import annotations

import re
import string
from datetime import datetime
from typing import Any, Iterable, Mapping, Sequence

from .tools.types import ToolDescriptor
from .types import Attachment, Message

__all__ = [
    "build_system_prompt",
    "build_subagent_prompt",
    "build_title_messages",
    "clean_title",
    "fallback_title",
    "build_selector_messages",
    "build_summary_messages",
    "render_user_message",
    "TITLE_MAX_CHARS",
    "ATTACHMENT_TEXT_LIMIT",
]

TITLE_MAX_CHARS = 12
ATTACHMENT_TEXT_LIMIT = 2000
_TRANSCRIPT_LINE_CHARS = 500
_UNTITLED = "Untitled conversation"
_QUOTES = "\"'“”‘’「」『』《》`"
_LEADING_REQUEST = re.compile(
    r"^(?:please|pls|help me|can you|could you|would you|how do i|how to|i want to|i need to|"
    r"请|帮我|麻烦|能否|可以|如何|怎么|需要|我要|想要)+[\s,，]*",
    re.IGNORECASE,
)
_CLAUSE_SPLIT = re.compile(r"[，。！？、,.;:；：!?\n]+")
_PUNCTUATION = set(string.punctuation) | set(_QUOTES) | set("，。！？、；：（）【】")


# -----------------------------------------------------------------------------
# System prompts
# -----------------------------------------------------------------------------


def build_system_prompt(
    *,
    assistant_name: str,
    personality: str = "",
    custom_prompt: str = "",
    tools: Sequence[ToolDescriptor] = (),
    workspace_path: str | None = None,
    now: datetime | None = None,
) -> str:
    """Compose the system prompt for the main conversation."""

    moment = now or datetime.now()
    lines = [
        f"You are {assistant_name}, a desktop assistant that completes tasks by calling tools.",
        f"Current time: {moment:%Y-%m-%d %H:%M}.",
    ]
    if workspace_path:
        lines.append(f"Workspace directory: {workspace_path}. Create and save files there unless told otherwise.")
    if personality:
        lines.append(f"Personality: {personality}")
    lines.extend(
        [
            "",
            "Guidelines:",
            "- Work step by step and call tools whenever they help; report results plainly.",
            "- Tool results can be truncated. Re-read sources in smaller pieces when you need more.",
            "- Use the todo list to track multi-step work and manage_context when the conversation grows long.",
            "- Messages marked [Added while you were working] are corrections sent mid-task. Take them into account.",
            "- If a tool is denied by the user, do not retry it; explain or choose another way.",
        ]
    )
    if tools:
        lines.append("")
        lines.append("Available tools: " + ", ".join(tool.name for tool in tools) + ".")
    if custom_prompt:
        lines.extend(["", custom_prompt.strip()])
    return "\n".join(lines)


def build_subagent_prompt(task: str, context: str | None = None) -> str:
    lines = [
        "You are a focused sub-agent. Complete the delegated task in a single answer.",
        "You cannot call tools. Be concise and return only what the parent agent needs.",
        "",
        f"Task: {task.strip()}",
    ]
    if context and context.strip():
        lines.extend(["", f"Context:\n{context.strip()}"])
    return "\n".join(lines)


# -----------------------------------------------------------------------------
# User messages
# -----------------------------------------------------------------------------


def render_user_message(text: str, attachments: Iterable[Attachment] = ()) -> str:
    """Append plain-text descriptions of ``attachments`` to ``text``."""

    blocks = [_render_attachment(item) for item in attachments]
    if not blocks:
        return text
    return f"{text}\n\n" + "\n".join(blocks)


def _render_attachment(item: Attachment) -> str:
    if item.ocr_text:
        return f"[Attachment: {item.name}]\nOCR text:\n{item.ocr_text}"
    if item.extracted_text:
        body = item.extracted_text
        if len(body) > ATTACHMENT_TEXT_LIMIT:
            body = body[:ATTACHMENT_TEXT_LIMIT] + "\n...[truncated]"
        converted = f"\nConverted text path: {item.converted_path}" if item.converted_path else ""
        return f"[File attachment: {item.name}]{converted}\nExtracted text:\n{body}"
    if item.converted_path:
        return f"[File attachment: {item.name}]\nConverted text path: {item.converted_path}"
    if item.is_image:
        return f"[Image attachment: {item.name}, path: {item.path}]"
    return f"[File attachment: {item.name}, path: {item.path}]"


# -----------------------------------------------------------------------------
# Conversation titles
# -----------------------------------------------------------------------------


def build_title_messages(text: str) -> list[dict[str, Any]]:
    return [
        {
            "role": "system",
            "content": (
                "Write a short, headline-style title for the conversation. "
                f"At most {TITLE_MAX_CHARS} characters, a noun phrase, no quotes, "
                "do not repeat the user's sentence. Reply with the title only."
            ),
        },
        {"role": "user", "content": _normalize_space(text)},
    ]


def clean_title(raw: str | None, source: str) -> str:
    """Tidy a model-suggested title, falling back when it is empty or echoes ``source``."""

    title = _normalize_space("".join(ch for ch in (raw or "") if ch not in _QUOTES))[:TITLE_MAX_CHARS].strip()
    if not title or _too_similar(title, source):
        return fallback_title(source)
    return title


def fallback_title(text: str) -> str:
    cleaned = _normalize_space(text)
    if not cleaned:
        return _UNTITLED
    clauses = [_LEADING_REQUEST.sub("", part.strip()).strip() for part in _CLAUSE_SPLIT.split(cleaned)]
    picked = [part for part in clauses if part]
    base = " ".join(picked[:2]) if picked else cleaned
    return base[:TITLE_MAX_CHARS].strip() or _UNTITLED


def _too_similar(title: str, source: str) -> bool:
    left = _strip_punctuation(title)
    right = _strip_punctuation(source)
    if not left or not right:
        return False
    return left in right or right in left


def _strip_punctuation(text: str) -> str:
    return "".join(ch for ch in text.lower() if not ch.isspace() and ch not in _PUNCTUATION)


def _normalize_space(text: str) -> str:
    return " ".join((text or "").split())


# -----------------------------------------------------------------------------
# Tool selection
# -----------------------------------------------------------------------------


def build_selector_messages(
    candidates: Sequence[ToolDescriptor],
    user_text: str,
    *,
    max_tools: int,
    search_pairs: Mapping[str, Sequence[str]],
) -> list[dict[str, Any]]:
    catalog = "\n".join(f"- {tool.name} [{tool.category}]: {tool.description}" for tool in candidates)
    pairs = "; ".join(f"{search} needs one of {', '.join(fetch)}" for search, fetch in search_pairs.items())
    return [
        {
            "role": "system",
            "content": (
                "You pick the tools an assistant needs for the user's request. "
                f"Choose at most {max_tools} names from the candidate list. "
                "A search tool only returns pointers, so never choose a search tool without a tool that "
                f"retrieves content ({pairs}). "
                'Reply with JSON only: {"tools": ["name", ...], "reason": "one sentence"}.'
            ),
        },
        {"role": "user", "content": f"Request:\n{user_text.strip()}\n\nCandidates:\n{catalog}"},
    ]


# -----------------------------------------------------------------------------
# Summaries
# -----------------------------------------------------------------------------


def build_summary_messages(messages: Iterable[Message]) -> list[dict[str, Any]]:
    transcript: list[str] = []
    for message in messages:
        if message.role == "system":
            continue
        text = _normalize_space(message.content)
        if message.role == "tool":
            label = f"tool {message.name or ''}".strip()
        else:
            label = message.role
        if message.tool_calls:
            called = ", ".join(call.name for call in message.tool_calls)
            text = f"{text} (called: {called})".strip()
        if text:
            transcript.append(f"{label}: {text[:_TRANSCRIPT_LINE_CHARS]}")
    return [
        {
            "role": "system",
            "content": (
                "Summarize the conversation below for the assistant's own memory. Keep the user's goals, "
                "decisions, facts learned from tools, file paths and open tasks. Be brief and factual."
            ),
        },
        {"role": "user", "content": "\n".join(transcript) or "(empty)"},
    ]
