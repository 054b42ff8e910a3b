"""Core type definitions for the orchestration engine.

Messages, tool calls and model replies are immutable so they can be shared
between the ledger, the run controller and persistence without copying.
Run state is the one mutable record and is owned by a single controller.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Mapping, Protocol, Sequence, runtime_checkable

from openai.types.chat import ChatCompletionMessageParam

__all__ = [
    "MessageRole",
    "ToolCall",
    "Message",
    "ModelReply",
    "RunStatus",
    "RunState",
    "StopReason",
    "RunOutcome",
    "ToolSelection",
    "ContextStats",
    "ToolCallStatus",
    "ToolCallEvent",
    "Attachment",
    "TodoItem",
    "ConversationSnapshot",
    "ModelClient",
]


# -----------------------------------------------------------------------------
# Helper
# -----------------------------------------------------------------------------


def _utcnow() -> datetime:
    """Return current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            pass
    return _utcnow()


# -----------------------------------------------------------------------------
# Message Types
# -----------------------------------------------------------------------------

MessageRole = Literal["system", "user", "assistant", "tool"]


@dataclass(slots=True, frozen=True)
class ToolCall:
    """A single tool invocation requested by the model.

    Attributes:
        id: Opaque identifier assigned by the model.
        name: Name of the tool to call.
        arguments: Raw JSON argument text exactly as the model produced it.
    """

    id: str
    name: str
    arguments: str = "{}"

    def parse_arguments(self) -> dict[str, Any]:
        """Decode the argument text, returning ``{}`` when it is not a JSON object."""
        text = (self.arguments or "").strip()
        if not text:
            return {}
        try:
            payload = json.loads(text)
        except (TypeError, ValueError):
            return {}
        return payload if isinstance(payload, dict) else {}

    def to_chat_param(self) -> dict[str, Any]:
        """Convert to the OpenAI ``tool_calls`` entry format."""
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }

    @classmethod
    def from_chat_param(cls, param: Mapping[str, Any]) -> ToolCall:
        """Create a ToolCall from an OpenAI ``tool_calls`` entry."""
        function = param.get("function") or {}
        arguments = function.get("arguments")
        if not isinstance(arguments, str):
            arguments = json.dumps(arguments or {}, ensure_ascii=False)
        return cls(
            id=str(param.get("id") or ""),
            name=str(function.get("name") or ""),
            arguments=arguments,
        )


@dataclass(slots=True, frozen=True)
class Message:
    """Immutable chat message stored in the context ledger.

    Attributes:
        role: The role of the message sender.
        content: The text content; may be empty for tool-call-only replies.
        tool_calls: Tool calls made by the assistant.
        tool_call_id: ID linking a tool result to its call.
        name: Tool name for tool result messages.
        timestamp: When the message was created.
        metadata: Additional metadata (not sent to the model).
    """

    role: MessageRole
    content: str = ""
    tool_calls: tuple[ToolCall, ...] = ()
    tool_call_id: str | None = None
    name: str | None = None
    timestamp: datetime = field(default_factory=_utcnow)
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.tool_calls, tuple):
            object.__setattr__(self, "tool_calls", tuple(self.tool_calls))

    def to_chat_param(self) -> ChatCompletionMessageParam:
        """Convert to OpenAI's ChatCompletionMessageParam format."""
        payload: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            payload["tool_calls"] = [call.to_chat_param() for call in self.tool_calls]
            if not self.content:
                payload["content"] = None
        if self.role == "tool":
            payload["tool_call_id"] = self.tool_call_id
        return payload  # type: ignore[return-value]

    def to_dict(self) -> dict[str, Any]:
        """Serialize for persistence."""
        payload: dict[str, Any] = {
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.tool_calls:
            payload["tool_calls"] = [call.to_chat_param() for call in self.tool_calls]
        if self.tool_call_id is not None:
            payload["tool_call_id"] = self.tool_call_id
        if self.name is not None:
            payload["name"] = self.name
        if self.metadata:
            payload["metadata"] = dict(self.metadata)
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Message:
        """Restore a message serialized by :meth:`to_dict` or a chat param."""
        calls = tuple(ToolCall.from_chat_param(item) for item in payload.get("tool_calls") or ())
        return cls(
            role=payload.get("role", "user"),  # type: ignore[arg-type]
            content=str(payload.get("content") or ""),
            tool_calls=calls,
            tool_call_id=payload.get("tool_call_id"),
            name=payload.get("name"),
            timestamp=_parse_timestamp(payload.get("timestamp")),
            metadata=dict(payload.get("metadata") or {}),
        )

    @classmethod
    def system(cls, content: str, **metadata: Any) -> Message:
        """Create a system message."""
        return cls(role="system", content=content, metadata=metadata)

    @classmethod
    def user(cls, content: str, **metadata: Any) -> Message:
        """Create a user message."""
        return cls(role="user", content=content, metadata=metadata)

    @classmethod
    def assistant(
        cls,
        content: str,
        tool_calls: Sequence[ToolCall] = (),
        **metadata: Any,
    ) -> Message:
        """Create an assistant message."""
        return cls(role="assistant", content=content or "", tool_calls=tuple(tool_calls), metadata=metadata)

    @classmethod
    def tool(cls, content: str, tool_call_id: str, name: str | None = None, **metadata: Any) -> Message:
        """Create a tool result message."""
        return cls(role="tool", content=content, tool_call_id=tool_call_id, name=name, metadata=metadata)


# -----------------------------------------------------------------------------
# Model Reply
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ModelReply:
    """Normalized reply returned by a model client.

    Attributes:
        text: The text content of the reply.
        tool_calls: Tool calls in the order the model listed them.
        finish_reason: Why the model stopped generating.
        prompt_tokens: Tokens reported for the prompt, when available.
        completion_tokens: Tokens reported for the completion, when available.
    """

    text: str = ""
    tool_calls: tuple[ToolCall, ...] = ()
    finish_reason: str | None = None
    prompt_tokens: int = 0
    completion_tokens: int = 0

    def __post_init__(self) -> None:
        if not isinstance(self.tool_calls, tuple):
            object.__setattr__(self, "tool_calls", tuple(self.tool_calls))

    @property
    def has_tool_calls(self) -> bool:
        """Check if the reply contains tool calls."""
        return len(self.tool_calls) > 0


# -----------------------------------------------------------------------------
# Run State
# -----------------------------------------------------------------------------


class RunStatus(str, Enum):
    """Lifecycle status reported to the UI."""

    IDLE = "idle"
    WORKING = "working"


class StopReason(str, Enum):
    """Why a run left the loop."""

    COMPLETED = "completed"
    MAX_ITERATIONS = "max_iterations"
    STOPPED = "stopped"
    ERROR = "error"


@dataclass(slots=True)
class RunState:
    """Mutable run identity owned by exactly one controller."""

    run_id: int = 0
    status: RunStatus = RunStatus.IDLE
    stopped: bool = False

    def begin(self) -> int:
        self.run_id += 1
        self.status = RunStatus.WORKING
        self.stopped = False
        return self.run_id

    def invalidate(self) -> None:
        self.run_id += 1
        self.status = RunStatus.IDLE
        self.stopped = True

    def is_stale(self, run_id: int) -> bool:
        return self.stopped or run_id != self.run_id


@dataclass(slots=True, frozen=True)
class RunOutcome:
    """Result of one user-initiated send.

    Attributes:
        run_id: Identifier minted for the run.
        stop_reason: Why the loop ended.
        iterations: Number of model calls the loop issued.
        reply: Text of the last assistant message appended by this run.
        error: Error message when ``stop_reason`` is ``ERROR``.
    """

    run_id: int
    stop_reason: StopReason
    iterations: int = 0
    reply: str = ""
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.stop_reason is not StopReason.ERROR


# -----------------------------------------------------------------------------
# Tool Selection / Context Stats
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolSelection:
    """Narrowed set of tool names exposed to the model."""

    selected_names: frozenset[str]
    reason: str = ""

    def __contains__(self, name: object) -> bool:
        return name in self.selected_names

    def __len__(self) -> int:
        return len(self.selected_names)

    def to_dict(self) -> dict[str, Any]:
        return {"selected_names": sorted(self.selected_names), "reason": self.reason}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> ToolSelection | None:
        if not payload:
            return None
        names = payload.get("selected_names") or ()
        return cls(selected_names=frozenset(str(name) for name in names), reason=str(payload.get("reason") or ""))


@dataclass(slots=True, frozen=True)
class ContextStats:
    """Token budget snapshot for the ledger."""

    estimated_tokens: int
    max_tokens: int
    usage_percent: float
    message_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "estimated_tokens": self.estimated_tokens,
            "max_tokens": self.max_tokens,
            "usage_percent": self.usage_percent,
            "message_count": self.message_count,
        }


# -----------------------------------------------------------------------------
# UI Events
# -----------------------------------------------------------------------------


class ToolCallStatus(str, Enum):
    CALLING = "calling"
    DONE = "done"
    DENIED = "denied"


@dataclass(slots=True, frozen=True)
class ToolCallEvent:
    """Lifecycle notification for a single tool call."""

    call_id: str
    name: str
    arguments: Mapping[str, Any]
    status: ToolCallStatus
    result: Any = None


# -----------------------------------------------------------------------------
# Attachments / Todos / Persistence
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class Attachment:
    """File attached to a user message, described to the model as plain text.

    Attributes:
        name: Display name of the file.
        path: Location on disk.
        is_image: Whether the file is an image.
        ocr_text: Text recognized from an image, if any.
        extracted_text: Text extracted from a document, if any.
        converted_path: Path of a plain-text conversion, if any.
    """

    name: str
    path: str = ""
    is_image: bool = False
    ocr_text: str | None = None
    extracted_text: str | None = None
    converted_path: str | None = None


@dataclass(slots=True)
class TodoItem:
    text: str
    done: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"text": self.text, "done": self.done}


@dataclass(slots=True, frozen=True)
class ConversationSnapshot:
    """Everything needed to persist and later resume a conversation."""

    id: str
    title: str | None
    messages: tuple[Message, ...]
    summaries: tuple[str, ...] = ()
    selection: ToolSelection | None = None
    todos: tuple[TodoItem, ...] = ()
    updated_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "messages": [message.to_dict() for message in self.messages],
            "summaries": list(self.summaries),
            "selection": self.selection.to_dict() if self.selection else None,
            "todos": [item.to_dict() for item in self.todos],
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> ConversationSnapshot:
        todos = tuple(
            TodoItem(text=str(item.get("text", "")), done=bool(item.get("done", False)))
            for item in payload.get("todos") or ()
            if isinstance(item, Mapping)
        )
        return cls(
            id=str(payload.get("id") or ""),
            title=payload.get("title"),
            messages=tuple(Message.from_dict(item) for item in payload.get("messages") or ()),
            summaries=tuple(str(item) for item in payload.get("summaries") or ()),
            selection=ToolSelection.from_dict(payload.get("selection")),
            todos=todos,
            updated_at=_parse_timestamp(payload.get("updated_at")),
        )


# -----------------------------------------------------------------------------
# Model Client Protocol
# -----------------------------------------------------------------------------


@runtime_checkable
class ModelClient(Protocol):
    """Chat endpoint consumed by the controller, selector and sub-agents.

    Must be callable without tools. Failures raise; the caller decides whether
    they end the turn.
    """

    async def complete(
        self,
        messages: Sequence[Mapping[str, Any]],
        *,
        tools: Sequence[Mapping[str, Any]] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> ModelReply:
        ...
