"""Conversation history persisted as one JSON file per conversation."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from ..ai.orchestration.types import ConversationSnapshot

__all__ = [
    "ConversationStore",
    "ConversationSummary",
    "default_history_dir",
]

LOGGER = logging.getLogger(__name__)
_HISTORY_DIR = Path.home() / ".partner" / "history"
_SAFE_ID = re.compile(r"^[A-Za-z0-9_-]+$")
_UNTITLED = "Untitled conversation"


def default_history_dir() -> Path:
    return _HISTORY_DIR


@dataclass(slots=True, frozen=True)
class ConversationSummary:
    """Listing entry for a stored conversation."""

    id: str
    title: str
    updated_at: str
    message_count: int = 0


class ConversationStore:
    """Stores :class:`ConversationSnapshot` payloads under ``directory``.

    Writes are atomic (temporary file plus rename) so a crash never leaves a
    half-written conversation behind.
    """

    def __init__(self, directory: Path | str | None = None) -> None:
        self._directory = Path(directory) if directory else _HISTORY_DIR

    @property
    def directory(self) -> Path:
        return self._directory

    def save(self, snapshot: ConversationSnapshot) -> Path:
        path = self._path_for(snapshot.id)
        body = json.dumps(snapshot.to_dict(), ensure_ascii=False, indent=2)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(path)
        LOGGER.debug("Saved conversation %s (%d messages)", snapshot.id, len(snapshot.messages))
        return path

    def load(self, conversation_id: str) -> ConversationSnapshot | None:
        """Return the stored conversation, or ``None`` when it does not exist."""

        path = self._path_for(conversation_id)
        payload = self._read(path)
        if payload is None:
            return None
        return ConversationSnapshot.from_dict(payload)

    def list(self) -> list[ConversationSummary]:
        """List stored conversations, most recently updated first."""

        if not self._directory.exists():
            return []
        entries: list[ConversationSummary] = []
        for path in self._directory.glob("*.json"):
            payload = self._read(path)
            if payload is None:
                continue
            entries.append(
                ConversationSummary(
                    id=str(payload.get("id") or path.stem),
                    title=str(payload.get("title") or _UNTITLED),
                    updated_at=str(payload.get("updated_at") or ""),
                    message_count=len(payload.get("messages") or ()),
                )
            )
        entries.sort(key=lambda entry: _sort_key(entry.updated_at), reverse=True)
        return entries

    def delete(self, conversation_id: str) -> bool:
        path = self._path_for(conversation_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        LOGGER.debug("Deleted conversation %s", conversation_id)
        return True

    def _path_for(self, conversation_id: str) -> Path:
        if not conversation_id or not _SAFE_ID.match(conversation_id):
            raise ValueError(f"Invalid conversation id: {conversation_id!r}")
        return self._directory / f"{conversation_id}.json"

    def _read(self, path: Path) -> dict[str, Any] | None:
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except json.JSONDecodeError as exc:
            LOGGER.warning("History file %s is not valid JSON: %s", path, exc)
            return None
        if not isinstance(payload, dict):
            LOGGER.warning("History file %s does not contain an object", path)
            return None
        return payload


def _sort_key(value: str) -> float:
    try:
        return datetime.fromisoformat(value).timestamp()
    except ValueError:
        return 0.0
