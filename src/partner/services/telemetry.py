"""In-process telemetry event bus for the orchestration engine."""

from __future__ import annotations

import logging
from collections import deque
from threading import Lock
from typing import Any, Callable, Mapping

LOGGER = logging.getLogger(__name__)

_EVENT_LISTENERS: dict[str, list[Callable[[dict[str, Any]], None]]] = {}

RUN_STARTED = "run.started"
RUN_FINISHED = "run.finished"
TOOL_DISPATCHED = "tool.dispatched"
CONTEXT_COMPACTED = "context.compacted"
TOOLS_SELECTED = "tools.selected"
APPROVAL_REQUESTED = "approval.requested"
SUBAGENT_FINISHED = "subagent.finished"

ALL_EVENTS: tuple[str, ...] = (
    RUN_STARTED,
    RUN_FINISHED,
    TOOL_DISPATCHED,
    CONTEXT_COMPACTED,
    TOOLS_SELECTED,
    APPROVAL_REQUESTED,
    SUBAGENT_FINISHED,
)


def register_event_listener(event_name: str, callback: Callable[[dict[str, Any]], None]) -> None:
    """Register a callback invoked whenever :func:`emit` fires *event_name*."""

    if not event_name or callback is None:
        return
    listeners = _EVENT_LISTENERS.setdefault(event_name, [])
    if callback not in listeners:
        listeners.append(callback)


def unregister_event_listener(event_name: str, callback: Callable[[dict[str, Any]], None]) -> None:
    listeners = _EVENT_LISTENERS.get(event_name)
    if not listeners:
        return
    try:
        listeners.remove(callback)
    except ValueError:
        return
    if not listeners:
        _EVENT_LISTENERS.pop(event_name, None)


def emit(event_name: str, payload: Mapping[str, Any] | None = None) -> None:
    """Broadcast a structured telemetry event to in-process listeners."""

    if not event_name:
        return
    event_payload = {"event": event_name}
    if payload:
        event_payload.update(payload)
    listeners = list(_EVENT_LISTENERS.get(event_name, ()))
    for callback in listeners:
        try:
            callback(dict(event_payload))
        except Exception:  # pragma: no cover - listeners must not break emitters
            LOGGER.debug("Telemetry listener %s failed", callback, exc_info=True)
    LOGGER.debug("Telemetry emit %s: %s", event_name, event_payload)


class EventRecorder:
    """Ring buffer that records engine events for inspection and tests.

    Example:
        recorder = EventRecorder().attach()
        ...
        recorder.names()  # ["run.started", "tools.selected", ...]
        recorder.detach()
    """

    def __init__(self, capacity: int = 200, *, events: tuple[str, ...] = ALL_EVENTS) -> None:
        self._buffer: deque[dict[str, Any]] = deque(maxlen=max(10, capacity))
        self._events = events
        self._lock = Lock()

    def attach(self) -> EventRecorder:
        for name in self._events:
            register_event_listener(name, self.record)
        return self

    def detach(self) -> None:
        for name in self._events:
            unregister_event_listener(name, self.record)

    def record(self, payload: dict[str, Any]) -> None:
        with self._lock:
            self._buffer.append(payload)

    def tail(self, limit: int | None = None) -> list[dict[str, Any]]:
        with self._lock:
            events = list(self._buffer)
        if limit is None or limit >= len(events):
            return events
        return events[-limit:]

    def names(self) -> list[str]:
        return [str(item.get("event")) for item in self.tail()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)
