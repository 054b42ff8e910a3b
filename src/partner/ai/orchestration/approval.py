"""Approval gate: suspends a sensitive tool call until someone decides.

The gate owns a single pending slot backed by an ``asyncio.Future`` that is
resolved exactly once. Where the decision comes from (a local prompt, a remote
mail loop) is the business of a :class:`DecisionChannel`; the gate only
guarantees the suspend/resolve contract and the force-deny escape hatch used
when a conversation is stopped.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Protocol

from ...services import telemetry as telemetry_service
from .tools.catalog import TERMINAL_TOOL_NAMES
from .tools.types import ToolDescriptor

__all__ = [
    "ApprovalDecision",
    "GateState",
    "PendingApproval",
    "DecisionChannel",
    "ResolveCallback",
    "CallbackDecisionChannel",
    "PollingDecisionChannel",
    "ApprovalGate",
    "DANGEROUS_COMMANDS",
    "DENIED_RESULT",
    "is_dangerous_command",
    "requires_approval",
]

LOGGER = logging.getLogger(__name__)

DENIED_RESULT: Mapping[str, Any] = {"ok": False, "error": "User denied this operation"}


# -----------------------------------------------------------------------------
# Dangerous commands
# -----------------------------------------------------------------------------

DANGEROUS_COMMANDS: Mapping[str, tuple[str, ...]] = {
    "common": (
        "rm -rf", "rmdir", "del /f", "format", "mkfs", "dd if=", "chmod 777",
        ":(){:|:&};:", "fork bomb", "> /dev/sda", "shutdown", "reboot", "halt",
        "poweroff", "kill -9", "killall", "pkill", "| sh", "| bash",
    ),
    "windows": (
        "Remove-Item -Recurse -Force", "Format-Volume", "Clear-Disk", "Stop-Process -Force",
        "Remove-Partition", "rd /s /q", "reg delete", "bcdedit", "diskpart",
    ),
    "linux": (
        "rm -rf /", "chmod -R 777 /", "chown -R", "mv /* /dev/null", "crontab -r",
        "iptables -F", "systemctl stop",
    ),
    "macos": (
        "diskutil eraseDisk", "csrutil disable", "nvram -c", "bless --unbless",
    ),
}

_DANGEROUS_FRAGMENTS: tuple[str, ...] = tuple(
    fragment.lower() for fragments in DANGEROUS_COMMANDS.values() for fragment in fragments
)


def is_dangerous_command(command: str | None) -> bool:
    """Case-insensitive substring match against every platform's denylist."""
    text = (command or "").lower()
    if not text:
        return False
    return any(fragment in text for fragment in _DANGEROUS_FRAGMENTS)


def requires_approval(
    descriptor: ToolDescriptor | None,
    name: str,
    arguments: Mapping[str, Any],
    *,
    auto_approve: bool,
) -> bool:
    """Decide whether a tool call must wait for a decision.

    Sensitive tools need approval unless auto-approve is on. Terminal tools
    whose command text hits the denylist always need approval.
    """
    if descriptor is not None and descriptor.sensitive and not auto_approve:
        return True
    if name in TERMINAL_TOOL_NAMES:
        command = arguments.get("command") or arguments.get("script") or ""
        return is_dangerous_command(str(command))
    return False


# -----------------------------------------------------------------------------
# Pending approval
# -----------------------------------------------------------------------------


class ApprovalDecision(str, Enum):
    APPROVED = "approved"
    DENIED = "denied"


class GateState(str, Enum):
    IDLE = "idle"
    AWAITING = "awaiting"
    RESOLVED = "resolved"


ResolveCallback = Callable[[bool], bool]


@dataclass(slots=True, eq=False)
class PendingApproval:
    """A single outstanding approval request.

    Attributes:
        tool_name: Tool waiting for the decision.
        arguments: Parsed arguments of the call.
        future: Resolved exactly once with ``True`` (approved) or ``False``.
        id: Identifier usable by remote channels to correlate replies.
        created_at: When the request was raised.
    """

    tool_name: str
    arguments: Mapping[str, Any]
    future: asyncio.Future[bool]
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def resolved(self) -> bool:
        return self.future.done()

    @property
    def decision(self) -> ApprovalDecision | None:
        if not self.future.done() or self.future.cancelled():
            return None
        return ApprovalDecision.APPROVED if self.future.result() else ApprovalDecision.DENIED

    def resolve(self, approved: bool) -> bool:
        """Record the decision; later calls are ignored and return ``False``."""
        if self.future.done():
            return False
        self.future.set_result(bool(approved))
        return True


# -----------------------------------------------------------------------------
# Decision channels
# -----------------------------------------------------------------------------


class DecisionChannel(Protocol):
    """Source of approval decisions.

    ``request_decision`` is fire-and-forget from the gate's point of view: it
    must eventually call ``resolve`` exactly once. It may return an awaitable,
    which the gate runs alongside the wait and cancels once a decision lands.
    """

    def request_decision(
        self,
        tool_name: str,
        arguments: Mapping[str, Any],
        resolve: ResolveCallback,
    ) -> Awaitable[None] | None:
        ...


class CallbackDecisionChannel:
    """Local channel forwarding the request to a UI prompt callback.

    The callback receives ``(tool_name, arguments, resolve)`` and calls
    ``resolve(True | False)`` once the user answers.
    """

    def __init__(self, prompt: Callable[[str, Mapping[str, Any], ResolveCallback], Any]) -> None:
        self._prompt = prompt

    def request_decision(
        self,
        tool_name: str,
        arguments: Mapping[str, Any],
        resolve: ResolveCallback,
    ) -> Awaitable[None] | None:
        result = self._prompt(tool_name, arguments, resolve)
        return result if inspect.isawaitable(result) else None


class PollingDecisionChannel:
    """Remote channel: send a request, poll for a reply, resend on a timer.

    Args:
        send: Coroutine delivering the request (for example by mail).
        poll: Coroutine returning ``True``/``False`` once a reply arrived, or
            ``None`` while still waiting.
        poll_interval: Seconds between polls.
        resend_interval: Seconds between resends while no reply arrived.
        max_resends: Resends before the request is denied.
    """

    def __init__(
        self,
        send: Callable[[str, Mapping[str, Any]], Awaitable[None]],
        poll: Callable[[], Awaitable[bool | None]],
        *,
        poll_interval: float = 30.0,
        resend_interval: float = 1800.0,
        max_resends: int = 3,
    ) -> None:
        self._send = send
        self._poll = poll
        self._poll_interval = max(0.0, poll_interval)
        self._resend_interval = max(0.0, resend_interval)
        self._max_resends = max(0, max_resends)

    async def request_decision(
        self,
        tool_name: str,
        arguments: Mapping[str, Any],
        resolve: ResolveCallback,
    ) -> None:
        loop = asyncio.get_running_loop()
        await self._send(tool_name, arguments)
        last_sent = loop.time()
        resends = 0
        while True:
            answer = await self._poll()
            if answer is not None:
                resolve(bool(answer))
                return
            if loop.time() - last_sent >= self._resend_interval:
                if resends >= self._max_resends:
                    LOGGER.warning("No approval reply for %s after %d resend(s); denying", tool_name, resends)
                    resolve(False)
                    return
                resends += 1
                LOGGER.info("Resending approval request for %s (%d/%d)", tool_name, resends, self._max_resends)
                await self._send(tool_name, arguments)
                last_sent = loop.time()
            await asyncio.sleep(self._poll_interval)


# -----------------------------------------------------------------------------
# Gate
# -----------------------------------------------------------------------------


class ApprovalGate:
    """Single-slot approval gate.

    Requests made while one is outstanding wait behind an ``asyncio.Lock``, so
    two approval prompts never overlap.
    """

    def __init__(self, *, on_request: Callable[[PendingApproval], None] | None = None) -> None:
        self._on_request = on_request
        self._lock = asyncio.Lock()
        self._pending: PendingApproval | None = None
        self._state = GateState.IDLE

    @property
    def state(self) -> GateState:
        return self._state

    @property
    def pending(self) -> PendingApproval | None:
        return self._pending

    def set_request_listener(self, callback: Callable[[PendingApproval], None] | None) -> None:
        self._on_request = callback

    async def request_approval(
        self,
        tool_name: str,
        arguments: Mapping[str, Any],
        channel: DecisionChannel | None = None,
    ) -> ApprovalDecision:
        """Suspend until the request is resolved.

        Args:
            tool_name: Tool waiting for approval.
            arguments: The call's parsed arguments.
            channel: At most one channel asked to produce the decision. Without
                a channel the caller of :meth:`resolve` decides.

        Returns:
            The first decision recorded for this request.
        """
        async with self._lock:
            pending = PendingApproval(
                tool_name=tool_name,
                arguments=dict(arguments),
                future=asyncio.get_running_loop().create_future(),
            )
            self._pending = pending
            self._state = GateState.AWAITING
            pending.future.add_done_callback(self._mark_resolved)
            LOGGER.debug("Awaiting approval for %s", tool_name)
            telemetry_service.emit(telemetry_service.APPROVAL_REQUESTED, {"tool_name": tool_name})
            if self._on_request is not None:
                self._on_request(pending)
            channel_task = self._start_channel(channel, pending)
            try:
                approved = await pending.future
            finally:
                if channel_task is not None and not channel_task.done():
                    channel_task.cancel()
                self._pending = None
                self._state = GateState.IDLE
            decision = ApprovalDecision.APPROVED if approved else ApprovalDecision.DENIED
            LOGGER.debug("Approval for %s resolved: %s", tool_name, decision.value)
            return decision

    def resolve(self, approved: bool) -> bool:
        """Resolve the outstanding request; returns ``False`` when there is none."""
        pending = self._pending
        if pending is None or not pending.resolve(approved):
            return False
        self._state = GateState.RESOLVED
        return True

    def force_deny(self) -> bool:
        """Deny whatever is pending so a suspended caller can unwind."""
        resolved = self.resolve(False)
        if resolved:
            LOGGER.debug("Pending approval force-denied")
        return resolved

    def _mark_resolved(self, _future: asyncio.Future[bool]) -> None:
        if self._state is GateState.AWAITING:
            self._state = GateState.RESOLVED

    def _start_channel(
        self,
        channel: DecisionChannel | None,
        pending: PendingApproval,
    ) -> asyncio.Future[Any] | None:
        if channel is None:
            return None
        try:
            outcome = channel.request_decision(pending.tool_name, pending.arguments, pending.resolve)
        except Exception as exc:
            LOGGER.warning("Decision channel failed for %s: %s", pending.tool_name, exc)
            pending.resolve(False)
            return None
        if not inspect.isawaitable(outcome):
            return None
        task = asyncio.ensure_future(outcome)

        def _on_channel_done(done: asyncio.Future[Any]) -> None:
            if done.cancelled():
                return
            exc = done.exception()
            if exc is not None:
                LOGGER.warning("Decision channel failed for %s: %s", pending.tool_name, exc)
                pending.resolve(False)

        task.add_done_callback(_on_channel_done)
        return task
