"""Sub-agent spawning for delegated tasks.

A sub-agent is an independent run controller with its own ledger and run
state. It performs a single model call without tools and reports the answer
back to the parent as an ordinary tool result. Only the model client and the
read-only tool registry are shared with the parent.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Protocol

from ...services import telemetry as telemetry_service

__all__ = [
    "SingleShotRunner",
    "SubAgentResult",
    "SubAgentSpawner",
]

LOGGER = logging.getLogger(__name__)

_EMPTY_ANSWER = "The sub-agent finished without a text reply."


class SingleShotRunner(Protocol):
    async def run_single_shot(self, task: str, context: str | None = None) -> str:
        ...


@dataclass(slots=True, frozen=True)
class SubAgentResult:
    """Outcome of one delegated task.

    Attributes:
        task: The delegated task text.
        ok: Whether the sub-agent produced an answer.
        text: The answer, when ``ok``.
        error: The failure message, when not ``ok``.
        duration_ms: Wall time of the sub-agent run.
    """

    task: str
    ok: bool
    text: str = ""
    error: str | None = None
    duration_ms: float = 0.0

    def to_tool_result(self) -> dict[str, Any]:
        if self.ok:
            return {"ok": True, "result": self.text}
        return {"ok": False, "error": self.error or "Sub-agent failed"}


class SubAgentSpawner:
    """Creates a fresh runner per task and runs it to completion.

    Args:
        factory: Returns a new, isolated runner for every call.
        on_start: Optional callback receiving the task text.
        on_finish: Optional callback receiving the :class:`SubAgentResult`.
    """

    def __init__(
        self,
        factory: Callable[[], SingleShotRunner],
        *,
        on_start: Callable[[str], None] | None = None,
        on_finish: Callable[[SubAgentResult], None] | None = None,
    ) -> None:
        self._factory = factory
        self._on_start = on_start
        self._on_finish = on_finish

    async def run(self, task: str, context: str | None = None) -> SubAgentResult:
        runner = self._factory()
        self._notify(self._on_start, task)
        started = time.perf_counter()
        try:
            text = await runner.run_single_shot(task, context)
        except Exception as exc:
            LOGGER.warning("Sub-agent failed: %s", exc)
            result = SubAgentResult(
                task=task,
                ok=False,
                error=str(exc) or exc.__class__.__name__,
                duration_ms=(time.perf_counter() - started) * 1000,
            )
        else:
            result = SubAgentResult(
                task=task,
                ok=True,
                text=text.strip() or _EMPTY_ANSWER,
                duration_ms=(time.perf_counter() - started) * 1000,
            )
        LOGGER.debug("Sub-agent finished in %.1fms (ok=%s)", result.duration_ms, result.ok)
        telemetry_service.emit(
            telemetry_service.SUBAGENT_FINISHED,
            {"task_length": len(task), "ok": result.ok},
        )
        self._notify(self._on_finish, result)
        return result

    async def run_tool(self, task: str, context: str | None = None) -> dict[str, Any]:
        """Adapter used by the ``run_sub_agent`` tool."""
        result = await self.run(task, context)
        return result.to_tool_result()

    @staticmethod
    def _notify(callback: Callable[[Any], None] | None, payload: Any) -> None:
        if callback is None:
            return
        try:
            callback(payload)
        except Exception:
            LOGGER.debug("Sub-agent callback raised exception", exc_info=True)
