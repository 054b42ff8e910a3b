"""Exceptions raised by the orchestration engine.

Only configuration and model-call failures interrupt a turn. Tool failures,
approval denials and cancellations are folded back into the conversation as
ordinary tool results and never surface as exceptions.
"""

from __future__ import annotations

__all__ = [
    "OrchestrationError",
    "ConfigurationError",
    "LedgerIntegrityError",
    "ModelCallError",
]


class OrchestrationError(Exception):
    """Base class for engine failures."""


class ConfigurationError(OrchestrationError):
    """Raised before a run starts when no model endpoint is configured."""


class LedgerIntegrityError(OrchestrationError):
    """Raised when an append would break tool-call/tool-result pairing."""

    def __init__(self, message: str, *, tool_call_id: str | None = None) -> None:
        self.tool_call_id = tool_call_id
        super().__init__(message)


class ModelCallError(OrchestrationError):
    """Raised by the model client when a chat completion cannot be obtained."""

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        self.cause = cause
        super().__init__(message)
