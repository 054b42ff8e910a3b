"""Service layer helpers (settings, history, telemetry)."""

from .history import ConversationStore, ConversationSummary
from .settings import PersonaSettings, Settings, SettingsStore

__all__ = [
    "ConversationStore",
    "ConversationSummary",
    "PersonaSettings",
    "Settings",
    "SettingsStore",
]
