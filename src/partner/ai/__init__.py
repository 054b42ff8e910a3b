"""Model client and the agent orchestration engine."""

from .client import AIClient, ClientSettings

__all__ = ["AIClient", "ClientSettings"]
