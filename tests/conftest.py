"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

from partner.services.telemetry import EventRecorder


@pytest.fixture
def event_recorder():
    recorder = EventRecorder().attach()
    yield recorder
    recorder.detach()


@pytest.fixture(autouse=True)
def _isolate_logs(tmp_path, monkeypatch):
    """Keep log files out of the real home directory."""
    monkeypatch.setenv("PARTNER_LOG_DIR", str(tmp_path / "logs"))
