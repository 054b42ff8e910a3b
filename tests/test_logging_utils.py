"""Tests for utils/logging.py."""

from __future__ import annotations

import logging
import logging.handlers
from pathlib import Path

import pytest

from partner.utils import logging as logging_utils


@pytest.fixture
def restore_root_logger(monkeypatch: pytest.MonkeyPatch):
    root = logging.getLogger()
    level = root.level
    monkeypatch.setattr(logging_utils, "_CONFIGURED", False)
    monkeypatch.setattr(logging_utils, "_LOG_PATH", None)
    yield
    for handler in list(root.handlers):
        if isinstance(handler, logging.handlers.RotatingFileHandler) or type(handler) is logging.StreamHandler:
            root.removeHandler(handler)
            handler.close()
    logging.captureWarnings(False)
    root.setLevel(level)


@pytest.mark.parametrize(
    ("value", "expected"),
    [(None, logging.INFO), ("debug", logging.DEBUG), (" WARNING ", logging.WARNING), ("15", 15), (40, 40), ("loud", logging.INFO)],
)
def test_resolve_level(value, expected) -> None:
    assert logging_utils.resolve_level(value) == expected


def test_setup_logging_writes_rotating_file(tmp_path: Path, restore_root_logger) -> None:
    path = logging_utils.setup_logging("DEBUG", log_dir=tmp_path, console=False)

    logging.getLogger("partner.test").debug("hello from the test")
    for handler in logging.getLogger().handlers:
        handler.flush()

    assert path == tmp_path / "partner.log"
    assert logging_utils.get_log_path() == path
    assert "| DEBUG    | partner.test | hello from the test" in path.read_text(encoding="utf-8")
    assert logging.getLogger("httpx").level == logging.WARNING


def test_setup_logging_is_idempotent_unless_forced(tmp_path: Path, restore_root_logger) -> None:
    first = logging_utils.setup_logging(log_dir=tmp_path / "one", console=False)
    second = logging_utils.setup_logging(log_dir=tmp_path / "two", console=False)
    forced = logging_utils.setup_logging(log_dir=tmp_path / "two", console=False, force=True)

    assert second == first
    assert forced == tmp_path / "two" / "partner.log"


def test_log_dir_from_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, restore_root_logger) -> None:
    monkeypatch.setenv("PARTNER_LOG_DIR", str(tmp_path / "env"))

    path = logging_utils.setup_logging(console=False)

    assert path == tmp_path / "env" / "partner.log"
