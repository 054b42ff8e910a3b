"""Tests for the settings persistence layer."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from partner.services.settings import (
    PersonaSettings,
    SecretVault,
    Settings,
    SettingsStore,
    redact_secret,
)


def test_load_returns_defaults_when_file_missing(tmp_path: Path) -> None:
    store = SettingsStore(tmp_path / "settings.json", vault=SecretVault(key_path=tmp_path / "key"))

    assert store.load() == Settings()


def test_save_and_load_roundtrip(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    original = Settings(
        base_url="https://example.com/v1",
        api_key="super-secret",
        model="gpt-4.1-mini",
        organization="acme",
        default_headers={"X-Test": "1"},
        tools={"web_search": False},
        persona=PersonaSettings(name="Ada", personality="terse"),
        max_tool_iterations=12,
        optimize_tool_selection=True,
    )

    SettingsStore(path).save(original)
    reloaded = SettingsStore(path).load()

    assert reloaded == original


def test_api_key_is_encrypted_on_disk(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    SettingsStore(path).save(Settings(api_key="super-secret"))

    payload = json.loads(path.read_text(encoding="utf-8"))

    assert "api_key" not in payload
    assert payload["api_key_ciphertext"].startswith("fernet:")
    assert "super-secret" not in path.read_text(encoding="utf-8")
    assert path.with_suffix(".key").exists()


def test_load_legacy_plaintext_api_key_migrates(tmp_path: Path) -> None:
    target = tmp_path / "settings.json"
    target.write_text(
        json.dumps({"base_url": "https://old", "api_key": "plain-key", "model": "gpt-3.5"}),
        encoding="utf-8",
    )

    loaded = SettingsStore(target).load()

    assert loaded.api_key == "plain-key"
    assert loaded.base_url == "https://old"
    rewritten = json.loads(target.read_text(encoding="utf-8"))
    assert "api_key" not in rewritten
    assert rewritten["version"] == 1


def test_undecryptable_key_loads_empty(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"api_key_ciphertext": "fernet:not-a-token", "version": 1}), encoding="utf-8")

    assert SettingsStore(path).load().api_key == ""


def test_invalid_json_falls_back_to_defaults(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_text("{not json", encoding="utf-8")

    assert SettingsStore(path).load() == Settings()


def test_unknown_fields_and_bad_nested_values_are_ignored(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_text(
        json.dumps({"version": 1, "theme": "dark", "persona": "nope", "tools": ["x"], "model": "m"}),
        encoding="utf-8",
    )

    loaded = SettingsStore(path).load()

    assert loaded.model == "m"
    assert loaded.persona == PersonaSettings()
    assert loaded.tools == {}


def test_env_overrides_take_precedence(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    SettingsStore(path).save(Settings(base_url="https://local", api_key="abc"))
    monkeypatch.setenv("PARTNER_BASE_URL", "https://env-base")
    monkeypatch.setenv("PARTNER_API_KEY", "env-key")

    overridden = SettingsStore(path).load()

    assert overridden.base_url == "https://env-base"
    assert overridden.api_key == "env-key"


def test_typed_env_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    monkeypatch.setenv("PARTNER_AUTO_APPROVE", "yes")
    monkeypatch.setenv("PARTNER_TEMPERATURE", "0.95")
    monkeypatch.setenv("PARTNER_MAX_TOOL_ITERATIONS", "12")
    monkeypatch.setenv("PARTNER_MAX_CONTEXT_TOKENS", "lots")

    overridden = SettingsStore(path).load()

    assert overridden.auto_approve_sensitive is True
    assert overridden.temperature == pytest.approx(0.95)
    assert overridden.max_tool_iterations == 12
    assert overridden.max_context_tokens == Settings().max_context_tokens


def test_cli_overrides_merge_tool_flags(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    SettingsStore(path).save(Settings(tools={"web_search": False, "read_file": True}))

    loaded = SettingsStore(path).load(overrides={"tools": {"read_file": False}, "model": None, "bogus": 1})

    assert loaded.tools == {"web_search": False, "read_file": False}
    assert loaded.model == Settings().model


def test_is_configured() -> None:
    assert Settings().is_configured
    assert not Settings(base_url=" ").is_configured


@pytest.mark.parametrize(
    ("value", "expected"),
    [(None, ""), ("", ""), ("abcd", "****"), ("sk-123456yz", "sk*******yz")],
)
def test_redact_secret(value: str | None, expected: str) -> None:
    assert redact_secret(value) == expected
