from __future__ import annotations

import os
from pathlib import Path

import pytest
from pydantic import ValidationError

from latchkey_mcp.config import LatchkeySettings, get_settings


def test_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("BROWSER_USE_API_KEY", raising=False)
    settings = LatchkeySettings(_env_file=None)

    assert settings.api_key is None
    assert settings.poll_interval == 5.0
    assert settings.login_poll_interval == 2.0
    assert settings.max_polls == 60
    assert settings.stale_after_days == 7.0
    assert settings.refresh_max_duration == 30
    assert settings.task_timeout is None


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("BROWSER_USE_API_KEY", "bu-key")
    monkeypatch.setenv("LATCHKEY_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("LATCHKEY_PLATFORM_PATHS", f"one{os.pathsep}two")
    monkeypatch.setenv("LATCHKEY_LOG_LEVEL", "debug")
    monkeypatch.setenv("LATCHKEY_MAX_POLLS", "12")

    settings = LatchkeySettings(_env_file=None)

    assert settings.api_key == "bu-key"
    assert settings.platform_paths == (Path("one"), Path("two"))
    assert settings.log_level == "DEBUG"
    assert settings.max_polls == 12
    assert settings.registry_path == tmp_path / "profiles.json"
    assert settings.usage_path == tmp_path / "profile_usage.json"


def test_blank_api_key_is_treated_as_missing(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BROWSER_USE_API_KEY", "   ")

    assert LatchkeySettings(_env_file=None).api_key is None


@pytest.mark.parametrize(
    ("variable", "value"),
    [
        ("LATCHKEY_POLL_INTERVAL", "0"),
        ("LATCHKEY_MAX_POLLS", "0"),
        ("LATCHKEY_TASK_TIMEOUT", "0"),
        ("LATCHKEY_STALE_AFTER_DAYS", "-1"),
        ("LATCHKEY_LOG_LEVEL", "chatty"),
    ],
)
def test_invalid_values_are_rejected(monkeypatch: pytest.MonkeyPatch, variable: str, value: str) -> None:
    monkeypatch.setenv(variable, value)

    with pytest.raises(ValidationError):
        LatchkeySettings(_env_file=None)


def test_get_settings_resolves_paths(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("LATCHKEY_DATA_DIR", str(tmp_path / "nested" / ".." / "data"))
    get_settings.cache_clear()
    try:
        settings = get_settings()
        assert settings.data_dir == (tmp_path / "data").resolve()
        assert all(path.is_absolute() for path in settings.platform_paths)
    finally:
        get_settings.cache_clear()
