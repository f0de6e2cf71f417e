"""Configuration management for Latchkey MCP."""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated
from pathlib import Path
import os

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class ConfigurationError(RuntimeError):
    """Raised when a required setting (such as the API key) is missing."""


class LatchkeySettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True
    )

    api_key: str | None = Field(default=None, validation_alias="BROWSER_USE_API_KEY")
    base_url: str = Field(
        default="https://api.browser-use.com/api/v2", validation_alias="BROWSER_USE_BASE_URL"
    )
    request_timeout: float = Field(default=30.0, validation_alias="BROWSER_USE_REQUEST_TIMEOUT")
    data_dir: Path = Field(default=Path("~/.latchkey"), validation_alias="LATCHKEY_DATA_DIR")
    platform_paths: Annotated[tuple[Path, ...], NoDecode] = Field(
        default=(Path("platforms"),), validation_alias="LATCHKEY_PLATFORM_PATHS"
    )
    chroma_persist_path: Path = Field(
        default=Path("./storage/chroma"), validation_alias="CHROMA_PERSIST_PATH"
    )
    log_level: str = Field(default="INFO", validation_alias="LATCHKEY_LOG_LEVEL")
    poll_interval: float = Field(default=5.0, validation_alias="LATCHKEY_POLL_INTERVAL")
    login_poll_interval: float = Field(default=2.0, validation_alias="LATCHKEY_LOGIN_POLL_INTERVAL")
    max_polls: int = Field(default=60, validation_alias="LATCHKEY_MAX_POLLS")
    # None derives the wall clock from the poll budget.
    task_timeout: float | None = Field(default=None, validation_alias="LATCHKEY_TASK_TIMEOUT")
    stale_after_days: float = Field(default=7.0, validation_alias="LATCHKEY_STALE_AFTER_DAYS")
    refresh_max_duration: int = Field(default=30, validation_alias="LATCHKEY_REFRESH_MAX_DURATION")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "LATCHKEY_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("api_key", mode="before")
    @classmethod
    def _blank_api_key(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("platform_paths", mode="before")
    @classmethod
    def _parse_platform_paths(cls, value):
        if value is None or value == "":
            return (Path("platforms"),)
        if isinstance(value, (list, tuple)):
            return tuple(Path(str(item)) for item in value)
        if isinstance(value, str):
            parts = [part.strip() for part in value.split(os.pathsep) if part.strip()]
            return tuple(Path(part) for part in parts) or (Path("platforms"),)
        raise TypeError(
            "LATCHKEY_PLATFORM_PATHS must be a list of paths or a path-separated string"
        )

    @field_validator("poll_interval", "login_poll_interval", "task_timeout", "request_timeout")
    @classmethod
    def _validate_positive_seconds(cls, value: float | None) -> float | None:
        if value is not None and value <= 0:
            raise ValueError("Intervals and timeouts must be > 0 seconds")
        return value

    @field_validator("max_polls", "refresh_max_duration")
    @classmethod
    def _validate_positive_count(cls, value: int) -> int:
        if value < 1:
            raise ValueError("LATCHKEY_MAX_POLLS and LATCHKEY_REFRESH_MAX_DURATION must be >= 1")
        return value

    @field_validator("stale_after_days")
    @classmethod
    def _validate_stale_after(cls, value: float) -> float:
        if value < 0:
            raise ValueError("LATCHKEY_STALE_AFTER_DAYS must be >= 0")
        return value

    @property
    def registry_path(self) -> Path:
        return self.data_dir / "profiles.json"

    @property
    def usage_path(self) -> Path:
        return self.data_dir / "profile_usage.json"


@lru_cache(maxsize=1)
def get_settings() -> LatchkeySettings:
    """Return cached settings instance."""

    settings = LatchkeySettings()
    settings.data_dir = settings.data_dir.expanduser().resolve()
    settings.chroma_persist_path = settings.chroma_persist_path.expanduser().resolve()
    settings.platform_paths = tuple(path.expanduser().resolve() for path in settings.platform_paths)
    return settings


__all__ = ["ConfigurationError", "LatchkeySettings", "get_settings"]
