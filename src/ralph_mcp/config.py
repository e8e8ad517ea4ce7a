"""Configuration management for Ralph MCP."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated
import os

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class RalphSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    ralph_path: str | None = Field(default=None, validation_alias="RALPH_PATH")
    default_directory: Path = Field(default=Path("."), validation_alias="RALPH_DEFAULT_DIRECTORY")
    poll_interval: float = Field(default=10.0, validation_alias="RALPH_POLL_INTERVAL")
    poll_timeout: float = Field(default=5.0, validation_alias="RALPH_POLL_TIMEOUT")
    action_timeout: float = Field(default=20.0, validation_alias="RALPH_ACTION_TIMEOUT")
    text_view_timeout: float = Field(default=15.0, validation_alias="RALPH_TEXT_VIEW_TIMEOUT")
    scrollback: int = Field(default=5000, validation_alias="RALPH_SCROLLBACK")
    viewport_columns: int = Field(default=120, validation_alias="RALPH_VIEWPORT_COLUMNS")
    viewport_rows: int = Field(default=40, validation_alias="RALPH_VIEWPORT_ROWS")
    poll_alert_threshold: int = Field(default=3, validation_alias="RALPH_POLL_ALERT_THRESHOLD")
    chroma_persist_path: Path = Field(
        default=Path("./storage/chroma"), validation_alias="CHROMA_PERSIST_PATH"
    )
    # Path-separated in the environment, not JSON.
    preset_paths: Annotated[tuple[Path, ...], NoDecode] = Field(
        default=(Path("presets"),), validation_alias="RALPH_PRESET_PATHS"
    )
    log_level: str = Field(default="INFO", validation_alias="RALPH_LOG_LEVEL")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "RALPH_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("preset_paths", mode="before")
    @classmethod
    def _parse_preset_paths(cls, value):
        if value is None or value == "":
            return (Path("presets"),)
        if isinstance(value, (list, tuple)):
            return tuple(Path(str(item)) for item in value)
        if isinstance(value, str):
            parts = [part.strip() for part in value.split(os.pathsep) if part.strip()]
            return tuple(Path(part) for part in parts) or (Path("presets"),)
        raise TypeError("RALPH_PRESET_PATHS must be a list of paths or a path-separated string")

    @field_validator("poll_interval", "poll_timeout", "action_timeout", "text_view_timeout")
    @classmethod
    def _validate_positive_seconds(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("Intervals and timeouts must be greater than zero seconds")
        return value

    @field_validator("scrollback", "viewport_columns", "viewport_rows", "poll_alert_threshold")
    @classmethod
    def _validate_positive_count(cls, value: int) -> int:
        if value < 1:
            raise ValueError("Counts must be >= 1")
        return value


@lru_cache(maxsize=1)
def get_settings() -> RalphSettings:
    """Return cached settings instance."""

    settings = RalphSettings()
    settings.default_directory = settings.default_directory.expanduser().resolve()
    settings.chroma_persist_path = settings.chroma_persist_path.expanduser().resolve()
    settings.preset_paths = tuple(path.expanduser().resolve() for path in settings.preset_paths)
    return settings


__all__ = ["RalphSettings", "get_settings"]
