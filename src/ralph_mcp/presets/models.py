"""Preset and start-request models for ralph loops."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator


class LoopPreset(BaseModel):
    """Named defaults for starting a ralph loop."""

    id: str = Field(..., description="Unique identifier for the preset.")
    title: str = Field(..., description="Display title for the preset.")
    description: str = Field(default="", description="What loops started from this preset do.")
    prompt_prefix: str = Field(
        default="",
        description="Text placed before the caller's prompt when starting a loop.",
    )
    config: str | None = Field(default=None, description="ralph config source passed to --config.")
    max_iterations: int | None = Field(default=None, ge=1, description="Maximum iterations.")
    backend: str | None = Field(default=None, description="Backend/agent passed to --agent.")
    custom_args: list[str] = Field(
        default_factory=list,
        description="Extra arguments passed to ralph after --.",
    )
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Arbitrary metadata for search and filtering.",
    )

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Loop preset id must not be empty")
        return normalized

    @field_validator("custom_args", mode="before")
    @classmethod
    def _ensure_list(cls, value: Any):  # type: ignore[override]
        if value is None:
            return []
        if isinstance(value, (list, tuple)):
            return [str(item) for item in value]
        raise TypeError("custom_args must be a sequence of strings")


class StartLoopRequest(BaseModel):
    """Parameters for ``ralph run``."""

    prompt: str = Field(..., description="What you want ralph to do.")
    directory: str = Field(..., description="Project directory to run ralph in.")
    config: str | None = Field(default=None, description="ralph config source (default: ralph.yml).")
    max_iterations: int | None = Field(default=None, ge=1, description="Maximum iterations.")
    backend: str | None = Field(default=None, description="Backend/agent selector (passed to --agent).")
    custom_args: list[str] = Field(default_factory=list, description="Extra args passed after --.")

    @field_validator("prompt", "directory")
    @classmethod
    def _require_text(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("prompt and directory must not be empty")
        return value

    @classmethod
    def from_preset(cls, preset: LoopPreset, **overrides: Any) -> "StartLoopRequest":
        """Build a request from ``preset``; explicit non-None overrides win."""

        values: dict[str, Any] = {
            "config": preset.config,
            "max_iterations": preset.max_iterations,
            "backend": preset.backend,
            "custom_args": list(preset.custom_args),
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        prompt = values.get("prompt", "")
        if preset.prompt_prefix:
            values["prompt"] = f"{preset.prompt_prefix.strip()}\n\n{prompt}".strip()
        return cls.model_validate(values)


__all__ = ["LoopPreset", "StartLoopRequest"]
