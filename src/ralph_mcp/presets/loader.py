"""Load loop presets from YAML files."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable, Iterator

import yaml
from pydantic import ValidationError

from .models import LoopPreset

PRESET_SUFFIXES = ("*.yml", "*.yaml")


class PresetLoadError(RuntimeError):
    """Raised when one or more preset files cannot be parsed."""


class PresetLoader:
    """Reads ``LoopPreset`` documents from a list of directories.

    Directories that do not exist are skipped. When two files declare the same
    id, the one from the later directory wins.
    """

    def __init__(self, search_paths: Iterable[Path] | None = None) -> None:
        self._search_paths = [Path(path) for path in search_paths or () if Path(path).exists()]

    @property
    def search_paths(self) -> list[Path]:
        return list(self._search_paths)

    def _documents(self, errors: list[str]) -> Iterator[tuple[Path, Any]]:
        for directory in self._search_paths:
            for pattern in PRESET_SUFFIXES:
                for path in sorted(directory.glob(pattern)):
                    try:
                        document = yaml.safe_load(path.read_text(encoding="utf-8"))
                    except yaml.YAMLError as exc:  # pragma: no cover - library type
                        errors.append(f"Failed to parse YAML in {path}: {exc}")
                        continue
                    if document is not None:
                        yield path, document

    def load_all(self) -> dict[str, LoopPreset]:
        """Return every preset keyed by id; raises ``PresetLoadError`` listing all bad files."""

        presets: dict[str, LoopPreset] = {}
        errors: list[str] = []
        for path, document in self._documents(errors):
            try:
                preset = LoopPreset.model_validate(document)
            except ValidationError as exc:
                errors.append(f"Preset validation error in {path}: {exc}")
                continue
            presets[preset.id] = preset

        if errors:
            raise PresetLoadError("; ".join(errors))
        return presets

    def get(self, preset_id: str) -> LoopPreset:
        presets = self.load_all()
        if preset_id not in presets:
            raise PresetLoadError(f"Preset '{preset_id}' not found in search paths")
        return presets[preset_id]


__all__ = ["LoopPreset", "PresetLoadError", "PresetLoader"]
