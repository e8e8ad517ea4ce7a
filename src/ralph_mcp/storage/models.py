"""Data models for persistent tracking."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(slots=True)
class FocusRecord:
    loop_id: str
    focused_at: datetime


@dataclass(slots=True)
class ActionRecord:
    loop_id: str
    action: str
    ok: bool
    detail: str | None
    recorded_at: datetime


__all__ = ["ActionRecord", "FocusRecord"]
