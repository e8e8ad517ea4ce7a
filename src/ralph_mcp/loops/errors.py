"""Exceptions raised by the loop tracking components."""

from __future__ import annotations


class LoopParseError(ValueError):
    """Raised when ``ralph loops list --json`` output cannot be interpreted."""


class LaunchError(RuntimeError):
    """Raised when a loop cannot be started."""


__all__ = ["LaunchError", "LoopParseError"]
