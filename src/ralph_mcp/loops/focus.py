"""Focus cursor over the active loops."""

from __future__ import annotations

from .engine import LoopEngine
from .models import LoopRecord


class FocusTracker:
    """Cursor into the active (non-removed) loops of an engine.

    The cursor is clamped lazily whenever it is read, so merges never have to
    know about focus.
    """

    def __init__(self, engine: LoopEngine) -> None:
        self._engine = engine
        self._index = 0

    @property
    def index(self) -> int:
        return self._index

    def _clamped(self, count: int) -> int:
        if count == 0:
            return 0
        return min(max(self._index, 0), count - 1)

    def current(self) -> LoopRecord | None:
        active = self._engine.loops()
        self._index = self._clamped(len(active))
        return active[self._index] if active else None

    def position(self) -> tuple[int, int]:
        """1-based position of the focused loop and the active count, ``(0, 0)`` when empty."""

        active = self._engine.loops()
        if not active:
            return 0, 0
        return self._clamped(len(active)) + 1, len(active)

    def cycle(self, direction: int = 1) -> LoopRecord | None:
        if direction not in (1, -1):
            raise ValueError("direction must be 1 or -1")

        active = self._engine.loops()
        if not active:
            self._index = 0
            self._engine.notifier.emit()
            return None

        count = len(active)
        self._index = (self._clamped(count) + direction) % count
        self._engine.notifier.emit()
        return active[self._index]

    def set_by_identity(self, identity: str) -> bool:
        """Focus ``identity`` if it is active; unknown identities change nothing."""

        for index, loop in enumerate(self._engine.loops()):
            if loop.identity == identity:
                self._index = index
                self._engine.notifier.emit()
                return True
        return False


__all__ = ["FocusTracker"]
