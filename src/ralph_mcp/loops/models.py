"""Data models shared by the loop tracking components."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Protocol


class Provenance(str, Enum):
    """Where a tracked loop came from."""

    LOCALLY_STARTED = "tool"
    DISCOVERED = "discovered"


class TerminalSession(Protocol):
    """Capability interface for an interactive terminal session.

    The loop components only call through this interface; they never inspect
    the session or take over its lifetime unless they spawned it themselves.
    """

    rows: int

    def resize(self, cols: int, rows: int) -> None:
        ...

    def write(self, data: str) -> None:
        ...

    def scroll_up(self, lines: int) -> None:
        ...

    def scroll_down(self, lines: int) -> None:
        ...

    def is_scrolled_up(self) -> bool:
        ...

    def viewport_lines(self) -> list[str]:
        ...

    def dispose(self) -> None:
        ...


@dataclass(slots=True)
class LoopRecord:
    """One tracked ralph loop."""

    identity: str
    pid: int | None = None
    directory: str | None = None
    worktree: str | None = None
    status: str = "unknown"
    iteration: int = 0
    max_iterations: int = 0
    hat: str | None = None
    backend: str | None = None
    elapsed_secs: float = 0
    provenance: Provenance = Provenance.DISCOVERED
    session: TerminalSession | None = field(default=None, repr=False, compare=False)
    removed: bool = False
    last_seen_at: int = 0

    @property
    def locally_started(self) -> bool:
        return self.provenance is Provenance.LOCALLY_STARTED

    def summary(self) -> dict[str, Any]:
        """JSON-friendly view of the record (the session handle is reduced to a flag)."""

        return {
            "id": self.identity,
            "pid": self.pid,
            "directory": self.directory,
            "worktree": self.worktree,
            "status": self.status,
            "iteration": self.iteration,
            "max_iterations": self.max_iterations,
            "hat": self.hat,
            "backend": self.backend,
            "elapsed_secs": self.elapsed_secs,
            "source": self.provenance.value,
            "has_session": self.session is not None,
            "removed": self.removed,
            "last_seen_at": self.last_seen_at,
        }


class ChangeNotifier:
    """Subscriber list for "collection or focus changed" notifications."""

    def __init__(self) -> None:
        self._listeners: list[Callable[[], None]] = []

    def subscribe(self, listener: Callable[[], None]) -> Callable[[], None]:
        """Register ``listener`` and return a callable that unsubscribes it."""

        self._listeners.append(listener)
        return lambda: self.unsubscribe(listener)

    def unsubscribe(self, listener: Callable[[], None]) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def emit(self) -> None:
        # Listeners may unsubscribe while being notified.
        for listener in list(self._listeners):
            listener()

    def __len__(self) -> int:
        return len(self._listeners)


__all__ = ["ChangeNotifier", "LoopRecord", "Provenance", "TerminalSession"]
