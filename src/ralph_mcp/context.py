"""Composition of the loop tracking components."""

from __future__ import annotations

import logging
from typing import Any, Callable, Protocol

from .config import RalphSettings
from .loops import (
    ChangeNotifier,
    FocusTracker,
    LoopEngine,
    LoopLauncher,
    PollScheduler,
    SessionAttachmentController,
    process_session_factory,
)
from .loops.attachment import SessionFactory
from .ralph import RalphRunner
from .storage import ChromaUnavailableError

logger = logging.getLogger(__name__)


class LoopEventStore(Protocol):
    def record_event(self, *, session_id: str, event_type: str, body: Any, metadata: dict[str, Any] | None = None) -> Any:
        ...

    def record_focus(self, loop_id: str) -> Any:
        ...

    def latest_focus(self) -> str | None:
        ...


class LoopContext:
    """Owns the engine, focus tracker, scheduler, launcher and attachment controller.

    ``start`` primes the collection with one poll, restores the last persisted
    focus and starts the polling timer; ``stop`` tears everything down.
    """

    def __init__(
        self,
        runner: RalphRunner,
        settings: RalphSettings,
        *,
        store: LoopEventStore | None = None,
        session_factory: SessionFactory | None = None,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self.settings = settings
        self.runner = runner
        self.store = store
        self.notifier = ChangeNotifier()
        self.engine = LoopEngine(notifier=self.notifier, clock=clock)
        self.tracker = FocusTracker(self.engine)
        self.scheduler = PollScheduler(
            self.engine,
            runner,
            default_directory=settings.default_directory,
            timeout=settings.poll_timeout,
            alert_threshold=settings.poll_alert_threshold,
            store=store,
        )
        self._session_factory = session_factory or process_session_factory(
            scrollback=settings.scrollback
        )
        self.launcher = LoopLauncher(
            self.engine,
            runner,
            session_factory=self._session_factory,
            list_timeout=settings.poll_timeout,
        )
        self._controller: SessionAttachmentController | None = None
        self._unsubscribe_focus: Callable[[], None] | None = None
        self._last_persisted_focus: str | None = None
        self.restored_focus_id: str | None = None

    @property
    def controller(self) -> SessionAttachmentController:
        """The attachment controller, reopened after it was closed."""

        if self._controller is None or self._controller.closed:
            self._controller = SessionAttachmentController(
                self.engine,
                self.tracker,
                self.runner,
                session_factory=self._session_factory,
                poll=self.scheduler.poll,
                cols=self.settings.viewport_columns,
                rows=self.settings.viewport_rows,
                text_timeout=self.settings.text_view_timeout,
                action_timeout=self.settings.action_timeout,
            )
        return self._controller

    def _load_persisted_focus(self) -> str | None:
        if self.store is None:
            return None
        try:
            return self.store.latest_focus()
        except ChromaUnavailableError as exc:
            logger.warning("Unable to restore focused loop", extra={"error": str(exc)})
            return None

    def _persist_focus(self) -> None:
        # Polls notify too; only a changed focused identity is written.
        focused = self.tracker.current()
        loop_id = focused.identity if focused is not None else None
        if not loop_id or loop_id == self._last_persisted_focus:
            return
        self._last_persisted_focus = loop_id
        if self.store is None:
            return
        try:
            self.store.record_focus(loop_id)
        except ChromaUnavailableError as exc:
            logger.warning("Unable to persist focused loop", extra={"loop_id": loop_id, "error": str(exc)})

    async def start(self, *, poll_interval: float | None = None, restore_focus: bool = True) -> None:
        restored = self._load_persisted_focus() if restore_focus else None
        self._last_persisted_focus = restored

        await self.scheduler.poll()
        if restored and self.tracker.set_by_identity(restored):
            self.restored_focus_id = restored
            logger.info("Restored focused loop", extra={"loop_id": restored})

        if self._unsubscribe_focus is None:
            self._unsubscribe_focus = self.notifier.subscribe(self._persist_focus)
        self.scheduler.start(poll_interval or self.settings.poll_interval)

    async def stop(self) -> None:
        if self._unsubscribe_focus is not None:
            self._unsubscribe_focus()
            self._unsubscribe_focus = None
        await self.scheduler.stop()
        if self._controller is not None:
            self._controller.close()
            self._controller = None


__all__ = ["LoopContext", "LoopEventStore"]
