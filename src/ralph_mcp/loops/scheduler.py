"""Timer-driven polling of ``ralph loops list``."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from pathlib import Path
from typing import Any, Protocol

from ..ralph import RalphRunner
from .engine import LoopEngine
from .errors import LoopParseError
from .identity import parse_loops_json
from .models import LoopRecord

logger = logging.getLogger(__name__)


class EventRecorder(Protocol):
    def record_event(
        self,
        *,
        session_id: str,
        event_type: str,
        body: Any,
        metadata: dict[str, Any] | None = None,
    ) -> Any:
        ...


class PollScheduler:
    """Drive ``LoopEngine.merge`` on an interval and on demand.

    ``ralph loops list`` only reports loops of the project it runs in, so each
    known project directory is queried separately and the results are merged
    in one pass. At most one poll runs at a time; overlapping requests return
    ``None`` without queuing.
    """

    def __init__(
        self,
        engine: LoopEngine,
        runner: RalphRunner,
        *,
        default_directory: str | Path,
        timeout: float = 5.0,
        alert_threshold: int = 3,
        store: EventRecorder | None = None,
    ) -> None:
        self._engine = engine
        self._runner = runner
        self._default_directory = str(default_directory)
        self._timeout = timeout
        self._alert_threshold = alert_threshold
        self._store = store
        self._in_flight = False
        self._task: asyncio.Task[None] | None = None
        self.consecutive_failures = 0
        self.last_error: str | None = None

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def poll(self, cancel: asyncio.Event | None = None) -> list[LoopRecord] | None:
        """Poll every known directory and merge; ``None`` if skipped or failed."""

        if self._in_flight:
            return None
        self._in_flight = True

        try:
            directories = self._engine.directories() or [self._default_directory]
            merged: dict[str, LoopRecord] = {}
            any_success = False
            errors: list[str] = []

            for directory in directories:
                try:
                    result = await self._runner.list_loops(
                        cwd=directory, timeout=self._timeout, cancel=cancel
                    )
                except OSError as exc:
                    errors.append(f"{directory}: {exc}")
                    continue

                if not result.ok:
                    errors.append(f"{directory}: {result.failure_detail()}")
                    continue
                any_success = True

                try:
                    drafts = parse_loops_json(result.stdout)
                except LoopParseError as exc:
                    logger.warning(
                        "Ignoring unparseable loop listing",
                        extra={"directory": directory, "error": str(exc)},
                    )
                    continue

                for draft in drafts:
                    # The listing carries no absolute paths; tag loops with the polled directory.
                    if not draft.directory:
                        draft.directory = directory
                    merged[draft.identity] = draft

            if not any_success:
                self._record_failure("all poll attempts failed", errors)
                return None

            self._engine.merge(merged.values())
            self.consecutive_failures = 0
            self.last_error = None
            return self._engine.loops()
        finally:
            self._in_flight = False

    def _record_failure(self, message: str, errors: list[str]) -> None:
        self.consecutive_failures += 1
        self.last_error = message
        logger.debug("Poll failed", extra={"errors": errors, "failures": self.consecutive_failures})

        if self.consecutive_failures < self._alert_threshold:
            return

        logger.warning(
            "Poll failures exceeded threshold",
            extra={
                "failure_count": self.consecutive_failures,
                "threshold": self._alert_threshold,
                "errors": errors,
            },
        )
        if self._store is not None:
            self._store.record_event(
                session_id="poll",
                event_type="poll_alert",
                body={
                    "failure_count": self.consecutive_failures,
                    "threshold": self._alert_threshold,
                    "errors": errors,
                },
                metadata={
                    "failure_count": self.consecutive_failures,
                    "threshold": self._alert_threshold,
                    "last_error": message,
                },
            )

    def start(self, interval: float) -> None:
        """Poll now and then every ``interval`` seconds; no-op if already running."""

        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(interval))

    async def _run(self, interval: float) -> None:
        while True:
            try:
                await self.poll()
            except Exception:
                logger.exception("Unexpected error while polling loops")
            await asyncio.sleep(interval)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


__all__ = ["PollScheduler"]
