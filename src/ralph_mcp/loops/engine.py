"""Reconciliation of locally started and polled loops into one collection."""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import Callable, Iterable

from .identity import find_rekey_target, is_absolute_path
from .models import ChangeNotifier, LoopRecord, Provenance, TerminalSession

logger = logging.getLogger(__name__)


def _now_millis() -> int:
    return int(time.time() * 1000)


class LoopEngine:
    """Owns the canonical, ordered collection of tracked loops.

    Records are never dropped during a run; a loop that vanished from polling
    is kept with ``removed=True`` so references to its identity stay valid.
    Order reflects discovery and is never re-sorted.
    """

    def __init__(
        self,
        *,
        notifier: ChangeNotifier | None = None,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self._loops: list[LoopRecord] = []
        self._notifier = notifier or ChangeNotifier()
        self._clock = clock or _now_millis

    @property
    def notifier(self) -> ChangeNotifier:
        return self._notifier

    def loops(self, *, include_removed: bool = False) -> list[LoopRecord]:
        if include_removed:
            return list(self._loops)
        return [loop for loop in self._loops if not loop.removed]

    def get(self, identity: str) -> LoopRecord | None:
        for loop in self._loops:
            if loop.identity == identity:
                return loop
        return None

    def directories(self) -> list[str]:
        """Distinct known directories in collection order."""

        seen: dict[str, None] = {}
        for loop in self._loops:
            if loop.directory:
                seen.setdefault(loop.directory, None)
        return list(seen)

    def upsert_owned(
        self,
        *,
        identity: str,
        pid: int | None,
        directory: str,
        worktree: str | None = None,
        session: TerminalSession | None = None,
    ) -> LoopRecord:
        """Add or replace a loop started by this process.

        Polling may later fill in progress fields; the session handle and the
        provenance set here survive every merge.
        """

        record = LoopRecord(
            identity=identity,
            pid=pid,
            directory=directory,
            worktree=worktree,
            status="running",
            provenance=Provenance.LOCALLY_STARTED,
            session=session,
            removed=False,
            last_seen_at=self._clock(),
        )

        for index, existing in enumerate(self._loops):
            if existing.identity == identity:
                if existing.session is not None and existing.session is not session:
                    logger.warning(
                        "Replacing loop that already owned a session",
                        extra={"loop_id": identity},
                    )
                self._loops[index] = record
                break
        else:
            self._loops.append(record)

        logger.info(
            "Tracking locally started loop",
            extra={"loop_id": identity, "pid": pid, "directory": directory},
        )
        self._notifier.emit()
        return record

    def merge(self, candidates: Iterable[LoopRecord | None]) -> None:
        """Merge one poll result into the collection and notify once.

        Applying the same candidates twice leaves content and order unchanged.
        """

        now = self._clock()
        by_id: dict[str, LoopRecord] = {loop.identity: loop for loop in self._loops}
        renamed: dict[str, str] = {}
        rekeyed_directories: set[str | None] = set()
        seen: set[str] = set()

        for draft in candidates:
            if draft is None or not draft.identity:
                continue
            seen.add(draft.identity)
            existing = by_id.get(draft.identity)

            if existing is None and draft.directory not in rekeyed_directories:
                target = find_rekey_target(by_id.values(), draft)
                if target is not None:
                    existing = by_id.pop(target)
                    renamed[target] = draft.identity
                    rekeyed_directories.add(draft.directory)
                    logger.info(
                        "Rekeyed local loop to polled identity",
                        extra={"loop_id": target, "polled_id": draft.identity, "directory": draft.directory},
                    )

            if existing is None:
                by_id[draft.identity] = replace(
                    draft,
                    provenance=Provenance.DISCOVERED,
                    session=None,
                    removed=False,
                    last_seen_at=now,
                )
                continue

            by_id[draft.identity] = _merge_observed(existing, draft, now)

        for identity, loop in list(by_id.items()):
            if identity not in seen and not loop.locally_started and not loop.removed:
                by_id[identity] = replace(loop, removed=True)

        ordered: list[LoopRecord] = []
        placed: set[str] = set()
        for loop in self._loops:
            identity = renamed.get(loop.identity, loop.identity)
            if identity in by_id and identity not in placed:
                ordered.append(by_id[identity])
                placed.add(identity)
        for identity, loop in by_id.items():
            if identity not in placed:
                ordered.append(loop)
                placed.add(identity)

        self._loops = ordered
        self._notifier.emit()


def _merge_observed(existing: LoopRecord, draft: LoopRecord, now: int) -> LoopRecord:
    # Provenance and the session handle always come from the existing record.
    return replace(
        existing,
        identity=draft.identity,
        pid=draft.pid if draft.pid is not None else existing.pid,
        directory=draft.directory if is_absolute_path(draft.directory) else existing.directory,
        worktree=draft.worktree or existing.worktree,
        status=draft.status,
        iteration=draft.iteration,
        max_iterations=draft.max_iterations,
        hat=draft.hat,
        backend=draft.backend,
        elapsed_secs=draft.elapsed_secs,
        removed=False,
        last_seen_at=now,
    )


__all__ = ["LoopEngine"]
