"""Chroma-backed event log for loop focus, actions and poll alerts."""

from __future__ import annotations

import json
import uuid
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Protocol

from .models import ActionRecord, FocusRecord

FOCUS_STREAM = "focus"
DEFAULT_COLLECTION = "ralph_loops"


class ChromaUnavailableError(RuntimeError):
    """Raised when the Chroma client cannot be constructed."""


class CollectionProtocol(Protocol):
    """The subset of a Chroma collection the store relies on."""

    def add(
        self,
        *,
        documents: Iterable[str],
        metadatas: Iterable[dict[str, Any]],
        ids: Iterable[str],
    ) -> None:
        ...

    def get(
        self,
        *,
        ids: Iterable[str] | None = None,
        where: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> dict[str, list[Any]]:
        ...


class ClientProtocol(Protocol):
    def get_or_create_collection(self, name: str) -> CollectionProtocol:
        ...


@dataclass(slots=True)
class ChromaEvent:
    """One stored event row."""

    id: str
    session_id: str
    event_type: str
    document: str
    metadata: dict[str, Any]
    timestamp: datetime

    @classmethod
    def from_row(
        cls,
        event_id: str,
        document: str,
        metadata: Mapping[str, Any],
        *,
        fallback_time: Callable[[], datetime],
    ) -> "ChromaEvent":
        stamp = metadata.get("timestamp")
        return cls(
            id=event_id,
            session_id=metadata.get("session_id", ""),
            event_type=metadata.get("event_type", ""),
            document=document,
            metadata=dict(metadata),
            timestamp=datetime.fromisoformat(stamp) if isinstance(stamp, str) else fallback_time(),
        )

    def mentions(self, needle: str) -> bool:
        """Case-insensitive substring match over the document and metadata values."""

        needle = needle.lower()
        if needle in self.document.lower():
            return True
        return any(needle in str(value).lower() for value in self.metadata.values())


class ChromaStore:
    """Append-only event log keyed by stream (``focus``, ``poll``, ``loop::<id>``).

    The Chroma client is created on first use so that constructing a store never
    fails; a missing ``chromadb`` package surfaces as ``ChromaUnavailableError``
    from the first read or write.
    """

    def __init__(
        self,
        path: Path,
        *,
        collection_name: str = DEFAULT_COLLECTION,
        client_factory: Callable[[], ClientProtocol] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._path = Path(path)
        self._collection_name = collection_name
        self._client_factory = client_factory or self._persistent_client
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._collection: CollectionProtocol | None = None
        self._sequences: Counter[str] = Counter()

    def _persistent_client(self) -> ClientProtocol:
        try:
            import chromadb
        except ImportError as exc:  # pragma: no cover - depends on environment
            raise ChromaUnavailableError(
                "chromadb package is not installed; install ralph-mcp[persistence]"
            ) from exc

        return chromadb.PersistentClient(path=str(self._path))

    def _events(self) -> CollectionProtocol:
        if self._collection is None:
            self._collection = self._client_factory().get_or_create_collection(self._collection_name)
        return self._collection

    def _query(self, where: dict[str, Any] | None, limit: int | None = None) -> list[ChromaEvent]:
        rows = self._events().get(where=where, limit=limit)
        events = [
            ChromaEvent.from_row(event_id, document, metadata, fallback_time=self._clock)
            for event_id, document, metadata in zip(
                rows.get("ids", []), rows.get("documents", []), rows.get("metadatas", [])
            )
        ]
        # Sequences restart with every process; timestamps order across runs.
        events.sort(key=lambda event: (event.timestamp, event.metadata.get("sequence", 0)))
        return events

    def ping(self) -> bool:
        """Verify that the underlying collection can be obtained."""

        self._events()
        return True

    def record_event(
        self,
        *,
        session_id: str,
        event_type: str,
        body: Any,
        metadata: dict[str, Any] | None = None,
    ) -> ChromaEvent:
        self._sequences[session_id] += 1
        timestamp = self._clock()
        document = body if isinstance(body, str) else json.dumps(body)
        row: dict[str, Any] = {
            "session_id": session_id,
            "event_type": event_type,
            "timestamp": timestamp.isoformat(),
            "sequence": self._sequences[session_id],
        }
        # Chroma rejects None metadata values.
        row.update({key: value for key, value in (metadata or {}).items() if value is not None})

        event = ChromaEvent(
            id=f"{session_id}:{uuid.uuid4().hex}",
            session_id=session_id,
            event_type=event_type,
            document=document,
            metadata=row,
            timestamp=timestamp,
        )
        self._events().add(documents=[document], metadatas=[row], ids=[event.id])
        return event

    def fetch_session_events(self, session_id: str, *, limit: int | None = None) -> list[ChromaEvent]:
        return self._query({"session_id": session_id}, limit)

    def search_events(
        self,
        query: str | None = None,
        *,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[ChromaEvent]:
        events = self._query(filters)
        if query:
            events = [event for event in events if event.mentions(query)]
        return events[:limit] if limit else events

    def record_focus(self, loop_id: str) -> FocusRecord:
        """Persist the identity that just gained focus."""

        event = self.record_event(
            session_id=FOCUS_STREAM,
            event_type="focus_change",
            body={"focused_id": loop_id},
            metadata={"loop_id": loop_id},
        )
        return FocusRecord(loop_id=loop_id, focused_at=event.timestamp)

    def focus_history(self, *, limit: int | None = None) -> list[FocusRecord]:
        history = [
            FocusRecord(loop_id=event.metadata["loop_id"], focused_at=event.timestamp)
            for event in self._query({"event_type": "focus_change"})
            if event.metadata.get("loop_id")
        ]
        return history[-limit:] if limit else history

    def latest_focus(self) -> str | None:
        """Most recently persisted focused identity, if any."""

        history = self.focus_history(limit=1)
        return history[0].loop_id if history else None

    def record_action(
        self,
        *,
        loop_id: str,
        action: str,
        ok: bool,
        command: Iterable[str],
        detail: str | None = None,
    ) -> ActionRecord:
        event = self.record_event(
            session_id=f"loop::{loop_id}",
            event_type="loop_action",
            body={
                "loop_id": loop_id,
                "action": action,
                "ok": ok,
                "command": list(command),
                "detail": detail,
            },
            metadata={"loop_id": loop_id, "action": action, "outcome": "ok" if ok else "failed"},
        )
        return ActionRecord(loop_id=loop_id, action=action, ok=ok, detail=detail, recorded_at=event.timestamp)

    def list_actions(self, loop_id: str | None = None) -> list[ActionRecord]:
        where: dict[str, Any] = {"event_type": "loop_action"}
        records: list[ActionRecord] = []
        for event in self._query(where):
            body = json.loads(event.document)
            if loop_id and body.get("loop_id") != loop_id:
                continue
            records.append(
                ActionRecord(
                    loop_id=body["loop_id"],
                    action=body.get("action", "unknown"),
                    ok=bool(body.get("ok")),
                    detail=body.get("detail"),
                    recorded_at=event.timestamp,
                )
            )
        return records


__all__ = ["ChromaEvent", "ChromaStore", "ChromaUnavailableError", "DEFAULT_COLLECTION", "FOCUS_STREAM"]
