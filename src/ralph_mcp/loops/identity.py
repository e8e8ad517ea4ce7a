"""Map raw ``ralph loops list`` entries onto loop records.

ralph's JSON schema has changed across releases, so every attribute is looked
up under each of its historical field names and mistyped values fall back to a
neutral default instead of rejecting the entry.
"""

from __future__ import annotations

import json
import logging
import math
from pathlib import Path
from typing import Any, Iterable, Mapping

from .errors import LoopParseError
from .models import LoopRecord, Provenance

logger = logging.getLogger(__name__)

# Identity `ralph loops list` reports for the in-place loop of every project.
PRIMARY_PLACEHOLDER = "(primary)"
# Locally assigned identities of in-place loops, read from the marker file.
PRIMARY_ID_PREFIX = "primary-"
MARKER_PATH = Path(".ralph") / "current-loop-id"

_DIRECTORY_FIELDS = ("directory", "path", "workspace", "worktree_path")


def is_absolute_path(value: Any) -> bool:
    """True for genuine absolute paths, false for names and labels like ``(in-place)``."""

    return isinstance(value, str) and value.startswith("/")


def _first_str(raw: Mapping[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = raw.get(key)
        if isinstance(value, str):
            return value
    return None


def _first_number(raw: Mapping[str, Any], *keys: str) -> float | None:
    for key in keys:
        value = raw.get(key)
        if isinstance(value, bool):
            continue
        if isinstance(value, int):
            return value
        # JSON allows 1e400 (inf) and Python also decodes NaN.
        if isinstance(value, float) and math.isfinite(value):
            return value
    return None


def resolve_record(raw: Any, *, now: int = 0) -> LoopRecord | None:
    """Return a discovered-loop draft for ``raw`` or ``None`` without an identity."""

    if not isinstance(raw, Mapping):
        return None

    identity = _first_str(raw, "loop_id", "id")
    if not identity:
        return None

    directory = next(
        (raw[key] for key in _DIRECTORY_FIELDS if is_absolute_path(raw.get(key))),
        None,
    )
    pid = _first_number(raw, "pid")

    return LoopRecord(
        identity=identity,
        pid=int(pid) if pid is not None else None,
        directory=directory,
        worktree=_first_str(raw, "worktree"),
        status=_first_str(raw, "state", "status") or "unknown",
        iteration=max(0, int(_first_number(raw, "iteration") or 0)),
        max_iterations=max(0, int(_first_number(raw, "max_iterations", "maxIterations") or 0)),
        hat=_first_str(raw, "hat"),
        backend=_first_str(raw, "backend"),
        elapsed_secs=max(0, _first_number(raw, "elapsed_secs", "elapsedSecs") or 0),
        provenance=Provenance.DISCOVERED,
        removed=False,
        last_seen_at=now,
    )


def parse_loops_json(stdout: str, *, now: int = 0) -> list[LoopRecord]:
    """Parse ``ralph loops list --json`` output into drafts.

    Raises ``LoopParseError`` when the output is not a JSON array. Entries
    without a usable identity are dropped.
    """

    text = stdout.strip()
    if not text:
        return []

    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise LoopParseError("Failed to parse JSON from `ralph loops list --json`") from exc

    if not isinstance(data, list):
        raise LoopParseError("Unexpected JSON shape from `ralph loops list --json` (expected array)")

    drafts = [resolve_record(item, now=now) for item in data]
    return [draft for draft in drafts if draft is not None]


def find_rekey_target(records: Iterable[LoopRecord], draft: LoopRecord) -> str | None:
    """Return the identity of the local record that ``draft`` really describes.

    ``ralph loops list`` reports an in-place loop as ``(primary)`` while a loop
    started here is keyed by the ``primary-...`` id from the marker file. A
    placeholder draft matches a locally started ``primary-`` record in the same
    directory, unless some record already carries the placeholder identity.
    """

    if draft.identity != PRIMARY_PLACEHOLDER:
        return None

    candidates = list(records)
    if any(record.identity == PRIMARY_PLACEHOLDER for record in candidates):
        return None

    for record in candidates:
        if (
            record.locally_started
            and record.identity.startswith(PRIMARY_ID_PREFIX)
            and record.directory == draft.directory
        ):
            return record.identity
    return None


def read_marker(directory: str | Path | None) -> str | None:
    """Read the current in-place loop id for ``directory``; ``None`` if not written yet."""

    if not directory:
        return None
    try:
        value = (Path(directory) / MARKER_PATH).read_text(encoding="utf-8").strip()
    except OSError:
        return None
    return value or None


def resolve_cli_identity(record: LoopRecord) -> str | None:
    """Return an identity the ralph CLI accepts as a LOOP_ID argument.

    The placeholder is not a valid argument for ``history``, ``diff`` or
    ``logs``; resolve it through the marker file of the loop's directory.
    """

    if record.identity != PRIMARY_PLACEHOLDER:
        return record.identity
    resolved = read_marker(record.directory or record.worktree)
    if resolved is None:
        logger.debug(
            "Primary loop id unresolved",
            extra={"directory": record.directory, "worktree": record.worktree},
        )
    return resolved


__all__ = [
    "MARKER_PATH",
    "PRIMARY_ID_PREFIX",
    "PRIMARY_PLACEHOLDER",
    "find_rekey_target",
    "is_absolute_path",
    "parse_loops_json",
    "read_marker",
    "resolve_cli_identity",
    "resolve_record",
]
