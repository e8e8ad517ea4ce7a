"""Forward persisted poll alerts to monitoring-friendly output."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Iterable

from ralph_mcp.config import RalphSettings
from ralph_mcp.storage import ChromaEvent, ChromaStore, ChromaUnavailableError


def load_store(settings: RalphSettings) -> ChromaStore:
    """Construct a ChromaStore using the provided settings."""

    return ChromaStore(settings.chroma_persist_path)


def _normalize_events(events: Iterable[ChromaEvent], *, since: str | None = None) -> list[dict[str, object]]:
    items: list[dict[str, object]] = []
    for event in events:
        timestamp = event.timestamp.isoformat()
        if since and timestamp < since:
            continue
        items.append(
            {
                "event_id": event.id,
                "failure_count": event.metadata.get("failure_count"),
                "threshold": event.metadata.get("threshold"),
                "last_error": event.metadata.get("last_error"),
                "timestamp": timestamp,
            }
        )
    items.sort(key=lambda item: item["timestamp"])
    return items


def _default_event_formatter(item: dict[str, object]) -> str:
    return " | ".join(
        [
            f"failures={item['failure_count']}",
            f"threshold={item['threshold']}",
            f"error={item['last_error']}",
            f"timestamp={item['timestamp']}",
        ]
    )


def forward_alerts(args: argparse.Namespace, *, formatter=_default_event_formatter) -> int:
    settings = RalphSettings()
    try:
        store = load_store(settings)
        alerts = store.search_events(filters={"event_type": "poll_alert"})
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}", file=sys.stderr)
        return 1

    payload = _normalize_events(alerts, since=args.since)
    if args.limit is not None and args.limit > 0:
        payload = payload[-args.limit :]
    if args.format == "json":
        output_text = json.dumps(payload, indent=2)
    else:
        output_text = "\n".join(formatter(item) for item in payload)

    if args.output:
        Path(args.output).write_text(output_text, encoding="utf-8")
    else:
        print(output_text)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Forward ralph poll alert events to stdout or a file for monitoring integrations."
    )
    parser.add_argument(
        "--since",
        default=None,
        help="Only emit alerts at or after this ISO-8601 timestamp",
    )
    parser.add_argument(
        "--format",
        choices={"json", "text"},
        default="json",
        help="Output format (default: json)",
    )
    parser.add_argument("--output", help="Optional path to write the alert payload to")
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="If provided, emit only the latest N alerts after filtering",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    exit_code = forward_alerts(args)
    if exit_code:
        raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
