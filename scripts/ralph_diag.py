"""Ralph MCP diagnostics CLI."""

from __future__ import annotations

import argparse
import json

from ralph_mcp.config import RalphSettings
from ralph_mcp.storage import ChromaStore, ChromaUnavailableError


def load_store(settings: RalphSettings) -> ChromaStore:
    try:
        return ChromaStore(settings.chroma_persist_path)
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)


def cmd_focus(args: argparse.Namespace) -> None:
    settings = RalphSettings()
    store = load_store(settings)
    try:
        history = store.focus_history(limit=args.limit)
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)
    if args.json:
        payload = [
            {"loop_id": record.loop_id, "focused_at": record.focused_at.isoformat()}
            for record in history
        ]
        print(json.dumps(payload, indent=2))
    else:
        for record in history:
            print(f"{record.focused_at.isoformat()} {record.loop_id}")


def cmd_actions(args: argparse.Namespace) -> None:
    settings = RalphSettings()
    store = load_store(settings)
    try:
        actions = store.list_actions(loop_id=args.loop_id)
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)
    payload = [
        {
            "loop_id": record.loop_id,
            "action": record.action,
            "ok": record.ok,
            "detail": record.detail,
            "recorded_at": record.recorded_at.isoformat(),
        }
        for record in actions
    ]
    print(json.dumps(payload, indent=2))


def cmd_metrics(args: argparse.Namespace) -> None:
    settings = RalphSettings()
    store = load_store(settings)
    try:
        actions = store.list_actions()
        focus = store.focus_history()
        alerts = store.search_events(filters={"event_type": "poll_alert"})
        starts = store.search_events(filters={"event_type": "loop_started"})
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)

    action_counts: dict[str, int] = {}
    outcome_counts: dict[str, int] = {"ok": 0, "failed": 0}
    failures_by_loop: dict[str, int] = {}
    for record in actions:
        action_counts[record.action] = action_counts.get(record.action, 0) + 1
        outcome_counts["ok" if record.ok else "failed"] += 1
        if not record.ok:
            failures_by_loop[record.loop_id] = failures_by_loop.get(record.loop_id, 0) + 1

    metrics = {
        "loops_started": len(starts),
        "focus_changes": len(focus),
        "last_focused": focus[-1].loop_id if focus else None,
        "actions_total": len(actions),
        "action_counts": action_counts,
        "outcome_counts": outcome_counts,
        "failed_actions_by_loop": failures_by_loop,
        "poll_alerts": len(alerts),
        "poll_alert_threshold": settings.poll_alert_threshold,
    }

    print(json.dumps(metrics, indent=2))


def cmd_alerts(args: argparse.Namespace) -> None:
    settings = RalphSettings()
    store = load_store(settings)
    try:
        alerts = store.search_events(filters={"event_type": "poll_alert"})
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)

    alerts.sort(key=lambda event: event.timestamp)
    if args.limit is not None and args.limit > 0:
        alerts = alerts[-args.limit :]

    payload = [
        {
            "event_id": getattr(event, "id", None),
            "failure_count": event.metadata.get("failure_count"),
            "threshold": event.metadata.get("threshold"),
            "last_error": event.metadata.get("last_error"),
            "timestamp": event.timestamp.isoformat(),
        }
        for event in alerts
    ]
    print(json.dumps(payload, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Ralph MCP diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_focus = sub.add_parser("focus", help="List persisted focus changes")
    p_focus.add_argument("--json", action="store_true", help="Output JSON")
    p_focus.add_argument("--limit", type=int, default=None, help="Show only the latest N changes")
    p_focus.set_defaults(func=cmd_focus)

    p_actions = sub.add_parser("actions", help="List stop/merge/discard/retry outcomes")
    p_actions.add_argument("--loop-id")
    p_actions.set_defaults(func=cmd_actions)

    p_metrics = sub.add_parser("metrics", help="Show action, focus and alert counts")
    p_metrics.set_defaults(func=cmd_metrics)

    p_alerts = sub.add_parser(
        "alerts",
        help="List poll alert events (consecutive failure threshold breaches)",
    )
    p_alerts.add_argument(
        "--limit",
        type=int,
        default=None,
        help="If provided, show only the latest N alerts",
    )
    p_alerts.set_defaults(func=cmd_alerts)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
