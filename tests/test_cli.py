from __future__ import annotations

import argparse
import importlib.util
import json
from datetime import datetime, timezone
from pathlib import Path
from types import SimpleNamespace

import pytest

from ralph_mcp.storage import ActionRecord, ChromaStore, ChromaUnavailableError, FocusRecord


def _load_diag():
    module_path = Path(__file__).resolve().parents[1] / "scripts" / "ralph_diag.py"
    spec = importlib.util.spec_from_file_location("ralph_diag_test_module", module_path)
    assert spec and spec.loader
    diag = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(diag)
    return diag


def _timestamp(minute: int) -> datetime:
    return datetime(2025, 1, 1, 12, minute, tzinfo=timezone.utc)


class StubStore:
    def focus_history(self, *, limit=None):
        records = [FocusRecord("loop-1", _timestamp(0)), FocusRecord("loop-2", _timestamp(1))]
        return records[-limit:] if limit else records

    def list_actions(self, loop_id=None):
        actions = [
            ActionRecord("loop-1", "stop", True, None, _timestamp(2)),
            ActionRecord("loop-2", "merge", False, "conflict", _timestamp(3)),
            ActionRecord("loop-2", "merge", True, None, _timestamp(4)),
        ]
        return [action for action in actions if loop_id is None or action.loop_id == loop_id]

    def search_events(self, filters=None):
        if filters == {"event_type": "poll_alert"}:
            return [
                SimpleNamespace(
                    id="alert-2",
                    metadata={"failure_count": 4, "threshold": 3, "last_error": "all poll attempts failed"},
                    timestamp=_timestamp(6),
                ),
                SimpleNamespace(
                    id="alert-1",
                    metadata={"failure_count": 3, "threshold": 3, "last_error": "all poll attempts failed"},
                    timestamp=_timestamp(5),
                ),
            ]
        if filters == {"event_type": "loop_started"}:
            return [SimpleNamespace(id="start-1", metadata={}, timestamp=_timestamp(0))]
        return []


def test_diagnostics_cli_handles_missing_chroma(monkeypatch, tmp_path: Path, capsys) -> None:
    diag = _load_diag()

    def unavailable():
        raise ChromaUnavailableError("chromadb package is not installed")

    monkeypatch.setattr(diag, "load_store", lambda _settings: ChromaStore(tmp_path, client_factory=unavailable))

    with pytest.raises(SystemExit) as excinfo:
        diag.main(["focus"])

    assert excinfo.value.code == 1
    assert "Chroma unavailable" in capsys.readouterr().out


def test_metrics_reports_action_counts(monkeypatch, capsys) -> None:
    diag = _load_diag()
    monkeypatch.setattr(diag, "load_store", lambda _settings: StubStore())

    diag.cmd_metrics(argparse.Namespace())

    payload = json.loads(capsys.readouterr().out)
    assert payload["loops_started"] == 1
    assert payload["focus_changes"] == 2
    assert payload["last_focused"] == "loop-2"
    assert payload["actions_total"] == 3
    assert payload["action_counts"] == {"stop": 1, "merge": 2}
    assert payload["outcome_counts"] == {"ok": 2, "failed": 1}
    assert payload["failed_actions_by_loop"] == {"loop-2": 1}
    assert payload["poll_alerts"] == 2
    assert payload["poll_alert_threshold"] == diag.RalphSettings().poll_alert_threshold


def test_focus_text_output(monkeypatch, capsys) -> None:
    diag = _load_diag()
    monkeypatch.setattr(diag, "load_store", lambda _settings: StubStore())

    diag.main(["focus", "--limit", "1"])

    lines = capsys.readouterr().out.strip().splitlines()
    assert lines == [f"{_timestamp(1).isoformat()} loop-2"]


def test_actions_filter_by_loop(monkeypatch, capsys) -> None:
    diag = _load_diag()
    monkeypatch.setattr(diag, "load_store", lambda _settings: StubStore())

    diag.main(["actions", "--loop-id", "loop-2"])

    payload = json.loads(capsys.readouterr().out)
    assert [item["ok"] for item in payload] == [False, True]
    assert payload[0]["detail"] == "conflict"


def test_alerts_are_sorted_and_limited(monkeypatch, capsys) -> None:
    diag = _load_diag()
    monkeypatch.setattr(diag, "load_store", lambda _settings: StubStore())

    diag.main(["alerts", "--limit", "1"])

    payload = json.loads(capsys.readouterr().out)
    assert [item["event_id"] for item in payload] == ["alert-2"]
    assert payload[0]["failure_count"] == 4


def test_no_subcommand_prints_help(capsys) -> None:
    diag = _load_diag()

    diag.main([])

    assert "Ralph MCP diagnostics" in capsys.readouterr().out
