from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from ralph_mcp.loops import LaunchError, LoopEngine, LoopLauncher, Provenance
from ralph_mcp.loops.launcher import build_run_arguments
from ralph_mcp.presets import StartLoopRequest
from ralph_mcp.ralph import FakeRalphRunner, RalphExecutionResult


class LaunchSession:
    rows = 40

    def __init__(self, command, cwd, pid: int | None = 4242) -> None:
        self.command = list(command)
        self.cwd = cwd
        self.pid = pid
        self.disposed = False

    async def wait_started(self) -> int | None:
        return self.pid

    def resize(self, cols: int, rows: int) -> None:
        self.rows = rows

    def write(self, data: str) -> None:
        pass

    def scroll_up(self, lines: int) -> None:
        pass

    def scroll_down(self, lines: int) -> None:
        pass

    def is_scrolled_up(self) -> bool:
        return False

    def viewport_lines(self) -> list[str]:
        return []

    def dispose(self) -> None:
        self.disposed = True


def _listing(*ids: str) -> RalphExecutionResult:
    return RalphExecutionResult(
        args=("loops", "list", "--json"),
        returncode=0,
        stdout=json.dumps([{"id": loop_id, "status": "running"} for loop_id in ids]),
        stderr="",
    )


def _launcher(
    runner: FakeRalphRunner, sessions: list[LaunchSession], on_spawn=None, pid: int | None = 4242
) -> tuple[LoopEngine, LoopLauncher]:
    engine = LoopEngine(clock=lambda: 0)

    def factory(command, *, cwd, cols, rows):
        session = LaunchSession(command, cwd, pid=pid)
        sessions.append(session)
        if on_spawn is not None:
            on_spawn(cwd)
        return session

    launcher = LoopLauncher(
        engine,
        runner,
        session_factory=factory,
        detect_timeout=0.2,
        detect_interval=0.01,
    )
    return engine, launcher


def test_build_run_arguments_full() -> None:
    request = StartLoopRequest(
        prompt="Add caching",
        directory="/srv/project",
        config="ralph.yml",
        max_iterations=5,
        backend="claude",
        custom_args=["--verbose"],
    )

    assert build_run_arguments(request) == [
        "run",
        "-p",
        "Add caching",
        "--config",
        "ralph.yml",
        "--max-iterations",
        "5",
        "--agent",
        "claude",
        "--",
        "--verbose",
    ]


def test_build_run_arguments_minimal() -> None:
    request = StartLoopRequest(prompt="Fix tests", directory="/srv/project")

    assert build_run_arguments(request) == ["run", "-p", "Fix tests"]


def test_start_detects_new_loop_id(tmp_path: Path) -> None:
    listings = iter([_listing("loop-old"), _listing("loop-old"), _listing("loop-old", "loop-new")])
    runner = FakeRalphRunner(handler=lambda args, cwd: next(listings, _listing("loop-old", "loop-new")))
    sessions: list[LaunchSession] = []
    engine, launcher = _launcher(runner, sessions)

    result = asyncio.run(launcher.start(StartLoopRequest(prompt="Add caching", directory=str(tmp_path))))

    assert result.detected
    assert result.loop_id == "loop-new"
    assert result.pid == 4242
    assert result.directory == str(tmp_path.resolve())
    assert sessions[0].command == [str(runner.executable), "run", "-p", "Add caching"]
    assert sessions[0].cwd == str(tmp_path.resolve())

    record = engine.get("loop-new")
    assert record is not None
    assert record.provenance is Provenance.LOCALLY_STARTED
    assert record.session is sessions[0]
    assert record.status == "running"


def test_start_detects_in_place_loop_via_marker(tmp_path: Path) -> None:
    runner = FakeRalphRunner(handler=lambda args, cwd: _listing())
    sessions: list[LaunchSession] = []

    def write_marker(cwd: str) -> None:
        marker = Path(cwd) / ".ralph" / "current-loop-id"
        marker.parent.mkdir(parents=True, exist_ok=True)
        marker.write_text("primary-20250101-120000", encoding="utf-8")

    engine, launcher = _launcher(runner, sessions, on_spawn=write_marker)

    result = asyncio.run(launcher.start(StartLoopRequest(prompt="Refactor", directory=str(tmp_path))))

    assert result.loop_id == "primary-20250101-120000"
    assert engine.get("primary-20250101-120000") is not None


def test_start_falls_back_to_pid_identity(tmp_path: Path) -> None:
    runner = FakeRalphRunner(handler=lambda args, cwd: _listing("loop-old"))
    sessions: list[LaunchSession] = []
    engine, launcher = _launcher(runner, sessions)

    result = asyncio.run(launcher.start(StartLoopRequest(prompt="Refactor", directory=str(tmp_path))))

    assert not result.detected
    assert result.loop_id == "pid-4242"
    assert [loop.identity for loop in engine.loops()] == ["pid-4242"]
    assert "run -p Refactor" in result.display_command


def test_start_rejects_missing_directory(tmp_path: Path) -> None:
    runner = FakeRalphRunner()
    sessions: list[LaunchSession] = []
    _, launcher = _launcher(runner, sessions)

    with pytest.raises(LaunchError):
        asyncio.run(launcher.start(StartLoopRequest(prompt="x", directory=str(tmp_path / "missing"))))

    assert sessions == []
    assert runner.invocations == []


def test_start_fails_when_process_does_not_spawn(tmp_path: Path) -> None:
    runner = FakeRalphRunner(handler=lambda args, cwd: _listing())
    sessions: list[LaunchSession] = []
    engine, launcher = _launcher(runner, sessions, pid=None)

    with pytest.raises(LaunchError, match="Failed to start"):
        asyncio.run(launcher.start(StartLoopRequest(prompt="Refactor", directory=str(tmp_path))))

    assert engine.loops() == []
    assert len(sessions) == 1 and sessions[0].disposed
