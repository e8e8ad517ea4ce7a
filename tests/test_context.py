from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest

from ralph_mcp.config import RalphSettings
from ralph_mcp.context import LoopContext
from ralph_mcp.ralph import FakeRalphRunner, RalphExecutionResult
from ralph_mcp.storage import ChromaUnavailableError


class StubStore:
    def __init__(self, latest: str | None = None, *, broken: bool = False) -> None:
        self.latest = latest
        self.broken = broken
        self.focused: list[str] = []
        self.events: list[dict[str, Any]] = []

    def latest_focus(self) -> str | None:
        if self.broken:
            raise ChromaUnavailableError("chromadb missing")
        return self.latest

    def record_focus(self, loop_id: str) -> None:
        if self.broken:
            raise ChromaUnavailableError("chromadb missing")
        self.focused.append(loop_id)

    def record_event(self, *, session_id, event_type, body, metadata=None) -> None:
        self.events.append({"session_id": session_id, "event_type": event_type})


class StubSession:
    rows = 40

    def __init__(self) -> None:
        self.disposed = False

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
        return ["streaming"]

    def dispose(self) -> None:
        self.disposed = True


@pytest.fixture
def settings(monkeypatch: pytest.MonkeyPatch, tmp_path) -> RalphSettings:
    monkeypatch.setenv("RALPH_DEFAULT_DIRECTORY", str(tmp_path))
    monkeypatch.setenv("RALPH_POLL_INTERVAL", "60")
    monkeypatch.setenv("RALPH_VIEWPORT_ROWS", "20")
    return RalphSettings()


def _runner() -> FakeRalphRunner:
    listing = json.dumps([{"id": "loop-1"}, {"id": "loop-2"}, {"id": "loop-3"}])
    return FakeRalphRunner(
        handler=lambda args, cwd: RalphExecutionResult(args=args, returncode=0, stdout=listing, stderr="")
    )


def _context(settings: RalphSettings, store: StubStore | None, sessions: list[StubSession]) -> LoopContext:
    def factory(command, *, cwd, cols, rows):
        session = StubSession()
        sessions.append(session)
        return session

    return LoopContext(_runner(), settings, store=store, session_factory=factory)


def test_start_restores_persisted_focus(settings: RalphSettings) -> None:
    store = StubStore(latest="loop-2")
    context = _context(settings, store, [])

    async def scenario() -> None:
        await context.start()
        assert context.scheduler.running
        await context.stop()

    asyncio.run(scenario())

    assert context.restored_focus_id == "loop-2"
    assert context.tracker.current().identity == "loop-2"
    assert store.focused == []
    assert not context.scheduler.running


def test_unknown_persisted_focus_is_ignored(settings: RalphSettings) -> None:
    context = _context(settings, StubStore(latest="loop-gone"), [])

    async def scenario() -> None:
        await context.start()
        await context.stop()

    asyncio.run(scenario())

    assert context.restored_focus_id is None
    assert context.tracker.current().identity == "loop-1"


def test_focus_changes_are_persisted_once(settings: RalphSettings) -> None:
    store = StubStore()
    context = _context(settings, store, [])

    async def scenario() -> None:
        await context.start()
        context.tracker.cycle(1)
        await context.scheduler.poll()
        context.tracker.cycle(1)
        await context.stop()
        context.tracker.cycle(1)

    asyncio.run(scenario())

    assert store.focused == ["loop-2", "loop-3"]


def test_storage_failures_do_not_stop_tracking(settings: RalphSettings) -> None:
    context = _context(settings, StubStore(broken=True), [])

    async def scenario() -> None:
        await context.start()
        context.tracker.cycle(1)
        await context.stop()

    asyncio.run(scenario())

    assert context.tracker.current().identity == "loop-2"


def test_controller_uses_settings_and_reopens(settings: RalphSettings) -> None:
    sessions: list[StubSession] = []
    context = _context(settings, None, sessions)

    async def scenario() -> None:
        await context.start(restore_focus=False)
        controller = context.controller
        assert controller.viewport_lines() == ["streaming"]
        controller.close()
        assert context.controller is not controller
        await context.stop()

    asyncio.run(scenario())

    assert sessions[0].disposed
    assert len(sessions) == 2
    assert sessions[1].disposed
    assert context.runner.invocations[0][1] == str(settings.default_directory)
