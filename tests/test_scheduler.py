from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from ralph_mcp.loops import LoopEngine, PollScheduler
from ralph_mcp.ralph import FakeRalphRunner, RalphExecutionResult


def _listing(*entries: dict[str, Any]) -> RalphExecutionResult:
    return RalphExecutionResult(
        args=("loops", "list", "--json"),
        returncode=0,
        stdout=json.dumps(list(entries)),
        stderr="",
    )


def _failure(detail: str = "boom") -> RalphExecutionResult:
    return RalphExecutionResult(args=("loops", "list", "--json"), returncode=1, stdout="", stderr=detail)


class StubStore:
    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []

    def record_event(self, *, session_id, event_type, body, metadata=None):
        self.events.append(
            {"session_id": session_id, "event_type": event_type, "body": body, "metadata": metadata}
        )


class GatedRunner:
    """Runner whose listing blocks until ``gate`` is set."""

    def __init__(self) -> None:
        self.gate = asyncio.Event()
        self.calls = 0

    async def list_loops(self, *, cwd=None, timeout=None, cancel=None):
        self.calls += 1
        await self.gate.wait()
        return _listing({"id": "loop-1"})


def test_poll_uses_default_directory_when_nothing_is_known() -> None:
    engine = LoopEngine(clock=lambda: 0)
    runner = FakeRalphRunner([_listing({"id": "loop-1", "status": "running"})])
    scheduler = PollScheduler(engine, runner, default_directory="/srv/project")

    loops = asyncio.run(scheduler.poll())

    assert runner.invocations == [(("loops", "list", "--json"), "/srv/project")]
    assert loops is not None
    assert [loop.identity for loop in loops] == ["loop-1"]
    assert loops[0].directory == "/srv/project"


def test_poll_queries_each_known_directory() -> None:
    engine = LoopEngine(clock=lambda: 0)
    engine.upsert_owned(identity="loop-a", pid=1, directory="/srv/a")
    engine.upsert_owned(identity="loop-b", pid=2, directory="/srv/b")

    def handler(args, cwd):
        if cwd == "/srv/a":
            return _listing({"id": "loop-a", "status": "running", "iteration": 2})
        return _listing({"id": "loop-c", "status": "queued"})

    runner = FakeRalphRunner(handler=handler)
    scheduler = PollScheduler(engine, runner, default_directory="/srv/default")

    asyncio.run(scheduler.poll())

    assert [cwd for _, cwd in runner.invocations] == ["/srv/a", "/srv/b"]
    assert [loop.identity for loop in engine.loops()] == ["loop-a", "loop-b", "loop-c"]
    loop_c = engine.get("loop-c")
    assert loop_c is not None and loop_c.directory == "/srv/b"
    assert engine.get("loop-a").iteration == 2


def test_partial_failure_still_merges() -> None:
    engine = LoopEngine(clock=lambda: 0)
    engine.upsert_owned(identity="loop-a", pid=1, directory="/srv/a")
    engine.upsert_owned(identity="loop-b", pid=2, directory="/srv/b")

    def handler(args, cwd):
        if cwd == "/srv/a":
            return _failure("not a ralph project")
        return _listing({"id": "loop-d"})

    scheduler = PollScheduler(engine, FakeRalphRunner(handler=handler), default_directory="/srv")

    loops = asyncio.run(scheduler.poll())

    assert loops is not None
    assert scheduler.consecutive_failures == 0
    assert engine.get("loop-d") is not None


def test_unparseable_listing_is_skipped(caplog) -> None:
    engine = LoopEngine(clock=lambda: 0)
    bad = RalphExecutionResult(args=(), returncode=0, stdout="not json", stderr="")
    scheduler = PollScheduler(engine, FakeRalphRunner([bad]), default_directory="/srv")

    with caplog.at_level(logging.WARNING, logger="ralph_mcp.loops.scheduler"):
        loops = asyncio.run(scheduler.poll())

    assert loops == []
    assert scheduler.consecutive_failures == 0
    assert "Ignoring unparseable loop listing" in caplog.text


def test_total_failure_records_alert_at_threshold(caplog) -> None:
    engine = LoopEngine(clock=lambda: 0)
    store = StubStore()
    runner = FakeRalphRunner([_failure("boom"), _failure("boom"), _failure("boom")])
    scheduler = PollScheduler(
        engine, runner, default_directory="/srv", alert_threshold=3, store=store
    )

    async def scenario() -> list:
        return [await scheduler.poll() for _ in range(3)]

    with caplog.at_level(logging.WARNING, logger="ralph_mcp.loops.scheduler"):
        results = asyncio.run(scenario())

    assert results == [None, None, None]
    assert scheduler.consecutive_failures == 3
    assert scheduler.last_error == "all poll attempts failed"
    assert len(store.events) == 1
    event = store.events[0]
    assert event["event_type"] == "poll_alert"
    assert event["metadata"]["failure_count"] == 3
    assert event["body"]["errors"] == ["/srv: boom"]
    assert "Poll failures exceeded threshold" in caplog.text


def test_success_resets_failure_counters() -> None:
    engine = LoopEngine(clock=lambda: 0)
    runner = FakeRalphRunner([_failure(), _listing({"id": "loop-1"})])
    scheduler = PollScheduler(engine, runner, default_directory="/srv")

    async def scenario() -> None:
        await scheduler.poll()
        assert scheduler.consecutive_failures == 1
        await scheduler.poll()

    asyncio.run(scenario())

    assert scheduler.consecutive_failures == 0
    assert scheduler.last_error is None


def test_spawn_error_counts_as_failure() -> None:
    class BrokenRunner:
        async def list_loops(self, *, cwd=None, timeout=None, cancel=None):
            raise FileNotFoundError("ralph vanished")

    scheduler = PollScheduler(LoopEngine(), BrokenRunner(), default_directory="/srv")

    assert asyncio.run(scheduler.poll()) is None
    assert scheduler.consecutive_failures == 1
    assert not scheduler.in_flight


def test_overlapping_poll_is_skipped() -> None:
    engine = LoopEngine(clock=lambda: 0)
    runner = GatedRunner()
    scheduler = PollScheduler(engine, runner, default_directory="/srv")

    async def scenario():
        first = asyncio.ensure_future(scheduler.poll())
        await asyncio.sleep(0)
        assert scheduler.in_flight
        second = await scheduler.poll()
        runner.gate.set()
        return await first, second

    first, second = asyncio.run(scenario())

    assert second is None
    assert first is not None and [loop.identity for loop in first] == ["loop-1"]
    assert runner.calls == 1
    assert not scheduler.in_flight


def test_start_and_stop_timer() -> None:
    engine = LoopEngine(clock=lambda: 0)
    runner = FakeRalphRunner(handler=lambda args, cwd: _listing({"id": "loop-1"}))
    scheduler = PollScheduler(engine, runner, default_directory="/srv")

    async def scenario() -> None:
        scheduler.start(0.01)
        assert scheduler.running
        await asyncio.sleep(0.05)
        await scheduler.stop()

    asyncio.run(scenario())

    assert not scheduler.running
    assert len(runner.invocations) >= 2
    assert engine.get("loop-1") is not None


def test_non_finite_numbers_do_not_abort_the_poll() -> None:
    engine = LoopEngine(clock=lambda: 0)
    engine.upsert_owned(identity="loop-a", pid=1, directory="/d1")
    engine.upsert_owned(identity="loop-b", pid=2, directory="/d2")

    def handler(args, cwd):
        if cwd == "/d1":
            return _listing({"id": "loop-a", "iteration": 4})
        return RalphExecutionResult(
            args=args, returncode=0, stdout='[{"id": "loop-c", "pid": NaN, "iteration": 1e400}]', stderr=""
        )

    scheduler = PollScheduler(engine, FakeRalphRunner(handler=handler), default_directory="/srv")

    loops = asyncio.run(scheduler.poll())

    assert loops is not None
    assert scheduler.consecutive_failures == 0
    assert engine.get("loop-a").iteration == 4
    loop_c = engine.get("loop-c")
    assert loop_c is not None
    assert loop_c.pid is None
    assert loop_c.iteration == 0


def test_cancelled_poll_releases_in_flight_guard() -> None:
    engine = LoopEngine(clock=lambda: 0)
    runner = GatedRunner()
    scheduler = PollScheduler(engine, runner, default_directory="/srv")

    async def scenario():
        task = asyncio.ensure_future(scheduler.poll())
        await asyncio.sleep(0)
        assert scheduler.in_flight
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        assert task.cancelled()
        assert not scheduler.in_flight

        runner.gate.set()
        return await scheduler.poll()

    loops = asyncio.run(scenario())

    assert runner.calls == 2
    assert loops is not None and [loop.identity for loop in loops] == ["loop-1"]
    assert not scheduler.in_flight
