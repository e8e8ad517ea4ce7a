"""Start ralph loops and register them as locally owned."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path

from ..presets import StartLoopRequest
from ..ralph import RalphRunner
from ..ralph.utils import display_command
from .attachment import SessionFactory
from .engine import LoopEngine
from .errors import LaunchError, LoopParseError
from .identity import parse_loops_json, read_marker

logger = logging.getLogger(__name__)

LAUNCH_COLUMNS = 120
LAUNCH_ROWS = 40


@dataclass(slots=True)
class LaunchResult:
    loop_id: str
    pid: int | None
    directory: str
    command: tuple[str, ...]
    detected: bool

    @property
    def display_command(self) -> str:
        return display_command(self.command)


def build_run_arguments(request: StartLoopRequest) -> list[str]:
    """Arguments for ``ralph run``; the TUI is on by default so no flag is needed."""

    args = ["run", "-p", request.prompt]
    if request.config:
        args.extend(["--config", request.config])
    if request.max_iterations:
        args.extend(["--max-iterations", str(request.max_iterations)])
    if request.backend:
        args.extend(["--agent", request.backend])
    if request.custom_args:
        args.extend(["--", *request.custom_args])
    return args


class LoopLauncher:
    """Spawn ``ralph run`` in an owned session and track the resulting loop."""

    def __init__(
        self,
        engine: LoopEngine,
        runner: RalphRunner,
        *,
        session_factory: SessionFactory,
        detect_timeout: float = 5.0,
        detect_interval: float = 0.4,
        list_timeout: float = 5.0,
    ) -> None:
        self._engine = engine
        self._runner = runner
        self._session_factory = session_factory
        self._detect_timeout = detect_timeout
        self._detect_interval = detect_interval
        self._list_timeout = list_timeout

    async def _loop_ids(self, directory: str, cancel: asyncio.Event | None = None) -> list[str] | None:
        result = await self._runner.list_loops(cwd=directory, timeout=self._list_timeout, cancel=cancel)
        if not result.ok:
            return None
        try:
            return [draft.identity for draft in parse_loops_json(result.stdout)]
        except LoopParseError:
            return None

    async def _wait_for_new_loop_id(
        self,
        directory: str,
        before_ids: set[str],
        before_marker: str | None,
        cancel: asyncio.Event | None,
    ) -> str | None:
        # `loops list` only reports worktree loops; an in-place loop started by
        # `ralph run` announces itself through the marker file instead.
        deadline = time.monotonic() + self._detect_timeout
        while time.monotonic() < deadline:
            if cancel is not None and cancel.is_set():
                return None
            after_ids = await self._loop_ids(directory, cancel)
            if after_ids:
                new_ids = [loop_id for loop_id in after_ids if loop_id not in before_ids]
                if new_ids:
                    return new_ids[0]

            current = read_marker(directory)
            if current and current != before_marker:
                return current

            await asyncio.sleep(self._detect_interval)
        return None

    async def start(self, request: StartLoopRequest, cancel: asyncio.Event | None = None) -> LaunchResult:
        directory = Path(request.directory).expanduser()
        if not directory.is_dir():
            raise LaunchError(f"Directory not found or not accessible: {request.directory}")
        cwd = str(directory.resolve())

        before_ids = set(await self._loop_ids(cwd, cancel) or [])
        before_marker = read_marker(cwd)

        command = self._runner.command(*build_run_arguments(request))
        session = self._session_factory(command, cwd=cwd, cols=LAUNCH_COLUMNS, rows=LAUNCH_ROWS)
        wait_started = getattr(session, "wait_started", None)
        pid = await wait_started() if wait_started is not None else getattr(session, "pid", None)
        if pid is None:
            session.dispose()
            raise LaunchError(f"Failed to start `{display_command(command)}` in {cwd}")

        loop_id = await self._wait_for_new_loop_id(cwd, before_ids, before_marker, cancel)
        identity = loop_id or f"pid-{pid}"

        self._engine.upsert_owned(identity=identity, pid=pid, directory=cwd, session=session)
        logger.info(
            "Started ralph loop",
            extra={"loop_id": identity, "pid": pid, "directory": cwd, "detected": loop_id is not None},
        )
        return LaunchResult(
            loop_id=identity,
            pid=pid,
            directory=cwd,
            command=tuple(command),
            detected=loop_id is not None,
        )


__all__ = ["LaunchResult", "LoopLauncher", "build_run_arguments"]
