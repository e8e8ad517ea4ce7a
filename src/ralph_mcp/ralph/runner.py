"""Async runner for the ralph CLI."""

from __future__ import annotations

import asyncio
import contextlib
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable

from .utils import sanitize_environment


class RalphRunnerError(RuntimeError):
    """Base class for ralph runner errors."""


class RalphNotFoundError(RalphRunnerError):
    """Raised when the ralph CLI executable cannot be located."""


@dataclass(slots=True)
class RalphExecutionResult:
    """Holds the outcome of a ralph CLI invocation."""

    args: tuple[str, ...]
    returncode: int | None
    stdout: str
    stderr: str
    timed_out: bool = False
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out and not self.cancelled

    def failure_detail(self) -> str:
        """Best available explanation for a failed invocation."""

        if self.cancelled:
            return "cancelled"
        if self.timed_out:
            return "timed out"
        return self.stderr.strip() or self.stdout.strip() or f"exit code {self.returncode}"


class RalphRunner:
    """Execute ralph CLI commands asynchronously."""

    def __init__(self, executable: Path | None = None) -> None:
        self._executable_path = self._resolve_executable(executable)

    @staticmethod
    def _resolve_executable(explicit: Path | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise RalphNotFoundError(f"ralph executable not found at {candidate}")

        binary = shutil.which("ralph")
        if binary is None:
            raise RalphNotFoundError("ralph not found in PATH")
        return Path(binary)

    @property
    def executable(self) -> Path:
        return self._executable_path

    def command(self, *args: str) -> list[str]:
        """Return the argv for running ralph with ``args``."""

        return [str(self._executable_path), *args]

    async def version(self) -> RalphExecutionResult:
        return await self._invoke("--version", timeout=2.0)

    async def list_loops(
        self,
        *,
        cwd: str | None = None,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> RalphExecutionResult:
        return await self._invoke("loops", "list", "--json", cwd=cwd, timeout=timeout, cancel=cancel)

    async def loops(
        self,
        *args: str,
        cwd: str | None = None,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> RalphExecutionResult:
        """Run a ``ralph loops`` subcommand such as ``stop`` or ``history``."""

        return await self._invoke("loops", *args, cwd=cwd, timeout=timeout, cancel=cancel)

    async def _invoke(
        self,
        *args: str,
        cwd: str | None = None,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> RalphExecutionResult:
        cmd = self.command(*args)
        if cancel is not None and cancel.is_set():
            return RalphExecutionResult(
                args=tuple(cmd), returncode=None, stdout="", stderr="", cancelled=True
            )

        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=sanitize_environment(),
        )
        communicate = asyncio.ensure_future(process.communicate())
        waiters: set[asyncio.Future] = {communicate}
        cancel_waiter = asyncio.ensure_future(cancel.wait()) if cancel is not None else None
        if cancel_waiter is not None:
            waiters.add(cancel_waiter)

        try:
            done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            _kill(process)
            communicate.cancel()
            raise
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()

        interrupted = communicate not in done
        if interrupted:
            _kill(process)
        stdout_bytes, stderr_bytes = await communicate
        cancelled = interrupted and cancel is not None and cancel.is_set()
        return RalphExecutionResult(
            args=tuple(cmd),
            returncode=process.returncode,
            stdout=stdout_bytes.decode("utf-8", errors="replace"),
            stderr=stderr_bytes.decode("utf-8", errors="replace"),
            timed_out=interrupted and not cancelled,
            cancelled=cancelled,
        )


def _kill(process: asyncio.subprocess.Process) -> None:
    with contextlib.suppress(ProcessLookupError):
        process.kill()


class FakeRalphRunner(RalphRunner):
    """Test double that simulates ralph CLI responses.

    Responses are served in order; ``handler`` (if given) is consulted first and
    receives the argument tuple and working directory of each invocation.
    """

    def __init__(  # type: ignore[override]
        self,
        responses: Iterable[RalphExecutionResult] | None = None,
        *,
        handler: Callable[[tuple[str, ...], str | None], RalphExecutionResult | None] | None = None,
    ) -> None:
        self._responses = list(responses or [])
        self._handler = handler
        self._invocations: list[tuple[tuple[str, ...], str | None]] = []
        self._executable_path = Path("/tmp/fake-ralph")

    async def _invoke(  # type: ignore[override]
        self,
        *args: str,
        cwd: str | None = None,
        timeout: float | None = None,
        cancel: asyncio.Event | None = None,
    ) -> RalphExecutionResult:
        self._invocations.append((tuple(args), cwd))
        if cancel is not None and cancel.is_set():
            return RalphExecutionResult(args=tuple(args), returncode=None, stdout="", stderr="", cancelled=True)
        if self._handler is not None:
            handled = self._handler(tuple(args), cwd)
            if handled is not None:
                return handled
        if self._responses:
            return self._responses.pop(0)
        return RalphExecutionResult(args=tuple(args), returncode=0, stdout="", stderr="")

    @property
    def invocations(self) -> list[tuple[tuple[str, ...], str | None]]:
        return self._invocations
