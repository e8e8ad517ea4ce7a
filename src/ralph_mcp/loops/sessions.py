"""Pseudo-terminal sessions.

``ProcessSession`` runs a command on a pty through pexpect and feeds its output
into a ``pyte`` screen, so full-screen programs such as the ``ralph run`` TUI
render the way they would in a terminal. It implements the ``TerminalSession``
protocol used by the attachment controller, both for loops started by the
launcher and for ``ralph loops logs --follow`` sessions.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, Sequence

import pexpect
import pyte

from ..ralph.utils import sanitize_environment

logger = logging.getLogger(__name__)

READ_CHUNK = 4096


class ProcessSession:
    """A child process attached to a virtual terminal with scrollback.

    Must be created inside a running event loop; the process is spawned in a
    background task and ``wait_started`` returns its pid. Lines that scroll
    off the top of the screen are kept in the screen history (``scrollback``
    lines) and can be scrolled back into view.
    """

    def __init__(
        self,
        command: Sequence[str],
        *,
        cwd: str | Path | None = None,
        cols: int = 120,
        rows: int = 40,
        scrollback: int = 5000,
        on_output: Callable[[], None] | None = None,
    ) -> None:
        self.command = tuple(command)
        self.cwd = str(cwd) if cwd is not None else None
        self.cols = cols
        self.rows = rows
        self._screen = pyte.HistoryScreen(cols, rows, history=scrollback)
        self._screen.set_mode(pyte.modes.LNM)
        self._stream = pyte.Stream(self._screen)
        # Status lines written by the session itself, shown below the screen.
        self._notices: list[str] = []
        self._scroll_offset = 0
        self._on_output = on_output
        self._child: pexpect.spawn | None = None
        self._reader_fd: int | None = None
        self._started = asyncio.Event()
        self._disposed = False
        self.returncode: int | None = None
        self._loop = asyncio.get_running_loop()
        self._task = self._loop.create_task(self._run())

    @property
    def pid(self) -> int | None:
        return self._child.pid if self._child is not None else None

    @property
    def exited(self) -> bool:
        return self._task.done()

    @property
    def disposed(self) -> bool:
        return self._disposed

    async def wait_started(self) -> int | None:
        await self._started.wait()
        return self.pid

    async def _run(self) -> None:
        try:
            self._child = pexpect.spawn(
                self.command[0],
                list(self.command[1:]),
                cwd=self.cwd,
                env=sanitize_environment({"TERM": "xterm-256color"}),
                encoding="utf-8",
                codec_errors="replace",
                echo=False,
                dimensions=(self.rows, self.cols),
            )
        except (pexpect.ExceptionPexpect, OSError) as exc:
            logger.warning("Failed to start session", extra={"command": list(self.command), "error": str(exc)})
            self._notice(f"[error] failed to start {self.command[0]}: {exc}")
            return
        finally:
            self._started.set()

        eof: asyncio.Future[None] = self._loop.create_future()
        self._reader_fd = self._child.child_fd
        self._loop.add_reader(self._reader_fd, self._drain, eof)
        try:
            await eof
        finally:
            self._stop_reading()

        while self._child.isalive():
            await asyncio.sleep(0.01)
        self._child.close()
        if self._child.exitstatus is not None:
            self.returncode = self._child.exitstatus
        else:
            self.returncode = -(self._child.signalstatus or 0)
        self._notice(f"[exited {self.returncode}]")

    def _drain(self, eof: asyncio.Future[None]) -> None:
        assert self._child is not None
        try:
            data = self._child.read_nonblocking(READ_CHUNK, timeout=0)
        except pexpect.TIMEOUT:
            return
        except pexpect.EOF:
            if not eof.done():
                eof.set_result(None)
            return
        self._feed(data)

    def _stop_reading(self) -> None:
        if self._reader_fd is None:
            return
        self._loop.remove_reader(self._reader_fd)
        self._reader_fd = None

    def _feed(self, data: str) -> None:
        if not self._scroll_offset:
            self._stream.feed(data)
            self._after_output(0)
            return
        before = len(self._lines())
        self._stream.feed(data)
        self._after_output(len(self._lines()) - before)

    def _notice(self, line: str) -> None:
        self._notices.append(line)
        self._after_output(1)

    def _after_output(self, added: int) -> None:
        if self._scroll_offset and added > 0:
            # Keep the viewport anchored while scrolled up.
            self._scroll_offset = min(self._scroll_offset + added, self._max_offset())
        if self._on_output is not None:
            self._on_output()

    @staticmethod
    def _history_text(line: Any, columns: int) -> str:
        return "".join(line[x].data if x in line else " " for x in range(columns)).rstrip()

    def _lines(self) -> list[str]:
        columns = self._screen.columns
        lines = [self._history_text(line, columns) for line in self._screen.history.top]
        lines.extend(line.rstrip() for line in self._screen.display)
        while lines and not lines[-1]:
            lines.pop()
        return lines + self._notices

    def _max_offset(self) -> int:
        return max(0, len(self._lines()) - self.rows)

    def resize(self, cols: int, rows: int) -> None:
        self.cols = max(1, cols)
        self.rows = max(1, rows)
        self._screen.resize(self.rows, self.cols)
        if self._child is not None and not self._child.closed and self._child.isalive():
            self._child.setwinsize(self.rows, self.cols)
        self._scroll_offset = min(self._scroll_offset, self._max_offset())

    def write(self, data: str) -> None:
        if self._child is None or self._child.closed or not self._child.isalive():
            return
        self._child.send(data)

    def scroll_up(self, lines: int) -> None:
        self._scroll_offset = min(self._scroll_offset + lines, self._max_offset())

    def scroll_down(self, lines: int) -> None:
        self._scroll_offset = max(0, self._scroll_offset - lines)

    def is_scrolled_up(self) -> bool:
        return self._scroll_offset > 0

    def viewport_lines(self) -> list[str]:
        lines = self._lines()
        end = len(lines) - self._scroll_offset
        start = max(0, end - self.rows)
        return lines[start:end]

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self._task.cancel()
        self._stop_reading()
        if self._child is not None and not self._child.closed:
            self._child.close(force=True)
        logger.debug("Disposed session", extra={"command": list(self.command), "pid": self.pid})


def process_session_factory(
    *,
    scrollback: int = 5000,
    on_output: Callable[[], None] | None = None,
) -> Callable[..., ProcessSession]:
    """Return a factory with the signature the controller and launcher expect."""

    def factory(command: Sequence[str], *, cwd: str | None, cols: int, rows: int) -> ProcessSession:
        return ProcessSession(
            command,
            cwd=cwd,
            cols=cols,
            rows=rows,
            scrollback=scrollback,
            on_output=on_output,
        )

    return factory


__all__ = ["ProcessSession", "process_session_factory"]
