"""Attach one interactive view to whichever loop holds focus.

The controller reuses the owned session of a locally started loop, or follows
the logs of any other loop in an ephemeral session it spawns and disposes
itself. On top of the live terminal it offers history and diff text views and
the stop/merge/discard/retry actions, with destructive actions gated behind an
explicit confirmation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Sequence

from ..ralph import RalphRunner
from .engine import LoopEngine
from .focus import FocusTracker
from .identity import PRIMARY_PLACEHOLDER, resolve_cli_identity
from .models import LoopRecord, TerminalSession

logger = logging.getLogger(__name__)

PRIMARY_ID_MISSING = "Unable to resolve primary loop id (.ralph/current-loop-id missing)"
MESSAGE_LIMIT = 80
PAGE_LINES = 10

SessionFactory = Callable[..., TerminalSession]


class ViewMode(str, Enum):
    LIVE = "live"
    HISTORY = "history"
    DIFF = "diff"


_TEXT_VIEWS = {
    ViewMode.HISTORY: ("History", "history"),
    ViewMode.DIFF: ("Diff", "diff"),
}


@dataclass(slots=True, frozen=True)
class PendingConfirmation:
    action: str
    label: str
    command: tuple[str, ...]


@dataclass(slots=True, frozen=True)
class ActionOutcome:
    action: str
    label: str
    loop_id: str
    command: tuple[str, ...]
    ok: bool
    detail: str | None = None


class SessionAttachmentController:
    """View state machine over the focused loop's session and text views."""

    def __init__(
        self,
        engine: LoopEngine,
        tracker: FocusTracker,
        runner: RalphRunner,
        *,
        session_factory: SessionFactory,
        poll: Callable[[], Awaitable[Any]] | None = None,
        cols: int = 120,
        rows: int = 40,
        text_timeout: float = 15.0,
        action_timeout: float = 20.0,
    ) -> None:
        self._engine = engine
        self._tracker = tracker
        self._runner = runner
        self._session_factory = session_factory
        self._poll = poll
        self._cols = cols
        self._rows = rows
        self._text_timeout = text_timeout
        self._action_timeout = action_timeout

        self.attached_id: str | None = None
        self.session: TerminalSession | None = None
        self.session_ephemeral = False

        self.view = ViewMode.LIVE
        self.text_title: str | None = None
        self.text_lines: list[str] = []
        self.text_scroll = 0
        self.text_loading = False
        self._fetch_generation = 0

        self.pending: PendingConfirmation | None = None
        self.message: str | None = None
        self.attach_directory: str | None = None
        self.closed = False

        self._unsubscribe: Callable[[], None] | None = engine.notifier.subscribe(
            self.ensure_focused_session
        )
        self.ensure_focused_session()

    # -- session attachment -------------------------------------------------

    def _dispose_if_ephemeral(self) -> None:
        # Owned sessions belong to their loop record and outlive focus changes.
        if self.session is not None and self.session_ephemeral:
            self.session.dispose()
        self.session = None
        self.session_ephemeral = False

    def ensure_focused_session(self) -> None:
        focused = self._tracker.current()
        if focused is None:
            self.attached_id = None
            self._dispose_if_ephemeral()
            return

        if self.attached_id == focused.identity:
            # Same loop: only reattach if its owned session appeared or nothing is attached yet.
            if self.session is not None and focused.session in (None, self.session):
                return
        else:
            self.pending = None

        self._dispose_if_ephemeral()
        self.attached_id = focused.identity

        if focused.locally_started and focused.session is not None:
            self.message = None
            self.session = focused.session
            self.session_ephemeral = False
            self.session.resize(self._cols, self._rows)
            return

        loop_id = resolve_cli_identity(focused)
        if loop_id is None:
            self.message = PRIMARY_ID_MISSING
            return

        self.message = None
        self.session = self._session_factory(
            self._runner.command("loops", "logs", loop_id, "--follow"),
            cwd=self._cwd_for(focused),
            cols=self._cols,
            rows=self._rows,
        )
        self.session_ephemeral = True
        logger.debug("Following loop logs", extra={"loop_id": loop_id})

    def resize(self, cols: int, rows: int) -> None:
        self._cols = cols
        self._rows = max(1, rows)
        if self.session is not None:
            self.session.resize(self._cols, self._rows)

    @staticmethod
    def _cwd_for(loop: LoopRecord | None) -> str:
        if loop is not None and loop.directory:
            return loop.directory
        return str(Path.home())

    # -- text views ---------------------------------------------------------

    async def show_text_view(self, mode: ViewMode, identity: str | None = None) -> None:
        """Fetch history or diff for ``identity`` (default: the focused loop)."""

        if mode not in _TEXT_VIEWS:
            raise ValueError(f"Unsupported text view '{mode}'")
        self.pending = None

        focused = self._tracker.current()
        if identity is None:
            identity = resolve_cli_identity(focused) if focused is not None else None
        if identity is None:
            self.message = PRIMARY_ID_MISSING if focused is not None else "No loop focused"
            return

        title, subcommand = _TEXT_VIEWS[mode]
        self.view = mode
        self.text_title = title
        self.text_loading = True
        self.text_lines = []
        self.text_scroll = 0
        self.message = None
        self._fetch_generation += 1
        generation = self._fetch_generation

        command = (subcommand, identity)
        try:
            result = await self._runner.loops(
                *command, cwd=self._cwd_for(focused), timeout=self._text_timeout
            )
        except OSError as exc:
            lines = [f"[error] ralph loops {' '.join(command)}", str(exc)]
        else:
            out = result.stdout.replace("\r\n", "\n")
            err = result.stderr.replace("\r\n", "\n")
            if not result.ok:
                lines = [f"[error] ralph loops {' '.join(command)}", err or result.failure_detail()]
            else:
                lines = (out if out else "(no output)").split("\n")

        if generation != self._fetch_generation:
            return
        self.text_lines = lines
        self.text_loading = False

    def back_to_live(self) -> None:
        self.pending = None
        self.view = ViewMode.LIVE
        self.text_scroll = 0
        self.text_loading = False
        self._fetch_generation += 1

    def scroll_text(self, delta: int) -> None:
        upper = max(0, len(self.text_lines) - 1)
        self.text_scroll = min(max(0, self.text_scroll + delta), upper)

    def scroll_session(self, up: bool) -> None:
        if self.session is None:
            return
        step = max(1, (self.session.rows or PAGE_LINES) - 2)
        if up:
            self.session.scroll_up(step)
        else:
            self.session.scroll_down(step)

    # -- focus and actions --------------------------------------------------

    def cycle_focus(self, direction: int) -> LoopRecord | None:
        self.pending = None
        return self._tracker.cycle(direction)

    async def request_action(self, action: str) -> ActionOutcome | None:
        """Start ``stop``/``discard`` confirmation or run ``merge``/``retry`` directly."""

        focused = self._tracker.current()
        if focused is None:
            self.message = "No loop focused"
            return None

        is_primary = focused.identity == PRIMARY_PLACEHOLDER
        loop_id = resolve_cli_identity(focused)

        if action == "stop":
            # `ralph loops stop` without LOOP_ID stops the in-place loop.
            command = ("stop",) if is_primary else ("stop", loop_id or focused.identity)
            self._ask(PendingConfirmation(action="stop", label="Stop", command=command))
            return None
        if action == "discard":
            if is_primary:
                self.message = "Discard not available for primary loop (use stop)"
                return None
            self._ask(
                PendingConfirmation(
                    action="discard",
                    label="Discard",
                    command=("discard", "--yes", loop_id or focused.identity),
                )
            )
            return None
        if action == "merge":
            if is_primary:
                self.message = "Merge not available for primary loop"
                return None
            return await self._run_action("merge", "Merge", ("merge", loop_id or focused.identity))
        if action == "retry":
            if loop_id is None:
                self.message = PRIMARY_ID_MISSING
                return None
            return await self._run_action("retry", "Retry", ("retry", loop_id))
        raise ValueError(f"Unknown action '{action}'")

    def _ask(self, confirmation: PendingConfirmation) -> None:
        self.pending = confirmation
        self.message = None

    async def confirm(self) -> ActionOutcome | None:
        pending, self.pending = self.pending, None
        if pending is None:
            return None
        return await self._run_action(pending.action, pending.label, pending.command)

    def cancel(self) -> None:
        if self.pending is not None:
            self.pending = None
            self.message = "Cancelled"

    async def _run_action(
        self, action: str, label: str, command: Sequence[str]
    ) -> ActionOutcome:
        focused = self._tracker.current()
        loop_id = focused.identity if focused is not None else ""
        self.message = f"{label}..."

        detail: str | None = None
        try:
            result = await self._runner.loops(
                *command, cwd=self._cwd_for(focused), timeout=self._action_timeout
            )
        except OSError as exc:
            ok, detail = False, str(exc)
        else:
            ok = result.ok
            if not ok:
                detail = result.failure_detail()

        if ok:
            self.message = f"{label} OK"
        else:
            self.message = f"{label} failed: {(detail or '')[:MESSAGE_LIMIT]}"
            logger.warning(
                "Loop action failed",
                extra={"loop_id": loop_id, "action": action, "detail": detail},
            )

        if self._poll is not None:
            await self._poll()
        return ActionOutcome(
            action=action, label=label, loop_id=loop_id, command=tuple(command), ok=ok, detail=detail
        )

    # -- input dispatch -----------------------------------------------------

    async def handle_input(self, data: str) -> ActionOutcome | None:
        """Dispatch one key press; unknown input is written to the live session."""

        if data == "escape":
            if self.pending is not None:
                self.cancel()
            elif self.view is not ViewMode.LIVE:
                self.back_to_live()
            else:
                self.close()
            return None

        if self.pending is not None:
            if data in ("y", "Y"):
                return await self.confirm()
            self.cancel()
            return None

        if self.view is not ViewMode.LIVE:
            if data == "q":
                self.back_to_live()
            elif data in ("up", "k"):
                self.scroll_text(-1)
            elif data in ("down", "j"):
                self.scroll_text(1)
            elif data == "shift+up":
                self.scroll_text(-PAGE_LINES)
            elif data == "shift+down":
                self.scroll_text(PAGE_LINES)
            return None

        if data in ("left", "right"):
            self.cycle_focus(-1 if data == "left" else 1)
            return None
        if data in ("shift+up", "shift+down"):
            self.scroll_session(up=data == "shift+up")
            return None

        actions = {"s": "stop", "m": "merge", "d": "discard", "r": "retry"}
        if data in actions:
            return await self.request_action(actions[data])
        if data in ("H", "D"):
            await self.show_text_view(ViewMode.HISTORY if data == "H" else ViewMode.DIFF)
            return None
        if data == "a":
            self.attach()
            return None

        if self.session is not None:
            self.session.write(data)
        return None

    def attach(self) -> str | None:
        """Close the view and report the directory to open a shell in."""

        focused = self._tracker.current()
        directory = (focused.worktree or focused.directory) if focused is not None else None
        if not directory:
            self.message = "No directory/worktree available to attach"
            return None
        self.attach_directory = directory
        self.close()
        return directory

    # -- rendering support --------------------------------------------------

    def viewport_lines(self) -> list[str]:
        if self.view is ViewMode.LIVE:
            if self.session is None:
                return []
            return self.session.viewport_lines()[: self._rows]
        if self.text_loading:
            return ["Loading..."]
        return self.text_lines[self.text_scroll : self.text_scroll + self._rows]

    def state(self) -> dict[str, Any]:
        return {
            "view": self.view.value,
            "attached_loop_id": self.attached_id,
            "has_session": self.session is not None,
            "session_ephemeral": self.session_ephemeral,
            "scrolled_up": self.session.is_scrolled_up() if self.session is not None else False,
            "message": self.message,
            "pending": (
                {"action": self.pending.action, "command": list(self.pending.command)}
                if self.pending is not None
                else None
            ),
            "text_title": self.text_title if self.view is not ViewMode.LIVE else None,
            "text_loading": self.text_loading,
            "text_scroll": self.text_scroll,
            "text_line_count": len(self.text_lines),
            "attach_directory": self.attach_directory,
            "closed": self.closed,
        }

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.pending = None
        self._dispose_if_ephemeral()
        self.attached_id = None
        self.closed = True


__all__ = [
    "ActionOutcome",
    "PRIMARY_ID_MISSING",
    "PendingConfirmation",
    "SessionAttachmentController",
    "ViewMode",
]
