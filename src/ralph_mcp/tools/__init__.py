"""Tool registration for Ralph MCP."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Literal

from fastmcp import Context, FastMCP
from pydantic import ValidationError

from ..config import RalphSettings
from ..context import LoopContext
from ..loops import ActionOutcome, LaunchError, ViewMode
from ..presets import PresetLoadError, PresetLoader, StartLoopRequest
from ..storage import ChromaStore, ChromaUnavailableError


@dataclass(slots=True)
class ToolHandles:
    start_loop: Any
    list_loops: Any
    focus_status: Any
    cycle_focus: Any
    focus_loop: Any
    poll_loops: Any
    loop_view: Any
    send_input: Any
    request_action: Any
    confirm_action: Any
    show_text_view: Any
    back_to_live: Any
    list_presets: Any


def register_tools(
    server: FastMCP,
    *,
    loop_context: LoopContext | None,
    presets: PresetLoader,
    settings: RalphSettings,
    chroma_store: ChromaStore | None,
) -> ToolHandles:
    """Register Ralph MCP's tools on the server."""

    def _require_context() -> LoopContext:
        if loop_context is None:
            raise RuntimeError("ralph CLI is unavailable; install ralph and ensure it's on PATH")
        return loop_context

    def _record_action(outcome: ActionOutcome | None) -> None:
        if outcome is None or chroma_store is None:
            return
        try:
            chroma_store.record_action(
                loop_id=outcome.loop_id,
                action=outcome.action,
                ok=outcome.ok,
                command=outcome.command,
                detail=outcome.detail,
            )
        except ChromaUnavailableError as exc:
            logger.warning("Unable to record loop action", extra={"error": str(exc)})

    def _view_payload(ctx: LoopContext) -> dict[str, Any]:
        controller = ctx.controller
        return {**controller.state(), "lines": controller.viewport_lines()}

    async def _start_loop(
        prompt: str,
        directory: str | None = None,
        *,
        preset: str | None = None,
        config: str | None = None,
        max_iterations: int | None = None,
        backend: str | None = None,
        custom_args: list[str] | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Start a ralph loop in the background (ralph run); directory defaults to the configured one."""

        ctx = _require_context()
        overrides = {
            "prompt": prompt,
            "directory": directory or str(settings.default_directory),
            "config": config,
            "max_iterations": max_iterations,
            "backend": backend,
            "custom_args": custom_args,
        }
        try:
            if preset:
                request = StartLoopRequest.from_preset(presets.get(preset), **overrides)
            else:
                request = StartLoopRequest.model_validate(
                    {key: value for key, value in overrides.items() if value is not None}
                )
        except (PresetLoadError, ValidationError) as exc:
            raise ValueError(str(exc)) from exc

        try:
            result = await ctx.launcher.start(request)
        except LaunchError as exc:
            raise ValueError(str(exc)) from exc

        if chroma_store is not None:
            chroma_store.record_event(
                session_id=f"loop::{result.loop_id}",
                event_type="loop_started",
                body={
                    "loop_id": result.loop_id,
                    "pid": result.pid,
                    "directory": result.directory,
                    "command": list(result.command),
                    "preset": preset,
                },
                metadata={"loop_id": result.loop_id, "preset": preset, "detected": result.detected},
            )

        _emit_log(
            context,
            "info",
            "Started ralph loop",
            extra={"loop_id": result.loop_id, "pid": result.pid, "directory": result.directory},
        )

        if result.detected:
            text = f"Started ralph loop {result.loop_id} (pid {result.pid}) in {result.directory}"
        else:
            text = (
                f"Started ralph (pid {result.pid}) in {result.directory}. "
                f"Loop ID not detected yet; using {result.loop_id}."
            )
        return {
            "loop_id": result.loop_id,
            "pid": result.pid,
            "directory": result.directory,
            "command": result.display_command,
            "detected": result.detected,
            "message": text,
        }

    def _list_loops(include_removed: bool = False, context: Context | None = None) -> list[dict[str, Any]]:
        """List tracked ralph loops in discovery order."""

        ctx = _require_context()
        loops = [loop.summary() for loop in ctx.engine.loops(include_removed=include_removed)]
        _emit_log(context, "debug", "Listing ralph loops", extra={"count": len(loops)})
        return loops

    def _focus_status(context: Context | None = None) -> dict[str, Any]:
        """Report the focused loop, its position and poll diagnostics."""

        ctx = _require_context()
        focused = ctx.tracker.current()
        position, total = ctx.tracker.position()
        return {
            "focused": focused.summary() if focused is not None else None,
            "position": position,
            "active_count": total,
            "poll": {
                "consecutive_failures": ctx.scheduler.consecutive_failures,
                "last_error": ctx.scheduler.last_error,
                "in_flight": ctx.scheduler.in_flight,
                "running": ctx.scheduler.running,
            },
        }

    async def _cycle_focus(direction: int = 1, context: Context | None = None) -> dict[str, Any]:
        """Move focus to the next (1) or previous (-1) active loop."""

        ctx = _require_context()
        if direction not in (1, -1):
            raise ValueError("direction must be 1 or -1")
        focused = ctx.controller.cycle_focus(direction)
        if focused is None:
            return {"focused": None, "message": "no loops"}
        _emit_log(context, "debug", "Cycled focus", extra={"loop_id": focused.identity})
        return {"focused": focused.summary(), "message": None}

    async def _focus_loop(loop_id: str, context: Context | None = None) -> dict[str, Any]:
        """Focus an active loop by id."""

        ctx = _require_context()
        controller = ctx.controller
        if not ctx.tracker.set_by_identity(loop_id):
            raise ValueError(f"Loop '{loop_id}' is not active")
        focused = ctx.tracker.current()
        return {"focused": focused.summary() if focused is not None else None, "view": controller.state()}

    async def _poll_loops(context: Context | None = None) -> dict[str, Any]:
        """Poll ralph now instead of waiting for the next interval."""

        ctx = _require_context()
        loops = await ctx.scheduler.poll()
        _emit_log(
            context,
            "debug",
            "Polled ralph loops",
            extra={"skipped_or_failed": loops is None, "failures": ctx.scheduler.consecutive_failures},
        )
        return {
            "polled": loops is not None,
            "loops": [loop.summary() for loop in loops] if loops is not None else None,
            "consecutive_failures": ctx.scheduler.consecutive_failures,
            "last_error": ctx.scheduler.last_error,
        }

    async def _loop_view(context: Context | None = None) -> dict[str, Any]:
        """Return the attachment view state and its visible lines."""

        return _view_payload(_require_context())

    async def _send_input(data: str, context: Context | None = None) -> dict[str, Any]:
        """Send one key (e.g. "s", "y", "escape", "left") to the loop view."""

        ctx = _require_context()
        outcome = await ctx.controller.handle_input(data)
        _record_action(outcome)
        return _view_payload(ctx)

    async def _request_action(
        action: Literal["stop", "merge", "discard", "retry"],
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Run merge/retry, or ask for confirmation before stop/discard."""

        ctx = _require_context()
        outcome = await ctx.controller.request_action(action)
        _record_action(outcome)
        _emit_log(
            context,
            "info",
            "Loop action requested",
            extra={"action": action, "executed": outcome is not None},
        )
        return _view_payload(ctx)

    async def _confirm_action(confirm: bool = True, context: Context | None = None) -> dict[str, Any]:
        """Confirm (or cancel) the pending stop/discard."""

        ctx = _require_context()
        controller = ctx.controller
        if confirm:
            outcome = await controller.confirm()
            _record_action(outcome)
            if outcome is not None:
                _emit_log(
                    context,
                    "warning" if not outcome.ok else "info",
                    "Confirmed loop action",
                    extra={"loop_id": outcome.loop_id, "action": outcome.action, "ok": outcome.ok},
                )
        else:
            controller.cancel()
        return _view_payload(ctx)

    async def _show_text_view(
        view: Literal["history", "diff"],
        loop_id: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Show ralph loop history or diff for the focused loop (or loop_id)."""

        ctx = _require_context()
        await ctx.controller.show_text_view(ViewMode(view), loop_id)
        return _view_payload(ctx)

    async def _back_to_live(context: Context | None = None) -> dict[str, Any]:
        """Return from a text view to the live terminal."""

        ctx = _require_context()
        ctx.controller.back_to_live()
        return _view_payload(ctx)

    def _list_presets(context: Context | None = None) -> list[dict[str, Any]]:
        """List loop presets available to start_loop."""

        catalog = [
            {
                "id": preset.id,
                "title": preset.title,
                "description": preset.description,
                "backend": preset.backend,
                "max_iterations": preset.max_iterations,
                "tags": preset.metadata.get("tags", []),
            }
            for preset in presets.load_all().values()
        ]
        _emit_log(context, "debug", "Listing loop presets", extra={"count": len(catalog)})
        return catalog

    tool_start = server.tool(
        name="start_loop",
        description=(
            "Start a ralph loop in the background (ralph run). Provide a prompt and a "
            "project directory, optionally a preset and CLI overrides. Returns the loop id."
        ),
        annotations={
            "safety": {
                "level": "caution",
                "notes": "Loops run autonomously until they finish or are stopped",
            }
        },
    )(_start_loop)

    tool_list = server.tool(
        name="list_loops",
        description="List tracked ralph loops (set include_removed to see vanished ones).",
    )(_list_loops)

    tool_focus_status = server.tool(
        name="focus_status",
        description="Show the focused ralph loop, its position, and poll diagnostics.",
    )(_focus_status)

    tool_cycle = server.tool(
        name="cycle_focus",
        description="Cycle the focused ralph loop forward (1) or backward (-1).",
    )(_cycle_focus)

    tool_focus = server.tool(
        name="focus_loop",
        description="Focus a specific active ralph loop by id.",
    )(_focus_loop)

    tool_poll = server.tool(
        name="poll_loops",
        description="Poll `ralph loops list` immediately and merge the results.",
    )(_poll_loops)

    tool_view = server.tool(
        name="loop_view",
        description="Return the attached view (live terminal or history/diff text) of the focused loop.",
    )(_loop_view)

    tool_input = server.tool(
        name="send_input",
        description="Send a key to the loop view; unrecognized keys are written to the live session.",
    )(_send_input)

    tool_action = server.tool(
        name="request_action",
        description="Stop, merge, discard, or retry the focused loop (stop/discard need confirm_action).",
        annotations={
            "safety": {
                "level": "caution",
                "notes": "Stop and discard are destructive and require confirmation",
            }
        },
    )(_request_action)

    tool_confirm = server.tool(
        name="confirm_action",
        description="Confirm or cancel a pending stop/discard request.",
    )(_confirm_action)

    tool_text = server.tool(
        name="show_text_view",
        description="Fetch `ralph loops history` or `ralph loops diff` into a scrollable view.",
    )(_show_text_view)

    tool_back = server.tool(
        name="back_to_live",
        description="Return the loop view to the live terminal.",
    )(_back_to_live)

    tool_presets = server.tool(
        name="list_presets",
        description="List YAML loop presets that start_loop accepts.",
    )(_list_presets)

    return ToolHandles(
        start_loop=tool_start,
        list_loops=tool_list,
        focus_status=tool_focus_status,
        cycle_focus=tool_cycle,
        focus_loop=tool_focus,
        poll_loops=tool_poll,
        loop_view=tool_view,
        send_input=tool_input,
        request_action=tool_action,
        confirm_action=tool_confirm,
        show_text_view=tool_text,
        back_to_live=tool_back,
        list_presets=tool_presets,
    )


__all__ = ["register_tools", "ToolHandles"]

logger = logging.getLogger(__name__)


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Log through the module logger, tagging the MCP request when there is one."""

    payload = dict(extra or {})
    request_id = getattr(context, "request_id", None) if context is not None else None
    if request_id is not None:
        payload.setdefault("request_id", request_id)

    log_method = getattr(logger, level, logger.info)
    log_method(message, extra=payload)
