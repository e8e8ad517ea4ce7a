"""FastMCP server bootstrap for Ralph MCP."""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from fastmcp import Context, FastMCP

from . import __version__
from .config import RalphSettings, get_settings
from .context import LoopContext
from .loops.attachment import SessionFactory
from .presets import PresetLoadError, PresetLoader
from .ralph import RalphNotFoundError, RalphRunner
from .storage import ChromaStore, ChromaUnavailableError
from .tools import register_tools


def configure_logging(level: str) -> None:
    """Configure root logging for the Ralph MCP server."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def _run_sync(coro):
    """Execute an async coroutine on a dedicated event loop."""

    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def create_server(
    settings: Optional[RalphSettings] = None,
    ralph_runner: RalphRunner | None = None,
    session_factory: SessionFactory | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server with loop tracking wired in."""

    settings = settings or get_settings()
    logger = logging.getLogger(__name__)

    preset_loader = PresetLoader(settings.preset_paths)

    ralph_metadata = {
        "available": False,
        "path": None,
        "version": None,
        "error": None,
    }

    if ralph_runner is None:
        try:
            ralph_runner = RalphRunner(Path(settings.ralph_path) if settings.ralph_path else None)
        except RalphNotFoundError as exc:
            ralph_metadata["error"] = str(exc)
            ralph_runner = None
            logger.warning(
                "ralph disabled: %s. Install ralph and ensure it's on PATH.",
                exc,
            )

    if ralph_runner is not None:
        ralph_metadata["available"] = True
        ralph_metadata["path"] = str(ralph_runner.executable)
        try:
            version_result = _run_sync(ralph_runner.version())
            if version_result.ok:
                ralph_metadata["version"] = version_result.stdout.strip()
            else:
                ralph_metadata["error"] = version_result.failure_detail()
        except OSError as exc:  # pragma: no cover - best effort
            ralph_metadata["error"] = str(exc)

    chroma_store: ChromaStore | None = None
    chroma_metadata = {
        "available": False,
        "path": str(settings.chroma_persist_path),
        "collection": "ralph_loops",
        "error": None,
    }

    try:
        chroma_store = ChromaStore(settings.chroma_persist_path)
        chroma_store.ping()
        chroma_metadata["available"] = True
    except ChromaUnavailableError as exc:
        chroma_metadata["error"] = str(exc)
        chroma_store = None

    loop_context: LoopContext | None = None
    if ralph_runner is not None:
        loop_context = LoopContext(
            ralph_runner,
            settings,
            store=chroma_store,
            session_factory=session_factory,
        )

    @asynccontextmanager
    async def lifespan(_server):
        if loop_context is not None:
            await loop_context.start()
        try:
            yield {}
        finally:
            if loop_context is not None:
                await loop_context.stop()

    server = FastMCP(
        name="Ralph MCP",
        version=__version__,
        instructions=(
            "Ralph MCP tracks ralph loops started here or discovered via `ralph loops list`. "
            "Use the tools to start loops, move focus between them, follow their output, "
            "and stop, merge, discard, or retry them."
        ),
        lifespan=lifespan,
    )

    handles = register_tools(
        server,
        loop_context=loop_context,
        presets=preset_loader,
        settings=settings,
        chroma_store=chroma_store,
    )

    def status_resource(context: Context | None = None) -> str:
        """Return a JSON string summarizing basic runtime state."""

        try:
            preset_ids = sorted(preset_loader.load_all().keys())
            preset_error: str | None = None
        except PresetLoadError as exc:
            preset_ids = []
            preset_error = str(exc)

        loops_payload: dict[str, object] = {"available": loop_context is not None}
        if loop_context is not None:
            status_counts: dict[str, int] = {}
            for loop in loop_context.engine.loops():
                status_counts[loop.status] = status_counts.get(loop.status, 0) + 1
            focused = loop_context.tracker.current()
            loops_payload.update(
                {
                    "active_count": len(loop_context.engine.loops()),
                    "total_count": len(loop_context.engine.loops(include_removed=True)),
                    "status_counts": status_counts,
                    "focused_id": focused.identity if focused is not None else None,
                    "restored_focus_id": loop_context.restored_focus_id,
                    "poll": {
                        "consecutive_failures": loop_context.scheduler.consecutive_failures,
                        "last_error": loop_context.scheduler.last_error,
                        "alert_threshold": settings.poll_alert_threshold,
                        "interval": settings.poll_interval,
                        "running": loop_context.scheduler.running,
                    },
                }
            )

        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "presets": {
                "count": len(preset_ids),
                "ids": preset_ids,
                "error": preset_error,
            },
            "ralph": ralph_metadata,
            "storage": {"chroma": chroma_metadata},
            "loops": loops_payload,
            "request_id": getattr(context, "request_id", None),
        }
        return json.dumps(payload)

    server.resource(
        "resource://ralph/status",
        name="ralph_status",
        title="Ralph MCP Status",
        description="Provides the current runtime status for the Ralph MCP server.",
        mime_type="application/json",
        tags={"status", "health"},
    )(status_resource)

    setattr(server, "preset_loader", preset_loader)
    setattr(server, "ralph_runner", ralph_runner)
    setattr(server, "ralph_metadata", ralph_metadata)
    setattr(server, "chroma_store", chroma_store)
    setattr(server, "chroma_metadata", chroma_metadata)
    setattr(server, "loop_context", loop_context)
    setattr(server, "tool_handles", handles)
    setattr(server, "status_resource", status_resource)
    return server


def main() -> None:
    """Entry point for running the Ralph MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    logging.getLogger(__name__).info(
        "Launching Ralph MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "ralph_available": getattr(server, "ralph_metadata", {}).get("available"),
            "chroma_available": getattr(server, "chroma_metadata", {}).get("available"),
        },
    )
    server.run()


if __name__ == "__main__":
    main()
