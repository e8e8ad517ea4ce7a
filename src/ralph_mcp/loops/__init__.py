"""Loop tracking: reconciliation, focus, polling and session attachment."""

from .attachment import ActionOutcome, PendingConfirmation, SessionAttachmentController, ViewMode
from .engine import LoopEngine
from .errors import LaunchError, LoopParseError
from .focus import FocusTracker
from .identity import PRIMARY_PLACEHOLDER, parse_loops_json, resolve_cli_identity, resolve_record
from .launcher import LaunchResult, LoopLauncher
from .models import ChangeNotifier, LoopRecord, Provenance, TerminalSession
from .scheduler import PollScheduler
from .sessions import ProcessSession, process_session_factory

__all__ = [
    "ActionOutcome",
    "ChangeNotifier",
    "FocusTracker",
    "LaunchError",
    "LaunchResult",
    "LoopEngine",
    "LoopLauncher",
    "LoopParseError",
    "LoopRecord",
    "PRIMARY_PLACEHOLDER",
    "PendingConfirmation",
    "PollScheduler",
    "ProcessSession",
    "Provenance",
    "SessionAttachmentController",
    "TerminalSession",
    "ViewMode",
    "parse_loops_json",
    "process_session_factory",
    "resolve_cli_identity",
    "resolve_record",
]
