"""ralph CLI orchestration utilities."""

from .runner import (
    FakeRalphRunner,
    RalphExecutionResult,
    RalphNotFoundError,
    RalphRunner,
    RalphRunnerError,
)

__all__ = [
    "FakeRalphRunner",
    "RalphRunner",
    "RalphExecutionResult",
    "RalphRunnerError",
    "RalphNotFoundError",
]
