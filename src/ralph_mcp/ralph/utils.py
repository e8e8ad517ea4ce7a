"""Helpers shared by the ralph runner and terminal sessions."""

from __future__ import annotations

import os
import shlex
from typing import Mapping, Sequence

# Python environment leaking from this server's virtualenv into ralph's agents.
_STRIPPED_VARIABLES = frozenset({"PYTHONHOME", "PYTHONPATH", "VIRTUAL_ENV", "PIP_RESPECT_VIRTUALENV"})


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Copy of ``os.environ`` without virtualenv variables, plus ``additional``."""

    env = {key: value for key, value in os.environ.items() if key not in _STRIPPED_VARIABLES}
    env.update(additional or {})
    return env


def display_command(argv: Sequence[str]) -> str:
    """Render an argv list as a copy-pasteable shell command."""

    return shlex.join(list(argv))
