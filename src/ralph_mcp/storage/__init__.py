"""Storage abstractions for Ralph MCP."""

from .chroma import ChromaEvent, ChromaStore, ChromaUnavailableError
from .models import ActionRecord, FocusRecord

__all__ = [
    "ActionRecord",
    "ChromaEvent",
    "ChromaStore",
    "ChromaUnavailableError",
    "FocusRecord",
]
