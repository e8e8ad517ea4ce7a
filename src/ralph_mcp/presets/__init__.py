"""Loop preset models and loader exports."""

from .loader import PresetLoadError, PresetLoader
from .models import LoopPreset, StartLoopRequest

__all__ = [
    "LoopPreset",
    "PresetLoadError",
    "PresetLoader",
    "StartLoopRequest",
]
