"""Ralph MCP: track, reconcile and attach to ralph loops."""

__version__ = "0.1.0"

__all__ = ["__version__"]
