"""Background task orchestration for the Codex CLI."""

__version__ = "0.3.0"
