"""Error taxonomy shared by every caller-facing operation.

Each exception carries a ``kind`` tag.  The CLI prints it as
``error[<kind>]: message`` and the MCP adapter forwards it in tool
results, so the tag is part of the external contract.
"""
from __future__ import annotations

from typing import Optional


class TaskError(RuntimeError):
    """Base class for all orchestration failures."""

    kind = "TaskError"

    def describe(self) -> str:
        return f"error[{self.kind}]: {self}"


class NotFound(TaskError):
    kind = "NotFound"


class InvalidState(TaskError):
    kind = "InvalidState"


class Conflict(TaskError):
    kind = "Conflict"


class NoIdentifier(TaskError):
    kind = "NoIdentifier"


class SpawnFailed(TaskError):
    kind = "SpawnFailed"


class EngineFailure(TaskError):
    kind = "EngineFailure"

    def __init__(self, message: str, exit_code: Optional[int] = None, stderr_excerpt: str = "") -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr_excerpt = stderr_excerpt


class Crashed(TaskError):
    kind = "Crashed"


class TaskIOError(TaskError):
    kind = "IOError"


_BY_KIND: dict[str, type[TaskError]] = {
    cls.kind: cls
    for cls in (NotFound, InvalidState, Conflict, NoIdentifier, SpawnFailed, EngineFailure, Crashed, TaskIOError)
}


def error_from_kind(kind: str, message: str) -> TaskError:
    """Rebuild an exception from a ``kind`` tag reported by another process."""
    cls = _BY_KIND.get(kind, TaskError)
    return cls(message)
