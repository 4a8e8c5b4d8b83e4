"""Task metadata record and lifecycle state machine.

A task is ``RUNNING`` only while an engine invocation is in flight.  As
soon as the invocation finishes the task is ``STOPPED`` (ready for the
next prompt) or ``DIED`` (retries exhausted).  ``ARCHIVED`` is terminal.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
import logging
from typing import Any, Optional

from codex_tasks.core.errors import InvalidState

logger = logging.getLogger("codex_tasks.tasks")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: Any) -> datetime:
    if isinstance(value, str) and value:
        try:
            ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return _now()
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        return ts
    return _now()


# pid_t is a signed 32-bit int on the platforms we run on.
MAX_PID = 2**31 - 1


def parse_pid(value: Any) -> Optional[int]:
    """Return ``value`` as a usable pid, or None for anything malformed."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        pid = value
    elif isinstance(value, str) and value.isascii() and value.isdigit():
        pid = int(value)
    else:
        return None
    return pid if 0 < pid <= MAX_PID else None


class TaskState(str, Enum):
    RUNNING = "RUNNING"
    STOPPED = "STOPPED"
    DIED = "DIED"
    ARCHIVED = "ARCHIVED"

    @classmethod
    def parse(cls, value: str) -> "TaskState":
        try:
            return cls(value.strip().upper())
        except ValueError as exc:
            raise ValueError(f"unknown task state: {value!r}") from exc


# Legal edges of the lifecycle.  STOPPED -> RUNNING is a follow-up prompt.
TRANSITIONS: dict[TaskState, frozenset[TaskState]] = {
    TaskState.RUNNING: frozenset({TaskState.STOPPED, TaskState.DIED}),
    TaskState.STOPPED: frozenset({TaskState.RUNNING, TaskState.ARCHIVED}),
    TaskState.DIED: frozenset({TaskState.ARCHIVED}),
    TaskState.ARCHIVED: frozenset(),
}


def can_transition(current: TaskState, target: TaskState) -> bool:
    return target in TRANSITIONS[current]


# ── Metadata record ──────────────────────────────────────────

@dataclass
class TaskMetadata:
    """Serialized form of ``task.json``."""
    id: str
    working_dir: str
    state: TaskState = TaskState.RUNNING
    title: Optional[str] = None
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    last_prompt: Optional[str] = None
    last_result: Optional[str] = None
    pid: Optional[int] = None
    config_overrides: list[str] = field(default_factory=list)
    attempts: int = 0
    note: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "state": self.state.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "last_prompt": self.last_prompt,
            "last_result": self.last_result,
            "working_dir": self.working_dir,
            "pid": self.pid,
            "config_overrides": list(self.config_overrides),
            "attempts": self.attempts,
            "note": self.note,
        }

    @classmethod
    def from_dict(cls, d: dict) -> TaskMetadata:
        return cls(
            id=str(d["id"]),
            title=d.get("title"),
            state=TaskState.parse(str(d.get("state", TaskState.DIED.value))),
            created_at=_parse_ts(d.get("created_at")),
            updated_at=_parse_ts(d.get("updated_at")),
            last_prompt=d.get("last_prompt"),
            last_result=d.get("last_result"),
            working_dir=str(d.get("working_dir") or ""),
            pid=parse_pid(d.get("pid")),
            config_overrides=[str(v) for v in d.get("config_overrides") or []],
            attempts=int(d.get("attempts") or 0),
            note=d.get("note"),
        )

    def touch(self) -> None:
        self.updated_at = _now()

    def transition(self, target: TaskState, *, note: Optional[str] = None) -> None:
        """Move to ``target``, enforcing the lifecycle edges.

        ``pid`` is only meaningful while RUNNING, so every other target
        clears it.
        """
        if target != self.state and not can_transition(self.state, target):
            raise InvalidState(
                f"task {self.id} cannot move from {self.state.value} to {target.value}"
            )
        logger.debug("Task %s: %s -> %s", self.id, self.state.value, target.value)
        self.state = target
        if target != TaskState.RUNNING:
            self.pid = None
        if note is not None:
            self.note = note

    def observed(self, state: TaskState, note: Optional[str] = None) -> TaskMetadata:
        """Return a display copy with a derived state; the record itself is untouched."""
        return replace(
            self,
            state=state,
            pid=self.pid if state == TaskState.RUNNING else None,
            note=note if note is not None else self.note,
            config_overrides=list(self.config_overrides),
        )
