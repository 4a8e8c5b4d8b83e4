"""Archival of finished tasks into ``tasks/archive/<YYYY>/<MM>/<DD>/<id>/``."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Callable, Optional

from codex_tasks.core.errors import Conflict, InvalidState, TaskError
from codex_tasks.core.status import active_worker, reconcile
from codex_tasks.core.store import TaskStore
from codex_tasks.core.tasks import TaskState

logger = logging.getLogger("codex_tasks.archive")


@dataclass
class ArchiveOutcome:
    task_id: str
    status: str             # "archived" | "already_archived" | "skipped" | "failed"
    state: Optional[str] = None
    path: Optional[str] = None
    message: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "status": self.status,
            "state": self.state,
            "path": self.path,
            "message": self.message,
        }


class ArchiveManager:
    def __init__(self, store: TaskStore, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def archive(self, task_id: str) -> ArchiveOutcome:
        """Archive one STOPPED or DIED task.

        Raises ``InvalidState`` for a RUNNING task and ``Conflict`` when a
        live worker holds the pid file.
        """
        paths = self.store.resolve(task_id)
        if paths.archived:
            return ArchiveOutcome(task_id, "already_archived", TaskState.ARCHIVED.value, paths.directory)

        record = reconcile(self.store, paths)
        if record.state == TaskState.RUNNING:
            raise InvalidState(f"task {task_id} is RUNNING; stop it before archiving")
        holder = active_worker(self.store, paths)
        if holder is not None:
            raise Conflict(f"task {task_id} has an active worker (pid {holder})")
        self.store.release_pid(paths)

        destination = self.store.archive(task_id, self._clock())
        record.transition(TaskState.ARCHIVED)
        self.store.write_metadata(destination, record)
        return ArchiveOutcome(task_id, "archived", TaskState.ARCHIVED.value, destination.directory)

    def archive_all(self) -> list[ArchiveOutcome]:
        """Archive every STOPPED/DIED task; report the rest instead of failing."""
        outcomes: list[ArchiveOutcome] = []
        for paths in list(self.store.iter_active()):
            task_id = paths.task_id
            try:
                record = reconcile(self.store, paths)
            except TaskError as exc:
                outcomes.append(ArchiveOutcome(task_id, "failed", message=exc.describe()))
                continue
            if record.state == TaskState.RUNNING:
                outcomes.append(ArchiveOutcome(task_id, "skipped", record.state.value, message="task is RUNNING"))
                continue
            try:
                outcomes.append(self.archive(task_id))
            except (InvalidState, Conflict) as exc:
                outcomes.append(ArchiveOutcome(task_id, "skipped", record.state.value, message=str(exc)))
            except TaskError as exc:
                logger.error("Failed to archive task %s: %s", task_id, exc)
                outcomes.append(ArchiveOutcome(task_id, "failed", record.state.value, message=exc.describe()))
        return outcomes
