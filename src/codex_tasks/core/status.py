"""Derived task state.

Metadata can say ``RUNNING`` long after its worker died (SIGKILL, host
reboot).  Readers show such tasks as ``DIED`` without touching the file;
mutating operations call :func:`reconcile` to persist the correction
before acting on it.
"""
from __future__ import annotations

from datetime import datetime, timezone
import logging
import os
from typing import Optional

from codex_tasks.core import process
from codex_tasks.core.errors import TaskIOError
from codex_tasks.core.store import TaskPaths, TaskStore
from codex_tasks.core.tasks import TaskMetadata, TaskState

logger = logging.getLogger("codex_tasks.status")


def active_worker(store: TaskStore, paths: TaskPaths) -> Optional[int]:
    """Return the pid holding the task's pid file if that process is alive."""
    pid = store.read_pid(paths)
    return pid if process.is_alive(pid) else None


def _worker_pid(store: TaskStore, paths: TaskPaths, record: TaskMetadata) -> Optional[int]:
    try:
        pid = store.read_pid(paths)
    except TaskIOError:
        pid = None
    return pid if pid is not None else record.pid


def _placeholder(paths: TaskPaths, note: str) -> TaskMetadata:
    try:
        mtime = datetime.fromtimestamp(os.stat(paths.directory).st_mtime, tz=timezone.utc)
    except OSError:
        mtime = datetime.now(timezone.utc)
    return TaskMetadata(
        id=paths.task_id,
        working_dir="",
        state=TaskState.ARCHIVED if paths.archived else TaskState.DIED,
        created_at=mtime,
        updated_at=mtime,
        note=note,
    )


def observe(store: TaskStore, paths: TaskPaths) -> TaskMetadata:
    """Read a task for display.  Never raises for inconsistent files."""
    try:
        record = store.read_metadata(paths)
    except TaskIOError as exc:
        logger.warning("Task %s has unreadable metadata: %s", paths.task_id, exc)
        return _placeholder(paths, str(exc))
    if paths.archived:
        # Location is authoritative: a crash can leave the pre-archive state behind.
        return record if record.state == TaskState.ARCHIVED else record.observed(TaskState.ARCHIVED)
    if record.state == TaskState.ARCHIVED:
        return record.observed(TaskState.DIED, note="marked ARCHIVED but still in the active tree")
    if record.state == TaskState.RUNNING:
        pid = _worker_pid(store, paths, record)
        if not process.is_alive(pid):
            return record.observed(TaskState.DIED, note=f"worker process {pid} is not running")
    return record


def reconcile(store: TaskStore, paths: TaskPaths) -> TaskMetadata:
    """Load a task for mutation, persisting a DIED correction if its worker is gone."""
    record = store.read_metadata(paths)
    if paths.archived or record.state != TaskState.RUNNING:
        return record
    pid = _worker_pid(store, paths, record)
    if process.is_alive(pid):
        return record
    logger.info("Task %s: worker %s is gone; recording DIED", record.id, pid)
    record.transition(TaskState.DIED, note=f"worker process {pid} exited without recording a final state")
    store.release_pid(paths, pid)
    store.write_metadata(paths, record)
    return record
