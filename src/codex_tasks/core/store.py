"""Filesystem-backed task store.

Layout::

    <root>/tasks/<id>/
        task.json      # metadata record
        task.log       # JSON-lines event log, append-only
        task.result    # last promoted answer
        task.pid       # present only while a worker is alive
    <root>/tasks/archive/<YYYY>/<MM>/<DD>/<id>/

Every mutation is a single rename, mkdir or exclusive create, so a
process dying mid-operation leaves the tree in one of two consistent
states.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import json
import logging
import os
import re
import shutil
import tempfile
from typing import Callable, Iterator, Optional

from codex_tasks.core import process
from codex_tasks.core.errors import Conflict, NotFound, TaskIOError
from codex_tasks.core.tasks import TaskMetadata, parse_pid

logger = logging.getLogger("codex_tasks.store")

TASKS_DIR = "tasks"
ARCHIVE_DIR = "archive"
METADATA_FILE = "task.json"
LOG_FILE = "task.log"
RESULT_FILE = "task.result"
PID_FILE = "task.pid"

_VALID_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def validate_task_id(task_id: str) -> str:
    if not task_id or not _VALID_ID.match(task_id) or task_id == ARCHIVE_DIR:
        raise NotFound(f"invalid task id: {task_id!r}")
    return task_id


@dataclass(frozen=True)
class TaskPaths:
    """Locations of one task's files, active or archived."""
    task_id: str
    directory: str
    archived: bool = False

    @property
    def metadata(self) -> str:
        return os.path.join(self.directory, METADATA_FILE)

    @property
    def log(self) -> str:
        return os.path.join(self.directory, LOG_FILE)

    @property
    def result(self) -> str:
        return os.path.join(self.directory, RESULT_FILE)

    @property
    def pid_file(self) -> str:
        return os.path.join(self.directory, PID_FILE)


def _write_atomic(directory: str, target: str, content: str) -> None:
    """Write ``content`` to a temp file in ``directory`` and rename it onto ``target``."""
    fd, tmp_path = tempfile.mkstemp(prefix=f".{os.path.basename(target)}.", suffix=".tmp", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, target)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


class TaskStore:
    """Maps task identifiers to directories and performs crash-safe mutations."""

    def __init__(self, root: str) -> None:
        self.root = os.path.abspath(os.path.expanduser(root))
        self.tasks_dir = os.path.join(self.root, TASKS_DIR)
        self.archive_dir = os.path.join(self.tasks_dir, ARCHIVE_DIR)

    def ensure_layout(self) -> None:
        try:
            os.makedirs(self.archive_dir, exist_ok=True)
        except OSError as exc:
            raise TaskIOError(f"failed to create task store at {self.tasks_dir}: {exc}") from exc

    # ── Resolution ───────────────────────────────────────────

    def active_paths(self, task_id: str) -> TaskPaths:
        validate_task_id(task_id)
        return TaskPaths(task_id, os.path.join(self.tasks_dir, task_id))

    def archive_paths(self, task_id: str, when: datetime) -> TaskPaths:
        validate_task_id(task_id)
        when = when.astimezone(timezone.utc)
        directory = os.path.join(
            self.archive_dir, f"{when.year:04d}", f"{when.month:02d}", f"{when.day:02d}", task_id
        )
        return TaskPaths(task_id, directory, archived=True)

    def resolve(self, task_id: str) -> TaskPaths:
        """Return the task's active directory, else its archived one."""
        paths = self.active_paths(task_id)
        if os.path.isdir(paths.directory):
            return paths
        archived = self.find_archived(task_id)
        if archived is not None:
            return archived
        raise NotFound(f"task {task_id} not found")

    def find_archived(self, task_id: str) -> Optional[TaskPaths]:
        validate_task_id(task_id)
        for paths in self.iter_archived():
            if paths.task_id == task_id:
                return paths
        return None

    @staticmethod
    def _sorted_subdirs(path: str) -> list[str]:
        try:
            entries = os.listdir(path)
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise TaskIOError(f"failed to list {path}: {exc}") from exc
        return sorted(e for e in entries if os.path.isdir(os.path.join(path, e)))

    def iter_active(self) -> Iterator[TaskPaths]:
        for name in self._sorted_subdirs(self.tasks_dir):
            if name == ARCHIVE_DIR or name.startswith("."):
                continue
            yield TaskPaths(name, os.path.join(self.tasks_dir, name))

    def iter_archived(self) -> Iterator[TaskPaths]:
        """Walk ``archive/<YYYY>/<MM>/<DD>/<id>`` lazily."""
        for year in self._sorted_subdirs(self.archive_dir):
            year_dir = os.path.join(self.archive_dir, year)
            for month in self._sorted_subdirs(year_dir):
                month_dir = os.path.join(year_dir, month)
                for day in self._sorted_subdirs(month_dir):
                    day_dir = os.path.join(month_dir, day)
                    for name in self._sorted_subdirs(day_dir):
                        yield TaskPaths(name, os.path.join(day_dir, name), archived=True)

    # ── Mutations ────────────────────────────────────────────

    def create_task_dir(self, task_id: str) -> TaskPaths:
        self.ensure_layout()
        paths = self.active_paths(task_id)
        if self.find_archived(task_id) is not None:
            raise Conflict(f"task {task_id} already exists in the archive")
        try:
            os.mkdir(paths.directory)
        except FileExistsError as exc:
            raise Conflict(f"task {task_id} already exists") from exc
        except OSError as exc:
            raise TaskIOError(f"failed to create {paths.directory}: {exc}") from exc
        logger.info("Created task directory %s", paths.directory)
        return paths

    def discard_task_dir(self, paths: TaskPaths) -> None:
        """Remove a task directory that never became durable (no ``task.json``)."""
        if os.path.exists(paths.metadata):
            logger.warning("Not discarding %s: metadata already written", paths.directory)
            return
        shutil.rmtree(paths.directory, ignore_errors=True)
        logger.info("Discarded incomplete task directory %s", paths.directory)

    def read_metadata(self, paths: TaskPaths) -> TaskMetadata:
        try:
            with open(paths.metadata, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except FileNotFoundError as exc:
            raise TaskIOError(f"metadata missing for task {paths.task_id}") from exc
        except (OSError, ValueError) as exc:
            raise TaskIOError(f"failed to read metadata for task {paths.task_id}: {exc}") from exc
        if not isinstance(raw, dict):
            raise TaskIOError(f"corrupt metadata for task {paths.task_id}: not a JSON object")
        try:
            record = TaskMetadata.from_dict(raw)
        except (KeyError, TypeError, ValueError) as exc:
            raise TaskIOError(f"corrupt metadata for task {paths.task_id}: {exc}") from exc
        if record.id != paths.task_id:
            raise TaskIOError(
                f"metadata id {record.id!r} does not match directory {paths.task_id!r}"
            )
        return record

    def write_metadata(self, paths: TaskPaths, record: TaskMetadata) -> None:
        record.touch()
        payload = json.dumps(record.to_dict(), indent=2, ensure_ascii=False) + "\n"
        try:
            _write_atomic(paths.directory, paths.metadata, payload)
        except OSError as exc:
            raise TaskIOError(f"failed to write metadata for task {paths.task_id}: {exc}") from exc

    def promote_result(self, paths: TaskPaths, text: str) -> None:
        """Publish ``text`` as the task's result with a single rename."""
        try:
            _write_atomic(paths.directory, paths.result, text)
        except OSError as exc:
            raise TaskIOError(f"failed to promote result for task {paths.task_id}: {exc}") from exc

    def read_result(self, paths: TaskPaths) -> Optional[str]:
        try:
            with open(paths.result, "r", encoding="utf-8") as f:
                return f.read()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise TaskIOError(f"failed to read result for task {paths.task_id}: {exc}") from exc

    def archive(self, task_id: str, when: Optional[datetime] = None) -> TaskPaths:
        """Move the active directory into the dated archive tree."""
        source = self.active_paths(task_id)
        if not os.path.isdir(source.directory):
            raise NotFound(f"task {task_id} is not active")
        destination = self.archive_paths(task_id, when or datetime.now(timezone.utc))
        if os.path.exists(destination.directory):
            raise Conflict(f"archive destination already exists: {destination.directory}")
        try:
            os.makedirs(os.path.dirname(destination.directory), exist_ok=True)
            os.rename(source.directory, destination.directory)
        except OSError as exc:
            raise TaskIOError(f"failed to archive task {task_id}: {exc}") from exc
        logger.info("Archived task %s to %s", task_id, destination.directory)
        return destination

    # ── Worker pid file ──────────────────────────────────────

    def read_pid(self, paths: TaskPaths) -> Optional[int]:
        try:
            with open(paths.pid_file, "r", encoding="utf-8") as f:
                raw = f.read().strip()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise TaskIOError(f"failed to read pid for task {paths.task_id}: {exc}") from exc
        return parse_pid(raw)

    def claim_pid(
        self,
        paths: TaskPaths,
        pid: int,
        *,
        alive: Callable[[Optional[int]], bool] = process.is_alive,
    ) -> None:
        """Atomically record ``pid`` as the task's only active worker.

        The file is written under a private name and hard-linked into place,
        so it never exists without its content.  A file left by a dead
        worker is reclaimed; a live holder raises ``Conflict``.
        """
        staging = os.path.join(paths.directory, f".{PID_FILE}.{pid}.tmp")
        try:
            with open(staging, "w", encoding="utf-8") as f:
                f.write(f"{pid}\n")
                f.flush()
                os.fsync(f.fileno())
            for _ in range(3):
                try:
                    os.link(staging, paths.pid_file)
                    logger.debug("Task %s: worker %d claimed pid file", paths.task_id, pid)
                    return
                except FileExistsError:
                    holder = self.read_pid(paths)
                    if holder == pid:
                        return
                    if holder is not None and alive(holder):
                        raise Conflict(f"task {paths.task_id} already has an active worker (pid {holder})")
                    self._discard_stale_pid(paths, holder, pid)
            raise Conflict(f"task {paths.task_id}: could not claim worker pid file")
        except OSError as exc:
            raise TaskIOError(f"failed to claim pid file for task {paths.task_id}: {exc}") from exc
        finally:
            try:
                os.unlink(staging)
            except OSError:
                pass

    def _discard_stale_pid(self, paths: TaskPaths, stale: Optional[int], claimant: int) -> None:
        # Move the file aside before deleting it: if another claimant replaced
        # it in the meantime, the moved file is not the stale one and goes back.
        aside = os.path.join(paths.directory, f".{PID_FILE}.{claimant}.stale")
        try:
            os.rename(paths.pid_file, aside)
        except FileNotFoundError:
            return
        try:
            with open(aside, "r", encoding="utf-8") as f:
                raw = f.read().strip()
            current = parse_pid(raw)
            if current != stale:
                try:
                    os.link(aside, paths.pid_file)
                except FileExistsError:
                    pass
                raise Conflict(f"task {paths.task_id} already has an active worker (pid {current})")
            logger.info("Task %s: reclaimed stale pid file (pid %s)", paths.task_id, stale)
        finally:
            try:
                os.unlink(aside)
            except OSError:
                pass

    def release_pid(self, paths: TaskPaths, pid: Optional[int] = None) -> None:
        """Remove the pid file; with ``pid`` given, only if it still holds that pid."""
        if pid is not None and self.read_pid(paths) not in (pid, None):
            return
        try:
            os.unlink(paths.pid_file)
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise TaskIOError(f"failed to remove pid file for task {paths.task_id}: {exc}") from exc
