"""Caller-facing task operations.

Every surface (CLI, MCP over stdio or HTTP) goes through
:class:`TaskService`; it never runs the engine itself.  ``start`` and
``send`` hand the prompt to a detached worker and return once the worker
has reported the task id.
"""
from __future__ import annotations

from dataclasses import dataclass
import logging
import os
import subprocess
import time
from typing import Iterable, Iterator, Optional, Protocol, Sequence

from codex_tasks.core import process
from codex_tasks.core.archive import ArchiveManager, ArchiveOutcome
from codex_tasks.core.config import Settings
from codex_tasks.core.errors import Conflict, InvalidState, NotFound, TaskError, TaskIOError
from codex_tasks.core.status import active_worker, observe, reconcile
from codex_tasks.core.store import TaskStore
from codex_tasks.core.task_events import TaskLog
from codex_tasks.core.tasks import TaskMetadata, TaskState

logger = logging.getLogger("codex_tasks.service")

LOG_WAIT_TIMEOUT = 10.0
LOG_WAIT_INTERVAL = 0.1
GIT_TIMEOUT = 600


class Launcher(Protocol):
    def start(
        self,
        prompt: str,
        *,
        working_dir: str,
        title: Optional[str] = None,
        config_overrides: Sequence[str] = (),
    ) -> str: ...

    def send(self, task_id: str, prompt: str) -> str: ...


@dataclass
class StopOutcome:
    task_id: str
    state: str
    action: str             # "stopped" | "killed" | "already_stopped" | "died" | "failed"
    message: Optional[str] = None

    def to_dict(self) -> dict:
        return {"task_id": self.task_id, "state": self.state, "action": self.action, "message": self.message}


def _validate_prompt(prompt: str) -> str:
    if not prompt or not prompt.strip():
        raise InvalidState("prompt must not be empty")
    return prompt


def _validate_overrides(overrides: Iterable[str]) -> list[str]:
    result = []
    for override in overrides:
        key, sep, _ = override.partition("=")
        if not sep or not key.strip():
            raise InvalidState(f"config override must look like key=value: {override!r}")
        result.append(override)
    return result


def _run_git(repo_dir: Optional[str], *args: str) -> None:
    cmd = ["git"] + (["-C", repo_dir] if repo_dir else []) + list(args)
    try:
        proc = subprocess.run(cmd, capture_output=True, text=True, timeout=GIT_TIMEOUT)
    except (OSError, subprocess.TimeoutExpired) as exc:
        raise TaskIOError(f"failed to run git {args[0]}: {exc}") from exc
    if proc.returncode != 0:
        detail = (proc.stderr or proc.stdout or "").strip()[-500:]
        raise TaskIOError(f"`git {' '.join(args)}` exited with status {proc.returncode}: {detail}")


def clone_repository(repo: str, target: str, ref: Optional[str] = None) -> None:
    """Clone ``repo`` into ``target`` (which must not exist), optionally checking out ``ref``."""
    if os.path.exists(target):
        raise InvalidState(f"working directory {target} already exists; refusing to overwrite")
    try:
        os.makedirs(os.path.dirname(target), exist_ok=True)
    except OSError as exc:
        raise TaskIOError(f"cannot create parent of working directory {target}: {exc}") from exc
    # Local paths are cloned by absolute path so relative ones survive the cwd.
    source = os.path.abspath(os.path.expanduser(repo)) if os.path.exists(os.path.expanduser(repo)) else repo
    logger.info("Cloning %s into %s", source, target)
    _run_git(None, "clone", source, target)
    if ref:
        _run_git(target, "fetch", "origin", ref)
        _run_git(target, "checkout", ref)


def prepare_working_dir(
    path: Optional[str],
    repo_url: Optional[str] = None,
    repo_ref: Optional[str] = None,
) -> str:
    """Return an absolute, canonical working directory.

    With ``repo_url`` the directory is a fresh clone; otherwise it is
    created if needed.
    """
    if repo_ref and not repo_url:
        raise InvalidState("a repository ref needs a repository url")
    if repo_url:
        if not path:
            raise InvalidState("a working directory is required when cloning a repository")
        target = os.path.abspath(os.path.expanduser(path))
        clone_repository(repo_url, target, repo_ref)
        return os.path.realpath(target)
    target = os.path.abspath(os.path.expanduser(path)) if path else os.getcwd()
    try:
        os.makedirs(target, exist_ok=True)
    except OSError as exc:
        raise TaskIOError(f"cannot use working directory {target}: {exc}") from exc
    return os.path.realpath(target)


class TaskService:
    def __init__(
        self,
        store: TaskStore,
        launcher: Optional[Launcher] = None,
        *,
        stop_timeout: float = 10.0,
        poll_interval: float = process.POLL_INTERVAL,
    ) -> None:
        self.store = store
        self.launcher = launcher
        self.stop_timeout = stop_timeout
        self.poll_interval = poll_interval
        self.archiver = ArchiveManager(store)

    @classmethod
    def from_settings(cls, settings: Settings) -> "TaskService":
        from codex_tasks.core.worker import WorkerLauncher

        store = TaskStore(settings.home)
        store.ensure_layout()
        return cls(store, WorkerLauncher(settings), stop_timeout=settings.stop_timeout)

    def _require_launcher(self) -> Launcher:
        if self.launcher is None:
            raise RuntimeError("this TaskService was created without a worker launcher")
        return self.launcher

    # ── start / send ─────────────────────────────────────────

    def start(
        self,
        prompt: str,
        title: Optional[str] = None,
        working_dir: Optional[str] = None,
        config_overrides: Optional[Sequence[str]] = None,
        repo_url: Optional[str] = None,
        repo_ref: Optional[str] = None,
    ) -> str:
        _validate_prompt(prompt)
        overrides = _validate_overrides(config_overrides or [])
        directory = prepare_working_dir(
            working_dir,
            repo_url=repo_url.strip() if repo_url and repo_url.strip() else None,
            repo_ref=repo_ref.strip() if repo_ref and repo_ref.strip() else None,
        )
        task_id = self._require_launcher().start(
            prompt,
            working_dir=directory,
            title=title.strip() if title and title.strip() else None,
            config_overrides=overrides,
        )
        logger.info("Started task %s in %s", task_id, directory)
        return task_id

    def send(self, task_id: str, prompt: str) -> None:
        _validate_prompt(prompt)
        paths = self.store.resolve(task_id)
        if paths.archived:
            raise InvalidState(f"task {task_id} is ARCHIVED; archived tasks cannot receive prompts")
        record = reconcile(self.store, paths)
        holder = active_worker(self.store, paths)
        if holder is not None or record.state == TaskState.RUNNING:
            raise Conflict(f"task {task_id} already has an active worker (pid {holder or record.pid})")
        if record.state != TaskState.STOPPED:
            raise InvalidState(f"task {task_id} is {record.state.value}; only STOPPED tasks accept prompts")
        self._require_launcher().send(task_id, prompt)
        logger.info("Sent prompt to task %s", task_id)

    # ── Reads ────────────────────────────────────────────────

    def status(self, task_id: str) -> TaskMetadata:
        return observe(self.store, self.store.resolve(task_id))

    def result(self, task_id: str) -> Optional[str]:
        return self.store.read_result(self.store.resolve(task_id))

    def list(
        self,
        states: Optional[Iterable[TaskState]] = None,
        include_archived: bool = False,
    ) -> list[TaskMetadata]:
        wanted = set(states) if states else None
        records = [observe(self.store, paths) for paths in self.store.iter_active()]
        if include_archived or (wanted is not None and TaskState.ARCHIVED in wanted):
            records.extend(observe(self.store, paths) for paths in self.store.iter_archived())
        if wanted is not None:
            records = [r for r in records if r.state in wanted]
        records.sort(key=lambda r: r.updated_at, reverse=True)
        return records

    def log(
        self,
        task_id: str,
        lines: Optional[int] = None,
        follow: bool = False,
        forever: bool = False,
    ) -> Iterator[str]:
        """Return the task's raw log lines; with ``follow``, keep yielding new ones.

        A follow ends once the task is DIED or ARCHIVED, or when it has
        been STOPPED across two consecutive idle polls.  ``forever`` never ends.
        """
        paths = self.store.resolve(task_id)
        task_log = TaskLog(paths.log)
        if not (follow or forever):
            return iter(task_log.read_lines(lines))

        self._wait_for_log(task_log, task_id)
        idle_stopped = False

        def should_stop() -> bool:
            nonlocal idle_stopped
            if forever:
                return False
            try:
                state = self.status(task_id).state
            except NotFound:
                return True
            if state == TaskState.RUNNING:
                idle_stopped = False
                return False
            if state == TaskState.STOPPED:
                if idle_stopped:
                    return True
                idle_stopped = True
                return False
            return True

        return task_log.follow(should_stop, limit=lines)

    def _wait_for_log(self, task_log: TaskLog, task_id: str) -> None:
        deadline = time.monotonic() + LOG_WAIT_TIMEOUT
        while not task_log.exists():
            if time.monotonic() >= deadline:
                raise NotFound(f"log for task {task_id} did not appear within {LOG_WAIT_TIMEOUT:.0f}s")
            time.sleep(LOG_WAIT_INTERVAL)

    # ── stop ─────────────────────────────────────────────────

    def stop(self, task_id: str) -> StopOutcome:
        paths = self.store.resolve(task_id)
        if paths.archived:
            return StopOutcome(task_id, TaskState.ARCHIVED.value, "already_stopped")

        record = self.store.read_metadata(paths)
        pid = active_worker(self.store, paths)
        if pid is None and record.state == TaskState.RUNNING and process.is_alive(record.pid):
            pid = record.pid
        if pid is None:
            if record.state == TaskState.RUNNING:
                record = reconcile(self.store, paths)
                return StopOutcome(task_id, record.state.value, "died", record.note)
            return StopOutcome(task_id, record.state.value, "already_stopped")

        result = process.terminate(pid, self.stop_timeout, poll_interval=self.poll_interval)
        self.store.release_pid(paths)
        # Re-read: the worker records its own STOPPED on a graceful exit.
        record = self.store.read_metadata(paths)
        if record.state in (TaskState.RUNNING, TaskState.STOPPED):
            record.transition(TaskState.STOPPED, note="stopped by request")
        record.pid = None
        self.store.write_metadata(paths, record)
        action = "killed" if result == "killed" else "stopped"
        logger.info("Task %s %s (pid %d)", task_id, action, pid)
        return StopOutcome(task_id, record.state.value, action)

    def stop_all(self) -> list[StopOutcome]:
        outcomes: list[StopOutcome] = []
        for paths in list(self.store.iter_active()):
            try:
                record = observe(self.store, paths)
                if record.state != TaskState.RUNNING and active_worker(self.store, paths) is None:
                    continue
                outcomes.append(self.stop(paths.task_id))
            except TaskError as exc:
                logger.error("Failed to stop task %s: %s", paths.task_id, exc)
                outcomes.append(StopOutcome(paths.task_id, "UNKNOWN", "failed", exc.describe()))
        return outcomes

    # ── archive ──────────────────────────────────────────────

    def archive(self, task_id: str) -> ArchiveOutcome:
        return self.archiver.archive(task_id)

    def archive_all(self) -> list[ArchiveOutcome]:
        return self.archiver.archive_all()
