"""Worker supervision: one detached process drives one task's prompt.

The caller (``start``/``send``) launches ``codex-tasks worker`` as a new
session leader and waits for a one-line JSON handshake on the worker's
stdout: ``{"task_id": ...}`` once the task is durable, or
``{"error": <kind>, "message": ...}`` if it never got that far.  The
caller then exits and the worker carries on alone, holding the task's
pid file until the invocation (and any retries) are finished.
"""
from __future__ import annotations

from dataclasses import dataclass
import json
import logging
import os
import queue
import signal
import subprocess
import sys
import threading
from typing import Callable, Iterator, Optional, Sequence

from codex_tasks.core import process
from codex_tasks.core.config import Settings
from codex_tasks.core.errors import (
    Crashed,
    InvalidState,
    NoIdentifier,
    SpawnFailed,
    TaskError,
    TaskIOError,
    error_from_kind,
)
from codex_tasks.core.logging_config import attach_worker_log
from codex_tasks.core.resolution import IdentifierResolution
from codex_tasks.core.store import TaskPaths, TaskStore
from codex_tasks.core.task_events import TaskLog, synthetic_event
from codex_tasks.core.tasks import TaskMetadata, TaskState
from codex_tasks.integrations.codex_cli import (
    CodexCli,
    EngineEvent,
    Invocation,
    OpaqueEvent,
    Outcome,
    Success,
)

logger = logging.getLogger("codex_tasks.worker")


class WorkerTerminated(Exception):
    """Raised in the worker's main thread when it receives SIGTERM."""


@dataclass
class RetryPolicy:
    """Bounded exponential backoff for failed or crashed invocations."""
    max_attempts: int = 3
    backoff_seconds: float = 1.0
    max_backoff_seconds: float = 30.0

    def delay(self, failed_attempts: int) -> float:
        return min(self.backoff_seconds * (2 ** max(failed_attempts - 1, 0)), self.max_backoff_seconds)


class WorkerSupervisor:
    """Runs one prompt for one task, including retries, and records the result."""

    def __init__(
        self,
        store: TaskStore,
        cli: CodexCli,
        *,
        retry: Optional[RetryPolicy] = None,
        pid: Optional[int] = None,
        on_established: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.store = store
        self.cli = cli
        self.retry = retry or RetryPolicy()
        self.pid = pid or os.getpid()
        self.on_established = on_established
        self._shutdown = threading.Event()
        self._invocation: Optional[Invocation] = None

    # ── Control ──────────────────────────────────────────────

    def request_shutdown(self) -> None:
        """Let the in-flight invocation finish, then stop without retrying."""
        logger.info("Shutdown requested; finishing current invocation")
        self._shutdown.set()

    def kill_engine(self) -> None:
        invocation = self._invocation
        if invocation is not None:
            invocation.terminate()

    # ── Entry points ─────────────────────────────────────────

    def run_start(
        self,
        prompt: str,
        *,
        working_dir: str,
        title: Optional[str] = None,
        config_overrides: Sequence[str] = (),
    ) -> TaskMetadata:
        overrides = list(config_overrides)
        invocation = self._spawn(prompt, working_dir, None, overrides)
        resolution = IdentifierResolution()
        events = invocation.events()
        paths: Optional[TaskPaths] = None
        try:
            for event in events:
                ready = resolution.observe(event)
                if ready is not None:
                    task_id, buffered = ready
                    break
            else:
                resolution.require_established(self._describe(invocation.outcome))
            paths = self.store.create_task_dir(task_id)
            self.store.claim_pid(paths, self.pid)
        except BaseException:
            self._close(invocation)
            if paths is not None:
                self.store.discard_task_dir(paths)
            raise

        record = TaskMetadata(
            id=task_id,
            title=title,
            working_dir=working_dir,
            state=TaskState.RUNNING,
            pid=self.pid,
            last_prompt=prompt,
            config_overrides=overrides,
        )
        log = TaskLog(paths.log)
        durable = False
        try:
            self.store.write_metadata(paths, record)
            durable = True
            log.append_synthetic("user_message", message=prompt)
            for event in buffered:
                self._log_event(log, event)
            self._flush_stderr(log, invocation)
            self._announce(task_id)
            return self._drive(paths, log, record, prompt, invocation, events)
        except WorkerTerminated:
            self._terminated(paths, log, record, invocation)
            raise
        finally:
            self._close_all(invocation)
            self.store.release_pid(paths, self.pid)
            if not durable:
                # Nobody has been told about this id yet.
                self.store.discard_task_dir(paths)

    def run_send(self, task_id: str, prompt: str) -> TaskMetadata:
        paths = self.store.resolve(task_id)
        if paths.archived:
            raise InvalidState(f"task {task_id} is ARCHIVED; archived tasks cannot receive prompts")
        self.store.claim_pid(paths, self.pid)
        try:
            record = self.store.read_metadata(paths)
            if record.state == TaskState.RUNNING:
                # The pid file is ours, so whoever recorded RUNNING is gone.
                record.transition(TaskState.DIED, note="worker exited without recording a final state")
                self.store.write_metadata(paths, record)
            if record.state != TaskState.STOPPED:
                raise InvalidState(
                    f"task {task_id} is {record.state.value}; only STOPPED tasks accept prompts"
                )
            invocation = self._spawn(prompt, record.working_dir, record.id, record.config_overrides)
            log = TaskLog(paths.log)
            try:
                record.transition(TaskState.RUNNING)
                record.pid = self.pid
                record.last_prompt = prompt
                record.attempts = 0
                record.note = None
                self.store.write_metadata(paths, record)
                log.append_synthetic("user_message", message=prompt)
                self._announce(task_id)
                return self._drive(paths, log, record, prompt, invocation, invocation.events())
            except WorkerTerminated:
                self._terminated(paths, log, record, invocation)
                raise
            finally:
                self._close_all(invocation)
        finally:
            self.store.release_pid(paths, self.pid)

    # ── Cycle ────────────────────────────────────────────────

    def _drive(
        self,
        paths: TaskPaths,
        log: TaskLog,
        record: TaskMetadata,
        prompt: str,
        invocation: Invocation,
        events: Iterator[EngineEvent],
    ) -> TaskMetadata:
        attempt = 1
        while True:
            for event in events:
                self._log_event(log, event)
                self._flush_stderr(log, invocation)
            self._flush_stderr(log, invocation)
            outcome = invocation.outcome
            self._close(invocation)
            record.attempts = attempt

            if isinstance(outcome, Success):
                return self._succeed(paths, record, outcome)

            reason = self._describe(outcome)
            logger.warning("Task %s attempt %d failed: %s", record.id, attempt, reason)
            if self._shutdown.is_set():
                return self._finish(paths, log, record, TaskState.STOPPED, reason)
            if attempt >= self.retry.max_attempts:
                return self._finish(
                    paths, log, record, TaskState.DIED, f"{reason} (after {attempt} attempts)"
                )

            delay = self.retry.delay(attempt)
            attempt += 1
            log.append_synthetic("worker.retry", attempt=attempt, delay=delay, reason=reason)
            record.note = reason
            self.store.write_metadata(paths, record)
            if self._shutdown.wait(delay):
                return self._finish(paths, log, record, TaskState.STOPPED, reason)
            try:
                invocation = self._spawn(prompt, record.working_dir, record.id, record.config_overrides)
            except SpawnFailed as exc:
                return self._finish(paths, log, record, TaskState.DIED, str(exc))
            events = invocation.events()

    def _terminated(
        self,
        paths: TaskPaths,
        log: TaskLog,
        record: TaskMetadata,
        invocation: Invocation,
    ) -> None:
        """Record STOPPED after SIGTERM, wherever in the cycle it landed."""
        self._close_all(invocation)
        if record.state == TaskState.RUNNING:
            self._finish(paths, log, record, TaskState.STOPPED, "terminated by signal")
        else:
            # Already settled in memory; make sure the file agrees.
            self.store.write_metadata(paths, record)

    def _succeed(self, paths: TaskPaths, record: TaskMetadata, outcome: Success) -> TaskMetadata:
        if outcome.result is not None:
            self.store.promote_result(paths, outcome.result)
            record.last_result = outcome.result
        record.transition(TaskState.STOPPED)
        record.note = None
        self.store.write_metadata(paths, record)
        logger.info("Task %s finished; result %d chars", record.id, len(outcome.result or ""))
        return record

    def _finish(
        self,
        paths: TaskPaths,
        log: TaskLog,
        record: TaskMetadata,
        state: TaskState,
        reason: str,
    ) -> TaskMetadata:
        event_type = "worker.died" if state == TaskState.DIED else "worker.stopped"
        try:
            log.append_synthetic(event_type, reason=reason)
        except TaskIOError as exc:
            logger.error("Task %s: failed to log %s: %s", record.id, event_type, exc)
        record.transition(state, note=reason)
        self.store.write_metadata(paths, record)
        logger.info("Task %s is %s: %s", record.id, state.value, reason)
        return record

    # ── Helpers ──────────────────────────────────────────────

    def _spawn(
        self,
        prompt: str,
        working_dir: str,
        resume_id: Optional[str],
        config_overrides: Sequence[str],
    ) -> Invocation:
        invocation = self.cli.invoke(
            prompt,
            working_dir=working_dir,
            resume_id=resume_id,
            config_overrides=config_overrides,
        )
        self._invocation = invocation
        return invocation

    def _close(self, invocation: Invocation) -> None:
        invocation.close()
        if self._invocation is invocation:
            self._invocation = None

    def _close_all(self, invocation: Invocation) -> None:
        self._close(invocation)
        if self._invocation is not None:
            self._close(self._invocation)

    def _announce(self, task_id: str) -> None:
        if self.on_established is not None:
            self.on_established(task_id)

    @staticmethod
    def _describe(outcome: Outcome) -> str:
        if isinstance(outcome, Success):
            return "engine finished"
        return outcome.describe()

    @staticmethod
    def _log_event(log: TaskLog, event: EngineEvent) -> None:
        if isinstance(event, OpaqueEvent) and not event.json_line:
            log.append(synthetic_event("stdout", message=event.raw))
        else:
            log.append_line(event.raw)

    @staticmethod
    def _flush_stderr(log: TaskLog, invocation: Invocation) -> None:
        for line in invocation.take_stderr():
            log.append_synthetic("stderr", message=line)


# ── Worker process side ──────────────────────────────────────


class HandshakeChannel:
    """Reports the task id (or the failure) to the launching caller exactly once."""

    def __init__(self, stream=None) -> None:
        self._stream = stream or sys.stdout
        self.sent = False

    def _emit(self, payload: dict) -> None:
        if self.sent:
            return
        self.sent = True
        self._stream.write(json.dumps(payload) + "\n")
        self._stream.flush()
        if self._stream is sys.stdout:
            # Nobody reads the pipe after the handshake.
            devnull = os.open(os.devnull, os.O_WRONLY)
            os.dup2(devnull, sys.stdout.fileno())
            os.close(devnull)

    def established(self, task_id: str) -> None:
        self._emit({"task_id": task_id})

    def failed(self, exc: TaskError) -> None:
        self._emit({"error": exc.kind, "message": str(exc)})


def install_signal_handlers(supervisor: WorkerSupervisor) -> None:
    def _terminate(signum, frame) -> None:
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
        supervisor.kill_engine()
        raise WorkerTerminated(f"received signal {signum}")

    def _graceful(signum, frame) -> None:
        supervisor.request_shutdown()

    signal.signal(signal.SIGTERM, _terminate)
    signal.signal(signal.SIGINT, _graceful)
    signal.signal(signal.SIGHUP, _graceful)


def run_worker(
    settings: Settings,
    *,
    prompt: str,
    task_id: Optional[str] = None,
    title: Optional[str] = None,
    working_dir: Optional[str] = None,
    config_overrides: Sequence[str] = (),
    channel: Optional[HandshakeChannel] = None,
) -> int:
    """Body of the detached worker process.  Returns the process exit code."""
    channel = channel or HandshakeChannel()

    def _established(established_id: str) -> None:
        try:
            attach_worker_log(established_id)
        except OSError as exc:
            logger.warning("Could not open worker log for %s: %s", established_id, exc)
        channel.established(established_id)

    store = TaskStore(settings.home)
    cli = CodexCli(settings.engine_command, timeout=settings.engine_timeout, model=settings.engine_model)
    supervisor = WorkerSupervisor(
        store,
        cli,
        retry=RetryPolicy(settings.max_attempts, settings.backoff_seconds, settings.max_backoff_seconds),
        on_established=_established,
    )
    install_signal_handlers(supervisor)
    try:
        if task_id:
            supervisor.run_send(task_id, prompt)
        else:
            supervisor.run_start(
                prompt,
                working_dir=working_dir or os.getcwd(),
                title=title,
                config_overrides=config_overrides,
            )
    except WorkerTerminated as exc:
        logger.info("Worker stopped: %s", exc)
        return 143
    except TaskError as exc:
        logger.error("Worker failed: %s", exc.describe())
        channel.failed(exc)
        return 1
    except Exception as exc:  # noqa: BLE001
        logger.exception("Worker crashed")
        channel.failed(Crashed(f"worker crashed: {exc}"))
        return 1
    return 0


# ── Caller side ──────────────────────────────────────────────


class WorkerLauncher:
    """Spawns detached worker processes and waits for their handshake."""

    def __init__(self, settings: Settings, *, python: Optional[str] = None) -> None:
        self.settings = settings
        self.python = python or sys.executable

    def start(
        self,
        prompt: str,
        *,
        working_dir: str,
        title: Optional[str] = None,
        config_overrides: Sequence[str] = (),
    ) -> str:
        args = ["--working-dir", working_dir]
        if title:
            args.extend(["--title", title])
        for override in config_overrides:
            args.extend(["--config", override])
        return self._launch(args, prompt, new_task=True)

    def send(self, task_id: str, prompt: str) -> str:
        return self._launch(["--task-id", task_id], prompt, new_task=False)

    def _launch(self, args: list[str], prompt: str, *, new_task: bool) -> str:
        cmd = [self.python, "-m", "codex_tasks.cli", "worker", *args]
        env = os.environ.copy()
        env["CODEX_TASKS_HOME"] = self.settings.home
        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                text=True,
                encoding="utf-8",
                errors="replace",
                env=env,
                start_new_session=True,
                close_fds=True,
            )
        except OSError as exc:
            raise SpawnFailed(f"failed to launch worker: {exc}") from exc
        logger.info("Launched worker pid %d", proc.pid)

        assert proc.stdin is not None
        try:
            proc.stdin.write(prompt)
            proc.stdin.close()
        except (BrokenPipeError, OSError) as exc:
            logger.warning("Worker %d closed stdin early: %s", proc.pid, exc)

        try:
            line = self._read_handshake(proc, new_task=new_task)
        finally:
            if proc.stdout is not None:
                proc.stdout.close()
        try:
            payload = json.loads(line)
        except ValueError as exc:
            raise Crashed(f"worker sent an unreadable handshake: {line[:200]!r}") from exc
        if "task_id" in payload:
            return str(payload["task_id"])
        raise error_from_kind(str(payload.get("error")), str(payload.get("message") or "worker failed"))

    def _read_handshake(self, proc: subprocess.Popen, *, new_task: bool) -> str:
        lines: queue.Queue[str] = queue.Queue(maxsize=1)

        def _reader() -> None:
            assert proc.stdout is not None
            try:
                lines.put(proc.stdout.readline())
            except (OSError, ValueError):
                lines.put("")

        threading.Thread(target=_reader, daemon=True).start()
        try:
            line = lines.get(timeout=self.settings.handshake_timeout)
        except queue.Empty:
            process.terminate(proc.pid, self.settings.stop_timeout)
            message = f"worker did not report back within {self.settings.handshake_timeout:.0f}s"
            # A follow-up already has its id; only a new task can lack one.
            if new_task:
                raise NoIdentifier(message) from None
            raise Crashed(message) from None
        if not line.strip():
            try:
                code = proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                code = None
            raise Crashed(f"worker exited (code {code}) before reporting a task id")
        return line.strip()
