from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
import json
import logging
import os
import shutil
import subprocess
import tempfile
import threading
from typing import Any, Iterator, Optional, Sequence, Union

from codex_tasks.core.errors import SpawnFailed

logger = logging.getLogger("codex_tasks.codex_cli")

DEFAULT_COMMAND = ("codex",)
STDERR_EXCERPT_LINES = 20
OUTPUT_FILE_NAME = "last-message.txt"


# ── Typed events ─────────────────────────────────────────────

@dataclass(frozen=True)
class EngineEvent:
    """One line of the engine's JSON event stream.

    ``raw`` is the exact line the engine printed, so the event can be
    logged verbatim whether or not its shape is understood.
    """
    raw: str
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def type(self) -> str:
        return str(self.payload.get("type", ""))


@dataclass(frozen=True)
class ThreadStarted(EngineEvent):
    thread_id: str = ""


@dataclass(frozen=True)
class TurnStarted(EngineEvent):
    pass


@dataclass(frozen=True)
class AgentMessage(EngineEvent):
    text: str = ""


@dataclass(frozen=True)
class Reasoning(EngineEvent):
    text: str = ""


@dataclass(frozen=True)
class CommandExecuted(EngineEvent):
    command: str = ""
    exit_code: Optional[int] = None
    output: str = ""


@dataclass(frozen=True)
class TurnCompleted(EngineEvent):
    usage: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TurnFailed(EngineEvent):
    message: str = ""


@dataclass(frozen=True)
class EngineError(EngineEvent):
    message: str = ""


@dataclass(frozen=True)
class OpaqueEvent(EngineEvent):
    """Any shape not modelled above, forwarded untouched."""
    json_line: bool = True


def decode_event(line: str) -> EngineEvent:
    raw = line.rstrip("\r\n")
    try:
        payload = json.loads(raw)
    except ValueError:
        return OpaqueEvent(raw=raw, payload={"type": "stdout", "message": raw}, json_line=False)
    if not isinstance(payload, dict):
        return OpaqueEvent(raw=raw, payload={"type": "stdout", "message": raw}, json_line=False)

    event_type = payload.get("type")
    if event_type == "thread.started" and isinstance(payload.get("thread_id"), str):
        return ThreadStarted(raw=raw, payload=payload, thread_id=payload["thread_id"])
    if event_type == "turn.started":
        return TurnStarted(raw=raw, payload=payload)
    if event_type == "turn.completed":
        usage = payload.get("usage")
        return TurnCompleted(raw=raw, payload=payload, usage=usage if isinstance(usage, dict) else {})
    if event_type == "turn.failed":
        error = payload.get("error")
        message = error.get("message") if isinstance(error, dict) else error
        return TurnFailed(raw=raw, payload=payload, message=str(message or "turn failed"))
    if event_type == "error":
        return EngineError(raw=raw, payload=payload, message=str(payload.get("message") or ""))
    if event_type == "item.completed" and isinstance(payload.get("item"), dict):
        item = payload["item"]
        item_type = item.get("type")
        if item_type == "agent_message" and isinstance(item.get("text"), str):
            return AgentMessage(raw=raw, payload=payload, text=item["text"])
        if item_type == "reasoning" and isinstance(item.get("text"), str):
            return Reasoning(raw=raw, payload=payload, text=item["text"])
        if item_type == "command_execution":
            exit_code = item.get("exit_code")
            return CommandExecuted(
                raw=raw,
                payload=payload,
                command=str(item.get("command") or ""),
                exit_code=exit_code if isinstance(exit_code, int) else None,
                output=str(item.get("aggregated_output") or ""),
            )
    return OpaqueEvent(raw=raw, payload=payload)


# ── Outcomes ─────────────────────────────────────────────────

@dataclass(frozen=True)
class Success:
    result: Optional[str]


@dataclass(frozen=True)
class Failure:
    exit_code: int
    stderr_excerpt: str = ""

    def describe(self) -> str:
        detail = f": {self.stderr_excerpt.splitlines()[-1]}" if self.stderr_excerpt.strip() else ""
        return f"engine exited with code {self.exit_code}{detail}"


@dataclass(frozen=True)
class Crashed:
    reason: str
    stderr_excerpt: str = ""

    def describe(self) -> str:
        return f"engine crashed: {self.reason}"


Outcome = Union[Success, Failure, Crashed]


# ── Invocation ───────────────────────────────────────────────

class Invocation:
    """A single running engine process.

    Iterate :meth:`events` to completion, then read :attr:`outcome`.
    Always :meth:`close` the invocation; it kills a still-running engine
    and removes the scratch directory holding the output artifact.
    """

    def __init__(
        self,
        process: subprocess.Popen,
        output_path: str,
        scratch_dir: str,
        timeout: float = 0,
    ) -> None:
        self.process = process
        self.output_path = output_path
        self._scratch_dir = scratch_dir
        self._stderr_tail: deque[str] = deque(maxlen=STDERR_EXCERPT_LINES)
        self._stderr_lines: deque[str] = deque()
        self._stderr_lock = threading.Lock()
        self._last_message: Optional[str] = None
        self._outcome: Optional[Outcome] = None
        self._timed_out = False
        self._timer: Optional[threading.Timer] = None
        self._stderr_thread: Optional[threading.Thread] = None
        if getattr(process, "stderr", None) is not None:
            self._stderr_thread = threading.Thread(target=self._drain_stderr, daemon=True)
            self._stderr_thread.start()
        if timeout and timeout > 0:
            self._timer = threading.Timer(timeout, self._on_timeout)
            self._timer.daemon = True
            self._timer.start()

    @property
    def pid(self) -> int:
        return self.process.pid

    def _drain_stderr(self) -> None:
        assert self.process.stderr is not None
        try:
            for line in self.process.stderr:
                text = line.rstrip("\r\n")
                if not text:
                    continue
                with self._stderr_lock:
                    self._stderr_tail.append(text)
                    self._stderr_lines.append(text)
        except (OSError, ValueError):
            pass

    def _on_timeout(self) -> None:
        logger.warning("Engine pid %s exceeded its time limit; killing", self.process.pid)
        self._timed_out = True
        self.terminate()

    def take_stderr(self) -> list[str]:
        """Return stderr lines captured since the last call."""
        with self._stderr_lock:
            lines = list(self._stderr_lines)
            self._stderr_lines.clear()
        return lines

    def stderr_excerpt(self) -> str:
        with self._stderr_lock:
            return "\n".join(self._stderr_tail)

    def events(self) -> Iterator[EngineEvent]:
        assert self.process.stdout is not None
        unreadable: Optional[str] = None
        try:
            for line in self.process.stdout:
                if not line.strip():
                    continue
                event = decode_event(line)
                if isinstance(event, AgentMessage):
                    self._last_message = event.text
                yield event
        except (OSError, ValueError) as exc:
            unreadable = f"unreadable output: {exc}"
            self.terminate()
        self._finish(unreadable)

    def _finish(self, unreadable: Optional[str]) -> None:
        returncode = self.process.wait()
        if self._timer is not None:
            self._timer.cancel()
        if self._stderr_thread is not None:
            self._stderr_thread.join(timeout=5)
        excerpt = self.stderr_excerpt()
        if self._timed_out:
            self._outcome = Crashed("timed out", excerpt)
        elif unreadable:
            self._outcome = Crashed(unreadable, excerpt)
        elif returncode is not None and returncode < 0:
            self._outcome = Crashed(f"killed by signal {-returncode}", excerpt)
        elif returncode != 0:
            self._outcome = Failure(int(returncode), excerpt)
        else:
            self._outcome = Success(self._read_artifact())
        logger.info("Engine pid %s finished: %s", self.process.pid, type(self._outcome).__name__)

    def _read_artifact(self) -> Optional[str]:
        try:
            with open(self.output_path, "r", encoding="utf-8") as f:
                text = f.read()
        except FileNotFoundError:
            text = ""
        except OSError as exc:
            logger.warning("Failed to read engine output artifact %s: %s", self.output_path, exc)
            text = ""
        if text.strip():
            return text
        return self._last_message

    @property
    def finished(self) -> bool:
        return self._outcome is not None

    @property
    def outcome(self) -> Outcome:
        if self._outcome is None:
            raise RuntimeError("invocation outcome requested before the event stream was consumed")
        return self._outcome

    def terminate(self) -> None:
        if self.process.poll() is None:
            try:
                self.process.kill()
            except OSError:
                pass

    def close(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self.terminate()
        shutil.rmtree(self._scratch_dir, ignore_errors=True)


# ── Client ───────────────────────────────────────────────────

class CodexCli:
    """Runs ``codex exec --json`` non-interactively, one prompt per process."""

    def __init__(
        self,
        command: Optional[Sequence[str]] = None,
        *,
        timeout: float = 0,
        model: Optional[str] = None,
        extra_args: Optional[Sequence[str]] = None,
    ) -> None:
        self.command = list(command or DEFAULT_COMMAND)
        self.timeout = timeout
        self.model = model
        self.extra_args = list(extra_args or [])

    def _resolve_executable(self) -> str:
        program = self.command[0]
        if os.path.sep in program:
            if os.path.isfile(program) and os.access(program, os.X_OK):
                return program
            raise SpawnFailed(f"engine executable is not usable: {program}")
        resolved = shutil.which(program)
        if not resolved:
            raise SpawnFailed(f"engine executable not found on PATH: {program}")
        return resolved

    def build_command(
        self,
        *,
        working_dir: str,
        output_path: str,
        resume_id: Optional[str] = None,
        config_overrides: Sequence[str] = (),
    ) -> list[str]:
        cmd = [self._resolve_executable(), *self.command[1:], "exec", "--json", "--skip-git-repo-check"]
        cmd.extend(["--cd", working_dir])
        cmd.extend(["--output-last-message", output_path])
        for override in config_overrides:
            cmd.extend(["-c", override])
        if self.model:
            cmd.extend(["--model", self.model])
        cmd.extend(self.extra_args)
        if resume_id:
            cmd.extend(["resume", resume_id])
        # Prompt arrives on stdin.
        cmd.append("-")
        return cmd

    def invoke(
        self,
        prompt: str,
        *,
        working_dir: str,
        resume_id: Optional[str] = None,
        config_overrides: Sequence[str] = (),
    ) -> Invocation:
        scratch_dir = tempfile.mkdtemp(prefix="codex-tasks-")
        output_path = os.path.join(scratch_dir, OUTPUT_FILE_NAME)
        try:
            cmd = self.build_command(
                working_dir=working_dir,
                output_path=output_path,
                resume_id=resume_id,
                config_overrides=config_overrides,
            )
            logger.info("Spawning engine: %s (cwd=%s resume=%s)", cmd[0], working_dir, resume_id)
            process = subprocess.Popen(
                cmd,
                cwd=working_dir,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except SpawnFailed:
            shutil.rmtree(scratch_dir, ignore_errors=True)
            raise
        except OSError as exc:
            shutil.rmtree(scratch_dir, ignore_errors=True)
            raise SpawnFailed(f"failed to start engine: {exc}") from exc

        if process.stdin is not None:
            try:
                process.stdin.write(prompt)
                process.stdin.close()
            except (BrokenPipeError, OSError) as exc:
                logger.warning("Engine closed stdin before the prompt was written: %s", exc)
        return Invocation(process, output_path, scratch_dir, timeout=self.timeout)
