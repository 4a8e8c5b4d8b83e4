from __future__ import annotations

import json
import os
import stat
import subprocess
import sys
from pathlib import Path
from typing import Optional, Sequence

import pytest

from codex_tasks.core.service import TaskService
from codex_tasks.core.store import TaskStore
from codex_tasks.core.tasks import TaskMetadata, TaskState
from codex_tasks.core.worker import RetryPolicy, WorkerSupervisor
from codex_tasks.integrations.codex_cli import CodexCli

# A stand-in for ``codex exec --json``.  Behaviour is driven by FAKE_CODEX_*
# environment variables so tests can script failures.
FAKE_CODEX_SCRIPT = r'''
import json
import os
import sys
import time


def emit(obj):
    print(json.dumps(obj), flush=True)


def main(args):
    if not args or args[0] != "exec":
        print("unsupported invocation", file=sys.stderr)
        return 64
    args = args[1:]
    output = None
    cwd = None
    overrides = []
    positional = []
    i = 0
    while i < len(args):
        arg = args[i]
        if arg in ("--json", "--skip-git-repo-check"):
            i += 1
            continue
        if arg in ("--cd", "--output-last-message", "-c", "--config", "--model"):
            value = args[i + 1]
            if arg == "--cd":
                cwd = value
            elif arg == "--output-last-message":
                output = value
            elif arg in ("-c", "--config"):
                overrides.append(value)
            i += 2
            continue
        positional.append(arg)
        i += 1

    resume = None
    if positional and positional[0] == "resume":
        resume = positional[1]
        positional = positional[2:]
    prompt = positional[0] if positional else "-"
    if prompt == "-":
        prompt = sys.stdin.read()

    calls = os.environ.get("FAKE_CODEX_CALLS")
    if calls:
        with open(calls, "a", encoding="utf-8") as f:
            f.write(json.dumps({
                "prompt": prompt,
                "resume": resume,
                "cwd": cwd,
                "overrides": overrides,
            }) + "\n")

    mode = os.environ.get("FAKE_CODEX_MODE", "ok")
    attempt = 1
    state_dir = os.environ.get("FAKE_CODEX_STATE")
    if state_dir:
        counter = os.path.join(state_dir, "attempts")
        if os.path.exists(counter):
            with open(counter, encoding="utf-8") as f:
                attempt = int(f.read() or "0") + 1
        with open(counter, "w", encoding="utf-8") as f:
            f.write(str(attempt))

    if os.environ.get("FAKE_CODEX_PREAMBLE"):
        emit({"type": "session.configured", "model": "fake"})
        print("plain text banner", flush=True)

    if mode == "no-id":
        print("cannot reach model", file=sys.stderr, flush=True)
        return 1

    thread_id = resume or os.environ.get("FAKE_CODEX_THREAD_ID", "abc123")
    emit({"type": "thread.started", "thread_id": thread_id})
    emit({"type": "turn.started"})

    if mode == "fail" or (mode == "fail-once" and attempt == 1):
        print("boom", file=sys.stderr, flush=True)
        emit({"type": "turn.failed", "error": {"message": "boom"}})
        return 2

    if mode == "sleep":
        time.sleep(float(os.environ.get("FAKE_CODEX_SLEEP", "30")))

    answer = "answer to: " + prompt.strip()
    emit({"type": "item.completed", "item": {"id": "item_0", "type": "reasoning", "text": "thinking it over"}})
    emit({"type": "item.completed", "item": {"id": "item_1", "type": "agent_message", "text": answer}})
    emit({"type": "turn.completed", "usage": {"input_tokens": 10, "cached_input_tokens": 0, "output_tokens": 5}})
    if output and mode != "no-artifact":
        with open(output, "w", encoding="utf-8") as f:
            f.write(answer)
    return 0


sys.exit(main(sys.argv[1:]))
'''


@pytest.fixture
def fake_codex(tmp_path: Path, monkeypatch) -> list[str]:
    """Engine command that runs the fake codex script; records calls in ``calls.jsonl``."""
    script = tmp_path / "fake_codex.py"
    script.write_text(FAKE_CODEX_SCRIPT, encoding="utf-8")
    script.chmod(script.stat().st_mode | stat.S_IXUSR)
    monkeypatch.setenv("FAKE_CODEX_CALLS", str(tmp_path / "calls.jsonl"))
    for name in ("FAKE_CODEX_MODE", "FAKE_CODEX_STATE", "FAKE_CODEX_PREAMBLE", "FAKE_CODEX_THREAD_ID"):
        monkeypatch.delenv(name, raising=False)
    return [sys.executable, str(script)]


def read_calls(tmp_path: Path) -> list[dict]:
    path = tmp_path / "calls.jsonl"
    if not path.exists():
        return []
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]


@pytest.fixture
def store(tmp_path: Path) -> TaskStore:
    s = TaskStore(str(tmp_path / "home"))
    s.ensure_layout()
    return s


@pytest.fixture
def workdir(tmp_path: Path) -> str:
    d = tmp_path / "work"
    d.mkdir()
    return str(d)


class InlineLauncher:
    """Runs the worker supervisor in the test process instead of detaching it."""

    def __init__(self, store: TaskStore, command: Sequence[str], retry: Optional[RetryPolicy] = None) -> None:
        self.store = store
        self.cli = CodexCli(command)
        self.retry = retry or RetryPolicy(max_attempts=3, backoff_seconds=0)
        self.announced: list[str] = []

    def _supervisor(self) -> WorkerSupervisor:
        return WorkerSupervisor(self.store, self.cli, retry=self.retry, on_established=self.announced.append)

    def start(self, prompt, *, working_dir, title=None, config_overrides=()) -> str:
        record = self._supervisor().run_start(
            prompt, working_dir=working_dir, title=title, config_overrides=config_overrides
        )
        return record.id

    def send(self, task_id, prompt) -> str:
        return self._supervisor().run_send(task_id, prompt).id


@pytest.fixture
def launcher(store: TaskStore, fake_codex: list[str]) -> InlineLauncher:
    return InlineLauncher(store, fake_codex)


@pytest.fixture
def service(store: TaskStore, launcher: InlineLauncher) -> TaskService:
    return TaskService(store, launcher, stop_timeout=1.0, poll_interval=0.02)


def make_task(
    store: TaskStore,
    task_id: str,
    state: TaskState,
    *,
    pid: Optional[int] = None,
    title: Optional[str] = None,
    working_dir: str = "/tmp",
    log_lines: Sequence[dict] = (),
) -> TaskMetadata:
    """Seed a task directory directly, bypassing the engine."""
    paths = store.create_task_dir(task_id)
    record = TaskMetadata(
        id=task_id,
        title=title,
        working_dir=working_dir,
        state=state,
        pid=pid,
        last_prompt="seeded prompt",
        last_result="seeded result" if state != TaskState.RUNNING else None,
    )
    store.write_metadata(paths, record)
    if pid is not None:
        Path(paths.pid_file).write_text(f"{pid}\n", encoding="utf-8")
    with open(paths.log, "w", encoding="utf-8") as f:
        for line in log_lines:
            f.write(json.dumps(line) + "\n")
    return record


@pytest.fixture
def sleeper():
    """Start long-running helper processes; all are killed at teardown."""
    procs: list[subprocess.Popen] = []

    def _spawn(ignore_term: bool = False) -> subprocess.Popen:
        code = (
            "import signal, sys, time\n"
            + ("signal.signal(signal.SIGTERM, signal.SIG_IGN)\n" if ignore_term else "")
            + "print('ready', flush=True)\n"
            "time.sleep(60)\n"
        )
        proc = subprocess.Popen(
            [sys.executable, "-c", code],
            stdout=subprocess.PIPE,
            text=True,
            start_new_session=True,
        )
        assert proc.stdout is not None
        assert proc.stdout.readline().strip() == "ready"
        procs.append(proc)
        return proc

    yield _spawn

    for proc in procs:
        if proc.poll() is None:
            proc.kill()
        try:
            proc.wait(timeout=5)
        except (subprocess.TimeoutExpired, ChildProcessError):
            pass
        if proc.stdout is not None:
            proc.stdout.close()


@pytest.fixture
def dead_pid() -> int:
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    return proc.pid


def snapshot_dirs(root: str) -> list[str]:
    found = []
    for dirpath, dirnames, _ in os.walk(root):
        for d in dirnames:
            found.append(os.path.relpath(os.path.join(dirpath, d), root))
    return sorted(found)
