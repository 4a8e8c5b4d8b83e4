from __future__ import annotations

import json
import logging
import os

import pytest

from codex_tasks.core import logging_config
from codex_tasks.core.logging_config import (
    attach_worker_log,
    command_logger,
    log_command,
    log_mcp_call,
    mcp_call_logger,
    setup_logging,
)


@pytest.fixture
def log_dir(tmp_path, monkeypatch):
    root = logging.getLogger()
    saved = list(root.handlers)
    monkeypatch.setattr(logging_config, "_log_dir", None)
    d = str(tmp_path / "logs")
    setup_logging(d, "debug", console=False)
    yield d
    for target in (root, mcp_call_logger, command_logger):
        for handler in list(target.handlers):
            if handler not in saved:
                handler.close()
                target.removeHandler(handler)
    root.handlers[:] = saved


def _read_jsonl(path: str) -> list[dict]:
    for handler in command_logger.handlers + mcp_call_logger.handlers:
        handler.flush()
    with open(path, encoding="utf-8") as f:
        return [json.loads(line) for line in f if line.strip()]


def test_setup_creates_main_log(log_dir) -> None:
    logging.getLogger("codex_tasks.test").info("hello from test")
    for handler in logging.getLogger().handlers:
        handler.flush()
    with open(os.path.join(log_dir, "codex-tasks.log"), encoding="utf-8") as f:
        assert "hello from test" in f.read()


def test_command_log(log_dir) -> None:
    log_command("archive", "t1", outcome="skipped", detail="task is RUNNING")
    records = _read_jsonl(os.path.join(log_dir, "commands.log"))
    assert records[-1]["operation"] == "archive"
    assert records[-1]["task_id"] == "t1"
    assert records[-1]["outcome"] == "skipped"


def test_mcp_call_log_clips_large_results(log_dir) -> None:
    log_mcp_call("tools/call", tool_name="tasks_log", tool_args={"task_id": "t1"}, result={"x": "y" * 20000})
    log_mcp_call("tools/call", tool_name="tasks_status", error="error[NotFound]: task t1 not found")
    first, second = _read_jsonl(os.path.join(log_dir, "mcp-calls.log"))[-2:]
    assert "result" not in first
    assert first["result_preview"].endswith("...")
    assert second["error"].startswith("error[NotFound]")


def test_worker_log_lives_under_task_dir(log_dir) -> None:
    path = attach_worker_log("abc123")
    assert path == os.path.join(log_dir, "workers", "abc123", "worker.log")
    assert os.path.isfile(path)
