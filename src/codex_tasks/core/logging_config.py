"""Logging setup for codex-tasks processes.

Every process (CLI call, detached worker, gateway) logs into one shared
directory::

    ~/.codex/tasks/.logs/
    ├── codex-tasks.log        # Python logger output from every process (rotating)
    ├── mcp-calls.log          # One JSON line per MCP tool call
    ├── commands.log           # One JSON line per CLI operation and its outcome
    └── workers/
        └── {task_id}/
            └── worker.log     # Everything the task's workers logged
"""
from __future__ import annotations

import json
import logging
import logging.handlers
import os
import time
from pathlib import Path
from typing import Any, Optional

_log_dir: Optional[str] = None

mcp_call_logger = logging.getLogger("codex_tasks._mcp_calls")
command_logger = logging.getLogger("codex_tasks._commands")

_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
_DATEFMT = "%Y-%m-%dT%H:%M:%S"
_MAX_BYTES = 10 * 1024 * 1024
_BACKUPS = 5
_PREVIEW_CHARS = 10000


def get_log_dir() -> str:
    if _log_dir:
        return _log_dir
    default = str(Path(os.path.expanduser("~")) / ".codex" / "tasks" / ".logs")
    return os.getenv("CODEX_TASKS_LOG_DIR", default)


def _rotating(path: str, formatter: logging.Formatter) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=_MAX_BYTES, backupCount=_BACKUPS, encoding="utf-8"
    )
    handler.setFormatter(formatter)
    return handler


def setup_logging(log_dir: str, log_level: str = "info", *, console: bool = True) -> None:
    """Route the root logger to ``codex-tasks.log`` and, optionally, stderr.

    Workers and short-lived CLI calls pass ``console=False`` so log
    records never mix with command output.
    """
    global _log_dir
    _log_dir = log_dir
    os.makedirs(log_dir, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    # Re-running setup must not stack handlers.
    root.handlers.clear()

    fmt = logging.Formatter(_FORMAT, datefmt=_DATEFMT)
    if console:
        stream_handler = logging.StreamHandler()
        stream_handler.setLevel(getattr(logging, log_level.upper(), logging.INFO))
        stream_handler.setFormatter(fmt)
        root.addHandler(stream_handler)

    file_handler = _rotating(os.path.join(log_dir, "codex-tasks.log"), fmt)
    file_handler.setLevel(logging.DEBUG)
    root.addHandler(file_handler)

    for jsonl_logger, name in ((mcp_call_logger, "mcp-calls.log"), (command_logger, "commands.log")):
        jsonl_logger.setLevel(logging.INFO)
        jsonl_logger.propagate = False
        jsonl_logger.handlers.clear()
        jsonl_logger.addHandler(_rotating(os.path.join(log_dir, name), logging.Formatter("%(message)s")))

    logging.getLogger("codex_tasks").debug("Logging initialized: log_dir=%s, level=%s", log_dir, log_level)


def get_worker_log_dir(task_id: str) -> str:
    path = os.path.join(get_log_dir(), "workers", task_id)
    os.makedirs(path, exist_ok=True)
    return path


def attach_worker_log(task_id: str) -> str:
    """Mirror this process's logging into the task's ``worker.log``."""
    path = os.path.join(get_worker_log_dir(task_id), "worker.log")
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(_FORMAT, datefmt=_DATEFMT))
    logging.getLogger().addHandler(handler)
    return path


# ── JSONL records ────────────────────────────────────────────


def _ts() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def _emit(target: logging.Logger, record: dict[str, Any]) -> None:
    try:
        target.info(json.dumps(record, default=str, ensure_ascii=False))
    except Exception:  # noqa: BLE001
        pass


def log_mcp_call(
    method: str,
    tool_name: str | None = None,
    tool_args: dict[str, Any] | None = None,
    result: Any = None,
    error: str | None = None,
    duration_ms: float | None = None,
) -> None:
    """Append one MCP tool call to ``mcp-calls.log``; large payloads are clipped."""
    record: dict[str, Any] = {"ts": _ts(), "method": method, "tool": tool_name}
    if tool_args is not None:
        encoded = json.dumps(tool_args, default=str)
        record["tool_args"] = tool_args if len(encoded) <= _PREVIEW_CHARS else encoded[:_PREVIEW_CHARS] + "..."
    if duration_ms is not None:
        record["duration_ms"] = round(duration_ms, 1)
    if error:
        record["error"] = error[:5000]
    elif result is not None:
        encoded = json.dumps(result, default=str)
        if len(encoded) <= _PREVIEW_CHARS:
            record["result"] = result
        else:
            record["result_preview"] = encoded[:_PREVIEW_CHARS] + "..."
    _emit(mcp_call_logger, record)


def log_command(operation: str, task_id: str | None = None, outcome: str = "ok", detail: str = "") -> None:
    record: dict[str, Any] = {"ts": _ts(), "operation": operation, "task_id": task_id, "outcome": outcome}
    if detail:
        record["detail"] = detail[:2000]
    _emit(command_logger, record)
