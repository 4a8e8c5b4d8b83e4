"""Per-task event log, the source of truth for transcript reconstruction.

Each task has a ``task.log`` file with one JSON document per line.
Engine events are stored verbatim; bookkeeping entries written by this
package use the same format and carry ``"origin": "codex-tasks"``.
"""
from __future__ import annotations

from collections import deque
import json
import logging
import os
import time
from typing import Any, Callable, Iterator, Optional

from codex_tasks.core.errors import TaskIOError

logger = logging.getLogger("codex_tasks.task_events")

ORIGIN = "codex-tasks"
FOLLOW_POLL_INTERVAL = 0.25


def synthetic_event(event_type: str, **fields: Any) -> dict[str, Any]:
    """Build a bookkeeping entry in the log's own format."""
    payload: dict[str, Any] = {"type": event_type}
    payload.update(fields)
    payload["origin"] = ORIGIN
    return payload


class TaskLog:
    """Append-only JSONL log for one task.

    Each entry is written with a single ``write`` on a file opened in
    append mode, so concurrent readers see whole lines or nothing new.
    """

    def __init__(self, path: str) -> None:
        self._path = path

    @property
    def path(self) -> str:
        return self._path

    def append_line(self, line: str) -> None:
        """Append one raw line (without trailing newline) verbatim."""
        data = line.rstrip("\r\n") + "\n"
        try:
            with open(self._path, "a", encoding="utf-8") as f:
                f.write(data)
                f.flush()
        except OSError as exc:
            raise TaskIOError(f"failed to append to {self._path}: {exc}") from exc

    def append(self, payload: dict[str, Any]) -> None:
        self.append_line(json.dumps(payload, ensure_ascii=False, default=str))

    def append_synthetic(self, event_type: str, **fields: Any) -> None:
        self.append(synthetic_event(event_type, **fields))

    def exists(self) -> bool:
        return os.path.exists(self._path)

    def read_lines(self, limit: Optional[int] = None) -> list[str]:
        """Return complete lines (newline included), optionally only the last ``limit``."""
        if not os.path.exists(self._path):
            return []
        try:
            with open(self._path, "r", encoding="utf-8", errors="replace", newline="") as f:
                if limit is None:
                    return [line for line in f if line.endswith("\n")]
                if limit <= 0:
                    return []
                tail: deque[str] = deque(maxlen=limit)
                for line in f:
                    if line.endswith("\n"):
                        tail.append(line)
                return list(tail)
        except OSError as exc:
            raise TaskIOError(f"failed to read {self._path}: {exc}") from exc

    def count(self) -> int:
        return len(self.read_lines())

    def follow(
        self,
        should_stop: Callable[[], bool],
        *,
        limit: Optional[int] = None,
        poll_interval: float = FOLLOW_POLL_INTERVAL,
        sleep: Callable[[float], None] = time.sleep,
    ) -> Iterator[str]:
        """Yield existing lines, then new ones as they are appended.

        ``should_stop`` is consulted each time the reader catches up with
        the writer.
        The file handle stays open so a concurrent archive (a directory
        rename) does not interrupt the stream.
        """
        with open(self._path, "r", encoding="utf-8", errors="replace", newline="") as f:
            initial: deque[str] = deque(maxlen=limit) if limit is not None else deque()
            pending = ""
            for line in f:
                if not line.endswith("\n"):
                    pending = line
                    break
                if limit is None or limit > 0:
                    initial.append(line)
            yield from initial

            while True:
                chunk = f.readline()
                if chunk:
                    pending += chunk
                    if pending.endswith("\n"):
                        yield pending
                        pending = ""
                    continue
                if should_stop():
                    return
                sleep(poll_interval)
