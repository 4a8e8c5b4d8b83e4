from __future__ import annotations

import os
import shlex
from dataclasses import dataclass
from pathlib import Path


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


@dataclass
class Settings:
    home: str
    log_level: str
    log_dir: str
    engine_command: list[str]
    engine_model: str | None
    engine_timeout: float
    stop_timeout: float
    max_attempts: int
    backoff_seconds: float
    max_backoff_seconds: float
    handshake_timeout: float
    host: str
    port: int

    @property
    def tasks_root(self) -> str:
        return str(Path(self.home) / "tasks")

    @staticmethod
    def from_env() -> "Settings":
        home = os.path.expanduser(os.getenv("CODEX_TASKS_HOME") or str(Path("~") / ".codex"))
        default_log_dir = str(Path(home) / "tasks" / ".logs")
        engine = os.getenv("CODEX_TASKS_ENGINE") or "codex"
        return Settings(
            home=home,
            log_level=os.getenv("CODEX_TASKS_LOG_LEVEL", "info"),
            log_dir=os.getenv("CODEX_TASKS_LOG_DIR") or default_log_dir,
            engine_command=shlex.split(engine),
            engine_model=os.getenv("CODEX_TASKS_MODEL") or None,
            engine_timeout=_env_float("CODEX_TASKS_ENGINE_TIMEOUT", 0.0),
            stop_timeout=_env_float("CODEX_TASKS_STOP_TIMEOUT", 10.0),
            max_attempts=max(1, int(os.getenv("CODEX_TASKS_MAX_ATTEMPTS", "3"))),
            backoff_seconds=_env_float("CODEX_TASKS_BACKOFF_SECONDS", 1.0),
            max_backoff_seconds=_env_float("CODEX_TASKS_MAX_BACKOFF_SECONDS", 30.0),
            handshake_timeout=_env_float("CODEX_TASKS_HANDSHAKE_TIMEOUT", 60.0),
            host=os.getenv("CODEX_TASKS_HOST", "127.0.0.1"),
            port=int(os.getenv("CODEX_TASKS_PORT", "18791")),
        )
