"""Process liveness checks and signal-based termination for workers."""
from __future__ import annotations

import logging
import os
import signal
import time
from typing import Callable

logger = logging.getLogger("codex_tasks.process")

POLL_INTERVAL = 0.1


def is_alive(pid: int | None) -> bool:
    """Return True if ``pid`` refers to a running, non-zombie process."""
    if pid is None or pid <= 0:
        return False
    try:
        # Reap our own exited children first so they do not linger as zombies
        # that still answer kill(pid, 0).
        try:
            reaped, _ = os.waitpid(pid, os.WNOHANG)
            if reaped == pid:
                return False
        except ChildProcessError:
            pass
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except (OverflowError, ValueError):
        # Not representable as a pid_t, so it cannot name a live process.
        return False
    return True


def send_signal(pid: int, sig: int) -> bool:
    """Signal a worker, preferring its whole process group.

    Workers are launched as session leaders, so signalling the group also
    reaches the engine process they spawned.  Returns False if the
    process is already gone.
    """
    try:
        if os.getpgid(pid) == pid:
            os.killpg(pid, sig)
        else:
            os.kill(pid, sig)
    except ProcessLookupError:
        return False
    return True


def wait_for_exit(
    pid: int,
    timeout: float,
    *,
    poll_interval: float = POLL_INTERVAL,
    alive: Callable[[int], bool] = is_alive,
) -> bool:
    """Poll until ``pid`` exits.  Returns True if it exited within ``timeout``."""
    deadline = time.monotonic() + max(timeout, 0.0)
    while alive(pid):
        if time.monotonic() >= deadline:
            return False
        time.sleep(poll_interval)
    return True


def terminate(pid: int, timeout: float, *, poll_interval: float = POLL_INTERVAL) -> str:
    """Stop ``pid`` gracefully, escalating to SIGKILL after ``timeout``.

    Returns ``"not_running"``, ``"terminated"`` or ``"killed"``.
    """
    if not is_alive(pid):
        return "not_running"
    logger.info("Sending SIGTERM to worker %d", pid)
    if not send_signal(pid, signal.SIGTERM):
        return "not_running"
    if wait_for_exit(pid, timeout, poll_interval=poll_interval):
        return "terminated"
    logger.warning("Worker %d did not exit within %.1fs; sending SIGKILL", pid, timeout)
    send_signal(pid, signal.SIGKILL)
    wait_for_exit(pid, 5.0, poll_interval=poll_interval)
    return "killed"
