"""Tests for worker liveness checks and termination."""
from __future__ import annotations

import os

import pytest

from codex_tasks.core import process


class TestIsAlive:
    def test_own_process_is_alive(self):
        assert process.is_alive(os.getpid())

    def test_exited_process_is_not_alive(self, dead_pid):
        assert not process.is_alive(dead_pid)

    @pytest.mark.parametrize("pid", [None, 0, -3, 2**63, 10**20])
    def test_unusable_pids_are_not_alive(self, pid):
        assert not process.is_alive(pid)

    def test_terminate_not_running(self, dead_pid):
        assert process.terminate(dead_pid, 0.1) == "not_running"
