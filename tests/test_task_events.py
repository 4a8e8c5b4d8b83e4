"""Tests for the per-task JSONL event log."""
from __future__ import annotations

import json

import pytest

from codex_tasks.core.task_events import ORIGIN, TaskLog, synthetic_event


@pytest.fixture
def log(tmp_path):
    return TaskLog(str(tmp_path / "task.log"))


class TestAppend:
    def test_append_line_is_verbatim(self, log):
        raw = '{"type":"turn.started","extra":  1}'
        log.append_line(raw)
        assert log.read_lines() == [raw + "\n"]

    def test_synthetic_entries_carry_origin(self, log):
        log.append_synthetic("user_message", message="hello")
        entry = json.loads(log.read_lines()[0])
        assert entry == {"type": "user_message", "message": "hello", "origin": ORIGIN}

    def test_synthetic_event_origin_cannot_be_overridden(self):
        assert synthetic_event("stderr", origin="engine")["origin"] == ORIGIN

    def test_count(self, log):
        assert log.count() == 0
        for i in range(5):
            log.append({"type": "n", "i": i})
        assert log.count() == 5


class TestReadLines:
    def test_missing_file_reads_empty(self, log):
        assert not log.exists()
        assert log.read_lines() == []

    def test_limit_returns_tail(self, log):
        for i in range(10):
            log.append({"i": i})
        lines = log.read_lines(3)
        assert [json.loads(line)["i"] for line in lines] == [7, 8, 9]

    def test_zero_limit(self, log):
        log.append({"i": 1})
        assert log.read_lines(0) == []

    def test_partial_last_line_is_hidden(self, log):
        log.append({"i": 1})
        with open(log.path, "a", encoding="utf-8") as f:
            f.write('{"i": 2')
        assert [json.loads(line)["i"] for line in log.read_lines()] == [1]

    def test_reads_are_byte_identical(self, log):
        for i in range(4):
            log.append({"i": i, "text": "ünïcode"})
        assert log.read_lines() == log.read_lines()


class TestFollow:
    def test_yields_existing_then_new_lines(self, log):
        log.append({"i": 0})
        polls = []

        def sleep(_):
            # Simulate a writer appending between polls.
            if len(polls) == 1:
                log.append({"i": 1})

        def should_stop():
            polls.append(True)
            return len(polls) >= 3

        got = [json.loads(line)["i"] for line in log.follow(should_stop, poll_interval=0, sleep=sleep)]
        assert got == [0, 1]

    def test_partial_line_is_joined_before_yield(self, log):
        with open(log.path, "w", encoding="utf-8") as f:
            f.write('{"i": ')
        calls = []

        def sleep(_):
            if len(calls) == 1:
                with open(log.path, "a", encoding="utf-8") as f:
                    f.write('5}\n')

        def should_stop():
            calls.append(True)
            return len(calls) >= 3

        got = list(log.follow(should_stop, poll_interval=0, sleep=sleep))
        assert got == ['{"i": 5}\n']

    def test_limit_applies_to_backlog_only(self, log):
        for i in range(5):
            log.append({"i": i})
        got = list(log.follow(lambda: True, limit=2, poll_interval=0, sleep=lambda _: None))
        assert [json.loads(line)["i"] for line in got] == [3, 4]
