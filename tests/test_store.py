"""Tests for the filesystem task store: layout, atomic writes, pid claims, archive moves."""
from __future__ import annotations

from datetime import datetime, timezone
import json
import os

import pytest

from codex_tasks.core.errors import Conflict, NotFound, TaskIOError
from codex_tasks.core.store import TaskStore, validate_task_id
from codex_tasks.core.tasks import TaskMetadata, TaskState

from conftest import make_task


WHEN = datetime(2024, 3, 7, 15, 30, tzinfo=timezone.utc)


# ── Layout and resolution ────────────────────────────────────

class TestLayout:
    def test_ensure_layout_creates_archive_tree(self, tmp_path):
        store = TaskStore(str(tmp_path / "home"))
        store.ensure_layout()
        assert os.path.isdir(tmp_path / "home" / "tasks" / "archive")

    @pytest.mark.parametrize("bad", ["", "archive", "../escape", "a/b", ".hidden"])
    def test_invalid_ids_are_not_found(self, bad):
        with pytest.raises(NotFound):
            validate_task_id(bad)

    def test_resolve_unknown_raises_not_found(self, store):
        with pytest.raises(NotFound):
            store.resolve("missing")

    def test_iter_active_skips_archive_and_dot_dirs(self, store):
        make_task(store, "b", TaskState.STOPPED)
        make_task(store, "a", TaskState.STOPPED)
        os.mkdir(os.path.join(store.tasks_dir, ".logs"))
        assert [p.task_id for p in store.iter_active()] == ["a", "b"]

    def test_create_twice_conflicts(self, store):
        store.create_task_dir("abc")
        with pytest.raises(Conflict):
            store.create_task_dir("abc")

    def test_create_conflicts_with_archived_id(self, store):
        make_task(store, "abc", TaskState.STOPPED)
        store.archive("abc", WHEN)
        with pytest.raises(Conflict):
            store.create_task_dir("abc")


# ── Metadata ─────────────────────────────────────────────────

class TestMetadata:
    def test_write_then_read(self, store):
        paths = store.create_task_dir("abc")
        record = TaskMetadata(id="abc", working_dir="/w", state=TaskState.STOPPED, title="T")
        store.write_metadata(paths, record)
        loaded = store.read_metadata(paths)
        assert loaded.title == "T"
        assert loaded.state == TaskState.STOPPED

    def test_write_leaves_no_temp_files(self, store):
        paths = store.create_task_dir("abc")
        for i in range(3):
            store.write_metadata(paths, TaskMetadata(id="abc", working_dir="/w", last_prompt=str(i)))
        assert sorted(os.listdir(paths.directory)) == ["task.json"]
        with open(paths.metadata, encoding="utf-8") as f:
            assert json.load(f)["last_prompt"] == "2"

    def test_missing_metadata_is_io_error(self, store):
        paths = store.create_task_dir("abc")
        with pytest.raises(TaskIOError):
            store.read_metadata(paths)

    def test_corrupt_metadata_is_io_error(self, store):
        paths = store.create_task_dir("abc")
        with open(paths.metadata, "w", encoding="utf-8") as f:
            f.write("{not json")
        with pytest.raises(TaskIOError):
            store.read_metadata(paths)

    def test_mismatched_id_is_io_error(self, store):
        paths = store.create_task_dir("abc")
        store.write_metadata(paths, TaskMetadata(id="other", working_dir="/w"))
        with pytest.raises(TaskIOError):
            store.read_metadata(paths)

    def test_promote_result(self, store):
        paths = store.create_task_dir("abc")
        assert store.read_result(paths) is None
        store.promote_result(paths, "final answer")
        assert store.read_result(paths) == "final answer"


# ── Worker pid file ──────────────────────────────────────────

class TestPidFile:
    def test_claim_and_release(self, store):
        paths = store.create_task_dir("abc")
        store.claim_pid(paths, os.getpid())
        assert store.read_pid(paths) == os.getpid()
        store.release_pid(paths, os.getpid())
        assert store.read_pid(paths) is None
        assert os.listdir(paths.directory) == []

    def test_live_holder_conflicts(self, store):
        paths = store.create_task_dir("abc")
        store.claim_pid(paths, os.getpid())
        with pytest.raises(Conflict):
            store.claim_pid(paths, os.getpid() + 100000)
        assert store.read_pid(paths) == os.getpid()

    def test_reclaiming_own_pid_is_allowed(self, store):
        paths = store.create_task_dir("abc")
        store.claim_pid(paths, os.getpid())
        store.claim_pid(paths, os.getpid())
        assert store.read_pid(paths) == os.getpid()

    def test_stale_holder_is_replaced(self, store, dead_pid):
        paths = store.create_task_dir("abc")
        with open(paths.pid_file, "w", encoding="utf-8") as f:
            f.write(f"{dead_pid}\n")
        store.claim_pid(paths, os.getpid())
        assert store.read_pid(paths) == os.getpid()
        # No staging or stale leftovers.
        assert os.listdir(paths.directory) == ["task.pid"]

    def test_garbage_pid_file_is_reclaimed(self, store):
        paths = store.create_task_dir("abc")
        with open(paths.pid_file, "w", encoding="utf-8") as f:
            f.write("not-a-pid")
        store.claim_pid(paths, os.getpid())
        assert store.read_pid(paths) == os.getpid()

    @pytest.mark.parametrize("raw", ["99999999999999999999", "²", "0", "-1"])
    def test_unusable_pid_reads_as_absent(self, store, raw):
        paths = store.create_task_dir("abc")
        with open(paths.pid_file, "w", encoding="utf-8") as f:
            f.write(raw)
        assert store.read_pid(paths) is None

    def test_release_with_other_pid_keeps_file(self, store):
        paths = store.create_task_dir("abc")
        store.claim_pid(paths, os.getpid())
        store.release_pid(paths, os.getpid() + 1)
        assert store.read_pid(paths) == os.getpid()


# ── Archive moves ────────────────────────────────────────────

class TestArchiveMove:
    def test_archive_moves_into_dated_tree(self, store):
        make_task(store, "abc", TaskState.STOPPED)
        destination = store.archive("abc", WHEN)
        assert destination.archived
        assert destination.directory == os.path.join(store.archive_dir, "2024", "03", "07", "abc")
        assert not os.path.exists(os.path.join(store.tasks_dir, "abc"))
        assert os.path.isfile(destination.metadata)

    def test_resolve_finds_archived(self, store):
        make_task(store, "abc", TaskState.STOPPED)
        store.archive("abc", WHEN)
        paths = store.resolve("abc")
        assert paths.archived
        assert [p.task_id for p in store.iter_archived()] == ["abc"]

    def test_existing_destination_conflicts(self, store):
        make_task(store, "abc", TaskState.STOPPED)
        os.makedirs(store.archive_paths("abc", WHEN).directory)
        with pytest.raises(Conflict):
            store.archive("abc", WHEN)
        # The source is untouched.
        assert os.path.isdir(os.path.join(store.tasks_dir, "abc"))

    def test_archive_unknown_raises_not_found(self, store):
        with pytest.raises(NotFound):
            store.archive("ghost", WHEN)
