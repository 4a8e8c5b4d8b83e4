from __future__ import annotations

import json

import pytest

from codex_tasks.core.errors import NoIdentifier
from codex_tasks.core.resolution import Established, IdentifierResolution, Pending
from codex_tasks.integrations.codex_cli import decode_event


def _event(payload) -> object:
    return decode_event(json.dumps(payload) if isinstance(payload, dict) else payload)


def test_events_before_identifier_are_buffered_in_order() -> None:
    resolution = IdentifierResolution()
    first = _event({"type": "session.configured"})
    second = _event("plain banner")
    ident = _event({"type": "thread.started", "thread_id": "t-1"})

    assert resolution.observe(first) is None
    assert resolution.observe(second) is None
    assert isinstance(resolution.phase, Pending)
    assert resolution.task_id is None

    task_id, buffered = resolution.observe(ident)
    assert task_id == "t-1"
    assert buffered == [first, second, ident]
    assert resolution.phase == Established("t-1")
    assert resolution.task_id == "t-1"


def test_established_only_once() -> None:
    resolution = IdentifierResolution()
    assert resolution.observe(_event({"type": "thread.started", "thread_id": "a"})) is not None
    assert resolution.observe(_event({"type": "thread.started", "thread_id": "b"})) is None
    assert resolution.require_established() == "a"


def test_require_established_raises_while_pending() -> None:
    resolution = IdentifierResolution()
    resolution.observe(_event({"type": "turn.started"}))
    with pytest.raises(NoIdentifier, match="engine exited with code 1"):
        resolution.require_established("engine exited with code 1")
