"""Identifier resolution for a task's first invocation.

Nothing durable can be written before the engine names the session, so
events are held in memory until the identifying event arrives and are
then handed back, in order, for replay into the new task's log.
"""
from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Optional, Union

from codex_tasks.core.errors import NoIdentifier
from codex_tasks.integrations.codex_cli import EngineEvent, ThreadStarted

logger = logging.getLogger("codex_tasks.resolution")


@dataclass
class Pending:
    buffer: list[EngineEvent] = field(default_factory=list)


@dataclass(frozen=True)
class Established:
    task_id: str


Phase = Union[Pending, Established]


class IdentifierResolution:
    def __init__(self) -> None:
        self.phase: Phase = Pending()

    @property
    def task_id(self) -> Optional[str]:
        return self.phase.task_id if isinstance(self.phase, Established) else None

    def observe(self, event: EngineEvent) -> Optional[tuple[str, list[EngineEvent]]]:
        """Feed one event.

        Returns ``(task_id, buffered_events)`` exactly once, on the event
        that establishes the identifier; the identifying event is the last
        element of the buffer.  Returns None while still pending and for
        every event after establishment.
        """
        if isinstance(self.phase, Established):
            return None
        self.phase.buffer.append(event)
        if isinstance(event, ThreadStarted) and event.thread_id:
            buffered = self.phase.buffer
            self.phase = Established(event.thread_id)
            logger.info("Engine established task id %s after %d event(s)", event.thread_id, len(buffered))
            return event.thread_id, buffered
        return None

    def require_established(self, detail: str = "") -> str:
        if isinstance(self.phase, Established):
            return self.phase.task_id
        message = "engine exited without reporting a session identifier"
        if detail:
            message = f"{message} ({detail})"
        raise NoIdentifier(message)
