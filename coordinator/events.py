"""Publish/subscribe channel for progress events.

Publishing never awaits: observers are plain callables invoked inline and
queue subscribers receive events through ``put_nowait`` on unbounded queues,
so a slow consumer cannot stall the work loop.
"""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    RUN_STARTED = "run-started"
    WORK_STARTED = "work-started"
    WORK_RETRY = "work-retry"
    WORK_COMPLETED = "work-completed"
    WORK_FAILED = "work-failed"
    WORK_SKIPPED = "work-skipped"
    FLUSH_COMPLETED = "flush-completed"
    FLUSH_FAILED = "flush-failed"
    RUN_FINISHED = "run-finished"
    LOCK_ACQUIRED = "lock-acquired"
    LOCK_DENIED = "lock-denied"
    RESOURCE_DEACTIVATED = "resource-deactivated"


class Event(BaseModel):
    kind: EventKind
    job_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    emitted_at: datetime = Field(default_factory=datetime.utcnow)


Observer = Callable[[Event], None]


class EventBus:
    def __init__(self) -> None:
        self._observers: List[Observer] = []
        self._queues: List["asyncio.Queue[Event]"] = []

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register an observer; returns a callable that unsubscribes it."""
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def subscribe_queue(self) -> "asyncio.Queue[Event]":
        queue: "asyncio.Queue[Event]" = asyncio.Queue()
        self._queues.append(queue)
        return queue

    def unsubscribe_queue(self, queue: "asyncio.Queue[Event]") -> None:
        if queue in self._queues:
            self._queues.remove(queue)

    def publish(self, kind: EventKind, job_id: Optional[str] = None, **payload: Any) -> Event:
        event = Event(kind=kind, job_id=job_id, payload=payload)
        for observer in list(self._observers):
            try:
                observer(event)
            except Exception:
                # A broken consumer must not take the run down with it.
                logger.exception("Event observer failed on %s", kind.value)
        for queue in self._queues:
            queue.put_nowait(event)
        return event
