import logging
import uuid
from collections import deque
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional

from .events import EventBus, EventKind
from .stats import StatsTracker

logger = logging.getLogger(__name__)


class RunContext:
    """Everything one batch run owns: its id, event channel and stats."""

    def __init__(self, job_id: Optional[str] = None, events: Optional[EventBus] = None, kind: str = "batch"):
        self.job_id = job_id or uuid.uuid4().hex[:12]
        self.kind = kind
        self.events = events or EventBus()
        self.stats = StatsTracker(self.job_id).attach(self.events)
        self.status = "created"
        self.created_at = datetime.utcnow()
        self.finished_at: Optional[datetime] = None
        self.executor = None

    def publish(self, kind: EventKind, **payload: Any):
        return self.events.publish(kind, job_id=self.job_id, **payload)

    def describe(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "kind": self.kind,
            "status": self.status,
            "created_at": self.created_at,
            "finished_at": self.finished_at,
            "stats": self.stats.snapshot().summary(),
        }


class JobRegistry:
    """Active runs by job id plus a bounded history of finished ones."""

    def __init__(self, max_history: int = 100):
        self._active: Dict[str, RunContext] = {}
        self._history: Deque[Dict[str, Any]] = deque(maxlen=max_history)

    def register(self, context: RunContext) -> RunContext:
        if context.job_id in self._active:
            raise ValueError(f"Job {context.job_id} already exists")
        self._active[context.job_id] = context
        context.status = "running"
        logger.info("Job %s (%s) registered", context.job_id, context.kind)
        return context

    def complete(self, job_id: str, status: str = "completed") -> Optional[Dict[str, Any]]:
        context = self._active.pop(job_id, None)
        if context is None:
            return None
        context.status = status
        context.finished_at = datetime.utcnow()
        context.stats.detach()
        record = context.describe()
        self._history.append(record)
        logger.info("Job %s finished: %s", job_id, status)
        return record

    def get(self, job_id: str) -> RunContext:
        try:
            return self._active[job_id]
        except KeyError:
            raise KeyError(f"Unknown job '{job_id}'") from None

    def find(self, job_id: str) -> Optional[Dict[str, Any]]:
        if job_id in self._active:
            return self._active[job_id].describe()
        for record in reversed(self._history):
            if record["job_id"] == job_id:
                return record
        return None

    def active(self) -> List[RunContext]:
        return list(self._active.values())

    def history(self, limit: int = 20) -> List[Dict[str, Any]]:
        return list(self._history)[-limit:]

    def _executor(self, job_id: str):
        context = self.get(job_id)
        if context.executor is None:
            raise ValueError(f"Job {job_id} has no executor attached")
        return context

    def cancel(self, job_id: str) -> RunContext:
        context = self._executor(job_id)
        context.executor.stop()
        context.status = "cancelling"
        return context

    def pause(self, job_id: str) -> RunContext:
        context = self._executor(job_id)
        if context.status != "running":
            raise ValueError(f"Job {job_id} is not running")
        context.executor.pause()
        context.status = "paused"
        return context

    def resume(self, job_id: str) -> RunContext:
        context = self._executor(job_id)
        if context.status != "paused":
            raise ValueError(f"Job {job_id} is not paused")
        context.executor.resume()
        context.status = "running"
        return context
