import logging
from typing import Callable, Optional

from .events import Event, EventBus, EventKind
from .models import JobStats

logger = logging.getLogger(__name__)


def apply_event(stats: JobStats, event: Event) -> JobStats:
    """Fold one executor event into a new stats snapshot. ``stats`` is not mutated."""
    updated = stats.model_copy()
    payload = event.payload

    if event.kind == EventKind.RUN_STARTED:
        return JobStats(total=payload.get("total", 0), started_at=event.emitted_at)
    if event.kind == EventKind.WORK_STARTED:
        updated.in_progress += 1
    elif event.kind == EventKind.WORK_RETRY:
        updated.retries += 1
    elif event.kind == EventKind.WORK_COMPLETED:
        updated.in_progress = max(updated.in_progress - 1, 0)
        updated.completed += 1
        updated.total_duration_seconds += payload.get("duration_seconds", 0.0)
    elif event.kind == EventKind.WORK_FAILED:
        updated.in_progress = max(updated.in_progress - 1, 0)
        updated.failed += 1
        updated.total_duration_seconds += payload.get("duration_seconds", 0.0)
    elif event.kind == EventKind.WORK_SKIPPED:
        if payload.get("started", False):
            updated.in_progress = max(updated.in_progress - 1, 0)
        updated.skipped += 1
    elif event.kind == EventKind.FLUSH_COMPLETED:
        updated.flushes += 1
        updated.flushed_updates += payload.get("count", 0)
    elif event.kind == EventKind.FLUSH_FAILED:
        updated.flush_failures += 1
    elif event.kind == EventKind.RUN_FINISHED:
        updated.finished_at = event.emitted_at
    return updated


class StatsTracker:
    """Keeps the latest JobStats for one job id, rebuilt from bus events."""

    def __init__(self, job_id: Optional[str] = None):
        self.job_id = job_id
        self._stats = JobStats()
        self._unsubscribe: Optional[Callable[[], None]] = None

    def attach(self, bus: EventBus) -> "StatsTracker":
        self.detach()
        self._unsubscribe = bus.subscribe(self.on_event)
        return self

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def on_event(self, event: Event) -> None:
        if self.job_id is not None and event.job_id != self.job_id:
            return
        # Published snapshots are never mutated.
        self._stats = apply_event(self._stats, event)

    def reset(self) -> None:
        self._stats = JobStats()

    def snapshot(self) -> JobStats:
        return self._stats
