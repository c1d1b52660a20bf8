from datetime import datetime, timedelta

from coordinator.events import Event, EventBus, EventKind
from coordinator.models import JobStats
from coordinator.stats import StatsTracker, apply_event


def _event(kind, job_id="job-1", **payload):
    return Event(kind=kind, job_id=job_id, payload=payload)


def test_apply_event_does_not_mutate_input():
    before = JobStats(total=3)
    after = apply_event(before, _event(EventKind.WORK_STARTED))
    assert before.in_progress == 0
    assert after.in_progress == 1


def test_run_started_resets_counters():
    stale = JobStats(total=9, completed=9, flushes=4)
    fresh = apply_event(stale, _event(EventKind.RUN_STARTED, total=5))
    assert fresh.total == 5
    assert fresh.completed == 0 and fresh.flushes == 0
    assert fresh.started_at is not None


def test_counts_and_rates():
    stats = JobStats()
    for event in [
        _event(EventKind.RUN_STARTED, total=4),
        _event(EventKind.WORK_STARTED),
        _event(EventKind.WORK_STARTED),
        _event(EventKind.WORK_COMPLETED, duration_seconds=1.0),
        _event(EventKind.WORK_RETRY),
        _event(EventKind.WORK_FAILED, duration_seconds=3.0),
        _event(EventKind.WORK_SKIPPED, started=False),
        _event(EventKind.FLUSH_COMPLETED, count=2),
        _event(EventKind.FLUSH_FAILED, count=2),
    ]:
        stats = apply_event(stats, event)

    assert (stats.completed, stats.failed, stats.skipped, stats.in_progress) == (1, 1, 1, 0)
    assert stats.retries == 1
    assert (stats.flushes, stats.flushed_updates, stats.flush_failures) == (1, 2, 1)
    assert stats.success_rate == 0.5
    assert stats.avg_duration_seconds == 2.0
    assert stats.processed == 3


def test_throughput_uses_elapsed_time():
    start = datetime(2024, 3, 1, 12, 0, 0)
    stats = JobStats(completed=8, failed=2, started_at=start, finished_at=start + timedelta(seconds=5))
    assert stats.elapsed_seconds() == 5.0
    assert stats.throughput() == 2.0
    summary = stats.summary()
    assert summary["throughput"] == 2.0
    assert summary["success_rate"] == 0.8


def test_empty_stats_have_zero_rates():
    stats = JobStats()
    assert stats.success_rate == 0.0
    assert stats.throughput() == 0.0
    assert stats.elapsed_seconds() == 0.0


def test_tracker_follows_only_its_job():
    bus = EventBus()
    tracker = StatsTracker("job-1").attach(bus)
    bus.publish(EventKind.RUN_STARTED, job_id="job-1", total=2)
    bus.publish(EventKind.WORK_STARTED, job_id="job-1")
    bus.publish(EventKind.WORK_STARTED, job_id="job-2")

    snapshot = tracker.snapshot()
    assert snapshot.in_progress == 1

    bus.publish(EventKind.WORK_COMPLETED, job_id="job-1")
    assert snapshot.in_progress == 1
    assert tracker.snapshot().completed == 1

    tracker.detach()
    bus.publish(EventKind.WORK_COMPLETED, job_id="job-1")
    assert tracker.snapshot().completed == 1
