import pytest

from coordinator.events import EventKind
from coordinator.jobs import JobRegistry, RunContext


class StubExecutor:
    def __init__(self):
        self.calls = []

    def stop(self):
        self.calls.append("stop")

    def pause(self):
        self.calls.append("pause")

    def resume(self):
        self.calls.append("resume")


def _context(job_id="job-1"):
    context = RunContext(job_id=job_id)
    context.executor = StubExecutor()
    return context


def test_context_tracks_its_own_events():
    context = RunContext(job_id="job-1")
    context.publish(EventKind.RUN_STARTED, total=2)
    context.publish(EventKind.WORK_STARTED)
    context.events.publish(EventKind.WORK_STARTED, job_id="other")
    described = context.describe()
    assert described["job_id"] == "job-1"
    assert described["stats"]["total"] == 2
    assert described["stats"]["in_progress"] == 1


def test_contexts_do_not_share_state():
    first, second = RunContext(), RunContext()
    assert first.job_id != second.job_id
    assert first.events is not second.events
    first.publish(EventKind.RUN_STARTED, total=5)
    assert second.stats.snapshot().total == 0


def test_register_and_complete():
    registry = JobRegistry()
    context = registry.register(_context())
    assert context.status == "running"
    assert registry.get("job-1") is context
    with pytest.raises(ValueError):
        registry.register(_context())

    record = registry.complete("job-1")
    assert record["status"] == "completed"
    assert registry.active() == []
    assert registry.find("job-1")["status"] == "completed"
    assert registry.complete("job-1") is None
    with pytest.raises(KeyError):
        registry.get("job-1")


def test_history_is_bounded():
    registry = JobRegistry(max_history=3)
    for n in range(5):
        registry.register(_context(f"job-{n}"))
        registry.complete(f"job-{n}")
    assert [r["job_id"] for r in registry.history()] == ["job-2", "job-3", "job-4"]
    assert registry.find("job-0") is None


def test_cancel_pause_resume_reach_executor():
    registry = JobRegistry()
    context = registry.register(_context())

    registry.pause("job-1")
    assert context.status == "paused"
    with pytest.raises(ValueError):
        registry.pause("job-1")

    registry.resume("job-1")
    assert context.status == "running"
    with pytest.raises(ValueError):
        registry.resume("job-1")

    registry.cancel("job-1")
    assert context.status == "cancelling"
    assert context.executor.calls == ["pause", "resume", "stop"]


def test_control_without_executor_is_rejected():
    registry = JobRegistry()
    registry.register(RunContext(job_id="bare"))
    with pytest.raises(ValueError):
        registry.cancel("bare")
    with pytest.raises(KeyError):
        registry.cancel("missing")
