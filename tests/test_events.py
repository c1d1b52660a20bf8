import asyncio

import pytest

from coordinator.events import EventBus, EventKind


def test_observers_receive_events_in_order():
    bus = EventBus()
    seen = []
    bus.subscribe(lambda event: seen.append((event.kind, event.payload)))
    bus.publish(EventKind.WORK_STARTED, job_id="j", record_id="work:1")
    bus.publish(EventKind.WORK_COMPLETED, job_id="j", record_id="work:1")
    assert seen == [
        (EventKind.WORK_STARTED, {"record_id": "work:1"}),
        (EventKind.WORK_COMPLETED, {"record_id": "work:1"}),
    ]


def test_broken_observer_does_not_stop_delivery(caplog):
    bus = EventBus()
    seen = []

    def broken(event):
        raise RuntimeError("dashboard crashed")

    bus.subscribe(broken)
    bus.subscribe(seen.append)
    bus.publish(EventKind.FLUSH_COMPLETED, count=3)
    assert len(seen) == 1
    assert "Event observer failed" in caplog.text


def test_unsubscribe():
    bus = EventBus()
    seen = []
    unsubscribe = bus.subscribe(seen.append)
    unsubscribe()
    unsubscribe()
    bus.publish(EventKind.LOCK_ACQUIRED)
    assert seen == []


@pytest.mark.asyncio
async def test_queue_subscribers_never_block_publisher():
    bus = EventBus()
    queue = bus.subscribe_queue()
    for i in range(100):
        bus.publish(EventKind.WORK_STARTED, record_id=f"work:{i}")
    assert queue.qsize() == 100
    first = await asyncio.wait_for(queue.get(), timeout=1)
    assert first.payload["record_id"] == "work:0"

    bus.unsubscribe_queue(queue)
    bus.publish(EventKind.WORK_STARTED)
    assert queue.qsize() == 99
