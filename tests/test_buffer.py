from coordinator.buffer import WriteBuffer
from coordinator.models import Location, PendingUpdate


def _update(n: int) -> PendingUpdate:
    return PendingUpdate(location=Location(record_id=f"work:{n}", field="status"), value="succeeded")


def test_add_reports_when_flush_is_due():
    buffer = WriteBuffer(max_items=3)
    assert buffer.add(_update(1)) is False
    assert buffer.add(_update(2)) is False
    assert buffer.add(_update(3)) is True
    assert len(buffer) == 3


def test_take_returns_oldest_batch():
    buffer = WriteBuffer(max_items=2)
    for n in range(5):
        buffer.add(_update(n))
    batch = buffer.take()
    assert [u.location.record_id for u in batch] == ["work:0", "work:1"]
    assert len(buffer) == 3
    assert len(buffer.take(limit=10)) == 3
    assert buffer.take() == []


def test_requeue_appends_behind_newer_updates():
    buffer = WriteBuffer(max_items=2)
    buffer.add(_update(1))
    buffer.add(_update(2))
    batch = buffer.take()
    buffer.add(_update(3))
    buffer.requeue(batch)
    assert [u.location.record_id for u in buffer.drain()] == ["work:3", "work:1", "work:2"]
    assert len(buffer) == 0


def test_locations_are_hashable():
    assert len({Location(record_id="a", field="s"), Location(record_id="a", field="s")}) == 1
