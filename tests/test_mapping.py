import random

import pytest

from coordinator.errors import NoAvailableResourcesError
from coordinator.events import EventBus, EventKind
from coordinator.mapping import ResourceMapper, _hash, natural_key
from coordinator.resources import ResourceRepository
from tests.conftest import add_resource


class TickClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _mapper(store, **kwargs) -> ResourceMapper:
    kwargs.setdefault("rng", random.Random(1234))
    repo = ResourceRepository(store, failure_threshold=kwargs.pop("failure_threshold", 3))
    return ResourceMapper(repo, **kwargs)


@pytest.fixture
def three_pool(store):
    for resource_id in ("R3", "R1", "R2"):
        add_resource(store, resource_id)
    return store


def test_hash_uses_normalized_identity():
    assert _hash("User@X.com ") == _hash("user@x.com")
    prefix, value = _hash("user@x.com")
    assert prefix == "cf509b75"
    assert value == int(prefix, 16)


def test_natural_key_orders_numbers_numerically():
    ids = ["proxy_kr_10", "proxy_kr_2", "proxy_kr_1"]
    assert sorted(ids, key=natural_key) == ["proxy_kr_1", "proxy_kr_2", "proxy_kr_10"]


@pytest.mark.asyncio
async def test_deterministic_assignment(three_pool):
    mapper = _mapper(three_pool)
    chosen = {(await mapper.assign("user@x.com", "kr", 0, 1)).id for _ in range(20)}
    assert chosen == {"R2"}


@pytest.mark.asyncio
async def test_escape_never_returns_deterministic_choice(three_pool):
    mapper = _mapper(three_pool)
    seen = set()
    for _ in range(200):
        seen.add((await mapper.assign("user@x.com", "kr", 1, 1)).id)
    assert seen == {"R1", "R3"}


@pytest.mark.asyncio
async def test_escape_with_single_resource_returns_it(store):
    add_resource(store, "R1")
    mapper = _mapper(store)
    assert (await mapper.assign("user@x.com", "kr", 5, 1)).id == "R1"


@pytest.mark.asyncio
async def test_zero_threshold_disables_escape(three_pool):
    mapper = _mapper(three_pool)
    assert (await mapper.assign("user@x.com", "kr", 9, 0)).id == "R2"


@pytest.mark.asyncio
async def test_default_threshold_comes_from_mapper(three_pool):
    mapper = _mapper(three_pool, escape_threshold=3)
    assert (await mapper.assign("user@x.com", "kr", 2)).id == "R2"
    assert (await mapper.assign("user@x.com", "kr", 3)).id != "R2"


@pytest.mark.asyncio
async def test_pool_filters_and_sorts(store):
    add_resource(store, "id_10")
    add_resource(store, "id_2")
    add_resource(store, "id_1")
    add_resource(store, "id_3", status="inactive")
    add_resource(store, "id_4", status="")
    add_resource(store, "id_5", consecutive_failures=3)
    add_resource(store, "id_6", host="")
    add_resource(store, "id_7", partition="us")

    mapper = _mapper(store)
    pool = await mapper.active_pool("KR")
    assert [res.id for res in pool] == ["id_1", "id_2", "id_10"]


@pytest.mark.asyncio
async def test_empty_pool_raises(store):
    add_resource(store, "R1", partition="us")
    mapper = _mapper(store)
    with pytest.raises(NoAvailableResourcesError) as excinfo:
        await mapper.assign("user@x.com", "kr")
    assert excinfo.value.partition_key == "kr"


@pytest.mark.asyncio
async def test_blank_identity_rejected(three_pool):
    with pytest.raises(ValueError):
        await _mapper(three_pool).assign("  ", "kr")


@pytest.mark.asyncio
async def test_pool_cached_until_ttl(three_pool):
    clock = TickClock()
    mapper = _mapper(three_pool, cache_ttl_seconds=300, clock=clock)
    assert len(await mapper.active_pool("kr")) == 3

    add_resource(three_pool, "R4")
    clock.now = 299
    assert len(await mapper.active_pool("kr")) == 3
    clock.now = 300
    assert len(await mapper.active_pool("kr")) == 4


@pytest.mark.asyncio
async def test_consecutive_failures_deactivate_and_invalidate(three_pool):
    bus = EventBus()
    events = []
    bus.subscribe(events.append)
    mapper = _mapper(three_pool, events=bus)
    assert [r.id for r in await mapper.active_pool("kr")] == ["R1", "R2", "R3"]

    first = await mapper.record_failure("R2")
    second = await mapper.record_failure("R2")
    assert (first.new_count, first.deactivated) == (1, False)
    assert (second.new_count, second.deactivated) == (2, False)
    assert not events

    third = await mapper.record_failure("R2")
    assert third.deactivated
    assert [r.id for r in await mapper.active_pool("kr")] == ["R1", "R3"]
    assert (await three_pool.get_field("resource:R2", "status")) == "inactive"

    assert [e.kind for e in events] == [EventKind.RESOURCE_DEACTIVATED]
    assert events[0].payload["resource_id"] == "R2"


@pytest.mark.asyncio
async def test_success_resets_failures_and_records_usage(three_pool):
    mapper = _mapper(three_pool)
    await mapper.record_failure("R1")
    await mapper.record_failure("R1")

    assert await mapper.record_success("R1", ip="203.0.113.9")
    assert await three_pool.get_field("resource:R1", "consecutive_failures") == "0"
    assert await three_pool.get_field("resource:R1", "last_ip") == "203.0.113.9"
    assert await three_pool.get_field("resource:R1", "last_used")


@pytest.mark.asyncio
async def test_unknown_resource_failure_is_reported(three_pool):
    result = await _mapper(three_pool).record_failure("nope")
    assert not result.found


@pytest.mark.asyncio
async def test_mapping_info_and_preview(three_pool):
    mapper = _mapper(three_pool)
    info = await mapper.mapping_info("user@x.com", "kr")
    assert info.base_index == 1
    assert info.resource_id == "R2"
    assert info.hash_prefix == "cf509b75"
    assert not info.escapes
    assert info.identity == "use***@x.com"

    escaped = await mapper.mapping_info("user@x.com", "kr", retry_count=1)
    assert escaped.escapes and escaped.resource_id is None

    preview = await mapper.preview_mappings(["user@x.com"], "kr")
    assert preview == [{"identity": "use***@x.com", "resource_id": "R2", "endpoint": "10.0.0.1:1080"}]


@pytest.mark.asyncio
async def test_distribution_covers_all_identities(three_pool):
    mapper = _mapper(three_pool)
    identities = [f"user{i}@example.com" for i in range(30)]
    counts = await mapper.distribution(identities, "kr")
    assert sum(counts.values()) == 30
    assert set(counts) <= {"R1", "R2", "R3"}


@pytest.mark.asyncio
async def test_stats_by_partition(three_pool):
    add_resource(three_pool, "U1", partition="us", status="inactive")
    stats = await _mapper(three_pool).stats()
    assert stats["kr"] == {"total": 3, "active": 3, "inactive": 0}
    assert stats["us"] == {"total": 1, "active": 0, "inactive": 1}
