import asyncio
import random
from datetime import datetime, timedelta
from typing import Dict, Optional

import pytest

from coordinator.store import InMemoryRecordStore


async def no_sleep(_seconds: float) -> None:
    await asyncio.sleep(0)


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class JitterStore(InMemoryRecordStore):
    """Every request waits a random few milliseconds, like a remote API."""

    def __init__(self, max_latency: float = 0.005, seed: int = 7):
        super().__init__()
        self.max_latency = max_latency
        self.rng = random.Random(seed)

    async def _request(self) -> None:
        self.request_count += 1
        await asyncio.sleep(self.rng.uniform(0, self.max_latency))


def add_resource(store, resource_id: str, partition: str = "kr", **fields) -> None:
    row: Dict[str, str] = {
        "id": resource_id,
        "partition": partition,
        "status": "active",
        "host": "10.0.0.1",
        "port": "1080",
        "consecutive_failures": "0",
    }
    row.update({key: str(value) for key, value in fields.items()})
    store.put_record(f"resource:{resource_id}", row)


def add_work(store, key: str, identity: str, partition: Optional[str] = "kr", **fields) -> None:
    row = {"identity": identity, "retry_count": "0", "lease": "", "status": ""}
    if partition:
        row["partition"] = partition
    row.update({name: str(value) for name, value in fields.items()})
    store.put_record(f"work:{key}", row)


@pytest.fixture
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 3, 1, 12, 0, 0))
