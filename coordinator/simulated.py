import asyncio
import random
import string
from typing import Any, Dict, Iterable, Optional

from .errors import TransientIOError
from .models import Resource, WorkItem


def _random_word(length: int = 6, rng: Optional[random.Random] = None) -> str:
    rng = rng or random
    return "".join(rng.choices(string.ascii_lowercase, k=length))


def seed_store(
    store,
    partitions: Iterable[str] = ("kr", "us"),
    resources_per_partition: int = 3,
    work_items: int = 10,
    work_prefix: str = "work:",
    resource_prefix: str = "resource:",
    lease_field: str = "lease",
    result_field: str = "status",
    rng: Optional[random.Random] = None,
) -> Dict[str, int]:
    """Fill a store that supports ``put_record`` with demo resources and work rows."""
    rng = rng or random.Random()
    partitions = [p.lower() for p in partitions]
    resources = 0
    for partition in partitions:
        for i in range(1, resources_per_partition + 1):
            resource_id = f"proxy_{partition}_{i}"
            store.put_record(
                f"{resource_prefix}{resource_id}",
                {
                    "id": resource_id,
                    "kind": "socks5",
                    "host": f"10.{partitions.index(partition)}.0.{i}",
                    "port": str(1080 + i),
                    "partition": partition,
                    "status": "active",
                    "consecutive_failures": "0",
                },
            )
            resources += 1

    for i in range(work_items):
        identity = f"{_random_word(rng=rng)}{i}@example.com"
        store.put_record(
            f"{work_prefix}{i:04d}",
            {
                "identity": identity,
                "partition": rng.choice(partitions),
                "retry_count": "0",
                lease_field: "",
                result_field: "",
            },
        )
    return {"resources": resources, "work_items": work_items}


class SimulatedWork:
    """Stand-in for the real per-account automation step."""

    def __init__(self, failure_rate: float = 0.2, latency: float = 0.05, rng: Optional[random.Random] = None):
        self.failure_rate = failure_rate
        self.latency = latency
        self.rng = rng or random.Random()
        self.calls = 0

    async def __call__(self, item: WorkItem, resource: Optional[Resource]) -> Dict[str, Any]:
        self.calls += 1
        if self.latency:
            await asyncio.sleep(self.rng.uniform(0, self.latency))
        if self.rng.random() < self.failure_rate:
            raise TransientIOError(f"simulated failure for {item.identifier}")
        return {
            "identifier": item.identifier,
            "resource": resource.id if resource else None,
        }
