import logging
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel

from .models import Resource, ResourceStatus
from .store import RecordStore, Row

logger = logging.getLogger(__name__)

_ACTIVE_VALUES = {"active", "enabled"}


class FailureResult(BaseModel):
    found: bool
    new_count: int = 0
    deactivated: bool = False
    partition_key: Optional[str] = None


def _to_int(value: Optional[str]) -> int:
    try:
        return int(value or 0)
    except ValueError:
        return 0


def row_to_resource(row: Row) -> Resource:
    # A blank status means the resource was never switched on.
    status = (row.get("status") or "").strip().lower()
    return Resource(
        id=row.get("id") or row["record_id"],
        record_id=row["record_id"],
        partition_key=(row.get("partition") or "").lower(),
        kind=(row.get("kind") or "socks5").lower(),
        host=row.get("host", ""),
        port=row.get("port", ""),
        username=row.get("username", ""),
        password=row.get("password", ""),
        status=ResourceStatus.ACTIVE if status in _ACTIVE_VALUES else ResourceStatus.INACTIVE,
        consecutive_failures=_to_int(row.get("consecutive_failures")),
        last_used=row.get("last_used") or None,
        last_ip=row.get("last_ip") or None,
    )


class ResourceRepository:
    """Resource rows kept in the record store under a shared prefix."""

    def __init__(self, store: RecordStore, prefix: str = "resource:", failure_threshold: int = 3):
        self.store = store
        self.prefix = prefix
        self.failure_threshold = failure_threshold

    async def all_resources(self) -> List[Resource]:
        rows = await self.store.get_range(self.prefix)
        return [row_to_resource(row) for row in rows]

    async def by_partition(self, partition_key: str) -> List[Resource]:
        key = partition_key.lower()
        return [res for res in await self.all_resources() if res.partition_key == key]

    async def find(self, resource_id: str) -> Optional[Resource]:
        for resource in await self.all_resources():
            if resource.id == resource_id:
                return resource
        logger.warning("Resource not found: %s", resource_id)
        return None

    async def record_usage(
        self, resource_id: str, ip: Optional[str] = None, used_at: Optional[datetime] = None
    ) -> bool:
        resource = await self.find(resource_id)
        if resource is None:
            return False
        stamp = (used_at or datetime.utcnow()).isoformat(timespec="seconds")
        updates = [(resource.record_id, "last_used", stamp)]
        if ip:
            updates.append((resource.record_id, "last_ip", ip))
        await self.store.batch_write(updates)
        return True

    async def reset_failures(self, resource_id: str) -> bool:
        resource = await self.find(resource_id)
        if resource is None:
            return False
        if resource.consecutive_failures:
            await self.store.set_field(resource.record_id, "consecutive_failures", "0")
        return True

    async def increment_failures(self, resource_id: str) -> FailureResult:
        resource = await self.find(resource_id)
        if resource is None:
            return FailureResult(found=False)

        new_count = resource.consecutive_failures + 1
        updates = [(resource.record_id, "consecutive_failures", str(new_count))]
        deactivated = (
            new_count >= self.failure_threshold and resource.status == ResourceStatus.ACTIVE
        )
        if deactivated:
            updates.append((resource.record_id, "status", ResourceStatus.INACTIVE.value))
        await self.store.batch_write(updates)

        return FailureResult(
            found=True,
            new_count=new_count,
            deactivated=deactivated,
            partition_key=resource.partition_key,
        )

    async def stats(self) -> Dict[str, Dict[str, int]]:
        counts: Dict[str, Dict[str, int]] = {}
        for resource in await self.all_resources():
            entry = counts.setdefault(resource.partition_key, {"total": 0, "active": 0, "inactive": 0})
            entry["total"] += 1
            if resource.is_active(self.failure_threshold):
                entry["active"] += 1
            else:
                entry["inactive"] += 1
        return counts
