"""Advisory leases stored in a plain record field.

The record store has no compare-and-swap, so a lease is taken by writing,
waiting ``settle_seconds`` and reading back. Whoever's owner id survives the
read-back holds the lease. Mutual exclusion holds only while the settle delay
exceeds the round-trip variance between workers; keep it above the slowest
worker's write latency.
"""

import asyncio
import logging
import re
import socket
import time
import uuid
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Iterable, List, Optional

from .errors import LeaseAcquisitionError
from .events import EventBus, EventKind
from .models import Lease, WorkItem
from .store import RecordStore

logger = logging.getLogger(__name__)

LEASE_TAG = "LEASED"
_TIME_OF_DAY = re.compile(r"^(\d{1,2}):(\d{2})$")


def generate_owner_id(hostname: Optional[str] = None) -> str:
    host = re.sub(r"[^A-Z0-9]", "", (hostname or socket.gethostname()).upper())[:4] or "NODE"
    stamp = str(int(time.time() * 1000))[-6:]
    return f"WORKER-{host}-{stamp}-{uuid.uuid4().hex[:6].upper()}"


def encode_lease(owner_id: str, acquired_at: datetime, time_mode: str = "full") -> str:
    if time_mode == "time_of_day":
        stamp = acquired_at.strftime("%H:%M")
    else:
        stamp = acquired_at.isoformat(timespec="seconds")
    return f"{LEASE_TAG}:{owner_id}:{stamp}"


def parse_lease(resource_key: str, value: str, now: datetime) -> Optional[Lease]:
    """Decode a lease value, or None when it is empty or malformed.

    Time-of-day stamps carry no date: they are placed on ``now``'s date and
    moved back a day when that lands in the future.
    """
    if not value or not value.strip():
        return None
    parts = value.strip().split(":", 2)
    if len(parts) < 3 or not parts[1]:
        return None
    owner_id, stamp = parts[1], parts[2]

    match = _TIME_OF_DAY.match(stamp)
    if match:
        hour, minute = int(match.group(1)), int(match.group(2))
        if hour > 23 or minute > 59:
            return None
        acquired_at = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
        if acquired_at > now:
            acquired_at -= timedelta(days=1)
    else:
        try:
            acquired_at = datetime.fromisoformat(stamp)
        except ValueError:
            return None
        # Naive stamps and naive clocks are local time.
        if acquired_at.tzinfo is not None and now.tzinfo is None:
            acquired_at = acquired_at.astimezone().replace(tzinfo=None)
        elif acquired_at.tzinfo is None and now.tzinfo is not None:
            acquired_at = acquired_at.astimezone()

    return Lease(resource_key=resource_key, owner_id=owner_id, acquired_at=acquired_at, raw=value)


class LeaseLock:
    def __init__(
        self,
        store: RecordStore,
        *,
        field: str = "lease",
        expiry_minutes: int = 5,
        settle_seconds: float = 0.5,
        time_mode: str = "full",
        owner_id: Optional[str] = None,
        events: Optional[EventBus] = None,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.field = field
        self.expiry = timedelta(minutes=expiry_minutes)
        self.settle_seconds = settle_seconds
        self.time_mode = time_mode
        self.owner_id = owner_id or generate_owner_id()
        self.events = events
        self.clock = clock
        self.sleep = sleep

    def is_expired_or_empty(self, value: str, resource_key: str = "") -> bool:
        now = self.clock()
        lease = parse_lease(resource_key, value, now)
        if lease is None:
            return True
        elapsed = now - lease.acquired_at
        return elapsed >= self.expiry

    def new_lease_value(self) -> str:
        return encode_lease(self.owner_id, self.clock(), self.time_mode)

    async def inspect(self, record_id: str) -> Optional[Lease]:
        value = await self.store.get_field(record_id, self.field)
        return parse_lease(record_id, value, self.clock())

    async def acquire(self, record_id: str) -> bool:
        """Take the lease on ``record_id``.

        Returns False when another worker holds a live lease or wins the
        read-back race. Store errors raise LeaseAcquisitionError; they never
        count as acquired.
        """
        try:
            current = await self.store.get_field(record_id, self.field)
            if not self.is_expired_or_empty(current, record_id):
                logger.debug("Lease on %s held: %s", record_id, current)
                self._publish(EventKind.LOCK_DENIED, record_id, holder=current)
                return False

            mine = self.new_lease_value()
            await self.store.set_field(record_id, self.field, mine)
            await self.sleep(self.settle_seconds)
            verify = await self.store.get_field(record_id, self.field)
        except Exception as exc:
            logger.error("Lease acquisition on %s failed: %s", record_id, exc)
            raise LeaseAcquisitionError(record_id, exc) from exc

        lease = parse_lease(record_id, verify, self.clock())
        if lease is not None and lease.owner_id == self.owner_id:
            logger.debug("Lease on %s acquired by %s", record_id, self.owner_id)
            self._publish(EventKind.LOCK_ACQUIRED, record_id)
            return True

        logger.debug("Lease on %s lost to %s", record_id, verify)
        self._publish(EventKind.LOCK_DENIED, record_id, holder=verify)
        return False

    async def release(self, record_id: str) -> bool:
        """Clear the lease field whether or not this worker holds it."""
        try:
            await self.store.set_field(record_id, self.field, "")
        except Exception as exc:
            # The lease still lapses after the expiry window.
            logger.warning("Lease release on %s failed: %s", record_id, exc)
            return False
        logger.debug("Lease on %s released", record_id)
        return True

    def filter_unlocked(self, items: Iterable[WorkItem]) -> List[WorkItem]:
        return [item for item in items if self.is_expired_or_empty(item.lease_value, item.record_id)]

    def filter_retryable(self, items: Iterable[WorkItem], max_retry: int = 3) -> List[WorkItem]:
        eligible = []
        for item in items:
            if item.retry_count < max_retry:
                eligible.append(item)
            else:
                logger.debug("Skipping %s: %d/%d retries used", item.record_id, item.retry_count, max_retry)
        return eligible

    def filter_available(self, items: Iterable[WorkItem], max_retry: int = 3) -> List[WorkItem]:
        return self.filter_retryable(self.filter_unlocked(items), max_retry)

    def _publish(self, kind: EventKind, record_id: str, **payload) -> None:
        if self.events is not None:
            self.events.publish(kind, record_id=record_id, owner_id=self.owner_id, **payload)
