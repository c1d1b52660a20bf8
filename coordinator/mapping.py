import hashlib
import logging
import random
import re
import time
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .errors import NoAvailableResourcesError, TransientIOError
from .events import EventBus, EventKind
from .logger import mask_identity
from .models import MappingInfo, Resource
from .resources import FailureResult, ResourceRepository

logger = logging.getLogger(__name__)


def _hash(identity: str) -> Tuple[str, int]:
    """Return the 8-hex-digit prefix of the identity's SHA-256 and its integer value."""
    digest = hashlib.sha256(identity.lower().strip().encode("utf-8")).hexdigest()
    prefix = digest[:8]
    return prefix, int(prefix, 16)


def natural_key(value: str) -> List:
    """Sort key that orders ``id_2`` before ``id_10``."""
    return [int(part) if part.isdigit() else part.lower() for part in re.split(r"(\d+)", value)]


class ResourceMapper:
    """Pins identities to resources by hash, with a random escape after failures."""

    def __init__(
        self,
        repository: ResourceRepository,
        *,
        escape_threshold: int = 1,
        cache_ttl_seconds: float = 300.0,
        events: Optional[EventBus] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.repository = repository
        self.escape_threshold = escape_threshold
        self.cache_ttl_seconds = cache_ttl_seconds
        self.events = events
        self.rng = rng or random.Random()
        self.clock = clock
        self._cache: Dict[str, Tuple[float, List[Resource]]] = {}

    async def active_pool(self, partition_key: str) -> List[Resource]:
        key = partition_key.lower()
        cached = self._cache.get(key)
        if cached is not None and self.clock() - cached[0] < self.cache_ttl_seconds:
            return cached[1]

        resources = await self.repository.by_partition(key)
        threshold = self.repository.failure_threshold
        active = [res for res in resources if res.is_active(threshold)]
        active.sort(key=lambda res: natural_key(res.id))
        # Duplicate ids would shift every index after them.
        pool: List[Resource] = []
        seen = set()
        for res in active:
            if res.id not in seen:
                seen.add(res.id)
                pool.append(res)

        self._cache[key] = (self.clock(), pool)
        logger.info("Loaded %d active resources for %s (%d total)", len(pool), key, len(resources))
        return pool

    def _escapes(self, retry_count: int, escape_threshold: int) -> bool:
        return escape_threshold > 0 and retry_count >= escape_threshold

    async def assign(
        self,
        identity: str,
        partition_key: str,
        retry_count: int = 0,
        escape_threshold: Optional[int] = None,
    ) -> Resource:
        if not identity or not identity.strip():
            raise ValueError("identity is required")
        threshold = self.escape_threshold if escape_threshold is None else escape_threshold

        pool = await self.active_pool(partition_key)
        if not pool:
            raise NoAvailableResourcesError(partition_key)

        _, hash_int = _hash(identity)
        base_index = hash_int % len(pool)

        if not self._escapes(retry_count, threshold):
            resource = pool[base_index]
            logger.info(
                "%s -> %s (index %d/%d)", mask_identity(identity), resource.id, base_index, len(pool)
            )
            return resource

        if len(pool) == 1:
            index = 0
        else:
            index = self.rng.randrange(len(pool) - 1)
            if index >= base_index:
                index += 1
        resource = pool[index]
        logger.info(
            "%s -> %s (random, retry %d)", mask_identity(identity), resource.id, retry_count
        )
        return resource

    async def random_resource(self, partition_key: str) -> Resource:
        pool = await self.active_pool(partition_key)
        if not pool:
            raise NoAvailableResourcesError(partition_key)
        return pool[self.rng.randrange(len(pool))]

    async def mapping_info(
        self,
        identity: str,
        partition_key: str,
        retry_count: int = 0,
        escape_threshold: Optional[int] = None,
    ) -> MappingInfo:
        threshold = self.escape_threshold if escape_threshold is None else escape_threshold
        pool = await self.active_pool(partition_key)
        if not pool:
            raise NoAvailableResourcesError(partition_key)
        prefix, hash_int = _hash(identity)
        base_index = hash_int % len(pool)
        escapes = self._escapes(retry_count, threshold)
        return MappingInfo(
            identity=mask_identity(identity),
            partition_key=partition_key.lower(),
            hash_prefix=prefix,
            base_index=base_index,
            pool_size=len(pool),
            escapes=escapes,
            resource_id=None if escapes else pool[base_index].id,
            retry_count=retry_count,
            escape_threshold=threshold,
        )

    async def preview_mappings(self, identities: Iterable[str], partition_key: str) -> List[Dict[str, str]]:
        pool = await self.active_pool(partition_key)
        if not pool:
            return []
        preview = []
        for identity in identities:
            resource = pool[_hash(identity)[1] % len(pool)]
            preview.append(
                {
                    "identity": mask_identity(identity),
                    "resource_id": resource.id,
                    "endpoint": f"{resource.host}:{resource.port}",
                }
            )
        return preview

    async def distribution(self, identities: Iterable[str], partition_key: str) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for identity in identities:
            resource = await self.assign(identity, partition_key)
            counts[resource.id] = counts.get(resource.id, 0) + 1
        return counts

    def invalidate_cache(self, partition_key: Optional[str] = None) -> None:
        if partition_key:
            self._cache.pop(partition_key.lower(), None)
            logger.info("Resource cache invalidated for %s", partition_key.lower())
        else:
            self._cache.clear()
            logger.info("Resource cache invalidated")

    def _invalidate_containing(self, resource_id: str, partition_key: Optional[str]) -> None:
        stale = [key for key, (_, pool) in self._cache.items() if any(r.id == resource_id for r in pool)]
        if partition_key:
            stale.append(partition_key)
        for key in set(stale):
            self.invalidate_cache(key)

    async def record_success(self, resource_id: str, ip: Optional[str] = None) -> bool:
        try:
            await self.repository.record_usage(resource_id, ip=ip)
            return await self.repository.reset_failures(resource_id)
        except TransientIOError as exc:
            logger.warning("Could not record success for %s: %s", resource_id, exc)
            return False

    async def record_failure(self, resource_id: str) -> FailureResult:
        try:
            result = await self.repository.increment_failures(resource_id)
        except TransientIOError as exc:
            logger.warning("Could not record failure for %s: %s", resource_id, exc)
            return FailureResult(found=False)

        if result.found:
            # The failure count is part of the active filter.
            self._invalidate_containing(resource_id, result.partition_key)
        if result.deactivated:
            logger.warning(
                "Resource %s deactivated after %d consecutive failures", resource_id, result.new_count
            )
            if self.events is not None:
                self.events.publish(
                    EventKind.RESOURCE_DEACTIVATED,
                    resource_id=resource_id,
                    partition_key=result.partition_key,
                    failures=result.new_count,
                )
        return result

    async def stats(self) -> Dict[str, Dict[str, int]]:
        return await self.repository.stats()
