import inspect
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, List, Optional, Set, Union

from .config import Settings
from .errors import LockContentionError
from .events import EventBus
from .executor import BatchExecutor
from .jobs import JobRegistry, RunContext
from .lease import LeaseLock
from .mapping import ResourceMapper
from .models import Resource, RunResult, WorkItem, WorkStatus
from .store import RecordStore, Row

logger = logging.getLogger(__name__)

ResourceWorkFn = Callable[[WorkItem, Optional[Resource]], Union[Any, Awaitable[Any]]]

_RESERVED_FIELDS = {"record_id", "identity", "partition", "retry_count"}


def row_to_work_item(row: Row, lease_field: str = "lease", result_field: str = "status") -> WorkItem:
    try:
        retry_count = max(int(row.get("retry_count") or 0), 0)
    except ValueError:
        retry_count = 0
    skip = _RESERVED_FIELDS | {lease_field, result_field}
    return WorkItem(
        identifier=(row.get("identity") or row["record_id"]).strip().lower(),
        record_id=row["record_id"],
        payload={key: value for key, value in row.items() if key not in skip},
        retry_count=retry_count,
        lease_value=row.get(lease_field, ""),
        partition_key=(row.get("partition") or "").lower() or None,
    )


class WorkPipeline:
    """Load leasable work from the store, run it, and report back."""

    def __init__(
        self,
        store: RecordStore,
        lock: LeaseLock,
        mapper: ResourceMapper,
        registry: JobRegistry,
        settings: Settings,
        events: Optional[EventBus] = None,
    ):
        self.store = store
        self.lock = lock
        self.mapper = mapper
        self.registry = registry
        self.settings = settings
        self.events = events or EventBus()
        self.last_run_at: Optional[datetime] = None
        self.last_result: Optional[RunResult] = None

    async def load_candidates(self) -> List[WorkItem]:
        rows = await self.store.get_range(self.settings.work_prefix)
        items = []
        for row in rows:
            status = row.get(self.settings.result_field, "")
            if status.startswith(WorkStatus.SUCCEEDED.value):
                continue
            items.append(row_to_work_item(row, self.settings.lease_field, self.settings.result_field))
        return items

    def eligible(self, items: List[WorkItem]) -> List[WorkItem]:
        return self.lock.filter_available(items, self.settings.max_item_retries)

    async def run(
        self,
        work_fn: ResourceWorkFn,
        items: Optional[List[WorkItem]] = None,
        context: Optional[RunContext] = None,
    ) -> RunResult:
        candidates = items if items is not None else await self.load_candidates()
        eligible = self.eligible(candidates)
        logger.info("%d of %d candidates are eligible", len(eligible), len(candidates))

        context = context or RunContext(events=self.events, kind="pipeline")
        executor = BatchExecutor.from_settings(self.store, self.settings, context, retry_field="retry_count")
        self.registry.register(context)

        held: Set[str] = set()

        async def process(item: WorkItem) -> Any:
            if item.record_id not in held:
                if not await self.lock.acquire(item.record_id):
                    raise LockContentionError(f"{item.record_id} is leased by another worker")
                held.add(item.record_id)
                item.status = WorkStatus.LEASED

            resource = None
            if item.partition_key:
                resource = await self.mapper.assign(
                    item.identifier,
                    item.partition_key,
                    item.retry_count,
                    self.settings.resource_escape_threshold,
                )
            try:
                result = work_fn(item, resource)
                if inspect.isawaitable(result):
                    result = await result
            except Exception:
                if resource is not None:
                    await self.mapper.record_failure(resource.id)
                raise
            if resource is not None:
                await self.mapper.record_success(resource.id)
            return result

        status = "failed"
        try:
            result = await executor.run(
                eligible,
                process,
                concurrency_limit=self.settings.concurrency_limit,
                max_retries=self.settings.max_retries,
                retry_delay=self.settings.retry_delay_ms / 1000,
            )
            status = "cancelled" if result.stopped else "completed"
        finally:
            # Results and retry counts are flushed before any lease is cleared.
            for record_id in sorted(held):
                await self.lock.release(record_id)
            self.registry.complete(context.job_id, status)

        self.last_run_at = datetime.utcnow()
        self.last_result = result
        return result

