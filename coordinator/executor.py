"""Bounded-concurrency batch execution with batched result persistence.

Each work item holds one semaphore slot for all of its attempts. Every item
that succeeds or fails queues one PendingUpdate; updates are written to the
record store in batches of at most ``batch_size``, triggered by the buffer
filling up, by the flush timer, and unconditionally when the run ends.
A batch that fails to write goes back on the queue unchanged; a quota
rejection additionally pauses flushing for ``quota_cooldown`` seconds.
"""

import asyncio
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

from .buffer import WriteBuffer
from .config import Settings
from .errors import LockContentionError, NonRetryableError, QuotaExceededError
from .events import EventKind
from .jobs import RunContext
from .models import ItemOutcome, Location, PendingUpdate, RunResult, WorkItem, WorkStatus
from .store import RecordStore

logger = logging.getLogger(__name__)

WorkFn = Callable[[WorkItem], Union[Any, Awaitable[Any]]]
Renderer = Callable[[ItemOutcome], str]


def render_outcome(outcome: ItemOutcome) -> str:
    if outcome.status == WorkStatus.SUCCEEDED:
        return WorkStatus.SUCCEEDED.value
    return f"{WorkStatus.FAILED.value}: {outcome.error}"


class BatchExecutor:
    def __init__(
        self,
        store: RecordStore,
        context: Optional[RunContext] = None,
        *,
        batch_size: int = 50,
        flush_interval: float = 5.0,
        quota_cooldown: float = 60.0,
        final_flush_attempts: int = 3,
        result_field: str = "status",
        retry_field: Optional[str] = None,
        render: Renderer = render_outcome,
    ):
        self.store = store
        self.context = context or RunContext()
        self.context.executor = self
        self.buffer = WriteBuffer(batch_size)
        self.flush_interval = flush_interval
        self.quota_cooldown = quota_cooldown
        self.final_flush_attempts = final_flush_attempts
        self.result_field = result_field
        self.retry_field = retry_field
        self.render = render

        self._flush_lock = asyncio.Lock()
        self._flush_task: Optional[asyncio.Task] = None
        self._timer_stop = asyncio.Event()
        self._stop = asyncio.Event()
        self._gate = asyncio.Event()
        self._gate.set()
        self._active: Dict[str, float] = {}

    @classmethod
    def from_settings(
        cls, store: RecordStore, settings: Settings, context: Optional[RunContext] = None, **kwargs
    ) -> "BatchExecutor":
        return cls(
            store,
            context,
            batch_size=settings.batch_size,
            flush_interval=settings.flush_interval_ms / 1000,
            quota_cooldown=settings.quota_cooldown_ms / 1000,
            final_flush_attempts=settings.final_flush_attempts,
            result_field=settings.result_field,
            **kwargs,
        )

    @property
    def job_id(self) -> str:
        return self.context.job_id

    # -- control ---------------------------------------------------------

    def stop(self) -> None:
        """Start no further items; in-flight items run to completion."""
        if not self._stop.is_set():
            logger.info("Job %s: stop requested", self.job_id)
        self._stop.set()
        self._gate.set()

    def pause(self) -> None:
        logger.info("Job %s: paused", self.job_id)
        self._gate.clear()

    def resume(self) -> None:
        logger.info("Job %s: resumed", self.job_id)
        self._gate.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    @property
    def paused(self) -> bool:
        return not self._gate.is_set()

    def active_items(self) -> List[Dict[str, Any]]:
        now = time.monotonic()
        return [
            {"record_id": record_id, "running_seconds": round(now - started, 3)}
            for record_id, started in self._active.items()
        ]

    # -- run -------------------------------------------------------------

    async def run(
        self,
        items: Iterable[WorkItem],
        work_fn: WorkFn,
        concurrency_limit: int = 3,
        max_retries: int = 3,
        retry_delay: float = 0.5,
    ) -> RunResult:
        """Process ``items`` and return once every item is terminal and results are flushed."""
        items = list(items)
        if concurrency_limit < 1:
            raise ValueError("concurrency_limit must be at least 1")
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")

        self.context.publish(EventKind.RUN_STARTED, total=len(items), concurrency_limit=concurrency_limit)
        logger.info(
            "Job %s: %d items, concurrency %d, %d attempt(s) each",
            self.job_id, len(items), concurrency_limit, max_retries,
        )

        semaphore = asyncio.Semaphore(concurrency_limit)
        self._timer_stop.clear()
        timer = asyncio.create_task(self._flush_periodically())
        try:
            outcomes = await asyncio.gather(
                *(self._run_item(item, work_fn, semaphore, max_retries, retry_delay) for item in items)
            )
        finally:
            unflushed = await self._shutdown(timer)

        result = RunResult(job_id=self.job_id, unflushed=unflushed, stopped=self.stopped)
        for outcome in outcomes:
            if outcome.status == WorkStatus.SUCCEEDED:
                result.succeeded.append(outcome)
            elif outcome.status == WorkStatus.FAILED:
                result.failed.append(outcome)
            else:
                result.skipped.append(outcome)

        self.context.publish(
            EventKind.RUN_FINISHED,
            succeeded=len(result.succeeded),
            failed=len(result.failed),
            skipped=len(result.skipped),
            unflushed=len(unflushed),
        )
        result.stats = self.context.stats.snapshot()
        logger.info(
            "Job %s finished: %d succeeded, %d failed, %d skipped in %.1fs",
            self.job_id, len(result.succeeded), len(result.failed), len(result.skipped),
            result.stats.elapsed_seconds(),
        )
        return result

    async def _run_item(
        self,
        item: WorkItem,
        work_fn: WorkFn,
        semaphore: asyncio.Semaphore,
        max_retries: int,
        retry_delay: float,
    ) -> ItemOutcome:
        async with semaphore:
            await self._gate.wait()
            if self._stop.is_set():
                return self._skip(item, "stopped before start", attempts=0, started=False)
            self._active[item.record_id] = time.monotonic()
            try:
                return await self._attempt(item, work_fn, max_retries, retry_delay)
            finally:
                self._active.pop(item.record_id, None)

    async def _attempt(
        self, item: WorkItem, work_fn: WorkFn, max_retries: int, retry_delay: float
    ) -> ItemOutcome:
        item.status = WorkStatus.PROCESSING
        started = time.monotonic()
        self.context.publish(EventKind.WORK_STARTED, record_id=item.record_id, identifier=item.identifier)

        last_error: Optional[str] = None
        attempts = 0
        stored_retries = item.retry_count
        for attempt in range(1, max_retries + 1):
            attempts = attempt
            try:
                result = work_fn(item)
                if inspect.isawaitable(result):
                    result = await result
            except LockContentionError as exc:
                return self._skip(item, str(exc) or "leased elsewhere", attempts=attempt, started=True)
            except NonRetryableError as exc:
                last_error = str(exc)
                item.retry_count += 1
                logger.warning("%s failed without retry: %s", item.record_id, last_error)
                break
            except Exception as exc:
                last_error = str(exc) or type(exc).__name__
                item.retry_count += 1
                logger.warning(
                    "%s attempt %d/%d failed: %s", item.record_id, attempt, max_retries, last_error
                )
                if attempt < max_retries:
                    self.context.publish(
                        EventKind.WORK_RETRY, record_id=item.record_id, attempt=attempt, error=last_error
                    )
                    await asyncio.sleep(retry_delay * attempt)
            else:
                item.status = WorkStatus.SUCCEEDED
                item.result = result
                item.last_error = None
                outcome = ItemOutcome(
                    identifier=item.identifier,
                    record_id=item.record_id,
                    status=WorkStatus.SUCCEEDED,
                    attempts=attempt,
                    result=result,
                    duration_seconds=time.monotonic() - started,
                )
                self._queue_result(outcome)
                self.context.publish(
                    EventKind.WORK_COMPLETED,
                    record_id=item.record_id,
                    attempts=attempt,
                    duration_seconds=outcome.duration_seconds,
                )
                return outcome

        item.status = WorkStatus.FAILED
        item.last_error = last_error
        outcome = ItemOutcome(
            identifier=item.identifier,
            record_id=item.record_id,
            status=WorkStatus.FAILED,
            attempts=attempts,
            error=last_error,
            duration_seconds=time.monotonic() - started,
        )
        self._queue_result(outcome)
        if self.retry_field:
            # One increment per failed run, however many attempts it took.
            self._queue(Location(record_id=item.record_id, field=self.retry_field), str(stored_retries + 1))
        self.context.publish(
            EventKind.WORK_FAILED,
            record_id=item.record_id,
            attempts=attempts,
            error=last_error,
            duration_seconds=outcome.duration_seconds,
        )
        logger.error("%s failed after %d attempt(s): %s", item.record_id, attempts, last_error)
        return outcome

    def _skip(self, item: WorkItem, reason: str, attempts: int, started: bool) -> ItemOutcome:
        item.status = WorkStatus.SKIPPED
        self.context.publish(EventKind.WORK_SKIPPED, record_id=item.record_id, reason=reason, started=started)
        logger.info("%s skipped: %s", item.record_id, reason)
        return ItemOutcome(
            identifier=item.identifier,
            record_id=item.record_id,
            status=WorkStatus.SKIPPED,
            attempts=attempts,
            error=reason,
        )

    # -- persistence -----------------------------------------------------

    def _queue_result(self, outcome: ItemOutcome) -> None:
        self._queue(Location(record_id=outcome.record_id, field=self.result_field), self.render(outcome))

    def _queue(self, location: Location, value: str) -> None:
        if self.buffer.add(PendingUpdate(location=location, value=value)):
            self._schedule_flush()

    def _schedule_flush(self) -> None:
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.create_task(self._flush_while_full())

    async def _flush_while_full(self) -> None:
        while self.buffer.should_flush():
            if not await self.flush():
                break

    async def _flush_pending(self) -> None:
        while len(self.buffer):
            if not await self.flush():
                break

    async def _flush_periodically(self) -> None:
        while not self._timer_stop.is_set():
            try:
                await asyncio.wait_for(self._timer_stop.wait(), timeout=self.flush_interval)
            except asyncio.TimeoutError:
                await self._flush_pending()

    async def flush(self, cooldown: bool = True) -> bool:
        """Write the oldest batch of pending updates. Returns False if the write failed.

        A quota rejection sleeps ``quota_cooldown`` before returning unless
        ``cooldown`` is False.
        """
        async with self._flush_lock:
            batch = self.buffer.take()
            if not batch:
                return True
            writes = [(u.location.record_id, u.location.field, u.value) for u in batch]
            try:
                await self.store.batch_write(writes)
            except asyncio.CancelledError:
                self.buffer.requeue(batch)
                raise
            except Exception as exc:
                self.buffer.requeue(batch)
                quota = isinstance(exc, QuotaExceededError)
                self.context.publish(EventKind.FLUSH_FAILED, count=len(batch), error=str(exc), quota=quota)
                if quota and cooldown:
                    logger.warning(
                        "Flush of %d updates hit the store quota; cooling down %.0fs",
                        len(batch), self.quota_cooldown,
                    )
                    await asyncio.sleep(self.quota_cooldown)
                else:
                    logger.error("Flush of %d updates failed: %s", len(batch), exc)
                return False

            self.context.publish(EventKind.FLUSH_COMPLETED, count=len(batch))
            logger.info("Flushed %d updates (%d still queued)", len(batch), len(self.buffer))
            return True

    async def _shutdown(self, timer: asyncio.Task) -> List[PendingUpdate]:
        self._timer_stop.set()
        await timer
        if self._flush_task is not None:
            await self._flush_task

        failures = 0
        while len(self.buffer) and failures < self.final_flush_attempts:
            if not await self.flush(cooldown=failures + 1 < self.final_flush_attempts):
                failures += 1

        leftover = self.buffer.drain()
        if leftover:
            logger.error(
                "Job %s: giving up on %d updates after %d failed final flushes",
                self.job_id, len(leftover), failures,
            )
        return leftover
