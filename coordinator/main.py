import asyncio
import logging

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from .config import settings, validate_settings
from .errors import CoordinatorError, NoAvailableResourcesError
from .events import EventBus
from .jobs import JobRegistry, RunContext
from .lease import LeaseLock
from .logger import setup_logger
from .mapping import ResourceMapper
from .models import RunResult
from .pipeline import WorkPipeline
from .resources import ResourceRepository
from .simulated import SimulatedWork, seed_store
from .store import create_store

logger = logging.getLogger(__name__)


class SeedRequest(BaseModel):
    partitions: list[str] = ["kr", "us"]
    resources_per_partition: int = 3
    work_items: int = 10


class RunRequest(BaseModel):
    failure_rate: float = 0.2
    latency: float = 0.05


class PreviewRequest(BaseModel):
    identities: list[str]


validate_settings(settings)
setup_logger(settings.log_dir, level=settings.log_level)

app = FastAPI(
    title="Lease Coordinator",
    version="0.1.0",
    description="Coordinates workers sharing a rate-limited record store.",
)

events = EventBus()
store = create_store(
    backend=settings.store_backend,
    path=settings.store_path,
    quota_requests=settings.store_quota_requests,
    quota_window_seconds=settings.store_quota_window_seconds,
)
lock = LeaseLock(
    store,
    field=settings.lease_field,
    expiry_minutes=settings.lease_expiry_minutes,
    settle_seconds=settings.lease_settle_ms / 1000,
    time_mode=settings.lease_time_mode,
    owner_id=settings.worker_id,
    events=events,
)
repository = ResourceRepository(
    store,
    prefix=settings.resource_prefix,
    failure_threshold=settings.resource_failure_threshold,
)
mapper = ResourceMapper(
    repository,
    escape_threshold=settings.resource_escape_threshold,
    cache_ttl_seconds=settings.resource_cache_ttl_seconds,
    events=events,
)
registry = JobRegistry()
pipeline = WorkPipeline(store, lock, mapper, registry, settings, events=events)


@app.get("/health")
async def health() -> dict:
    return {"status": "ok", "worker_id": lock.owner_id}


@app.post("/seed")
async def seed(request: SeedRequest) -> dict:
    if not hasattr(store, "put_record"):
        raise HTTPException(status_code=400, detail="Store backend cannot be seeded")
    counts = seed_store(
        store,
        partitions=request.partitions,
        resources_per_partition=request.resources_per_partition,
        work_items=request.work_items,
        work_prefix=settings.work_prefix,
        resource_prefix=settings.resource_prefix,
        lease_field=settings.lease_field,
        result_field=settings.result_field,
    )
    mapper.invalidate_cache()
    return {"seeded": counts}


async def _run(context: RunContext, request: RunRequest) -> RunResult:
    work = SimulatedWork(failure_rate=request.failure_rate, latency=request.latency)
    return await pipeline.run(work, context=context)


@app.post("/runs")
async def start_run(request: RunRequest, async_mode: bool = False) -> dict:
    context = RunContext(events=events, kind="pipeline")
    if async_mode:
        asyncio.create_task(_run(context, request))
        return {"status": "scheduled", "job_id": context.job_id}
    result = await _run(context, request)
    return {"status": "completed", "result": result}


@app.get("/runs/last")
async def last_run() -> dict:
    return {"last_run": pipeline.last_result, "finished_at": pipeline.last_run_at}


@app.get("/jobs")
async def list_jobs(limit: int = 20) -> dict:
    return {
        "active": [context.describe() for context in registry.active()],
        "history": registry.history(limit),
    }


@app.get("/jobs/{job_id}")
async def job_status(job_id: str) -> dict:
    record = registry.find(job_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Unknown job '{job_id}'")
    return {"job": record}


async def _control(action: str, job_id: str) -> dict:
    try:
        context = getattr(registry, action)(job_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {"job_id": job_id, "status": context.status}


@app.post("/jobs/{job_id}/cancel")
async def cancel_job(job_id: str) -> dict:
    return await _control("cancel", job_id)


@app.post("/jobs/{job_id}/pause")
async def pause_job(job_id: str) -> dict:
    return await _control("pause", job_id)


@app.post("/jobs/{job_id}/resume")
async def resume_job(job_id: str) -> dict:
    return await _control("resume", job_id)


@app.get("/resources/{partition}")
async def resource_pool(partition: str) -> dict:
    pool = await mapper.active_pool(partition)
    return {
        "partition": partition.lower(),
        "active": [res.model_dump(exclude={"password"}) for res in pool],
        "stats": await mapper.stats(),
    }


@app.post("/resources/{partition}/preview")
async def preview_mappings(partition: str, request: PreviewRequest) -> dict:
    if not request.identities:
        raise HTTPException(status_code=400, detail="No identities provided")
    return {"preview": await mapper.preview_mappings(request.identities, partition)}


@app.get("/resources/{partition}/mapping/{identity}")
async def mapping_info(partition: str, identity: str, retry_count: int = 0) -> dict:
    try:
        info = await mapper.mapping_info(identity, partition, retry_count)
    except NoAvailableResourcesError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"mapping": info}


@app.get("/leases/{record_id:path}")
async def lease_status(record_id: str) -> dict:
    try:
        lease = await lock.inspect(record_id)
    except CoordinatorError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    if lease is None:
        return {"record_id": record_id, "lease": None, "expired": True}
    return {
        "record_id": record_id,
        "lease": lease,
        "expired": lock.is_expired_or_empty(lease.raw, record_id),
    }
