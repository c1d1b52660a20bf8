from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class WorkStatus(str, Enum):
    PENDING = "pending"
    LEASED = "leased"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class ResourceStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class WorkItem(BaseModel):
    """One unit of work loaded from a record in the store."""

    identifier: str
    record_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    retry_count: int = Field(default=0, ge=0)
    status: WorkStatus = WorkStatus.PENDING
    lease_value: str = ""
    partition_key: Optional[str] = None
    result: Optional[Any] = None
    last_error: Optional[str] = None


class Lease(BaseModel):
    """Decoded lease value. `raw` is exactly what sits in the lease field."""

    resource_key: str
    owner_id: str
    acquired_at: datetime
    raw: str


class Resource(BaseModel):
    """An interchangeable egress resource scoped by partition."""

    id: str
    record_id: str
    partition_key: str
    kind: str = "socks5"
    host: str = ""
    port: str = ""
    username: str = ""
    password: str = ""
    status: ResourceStatus = ResourceStatus.INACTIVE
    consecutive_failures: int = 0
    last_used: Optional[str] = None
    last_ip: Optional[str] = None

    def is_active(self, failure_threshold: int) -> bool:
        return (
            self.status == ResourceStatus.ACTIVE
            and self.consecutive_failures < failure_threshold
            and bool(self.host)
            and bool(self.port)
        )


class Location(BaseModel):
    model_config = ConfigDict(frozen=True)

    record_id: str
    field: str


class PendingUpdate(BaseModel):
    """A full-field overwrite queued for the next flush."""

    location: Location
    value: str
    queued_at: datetime = Field(default_factory=datetime.utcnow)


class ItemOutcome(BaseModel):
    identifier: str
    record_id: str
    status: WorkStatus
    attempts: int
    result: Optional[Any] = None
    error: Optional[str] = None
    duration_seconds: float = 0.0


class JobStats(BaseModel):
    total: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    in_progress: int = 0
    retries: int = 0
    flushes: int = 0
    flush_failures: int = 0
    flushed_updates: int = 0
    total_duration_seconds: float = 0.0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def processed(self) -> int:
        return self.completed + self.failed + self.skipped

    @property
    def success_rate(self) -> float:
        finished = self.completed + self.failed
        return self.completed / finished if finished else 0.0

    @property
    def avg_duration_seconds(self) -> float:
        finished = self.completed + self.failed
        return self.total_duration_seconds / finished if finished else 0.0

    def elapsed_seconds(self, now: Optional[datetime] = None) -> float:
        if self.started_at is None:
            return 0.0
        end = self.finished_at or now or datetime.utcnow()
        return max((end - self.started_at).total_seconds(), 0.0)

    def throughput(self, now: Optional[datetime] = None) -> float:
        elapsed = self.elapsed_seconds(now)
        return (self.completed + self.failed) / elapsed if elapsed > 0 else 0.0

    def summary(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        data = self.model_dump()
        data.update(
            processed=self.processed,
            success_rate=round(self.success_rate, 4),
            avg_duration_seconds=round(self.avg_duration_seconds, 4),
            elapsed_seconds=round(self.elapsed_seconds(now), 3),
            throughput=round(self.throughput(now), 4),
        )
        return data


class RunResult(BaseModel):
    job_id: str
    succeeded: List[ItemOutcome] = Field(default_factory=list)
    failed: List[ItemOutcome] = Field(default_factory=list)
    skipped: List[ItemOutcome] = Field(default_factory=list)
    unflushed: List[PendingUpdate] = Field(default_factory=list)
    stats: JobStats = Field(default_factory=JobStats)
    stopped: bool = False


class MappingInfo(BaseModel):
    identity: str
    partition_key: str
    hash_prefix: str
    base_index: int
    pool_size: int
    escapes: bool
    resource_id: Optional[str] = None
    retry_count: int = 0
    escape_threshold: int = 1
