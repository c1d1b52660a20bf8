import asyncio
import os
import sqlite3
import time
from collections import deque
from typing import Callable, Deque, Dict, Iterable, List, Optional, Protocol, Tuple

from .errors import QuotaExceededError

Row = Dict[str, str]
FieldWrite = Tuple[str, str, str]  # (record_id, field, value)


class RecordStore(Protocol):
    async def get_field(self, record_id: str, field: str) -> str:
        ...

    async def set_field(self, record_id: str, field: str, value: str) -> None:
        ...

    async def get_range(self, prefix: str) -> List[Row]:
        ...

    async def batch_write(self, updates: Iterable[FieldWrite]) -> None:
        ...


class QuotaWindow:
    """Sliding-window request counter standing in for the remote rate limit."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock
        self._calls: Deque[float] = deque()

    def consume(self) -> None:
        now = self.clock()
        while self._calls and now - self._calls[0] >= self.window_seconds:
            self._calls.popleft()
        if len(self._calls) >= self.max_requests:
            raise QuotaExceededError(
                f"Quota exceeded: {self.max_requests} requests per {self.window_seconds:g}s"
            )
        self._calls.append(now)


class InMemoryRecordStore:
    """In-process record store with optional latency and quota simulation."""

    def __init__(self, latency: float = 0.0, quota: Optional[QuotaWindow] = None):
        self.latency = latency
        self.quota = quota
        self._records: Dict[str, Row] = {}
        self.request_count = 0
        self.batch_log: List[List[FieldWrite]] = []

    async def _request(self) -> None:
        self.request_count += 1
        if self.quota is not None:
            self.quota.consume()
        if self.latency:
            await asyncio.sleep(self.latency)

    def put_record(self, record_id: str, fields: Row) -> None:
        self._records.setdefault(record_id, {}).update(fields)

    def records(self) -> Dict[str, Row]:
        return {record_id: dict(fields) for record_id, fields in self._records.items()}

    async def get_field(self, record_id: str, field: str) -> str:
        await self._request()
        return self._records.get(record_id, {}).get(field, "")

    async def set_field(self, record_id: str, field: str, value: str) -> None:
        await self._request()
        self._records.setdefault(record_id, {})[field] = value

    async def get_range(self, prefix: str) -> List[Row]:
        await self._request()
        rows: List[Row] = []
        for record_id in sorted(self._records):
            if record_id.startswith(prefix):
                row = dict(self._records[record_id])
                row["record_id"] = record_id
                rows.append(row)
        return rows

    async def batch_write(self, updates: Iterable[FieldWrite]) -> None:
        batch = list(updates)
        await self._request()
        for record_id, field, value in batch:
            self._records.setdefault(record_id, {})[field] = value
        self.batch_log.append(batch)

    def metrics(self) -> Dict[str, int]:
        return {
            "backend": "memory",
            "records": len(self._records),
            "requests": self.request_count,
            "batches": len(self.batch_log),
        }


class SQLiteRecordStore:
    """SQLite-backed record store, one row per (record, field)."""

    def __init__(self, db_path: str, quota: Optional[QuotaWindow] = None):
        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.quota = quota
        self.request_count = 0
        self._init_table()

    def _init_table(self) -> None:
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS records (
                record_id TEXT NOT NULL,
                field TEXT NOT NULL,
                value TEXT NOT NULL,
                PRIMARY KEY (record_id, field)
            );
            """
        )
        self.conn.commit()

    def _request(self) -> None:
        self.request_count += 1
        if self.quota is not None:
            self.quota.consume()

    def _upsert(self, record_id: str, field: str, value: str) -> None:
        self.conn.execute(
            """
            INSERT OR REPLACE INTO records (record_id, field, value)
            VALUES (?, ?, ?)
            """,
            (record_id, field, value),
        )

    def put_record(self, record_id: str, fields: Row) -> None:
        for field, value in fields.items():
            self._upsert(record_id, field, value)
        self.conn.commit()

    async def get_field(self, record_id: str, field: str) -> str:
        self._request()
        row = self.conn.execute(
            "SELECT value FROM records WHERE record_id = ? AND field = ?",
            (record_id, field),
        ).fetchone()
        return row["value"] if row else ""

    async def set_field(self, record_id: str, field: str, value: str) -> None:
        self._request()
        self._upsert(record_id, field, value)
        self.conn.commit()

    async def get_range(self, prefix: str) -> List[Row]:
        self._request()
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        rows = self.conn.execute(
            """
            SELECT record_id, field, value
            FROM records
            WHERE record_id LIKE ? ESCAPE '\\'
            ORDER BY record_id
            """,
            (escaped + "%",),
        ).fetchall()
        grouped: Dict[str, Row] = {}
        for row in rows:
            grouped.setdefault(row["record_id"], {})[row["field"]] = row["value"]
        result: List[Row] = []
        for record_id, fields in grouped.items():
            fields["record_id"] = record_id
            result.append(fields)
        return result

    async def batch_write(self, updates: Iterable[FieldWrite]) -> None:
        batch = list(updates)
        self._request()
        with self.conn:
            for record_id, field, value in batch:
                self._upsert(record_id, field, value)

    def metrics(self) -> Dict[str, int]:
        row = self.conn.execute(
            "SELECT COUNT(DISTINCT record_id) AS c FROM records"
        ).fetchone()
        return {
            "backend": "sqlite",
            "records": row["c"],
            "requests": self.request_count,
        }


def create_store(
    backend: str,
    path: str,
    quota_requests: int = 0,
    quota_window_seconds: float = 60.0,
) -> RecordStore:
    quota = QuotaWindow(quota_requests, quota_window_seconds) if quota_requests > 0 else None
    backend = backend.lower()
    if backend == "sqlite":
        return SQLiteRecordStore(path, quota=quota)
    return InMemoryRecordStore(quota=quota)
