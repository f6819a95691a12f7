from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
import json
import logging
from typing import Any, Protocol
from uuid import uuid4

import asyncpg  # type: ignore[import-untyped]

logger = logging.getLogger(__name__)

CLAIMABLE_STATUSES = ("queued", "running", "fetching")
TERMINAL_STATUSES = ("done", "error")

_JOB_COLUMNS = """
  id::text as id,
  source,
  external_run_id,
  dataset_id,
  status,
  lock_token,
  locked_until,
  progress_cursor,
  items_fetched,
  items_upserted,
  attempts,
  last_error,
  created_at,
  updated_at,
  completed_at
"""


class JobStoreError(Exception):
    """Base job store error."""


class JobStoreUnavailableError(JobStoreError):
    """Raised when the database is unavailable or not configured."""


class LeaseLostError(JobStoreError):
    """Raised when a lease-guarded write matched no row."""


@dataclass(slots=True)
class JobRecord:
    id: str
    source: str
    external_run_id: str
    status: str = "queued"
    dataset_id: str | None = None
    lock_token: str | None = None
    locked_until: datetime | None = None
    progress_cursor: int = 0
    items_fetched: int = 0
    items_upserted: int = 0
    attempts: int = 0
    last_error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None


class JobStore(Protocol):
    async def select_claimable(self, source: str | None = None) -> JobRecord | None: ...

    async def write_lease(self, job_id: str, lock_token: str, lease_seconds: int) -> bool: ...

    async def get_job(self, job_id: str) -> JobRecord | None: ...

    async def claim_atomic(self, source: str | None, lock_token: str, lease_seconds: int) -> JobRecord | None: ...

    async def set_status(
        self,
        job_id: str,
        lock_token: str,
        status: str,
        *,
        dataset_id: str | None = None,
        last_error: str | None = None,
    ) -> None: ...

    async def increment_progress(
        self,
        job_id: str,
        lock_token: str,
        absolute_cursor: int,
        upserted_delta: int,
    ) -> JobRecord: ...

    async def complete(self, job_id: str, lock_token: str) -> None: ...

    async def release(self, job_id: str, lock_token: str) -> None: ...

    async def record_failure(self, job_id: str, lock_token: str, error: str, max_attempts: int) -> JobRecord: ...

    async def record_audit(
        self,
        cron_name: str,
        *,
        success: bool,
        result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> None: ...


class PostgresJobStore:
    def __init__(self, database_url: str | None, min_pool_size: int = 1, max_pool_size: int = 5) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def select_claimable(self, source: str | None = None) -> JobRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            select {_JOB_COLUMNS}
            from ingest_runs
            where status in ('queued', 'running', 'fetching')
              and (locked_until is null or locked_until < now())
              and ($1::text is null or source = $1::text)
            order by created_at asc
            limit 1
            """,
            source,
        )
        return self._row_to_job(row) if row else None

    async def write_lease(self, job_id: str, lock_token: str, lease_seconds: int) -> bool:
        pool = await self._get_pool()
        result = await pool.execute(
            """
            update ingest_runs
            set
              lock_token = $2,
              locked_until = now() + ($3::int * interval '1 second'),
              updated_at = now()
            where id = $1::uuid
              and status in ('queued', 'running', 'fetching')
              and (locked_until is null or locked_until < now())
            """,
            job_id,
            lock_token,
            lease_seconds,
        )
        return _affected_rows(result) == 1

    async def get_job(self, job_id: str) -> JobRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(f"select {_JOB_COLUMNS} from ingest_runs where id = $1::uuid", job_id)
        return self._row_to_job(row) if row else None

    async def claim_atomic(self, source: str | None, lock_token: str, lease_seconds: int) -> JobRecord | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    update ingest_runs
                    set
                      lock_token = $2,
                      locked_until = now() + ($3::int * interval '1 second'),
                      updated_at = now()
                    where id = (
                      select id
                      from ingest_runs
                      where status in ('queued', 'running', 'fetching')
                        and (locked_until is null or locked_until < now())
                        and ($1::text is null or source = $1::text)
                      order by created_at asc
                      limit 1
                      for update skip locked
                    )
                    returning {_JOB_COLUMNS}
                    """,
                    source,
                    lock_token,
                    lease_seconds,
                )
        return self._row_to_job(row) if row else None

    async def set_status(
        self,
        job_id: str,
        lock_token: str,
        status: str,
        *,
        dataset_id: str | None = None,
        last_error: str | None = None,
    ) -> None:
        pool = await self._get_pool()
        result = await pool.execute(
            """
            update ingest_runs
            set
              status = $3,
              dataset_id = coalesce($4, dataset_id),
              last_error = coalesce($5, last_error),
              completed_at = case when $3 in ('done', 'error') then now() else completed_at end,
              updated_at = now()
            where id = $1::uuid and lock_token = $2
            """,
            job_id,
            lock_token,
            status,
            dataset_id,
            last_error,
        )
        if _affected_rows(result) != 1:
            raise LeaseLostError(f"lease lost for job {job_id}")

    async def increment_progress(
        self,
        job_id: str,
        lock_token: str,
        absolute_cursor: int,
        upserted_delta: int,
    ) -> JobRecord:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update ingest_runs
            set
              progress_cursor = greatest(progress_cursor, $3::int),
              items_fetched = greatest(items_fetched, $3::int),
              items_upserted = items_upserted + $4::int,
              updated_at = now()
            where id = $1::uuid and lock_token = $2
            returning {_JOB_COLUMNS}
            """,
            job_id,
            lock_token,
            absolute_cursor,
            max(0, upserted_delta),
        )
        if not row:
            raise LeaseLostError(f"lease lost for job {job_id}")
        return self._row_to_job(row)

    async def complete(self, job_id: str, lock_token: str) -> None:
        pool = await self._get_pool()
        result = await pool.execute(
            """
            update ingest_runs
            set
              status = 'done',
              completed_at = now(),
              lock_token = null,
              locked_until = null,
              updated_at = now()
            where id = $1::uuid and lock_token = $2
            """,
            job_id,
            lock_token,
        )
        if _affected_rows(result) != 1:
            raise LeaseLostError(f"lease lost for job {job_id}")

    async def release(self, job_id: str, lock_token: str) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update ingest_runs
            set lock_token = null, locked_until = null, updated_at = now()
            where id = $1::uuid and lock_token = $2
            """,
            job_id,
            lock_token,
        )

    async def record_failure(self, job_id: str, lock_token: str, error: str, max_attempts: int) -> JobRecord:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update ingest_runs
            set
              attempts = attempts + 1,
              last_error = $3,
              status = case when attempts + 1 >= $4::int then 'error' else status end,
              completed_at = case when attempts + 1 >= $4::int then now() else completed_at end,
              lock_token = null,
              locked_until = null,
              updated_at = now()
            where id = $1::uuid and lock_token = $2
            returning {_JOB_COLUMNS}
            """,
            job_id,
            lock_token,
            error[:2000],
            max_attempts,
        )
        if not row:
            raise LeaseLostError(f"lease lost for job {job_id}")
        return self._row_to_job(row)

    async def record_audit(
        self,
        cron_name: str,
        *,
        success: bool,
        result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            insert into cron_audit_log (cron_name, success, result, error, run_date)
            values ($1, $2, $3::jsonb, $4, current_date)
            """,
            cron_name,
            success,
            json.dumps(result or {}, default=str),
            error,
        )

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise JobStoreUnavailableError("BS_WORKER_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise JobStoreUnavailableError("database unavailable") from exc

    @staticmethod
    def _row_to_job(row: asyncpg.Record) -> JobRecord:
        return JobRecord(
            id=row["id"],
            source=row["source"],
            external_run_id=row["external_run_id"],
            status=row["status"],
            dataset_id=row["dataset_id"],
            lock_token=row["lock_token"],
            locked_until=row["locked_until"],
            progress_cursor=int(row["progress_cursor"] or 0),
            items_fetched=int(row["items_fetched"] or 0),
            items_upserted=int(row["items_upserted"] or 0),
            attempts=int(row["attempts"] or 0),
            last_error=row["last_error"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            completed_at=row["completed_at"],
        )


class InMemoryJobStore:
    """Process-local job store with the same guarded-write semantics as the Postgres store."""

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.jobs: dict[str, JobRecord] = {}
        self.audit_log: list[dict[str, Any]] = []

    def add_job(self, source: str, external_run_id: str, **fields: Any) -> JobRecord:
        now = self.clock()
        created_at = fields.pop("created_at", None) or now + timedelta(microseconds=len(self.jobs))
        job = JobRecord(
            id=str(uuid4()),
            source=source,
            external_run_id=external_run_id,
            created_at=created_at,
            updated_at=now,
            **fields,
        )
        self.jobs[job.id] = job
        return job

    async def select_claimable(self, source: str | None = None) -> JobRecord | None:
        await asyncio.sleep(0)
        candidates = [job for job in self.jobs.values() if self._available(job) and source in (None, job.source)]
        if not candidates:
            return None
        oldest = min(candidates, key=lambda job: job.created_at or self.clock())
        return replace(oldest)

    async def write_lease(self, job_id: str, lock_token: str, lease_seconds: int) -> bool:
        await asyncio.sleep(0)
        job = self.jobs.get(job_id)
        if job is None or not self._available(job):
            return False
        job.lock_token = lock_token
        job.locked_until = self.clock() + timedelta(seconds=lease_seconds)
        job.updated_at = self.clock()
        return True

    async def get_job(self, job_id: str) -> JobRecord | None:
        await asyncio.sleep(0)
        job = self.jobs.get(job_id)
        return replace(job) if job else None

    async def claim_atomic(self, source: str | None, lock_token: str, lease_seconds: int) -> JobRecord | None:
        await asyncio.sleep(0)
        candidates = [job for job in self.jobs.values() if self._available(job) and source in (None, job.source)]
        if not candidates:
            return None
        job = min(candidates, key=lambda item: item.created_at or self.clock())
        job.lock_token = lock_token
        job.locked_until = self.clock() + timedelta(seconds=lease_seconds)
        job.updated_at = self.clock()
        return replace(job)

    async def set_status(
        self,
        job_id: str,
        lock_token: str,
        status: str,
        *,
        dataset_id: str | None = None,
        last_error: str | None = None,
    ) -> None:
        job = self._held(job_id, lock_token)
        job.status = status
        if dataset_id is not None:
            job.dataset_id = dataset_id
        if last_error is not None:
            job.last_error = last_error
        if status in TERMINAL_STATUSES:
            job.completed_at = self.clock()
        job.updated_at = self.clock()

    async def increment_progress(
        self,
        job_id: str,
        lock_token: str,
        absolute_cursor: int,
        upserted_delta: int,
    ) -> JobRecord:
        job = self._held(job_id, lock_token)
        job.progress_cursor = max(job.progress_cursor, absolute_cursor)
        job.items_fetched = max(job.items_fetched, absolute_cursor)
        job.items_upserted += max(0, upserted_delta)
        job.updated_at = self.clock()
        return replace(job)

    async def complete(self, job_id: str, lock_token: str) -> None:
        job = self._held(job_id, lock_token)
        job.status = "done"
        job.completed_at = self.clock()
        job.lock_token = None
        job.locked_until = None
        job.updated_at = self.clock()

    async def release(self, job_id: str, lock_token: str) -> None:
        job = self.jobs.get(job_id)
        if job is None or job.lock_token != lock_token:
            return
        job.lock_token = None
        job.locked_until = None
        job.updated_at = self.clock()

    async def record_failure(self, job_id: str, lock_token: str, error: str, max_attempts: int) -> JobRecord:
        job = self._held(job_id, lock_token)
        job.attempts += 1
        job.last_error = error[:2000]
        if job.attempts >= max_attempts:
            job.status = "error"
            job.completed_at = self.clock()
        job.lock_token = None
        job.locked_until = None
        job.updated_at = self.clock()
        return replace(job)

    async def record_audit(
        self,
        cron_name: str,
        *,
        success: bool,
        result: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        self.audit_log.append(
            {
                "cron_name": cron_name,
                "success": success,
                "result": result or {},
                "error": error,
                "run_date": self.clock().date().isoformat(),
            }
        )

    def _available(self, job: JobRecord) -> bool:
        if job.status not in CLAIMABLE_STATUSES:
            return False
        return job.locked_until is None or job.locked_until < self.clock()

    def _held(self, job_id: str, lock_token: str) -> JobRecord:
        job = self.jobs.get(job_id)
        if job is None or job.lock_token != lock_token:
            raise LeaseLostError(f"lease lost for job {job_id}")
        return job


def _affected_rows(command_tag: str) -> int:
    try:
        return int(command_tag.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0
