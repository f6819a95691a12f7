from __future__ import annotations

import asyncio
import os

import pytest

from bidscout_workers.jobs.lease import LeaseManager
from bidscout_workers.services.job_store import InMemoryJobStore, LeaseLostError, PostgresJobStore


def test_increment_progress_is_absolute_for_cursor_and_additive_for_upserts() -> None:
    store = InMemoryJobStore()
    store.add_job("autotrader", "run-1", status="fetching", dataset_id="ds-1")
    leased = asyncio.run(LeaseManager(store).try_claim())

    asyncio.run(store.increment_progress(leased.job_id, leased.lock_token, 100, 90))
    replayed = asyncio.run(store.increment_progress(leased.job_id, leased.lock_token, 100, 0))
    advanced = asyncio.run(store.increment_progress(leased.job_id, leased.lock_token, 200, 95))

    assert replayed.progress_cursor == 100
    assert advanced.progress_cursor == 200
    assert advanced.items_fetched == 200
    assert advanced.items_upserted == 185


def test_guarded_writes_require_current_lock_token() -> None:
    store = InMemoryJobStore()
    job = store.add_job("autotrader", "run-1")

    with pytest.raises(LeaseLostError):
        asyncio.run(store.set_status(job.id, "stale-token", "fetching"))
    with pytest.raises(LeaseLostError):
        asyncio.run(store.complete(job.id, "stale-token"))

    asyncio.run(store.release(job.id, "stale-token"))
    assert store.jobs[job.id].status == "queued"


def test_terminal_jobs_are_never_claimable() -> None:
    store = InMemoryJobStore()
    store.add_job("autotrader", "run-1", status="done")
    store.add_job("autotrader", "run-2", status="error")

    assert asyncio.run(LeaseManager(store).try_claim()) is None


def test_audit_rows_are_appended() -> None:
    store = InMemoryJobStore()

    asyncio.run(store.record_audit("ingest-fetch", success=False, error="database unavailable"))

    assert store.audit_log[0]["success"] is False
    assert store.audit_log[0]["error"] == "database unavailable"


def test_postgres_claim_modes_exclude_each_other() -> None:
    database_url = os.getenv("BS_WORKER_DATABASE_URL")
    if not database_url:
        pytest.skip("BS_WORKER_DATABASE_URL not set")

    async def scenario() -> list:
        store = PostgresJobStore(database_url, max_pool_size=10)
        pool = await store._get_pool()
        job_id = await pool.fetchval(
            "insert into ingest_runs (source, external_run_id) values ('autotrader', $1) returning id::text",
            f"itest-{os.getpid()}",
        )
        try:
            managers = [LeaseManager(store, mode=mode) for mode in ("atomic", "verify") * 4]
            results = await asyncio.gather(*(manager.try_claim("autotrader") for manager in managers))
            return [result for result in results if result is not None and result.job_id == job_id]
        finally:
            await pool.execute("delete from ingest_runs where id = $1::uuid", job_id)
            await store.close()

    assert len(asyncio.run(scenario())) == 1
