from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from bidscout_workers.jobs.lease import LeaseManager
from bidscout_workers.services.job_store import InMemoryJobStore, JobRecord, LeaseLostError


class MutableClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class OverwritingStore(InMemoryJobStore):
    """Simulates another invocation overwriting the lease between write and re-read."""

    async def get_job(self, job_id: str) -> JobRecord | None:
        job = self.jobs[job_id]
        job.lock_token = "someone-else"
        return await super().get_job(job_id)


@pytest.mark.parametrize("mode", ["verify", "atomic"])
def test_concurrent_claims_on_one_job_yield_single_winner(mode: str) -> None:
    store = InMemoryJobStore()
    job = store.add_job("autotrader", "run-1")

    async def contend() -> list:
        managers = [LeaseManager(store, lease_seconds=60, mode=mode) for _ in range(10)]
        return await asyncio.gather(*(manager.try_claim() for manager in managers))

    results = asyncio.run(contend())
    winners = [result for result in results if result is not None]

    assert len(winners) == 1
    assert winners[0].job_id == job.id
    assert store.jobs[job.id].lock_token == winners[0].lock_token


@pytest.mark.parametrize("mode", ["verify", "atomic"])
def test_expired_lease_is_reclaimable_and_old_holder_loses_writes(mode: str) -> None:
    clock = MutableClock()
    store = InMemoryJobStore(clock=clock)
    job = store.add_job("autotrader", "run-1", status="fetching", dataset_id="ds-1")
    first = LeaseManager(store, lease_seconds=60, mode=mode)
    second = LeaseManager(store, lease_seconds=60, mode=mode)

    held = asyncio.run(first.try_claim())
    assert held is not None
    assert asyncio.run(second.try_claim()) is None

    clock.advance(61)
    reclaimed = asyncio.run(second.try_claim())

    assert reclaimed is not None
    assert reclaimed.job_id == job.id
    assert reclaimed.lock_token != held.lock_token
    with pytest.raises(LeaseLostError):
        asyncio.run(store.increment_progress(job.id, held.lock_token, 100, 100))


def test_verify_mode_detects_lost_race() -> None:
    store = OverwritingStore()
    store.add_job("autotrader", "run-1")

    claimed = asyncio.run(LeaseManager(store, mode="verify").try_claim())

    assert claimed is None


def test_claim_prefers_oldest_job_and_honours_source_filter() -> None:
    clock = MutableClock()
    store = InMemoryJobStore(clock=clock)
    older = store.add_job("pickles", "run-old", created_at=clock.now - timedelta(hours=2))
    store.add_job("autotrader", "run-mid", created_at=clock.now - timedelta(hours=1))
    store.add_job("autotrader", "run-done", status="done", created_at=clock.now - timedelta(hours=3))

    manager = LeaseManager(store)
    first = asyncio.run(manager.try_claim())
    filtered = asyncio.run(manager.try_claim("autotrader"))

    assert first is not None and first.job_id == older.id
    assert filtered is not None and filtered.job.external_run_id == "run-mid"
    assert asyncio.run(manager.try_claim()) is None


def test_lease_seconds_must_be_positive() -> None:
    with pytest.raises(ValueError):
        LeaseManager(InMemoryJobStore(), lease_seconds=0)
