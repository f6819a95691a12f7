from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Literal
from uuid import uuid4

from bidscout_workers.services.job_store import JobRecord, JobStore

logger = logging.getLogger(__name__)

ClaimMode = Literal["verify", "atomic"]


@dataclass(slots=True)
class LeasedJob:
    job: JobRecord
    lock_token: str

    @property
    def job_id(self) -> str:
        return self.job.id


class LeaseManager:
    def __init__(self, store: JobStore, *, lease_seconds: int = 60, mode: ClaimMode = "atomic") -> None:
        if lease_seconds <= 0:
            raise ValueError("lease_seconds must be positive")
        self.store = store
        self.lease_seconds = lease_seconds
        self.mode = mode

    async def try_claim(self, job_filter: str | None = None) -> LeasedJob | None:
        lock_token = str(uuid4())
        if self.mode == "atomic":
            job = await self.store.claim_atomic(job_filter, lock_token, self.lease_seconds)
            if job is None:
                return None
            return LeasedJob(job=job, lock_token=lock_token)
        return await self._claim_then_verify(job_filter, lock_token)

    async def _claim_then_verify(self, job_filter: str | None, lock_token: str) -> LeasedJob | None:
        candidate = await self.store.select_claimable(job_filter)
        if candidate is None:
            return None

        written = await self.store.write_lease(candidate.id, lock_token, self.lease_seconds)
        if not written:
            logger.info("lease write rejected job_id=%s; another invocation holds it", candidate.id)
            return None

        current = await self.store.get_job(candidate.id)
        if current is None or current.lock_token != lock_token:
            logger.info("lost lock race job_id=%s", candidate.id)
            return None
        return LeasedJob(job=current, lock_token=lock_token)
