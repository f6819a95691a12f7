from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import asdict, dataclass, field
import logging
import time
from typing import Any

from opentelemetry import trace

from bidscout_workers.adapters.base import AdapterRejectError, SourceAdapter, UnknownSourceError
from bidscout_workers.adapters.registry import get_adapter
from bidscout_workers.core.taxonomy import Taxonomy
from bidscout_workers.jobs.lease import LeasedJob, LeaseManager
from bidscout_workers.services.job_store import JobStore, LeaseLostError
from bidscout_workers.services.listing_sink import ListingSink
from bidscout_workers.services.source_client import (
    FAILED_STATUSES,
    RUNNING_STATUSES,
    SUCCEEDED_STATUS,
    SourceClient,
    UpstreamError,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

Clock = Callable[[], float]


@dataclass(slots=True)
class ExecutionResult:
    job_id: str
    external_run_id: str
    outcome: str = "pending"
    terminal: bool = False
    progress_cursor: int = 0
    items_fetched: int = 0
    created: int = 0
    updated: int = 0
    rejected: int = 0
    upsert_failed: int = 0
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class InvocationSummary:
    runs_processed: int = 0
    new_listings: int = 0
    updated_listings: int = 0
    rejected: int = 0
    errors: int = 0
    run_results: list[dict[str, Any]] = field(default_factory=list)
    elapsed_ms: int = 0

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class BudgetedExecutor:
    def __init__(
        self,
        store: JobStore,
        source_client: SourceClient,
        sink: ListingSink,
        taxonomy: Taxonomy,
        *,
        page_size: int = 100,
        max_attempts: int = 5,
        clock: Clock = time.monotonic,
        adapter_lookup: Callable[[str], SourceAdapter] = get_adapter,
    ) -> None:
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        self.store = store
        self.source_client = source_client
        self.sink = sink
        self.taxonomy = taxonomy
        self.page_size = page_size
        self.max_attempts = max_attempts
        self.clock = clock
        self.adapter_lookup = adapter_lookup

    async def run(self, leased: LeasedJob, budget_seconds: float) -> ExecutionResult:
        job = leased.job
        token = leased.lock_token
        started = self.clock()
        result = ExecutionResult(job_id=job.id, external_run_id=job.external_run_id, progress_cursor=job.progress_cursor)

        with tracer.start_as_current_span("ingest.execute_job") as span:
            span.set_attribute("job.id", job.id)
            span.set_attribute("job.source", job.source)
            try:
                try:
                    adapter = self.adapter_lookup(job.source)
                except UnknownSourceError:
                    await self.store.set_status(job.id, token, "error", last_error=f"no adapter for source {job.source}")
                    await self.store.release(job.id, token)
                    result.outcome = "unknown_source"
                    result.terminal = True
                    return result

                dataset_id = job.dataset_id
                if job.status != "fetching" or not dataset_id:
                    dataset_id = await self._resolve_upstream(leased, result)
                    if dataset_id is None:
                        return result

                finished = await self._paginate(leased, adapter, dataset_id, started, budget_seconds, result)
                if finished:
                    await self.store.complete(job.id, token)
                    result.outcome = "done"
                    result.terminal = True
                else:
                    await self.store.release(job.id, token)
                    result.outcome = "budget_exhausted"
            except LeaseLostError:
                logger.warning("lease lost mid-run job_id=%s cursor=%s", job.id, result.progress_cursor)
                result.outcome = "lease_lost"
            except Exception as exc:
                logger.exception("job execution failed job_id=%s run_id=%s", job.id, job.external_run_id)
                result.outcome = "failed"
                result.error = str(exc) or exc.__class__.__name__
                try:
                    failed = await self.store.record_failure(job.id, token, result.error, self.max_attempts)
                    result.terminal = failed.status == "error"
                except LeaseLostError:
                    logger.warning("lease lost before failure could be recorded job_id=%s", job.id)
            finally:
                span.set_attribute("job.outcome", result.outcome)
                span.set_attribute("job.items_fetched", result.items_fetched)

        logger.info(
            "job finished job_id=%s outcome=%s cursor=%s fetched=%s created=%s updated=%s rejected=%s upsert_failed=%s",
            job.id,
            result.outcome,
            result.progress_cursor,
            result.items_fetched,
            result.created,
            result.updated,
            result.rejected,
            result.upsert_failed,
        )
        return result

    async def _resolve_upstream(self, leased: LeasedJob, result: ExecutionResult) -> str | None:
        job = leased.job
        token = leased.lock_token
        upstream = await self.source_client.get_run(job.external_run_id)
        logger.info("upstream run_id=%s status=%s", job.external_run_id, upstream.status)

        if upstream.status in RUNNING_STATUSES:
            await self.store.set_status(job.id, token, "running", dataset_id=upstream.dataset_id)
            await self.store.release(job.id, token)
            result.outcome = "upstream_running"
            return None

        if upstream.status in FAILED_STATUSES:
            await self.store.set_status(job.id, token, "error", last_error=f"upstream run {upstream.status}")
            await self.store.release(job.id, token)
            result.outcome = "upstream_failed"
            result.terminal = True
            return None

        if upstream.status != SUCCEEDED_STATUS:
            await self.store.release(job.id, token)
            result.outcome = "unknown_upstream_status"
            return None

        dataset_id = upstream.dataset_id or job.dataset_id
        if not dataset_id:
            raise UpstreamError(f"run {job.external_run_id} succeeded without a dataset")
        await self.store.set_status(job.id, token, "fetching", dataset_id=dataset_id)
        return dataset_id

    async def _paginate(
        self,
        leased: LeasedJob,
        adapter: SourceAdapter,
        dataset_id: str,
        started: float,
        budget_seconds: float,
        result: ExecutionResult,
    ) -> bool:
        job = leased.job
        cursor = job.progress_cursor

        while self.clock() - started < budget_seconds:
            page = await self.source_client.get_dataset_page(dataset_id, offset=cursor, limit=self.page_size)
            if not page:
                return True

            upserted = await self._process_page(adapter, page, result)
            cursor += len(page)
            await self.store.increment_progress(job.id, leased.lock_token, cursor, upserted)
            result.progress_cursor = cursor
            result.items_fetched += len(page)

            if len(page) < self.page_size:
                return True
        return False

    async def _process_page(self, adapter: SourceAdapter, page: Sequence[Any], result: ExecutionResult) -> int:
        upserted = 0
        for raw in page:
            try:
                listing = adapter.map_item(raw, self.taxonomy)
            except AdapterRejectError as exc:
                result.rejected += 1
                logger.debug("adapter rejected item source=%s reason=%s", adapter.source, exc)
                continue

            try:
                outcome = await self.sink.upsert(listing)
            except Exception:
                result.upsert_failed += 1
                logger.warning(
                    "listing upsert failed source=%s source_listing_id=%s",
                    listing.source,
                    listing.source_listing_id,
                    exc_info=True,
                )
                continue

            upserted += 1
            if outcome.is_new:
                result.created += 1
            else:
                result.updated += 1
        return upserted


async def run_invocation(
    lease_manager: LeaseManager,
    executor: BudgetedExecutor,
    *,
    budget_seconds: float,
    job_filter: str | None = None,
    cron_name: str = "ingest-fetch",
) -> InvocationSummary:
    clock = executor.clock
    store = executor.store
    started = clock()
    summary = InvocationSummary()
    seen: set[str] = set()

    with tracer.start_as_current_span("ingest.invocation") as span:
        try:
            while True:
                remaining = budget_seconds - (clock() - started)
                if remaining <= 0:
                    break
                leased = await lease_manager.try_claim(job_filter)
                if leased is None:
                    break
                if leased.job_id in seen:
                    await store.release(leased.job_id, leased.lock_token)
                    break
                seen.add(leased.job_id)

                result = await executor.run(leased, remaining)
                summary.runs_processed += 1
                summary.new_listings += result.created
                summary.updated_listings += result.updated
                summary.rejected += result.rejected
                summary.errors += result.upsert_failed
                if result.outcome in {"failed", "upstream_failed", "unknown_source"}:
                    summary.errors += 1
                summary.run_results.append(
                    {
                        "job_id": result.job_id,
                        "run_id": result.external_run_id,
                        "status": result.outcome,
                        "items": result.items_fetched,
                    }
                )
        except Exception as exc:
            summary.elapsed_ms = int((clock() - started) * 1000)
            logger.exception("ingest invocation failed")
            await store.record_audit(cron_name, success=False, result=summary.as_dict(), error=str(exc))
            raise

        summary.elapsed_ms = int((clock() - started) * 1000)
        span.set_attribute("ingest.runs_processed", summary.runs_processed)
        await store.record_audit(cron_name, success=True, result=summary.as_dict())

    logger.info(
        "ingest invocation complete runs=%s new=%s updated=%s errors=%s elapsed_ms=%s",
        summary.runs_processed,
        summary.new_listings,
        summary.updated_listings,
        summary.errors,
        summary.elapsed_ms,
    )
    return summary
