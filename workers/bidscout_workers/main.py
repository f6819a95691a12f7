from __future__ import annotations

import argparse
import asyncio
import logging
import random
import time

from opentelemetry import trace

from bidscout_workers.core.config import Settings, get_settings
from bidscout_workers.core.taxonomy import get_taxonomy
from bidscout_workers.core.telemetry import (
    configure_worker_logging,
    setup_worker_telemetry,
    shutdown_worker_telemetry,
)
from bidscout_workers.jobs.enrichment import backfill_variant_family
from bidscout_workers.jobs.executor import BudgetedExecutor, InvocationSummary, run_invocation
from bidscout_workers.jobs.lease import LeaseManager
from bidscout_workers.services.api_client import ApiClient
from bidscout_workers.services.job_store import PostgresJobStore
from bidscout_workers.services.listing_sink import PostgresListingSink
from bidscout_workers.services.source_client import SourceClient

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def build_executor(settings: Settings, store: PostgresJobStore, sink: PostgresListingSink) -> BudgetedExecutor:
    return BudgetedExecutor(
        store,
        SourceClient(
            settings.upstream_base_url,
            settings.upstream_token,
            timeout_seconds=settings.upstream_timeout_seconds,
        ),
        sink,
        get_taxonomy(),
        page_size=settings.page_size,
        max_attempts=settings.max_attempts,
    )


async def run_once(settings: Settings) -> InvocationSummary:
    store = PostgresJobStore(settings.database_url, settings.database_pool_min_size, settings.database_pool_max_size)
    sink = PostgresListingSink(settings.database_url, settings.database_pool_min_size, settings.database_pool_max_size)
    try:
        return await run_invocation(
            LeaseManager(store, lease_seconds=settings.lease_seconds, mode=settings.lease_claim_mode),
            build_executor(settings, store, sink),
            budget_seconds=settings.invocation_budget_seconds,
            job_filter=settings.source_filter,
        )
    finally:
        await sink.close()
        await store.close()


async def run_worker() -> None:
    settings = get_settings()
    telemetry_runtime = setup_worker_telemetry(settings)
    store = PostgresJobStore(settings.database_url, settings.database_pool_min_size, settings.database_pool_max_size)
    sink = PostgresListingSink(settings.database_url, settings.database_pool_min_size, settings.database_pool_max_size)
    lease_manager = LeaseManager(store, lease_seconds=settings.lease_seconds, mode=settings.lease_claim_mode)
    executor = build_executor(settings, store, sink)
    api_client = ApiClient(
        base_url=settings.api_base_url,
        module_id=settings.module_id,
        api_key=settings.api_key,
    )

    backoff = settings.poll_interval_seconds
    last_matching_at = 0.0
    last_enrichment_at = 0.0

    try:
        while True:
            try:
                with tracer.start_as_current_span("worker.poll_cycle"):
                    summary = await run_invocation(
                        lease_manager,
                        executor,
                        budget_seconds=settings.invocation_budget_seconds,
                        job_filter=settings.source_filter,
                    )

                    now = time.monotonic()
                    if now - last_enrichment_at >= settings.enrichment_interval_seconds:
                        backfill = await backfill_variant_family(
                            sink,
                            executor.taxonomy,
                            limit=settings.enrichment_batch_size,
                        )
                        if backfill["updated"]:
                            logger.info("variant families backfilled: %s", backfill["updated"])
                        last_enrichment_at = now

                    if now - last_matching_at >= settings.matching_interval_seconds:
                        matching = await api_client.run_matching()
                        logger.info(
                            "matching run complete matches=%s alerts=%s",
                            matching.get("matches_written"),
                            matching.get("alerts_queued"),
                        )
                        last_matching_at = now

                    backoff = settings.poll_interval_seconds
                    if summary.runs_processed == 0:
                        await asyncio.sleep(settings.poll_interval_seconds)
            except Exception as exc:  # pragma: no cover - loop robustness
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        await sink.close()
        await store.close()
        shutdown_worker_telemetry(telemetry_runtime)


async def enqueue(settings: Settings, source: str, external_run_id: str) -> None:
    client = ApiClient(base_url=settings.api_base_url, module_id=settings.module_id, api_key=settings.api_key)
    job = await client.enqueue_ingest_run(source, external_run_id)
    logger.info("enqueued ingest run job_id=%s status=%s", job.get("id"), job.get("status"))


def main() -> None:
    parser = argparse.ArgumentParser(description="Listing ingestion worker.")
    parser.add_argument("--once", action="store_true", help="Run a single budgeted invocation and exit")
    parser.add_argument(
        "--enqueue",
        nargs=2,
        metavar=("SOURCE", "RUN_ID"),
        help="Queue an upstream run for ingestion through the API and exit",
    )
    args = parser.parse_args()
    settings = get_settings()

    if args.enqueue:
        configure_worker_logging(settings)
        asyncio.run(enqueue(settings, *args.enqueue))
        return
    if args.once:
        configure_worker_logging(settings)
        summary = asyncio.run(run_once(settings))
        logger.info("invocation summary: %s", summary.as_dict())
        return
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
