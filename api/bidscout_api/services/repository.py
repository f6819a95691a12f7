from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from functools import lru_cache
import json
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from bidscout_api.core.config import get_settings
from bidscout_api.services.alerts import Alert
from bidscout_api.services.matching import Fingerprint, Listing, MatchCandidate
from bidscout_api.services.replication import ReplicationOpportunity, Winner
from bidscout_api.services.stubs import StubBatchResult, StubException, StubRecord


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


@dataclass(slots=True)
class MachineCredentialRecord:
    module_db_id: str
    module_id: str
    scopes: list[str]
    key_hash: str


JOB_STATUSES = {"queued", "running", "fetching", "done", "error"}
MATCH_LANES = {"Precision", "Advisory", "Probable"}
MATCH_ACTIONS = {"Buy", "Watch"}

_JOB_COLUMNS = """
  id::text as id,
  source,
  external_run_id,
  dataset_id,
  status,
  progress_cursor,
  items_fetched,
  items_upserted,
  attempts,
  last_error,
  locked_until,
  created_at,
  updated_at,
  completed_at
"""


class PostgresRepository:
    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def get_machine_credentials(self, module_id: str) -> list[MachineCredentialRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              m.id::text as module_db_id,
              m.module_id,
              m.scopes,
              mc.key_hash
            from modules m
            join module_credentials mc on mc.module_id = m.id
            where m.module_id = $1
              and m.enabled = true
              and mc.is_active = true
              and mc.revoked_at is null
              and (mc.expires_at is null or mc.expires_at > now())
            """,
            module_id,
        )
        return [
            MachineCredentialRecord(
                module_db_id=row["module_db_id"],
                module_id=row["module_id"],
                scopes=list(row["scopes"] or []),
                key_hash=row["key_hash"],
            )
            for row in rows
        ]

    async def list_jobs(self, *, status: str | None, limit: int) -> list[dict[str, Any]]:
        if status is not None and status not in JOB_STATUSES:
            raise RepositoryValidationError(f"unknown job status: {status}")
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_JOB_COLUMNS}
            from ingest_runs
            where ($1::text is null or status = $1::text)
            order by created_at desc
            limit $2
            """,
            status,
            max(1, min(limit, 500)),
        )
        return [dict(row) for row in rows]

    async def enqueue_ingest_run(self, *, source: str, external_run_id: str) -> tuple[dict[str, Any], bool]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    insert into ingest_runs (source, external_run_id, status)
                    values ($1, $2, 'queued')
                    on conflict (source, external_run_id) do nothing
                    returning {_JOB_COLUMNS}
                    """,
                    source,
                    external_run_id,
                )
                if row is not None:
                    return dict(row), True
                existing = await conn.fetchrow(
                    f"""
                    select {_JOB_COLUMNS}
                    from ingest_runs
                    where source = $1 and external_run_id = $2
                    """,
                    source,
                    external_run_id,
                )
        if existing is None:
            raise RepositoryConflictError("ingest run vanished during enqueue")
        return dict(existing), False

    async def upsert_stub_batch(
        self,
        *,
        source: str,
        stubs: Sequence[StubRecord],
        exceptions: Sequence[StubException],
    ) -> StubBatchResult:
        pool = await self._get_pool()
        result = StubBatchResult(exceptions=len(exceptions))

        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    for stub in stubs:
                        row = await conn.fetchrow(
                            """
                            insert into stub_anchors (
                              source,
                              source_stock_id,
                              detail_url,
                              year,
                              make,
                              model,
                              km,
                              location,
                              raw_text,
                              identity_confidence,
                              fingerprint_confidence
                            )
                            values ($1, $2, $3, $4, $5, $6, $7, $8, $9, 'high', $10)
                            on conflict (source, source_stock_id) do update
                            set
                              last_seen_at = now(),
                              times_seen = stub_anchors.times_seen + 1,
                              year = coalesce(excluded.year, stub_anchors.year),
                              km = coalesce(excluded.km, stub_anchors.km),
                              location = coalesce(excluded.location, stub_anchors.location),
                              raw_text = coalesce(excluded.raw_text, stub_anchors.raw_text),
                              fingerprint_confidence = case
                                when stub_anchors.fingerprint_confidence = 'high' then 'high'
                                else excluded.fingerprint_confidence
                              end,
                              updated_at = now()
                            returning (xmax = 0) as is_new
                            """,
                            source,
                            stub.source_stock_id,
                            stub.detail_url,
                            stub.year,
                            stub.make,
                            stub.model,
                            stub.km,
                            stub.location,
                            stub.raw_text,
                            stub.fingerprint_confidence,
                        )
                        if row["is_new"]:
                            result.created += 1
                        else:
                            result.updated += 1

                    if exceptions:
                        await conn.executemany(
                            """
                            insert into stub_exceptions (source, detail_url, missing_fields, reason)
                            values ($1, $2, $3::text[], $4)
                            on conflict (source, detail_url, reason) do nothing
                            """,
                            [(source, item.detail_url, item.missing_fields, item.reason) for item in exceptions],
                        )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError(str(exc)) from exc
        return result

    async def list_active_fingerprints(self) -> list[Fingerprint]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              id::text as id,
              dealer_id,
              dealer_name,
              make,
              model,
              year,
              variant_normalised,
              variant_family,
              year_min,
              year_max,
              min_km,
              max_km,
              sale_km,
              fingerprint_type,
              engine,
              drivetrain,
              transmission,
              is_active,
              do_not_buy,
              expires_at,
              deleted_at
            from fingerprints
            where is_active = true
              and do_not_buy = false
              and deleted_at is null
              and (expires_at is null or expires_at > now())
            """
        )
        return [Fingerprint(**dict(row)) for row in rows]

    async def list_candidate_listings(self, *, window_days: int) -> list[Listing]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              id::text as id,
              source,
              source_listing_id,
              year,
              make,
              model,
              variant_raw,
              variant_normalised,
              variant_family,
              km,
              price,
              status,
              visible_to_dealers,
              excluded_reason,
              auction_datetime,
              engine,
              drivetrain,
              transmission,
              confidence_score,
              pass_count,
              reserve,
              previous_reserve,
              price_drop_count,
              relist_count,
              first_seen_at,
              description_score,
              estimated_margin,
              listing_url,
              location
            from listings
            where status not in ('sold', 'withdrawn')
              and visible_to_dealers = true
              and excluded_reason is null
              and last_seen_at > now() - ($1::int * interval '1 day')
            """,
            max(1, window_days),
        )
        return [Listing(**dict(row)) for row in rows]

    async def list_winners(self) -> list[Winner]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              id::text as id,
              dealer_id,
              dealer_name,
              make,
              model,
              variant,
              year_min,
              year_max,
              avg_km,
              median_km,
              last_sale_price::float8 as last_sale_price,
              avg_profit::float8 as avg_profit,
              times_sold
            from winners_watchlist
            where last_sale_price is not null
              and avg_profit is not null
            """
        )
        return [Winner(**dict(row)) for row in rows]

    async def replace_run_results(
        self,
        *,
        run_id: str,
        matches: Sequence[MatchCandidate],
        opportunities: Sequence[ReplicationOpportunity],
    ) -> None:
        pool = await self._get_pool()

        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute("delete from spec_matches")
                    if matches:
                        await conn.executemany(
                            """
                            insert into spec_matches (
                              run_id,
                              fingerprint_id,
                              listing_id,
                              dealer_id,
                              tier,
                              lane,
                              match_type,
                              confidence_score,
                              action,
                              reasons,
                              auction_datetime
                            )
                            values ($1::uuid, $2::uuid, $3::uuid, $4, $5, $6, $7, $8, $9, $10::text[], $11)
                            """,
                            [
                                (
                                    run_id,
                                    match.fingerprint_id,
                                    match.listing_id,
                                    match.dealer_id,
                                    match.tier,
                                    match.lane,
                                    match.match_type,
                                    match.confidence_score,
                                    match.action,
                                    match.reasons,
                                    match.auction_datetime,
                                )
                                for match in matches
                            ],
                        )

                    await conn.execute("delete from replication_opportunities")
                    if opportunities:
                        await conn.executemany(
                            """
                            insert into replication_opportunities (
                              run_id,
                              winner_id,
                              dealer_id,
                              listing_id,
                              badge_score,
                              km_score,
                              total_score,
                              delta,
                              threshold,
                              target_buy,
                              priority_level,
                              confidence_tier,
                              badge_label
                            )
                            values ($1::uuid, $2::uuid, $3, $4::uuid, $5, $6, $7, $8, $9, $10, $11, $12, $13)
                            """,
                            [
                                (
                                    run_id,
                                    item.winner_id,
                                    item.dealer_id,
                                    item.listing_id,
                                    item.badge_score,
                                    item.km_score,
                                    item.total_score,
                                    item.delta,
                                    item.threshold,
                                    item.target_buy,
                                    item.priority_level,
                                    item.confidence_tier,
                                    item.badge_label,
                                )
                                for item in opportunities
                            ],
                        )
        except (pg_exc.ForeignKeyViolationError, pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryConflictError(str(exc)) from exc

    async def list_matches(self, *, lane: str | None, action: str | None, limit: int) -> list[dict[str, Any]]:
        if lane is not None and lane not in MATCH_LANES:
            raise RepositoryValidationError(f"unknown lane: {lane}")
        if action is not None and action not in MATCH_ACTIONS:
            raise RepositoryValidationError(f"unknown action: {action}")
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              sm.fingerprint_id::text as fingerprint_id,
              sm.listing_id::text as listing_id,
              sm.dealer_id,
              sm.tier,
              sm.lane,
              sm.match_type,
              sm.confidence_score,
              sm.action,
              sm.reasons,
              sm.auction_datetime,
              sm.run_id::text as run_id,
              sm.matched_at,
              l.make,
              l.model,
              l.year,
              l.km,
              l.price,
              l.listing_url
            from spec_matches sm
            join listings l on l.id = sm.listing_id
            where ($1::text is null or sm.lane = $1::text)
              and ($2::text is null or sm.action = $2::text)
            order by
              sm.tier asc,
              case sm.lane when 'Precision' then 0 when 'Advisory' then 1 else 2 end asc,
              sm.confidence_score desc,
              sm.auction_datetime asc nulls last
            limit $3
            """,
            lane,
            action,
            max(1, min(limit, 500)),
        )
        return [{**dict(row), "reasons": list(row["reasons"] or [])} for row in rows]

    async def record_alert(self, alert: Alert) -> bool:
        """Stores an alert unless its dedup key was already logged; returns True when stored."""
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            insert into alert_log (
              dedup_key,
              dealer_id,
              dealer_name,
              lot_id,
              alert_type,
              reason,
              message,
              payload
            )
            values ($1, $2, $3, $4, $5, $6, $7, $8::jsonb)
            on conflict (dedup_key) do nothing
            returning id
            """,
            alert.dedup_key,
            alert.dealer_id,
            alert.dealer_name,
            alert.lot_id,
            alert.alert_type,
            alert.reason,
            alert.message,
            json.dumps(alert.payload, default=str),
        )
        return row is not None

    async def record_audit(
        self,
        *,
        cron_name: str,
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
            raise RepositoryUnavailableError("BS_DATABASE_URL is required")

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
            raise RepositoryUnavailableError("database unavailable") from exc


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
