from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol
from uuid import uuid4

import asyncpg  # type: ignore[import-untyped]

from bidscout_workers.schemas.listings import EnrichmentFields, NormalizedListing
from bidscout_workers.services.job_store import JobStoreUnavailableError

_UPSERT_COLUMNS = (
    "source",
    "source_listing_id",
    "listing_url",
    "year",
    "make",
    "model",
    "variant_raw",
    "variant_normalised",
    "variant_family",
    "km",
    "price",
    "location",
    "state",
    "status",
    "visible_to_dealers",
    "excluded_reason",
    "auction_datetime",
    "engine",
    "drivetrain",
    "transmission",
    "fuel",
    "pass_count",
    "reserve",
)


@dataclass(slots=True)
class UpsertResult:
    listing_id: str
    is_new: bool


@dataclass(slots=True)
class EnrichmentCandidate:
    source: str
    source_listing_id: str
    make: str
    model: str
    variant_raw: str | None


class ListingSink(Protocol):
    async def upsert(self, listing: NormalizedListing) -> UpsertResult: ...

    async def apply_enrichment(self, source: str, source_listing_id: str, fields: Mapping[str, Any]) -> bool: ...

    async def missing_variant_family(self, limit: int, taxonomy_version: str) -> list[EnrichmentCandidate]: ...

    async def mark_variant_family_checked(self, source: str, source_listing_id: str, taxonomy_version: str) -> None: ...


def _validated_enrichment(fields: Mapping[str, Any]) -> dict[str, Any]:
    return EnrichmentFields.model_validate(dict(fields)).model_dump(exclude_none=True)


class PostgresListingSink:
    def __init__(self, database_url: str | None, min_pool_size: int = 1, max_pool_size: int = 5) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def upsert(self, listing: NormalizedListing) -> UpsertResult:
        pool = await self._get_pool()
        values = listing.model_dump()
        placeholders = ", ".join(f"${index}" for index in range(1, len(_UPSERT_COLUMNS) + 1))
        row = await pool.fetchrow(
            f"""
            insert into listings ({", ".join(_UPSERT_COLUMNS)}, first_seen_at, last_seen_at, updated_at)
            values ({placeholders}, now(), now(), now())
            on conflict (source, source_listing_id) do update
            set
              listing_url = coalesce(excluded.listing_url, listings.listing_url),
              year = excluded.year,
              make = excluded.make,
              model = excluded.model,
              variant_raw = coalesce(excluded.variant_raw, listings.variant_raw),
              variant_normalised = coalesce(excluded.variant_normalised, listings.variant_normalised),
              variant_family = coalesce(excluded.variant_family, listings.variant_family),
              variant_family_checked_version = case
                when excluded.variant_raw is not null and excluded.variant_raw is distinct from listings.variant_raw then null
                else listings.variant_family_checked_version
              end,
              km = coalesce(excluded.km, listings.km),
              previous_price = case
                when excluded.price is distinct from listings.price then listings.price
                else listings.previous_price
              end,
              price_drop_count = listings.price_drop_count + case
                when excluded.price < listings.price then 1 else 0
              end,
              price = coalesce(excluded.price, listings.price),
              location = coalesce(excluded.location, listings.location),
              state = coalesce(excluded.state, listings.state),
              status = excluded.status,
              excluded_reason = coalesce(excluded.excluded_reason, listings.excluded_reason),
              auction_datetime = coalesce(excluded.auction_datetime, listings.auction_datetime),
              engine = coalesce(excluded.engine, listings.engine),
              drivetrain = coalesce(excluded.drivetrain, listings.drivetrain),
              transmission = coalesce(excluded.transmission, listings.transmission),
              fuel = coalesce(excluded.fuel, listings.fuel),
              pass_count = greatest(listings.pass_count, excluded.pass_count),
              previous_reserve = case
                when excluded.reserve is distinct from listings.reserve then listings.reserve
                else listings.previous_reserve
              end,
              reserve = coalesce(excluded.reserve, listings.reserve),
              last_seen_at = now(),
              updated_at = now()
            returning id::text as id, (xmax = 0) as is_new
            """,
            *(values[column] for column in _UPSERT_COLUMNS),
        )
        return UpsertResult(listing_id=row["id"], is_new=bool(row["is_new"]))

    async def apply_enrichment(self, source: str, source_listing_id: str, fields: Mapping[str, Any]) -> bool:
        updates = _validated_enrichment(fields)
        if not updates:
            return False
        pool = await self._get_pool()
        assignments = ", ".join(f"{column} = ${index}" for index, column in enumerate(updates, start=3))
        result = await pool.execute(
            f"""
            update listings
            set {assignments}, updated_at = now()
            where source = $1 and source_listing_id = $2
            """,
            source,
            source_listing_id,
            *updates.values(),
        )
        return result.endswith(" 1")

    async def missing_variant_family(self, limit: int, taxonomy_version: str) -> list[EnrichmentCandidate]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select source, source_listing_id, make, model, variant_raw
            from listings
            where variant_family is null
              and variant_raw is not null
              and variant_family_checked_version is distinct from $2
            order by updated_at desc
            limit $1
            """,
            max(1, min(limit, 5000)),
            taxonomy_version,
        )
        return [
            EnrichmentCandidate(
                source=row["source"],
                source_listing_id=row["source_listing_id"],
                make=row["make"],
                model=row["model"],
                variant_raw=row["variant_raw"],
            )
            for row in rows
        ]

    async def mark_variant_family_checked(self, source: str, source_listing_id: str, taxonomy_version: str) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update listings
            set variant_family_checked_version = $3
            where source = $1 and source_listing_id = $2
            """,
            source,
            source_listing_id,
            taxonomy_version,
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


class InMemoryListingSink:
    def __init__(self) -> None:
        self.rows: dict[tuple[str, str], dict[str, Any]] = {}
        self.fail_ids: set[str] = set()

    async def upsert(self, listing: NormalizedListing) -> UpsertResult:
        if listing.source_listing_id in self.fail_ids:
            raise RuntimeError(f"write rejected for {listing.source_listing_id}")
        key = (listing.source, listing.source_listing_id)
        now = datetime.now(timezone.utc)
        existing = self.rows.get(key)
        if existing is None:
            row = listing.model_dump()
            row.update({"id": str(uuid4()), "first_seen_at": now, "last_seen_at": now, "sightings": 1})
            self.rows[key] = row
            return UpsertResult(listing_id=row["id"], is_new=True)

        if listing.variant_raw is not None and listing.variant_raw != existing.get("variant_raw"):
            existing.pop("variant_family_checked_version", None)
        for column, value in listing.model_dump().items():
            if value is not None and column != "visible_to_dealers":
                existing[column] = value
        existing["last_seen_at"] = now
        existing["sightings"] += 1
        return UpsertResult(listing_id=existing["id"], is_new=False)

    async def apply_enrichment(self, source: str, source_listing_id: str, fields: Mapping[str, Any]) -> bool:
        updates = _validated_enrichment(fields)
        row = self.rows.get((source, source_listing_id))
        if row is None or not updates:
            return False
        row.update(updates)
        return True

    async def missing_variant_family(self, limit: int, taxonomy_version: str) -> list[EnrichmentCandidate]:
        candidates = [
            EnrichmentCandidate(
                source=row["source"],
                source_listing_id=row["source_listing_id"],
                make=row["make"],
                model=row["model"],
                variant_raw=row.get("variant_raw"),
            )
            for row in self.rows.values()
            if row.get("variant_family") is None
            and row.get("variant_raw")
            and row.get("variant_family_checked_version") != taxonomy_version
        ]
        return candidates[:limit]

    async def mark_variant_family_checked(self, source: str, source_listing_id: str, taxonomy_version: str) -> None:
        row = self.rows.get((source, source_listing_id))
        if row is not None:
            row["variant_family_checked_version"] = taxonomy_version
