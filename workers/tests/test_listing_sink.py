from __future__ import annotations

import asyncio

import pytest
from pydantic import ValidationError

from bidscout_workers.core.taxonomy import load_taxonomy
from bidscout_workers.jobs.enrichment import backfill_variant_family
from bidscout_workers.schemas.listings import NormalizedListing
from bidscout_workers.services.listing_sink import InMemoryListingSink


def _listing(**overrides) -> NormalizedListing:
    fields = {
        "source": "autotrader",
        "source_listing_id": "A1",
        "year": 2019,
        "make": "toyota",
        "model": "hilux",
        "variant_raw": "sr5",
        "km": 50000,
        "price": 42000,
    }
    fields.update(overrides)
    return NormalizedListing(**fields)


def test_upsert_is_idempotent_on_natural_key() -> None:
    sink = InMemoryListingSink()

    first = asyncio.run(sink.upsert(_listing()))
    second = asyncio.run(sink.upsert(_listing(price=40500)))

    assert first.is_new is True
    assert second.is_new is False
    assert first.listing_id == second.listing_id
    assert len(sink.rows) == 1
    assert sink.rows[("autotrader", "A1")]["price"] == 40500


def test_same_listing_id_from_other_source_is_distinct() -> None:
    sink = InMemoryListingSink()

    asyncio.run(sink.upsert(_listing()))
    other = asyncio.run(sink.upsert(_listing(source="pickles")))

    assert other.is_new is True
    assert len(sink.rows) == 2


def test_enrichment_only_touches_derived_fields() -> None:
    sink = InMemoryListingSink()
    asyncio.run(sink.upsert(_listing()))

    assert asyncio.run(sink.apply_enrichment("autotrader", "A1", {"variant_family": "SR5"})) is True
    with pytest.raises(ValueError):
        asyncio.run(sink.apply_enrichment("autotrader", "A1", {"make": "FORD"}))
    assert sink.rows[("autotrader", "A1")]["make"] == "TOYOTA"
    assert asyncio.run(sink.apply_enrichment("autotrader", "missing", {"variant_family": "SR5"})) is False


def test_backfill_sets_missing_variant_families() -> None:
    sink = InMemoryListingSink()
    asyncio.run(sink.upsert(_listing()))
    asyncio.run(sink.upsert(_listing(source_listing_id="A2", variant_raw="mystery trim")))

    summary = asyncio.run(backfill_variant_family(sink, load_taxonomy()))

    assert summary == {"scanned": 2, "updated": 1, "unresolved": 1}
    assert sink.rows[("autotrader", "A1")]["variant_family"] == "SR5"
    assert sink.rows[("autotrader", "A2")]["variant_family"] is None


def test_unresolved_rows_do_not_starve_later_backfill_passes() -> None:
    sink = InMemoryListingSink()
    taxonomy = load_taxonomy()
    for index in range(3):
        asyncio.run(
            sink.upsert(_listing(source_listing_id=f"Z{index}", make="zzz", model="qqq", variant_raw="mystery trim"))
        )
    asyncio.run(sink.upsert(_listing(source_listing_id="H1", variant_raw="sr5 dual cab")))

    first = asyncio.run(backfill_variant_family(sink, taxonomy, limit=3))
    second = asyncio.run(backfill_variant_family(sink, taxonomy, limit=3))
    third = asyncio.run(backfill_variant_family(sink, taxonomy, limit=3))

    assert first == {"scanned": 3, "updated": 0, "unresolved": 3}
    assert second == {"scanned": 1, "updated": 1, "unresolved": 0}
    assert third == {"scanned": 0, "updated": 0, "unresolved": 0}
    assert sink.rows[("autotrader", "H1")]["variant_family"] == "SR5"


def test_unresolved_rows_are_rechecked_after_taxonomy_or_variant_change() -> None:
    sink = InMemoryListingSink()
    taxonomy = load_taxonomy()
    asyncio.run(sink.upsert(_listing(variant_raw="mystery trim")))
    asyncio.run(backfill_variant_family(sink, taxonomy))

    assert asyncio.run(sink.missing_variant_family(10, taxonomy.version)) == []
    assert len(asyncio.run(sink.missing_variant_family(10, "next-version"))) == 1

    asyncio.run(sink.upsert(_listing(variant_raw="sr5")))
    summary = asyncio.run(backfill_variant_family(sink, taxonomy))

    assert summary["updated"] == 1
    assert sink.rows[("autotrader", "A1")]["variant_family"] == "SR5"


def test_enrichment_rejects_unknown_fields_through_model() -> None:
    sink = InMemoryListingSink()
    asyncio.run(sink.upsert(_listing()))

    with pytest.raises(ValidationError):
        asyncio.run(sink.apply_enrichment("autotrader", "A1", {"variant_family_checked_version": "v9"}))
    assert asyncio.run(sink.apply_enrichment("autotrader", "A1", {"body_type": None})) is False
