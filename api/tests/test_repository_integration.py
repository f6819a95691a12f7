from __future__ import annotations

import asyncio
from collections.abc import Coroutine, Iterator
import hashlib
import json
import os
from pathlib import Path
from typing import Any, TypeVar

import asyncpg  # type: ignore[import-untyped]
import pytest
from fastapi.testclient import TestClient

from bidscout_api.core.config import get_settings
from bidscout_api.main import app
from bidscout_api.services.alerts import get_alert_dispatcher
from bidscout_api.services.repository import get_repository

MIGRATION_PATH = Path(__file__).resolve().parents[2] / "db" / "migrations" / "0001_core.sql"
MODULE_HEADERS = {"X-Module-Id": "local-worker", "X-API-Key": "local-worker-key"}
INGEST_HEADERS = {"Authorization": "Bearer local-ingest-token"}

T = TypeVar("T")


@pytest.fixture(scope="session")
def database_url() -> str:
    url = os.getenv("BS_DATABASE_URL")
    if not url:
        pytest.skip("integration tests require BS_DATABASE_URL")
    _run(_apply_migration(url))
    return url


@pytest.fixture(autouse=True)
def reset_tables(database_url: str) -> None:
    _run(_reset_and_seed(database_url))


@pytest.fixture
def api_client(database_url: str, monkeypatch: pytest.MonkeyPatch) -> Iterator[TestClient]:
    monkeypatch.setenv("BS_DATABASE_URL", database_url)
    monkeypatch.setenv("BS_INGEST_TOKENS", json.dumps({"pickles": "local-ingest-token"}))
    monkeypatch.setenv("BS_OTEL_ENABLED", "false")
    get_settings.cache_clear()
    get_repository.cache_clear()
    get_alert_dispatcher.cache_clear()

    with TestClient(app) as client:
        yield client

    get_repository.cache_clear()
    get_settings.cache_clear()
    get_alert_dispatcher.cache_clear()


def test_enqueue_and_list_ingest_runs(api_client: TestClient) -> None:
    payload = {"source": "pickles", "external_run_id": "apify-run-1"}

    created = api_client.post("/jobs", json=payload, headers=MODULE_HEADERS)
    repeated = api_client.post("/jobs", json=payload, headers=MODULE_HEADERS)

    assert created.status_code == 201
    assert repeated.status_code == 200
    assert repeated.json()["id"] == created.json()["id"]

    listed = api_client.get("/jobs", params={"status": "queued"}, headers=MODULE_HEADERS)
    assert [job["external_run_id"] for job in listed.json()] == ["apify-run-1"]


def test_stub_batches_upsert_by_stock_id(api_client: TestClient, database_url: str) -> None:
    items = [
        {"source_stock_id": "S-1", "detail_url": "https://lots.example.test/S-1", "year": 2019, "make": "Toyota", "model": "Hilux"},
        {"detail_url": "https://lots.example.test/unknown"},
    ]

    first = api_client.post("/ingest/pickles/stubs", json={"items": items}, headers=INGEST_HEADERS)
    second = api_client.post(
        "/ingest/pickles/stubs",
        json={"items": [{**items[0], "km": 51000}]},
        headers=INGEST_HEADERS,
    )

    assert first.json() == {"created": 1, "updated": 0, "exceptions": 1}
    assert second.json() == {"created": 0, "updated": 1, "exceptions": 0}

    row = _run(
        _fetchrow(
            database_url,
            "select times_seen, km, fingerprint_confidence from stub_anchors where source_stock_id = 'S-1'",
        )
    )
    assert row["times_seen"] == 2
    assert row["km"] == 51000
    assert row["fingerprint_confidence"] == "high"


def test_matching_run_replaces_previous_matches(api_client: TestClient, database_url: str) -> None:
    _run(
        _execute(
            database_url,
            """
            insert into fingerprints (dealer_id, dealer_name, make, model, year, variant_normalised, variant_family, min_km, max_km, sale_km)
            values ('dealer-1', 'Northside Motors', 'TOYOTA', 'HILUX', 2019, 'SR5', 'SR5', 40000, 60000, 50000);

            insert into listings (source, source_listing_id, year, make, model, variant_normalised, variant_family, km, price, status, confidence_score)
            values
              ('pickles', '1001', 2019, 'TOYOTA', 'HILUX', 'SR5', 'SR5', 50000, 38000, 'passed_in', 4),
              ('pickles', '1002', 2019, 'TOYOTA', 'HILUX', 'SR5 HI-RIDER', 'SR5', 55000, 41000, 'listed', 1);
            """,
        )
    )

    first = api_client.post("/matching/run", headers=MODULE_HEADERS)
    second = api_client.post("/matching/run", headers=MODULE_HEADERS)

    assert first.status_code == 200
    assert first.json()["matches_written"] == 2
    assert first.json()["alerts_queued"] == 1
    assert second.json()["alerts_queued"] == 0

    count = _run(_fetchrow(database_url, "select count(*) as total, count(distinct run_id) as runs from spec_matches"))
    assert (count["total"], count["runs"]) == (2, 1)

    matches = api_client.get("/matches", headers=MODULE_HEADERS).json()
    assert [(item["tier"], item["lane"], item["action"]) for item in matches] == [
        (1, "Precision", "Buy"),
        (2, "Probable", "Watch"),
    ]

    audit = _run(_fetchrow(database_url, "select count(*) as total from cron_audit_log where cron_name = 'spec-matching'"))
    assert audit["total"] == 2


async def _apply_migration(database_url: str) -> None:
    conn = await asyncpg.connect(database_url)
    try:
        await conn.execute(MIGRATION_PATH.read_text(encoding="utf-8"))
    finally:
        await conn.close()


async def _reset_and_seed(database_url: str) -> None:
    conn = await asyncpg.connect(database_url)
    try:
        await conn.execute(
            """
            truncate table
              alert_log,
              spec_matches,
              replication_opportunities,
              winners_watchlist,
              stub_anchors,
              stub_exceptions,
              fingerprints,
              listings,
              ingest_runs,
              cron_audit_log,
              module_credentials,
              modules
            restart identity cascade
            """
        )
        module_db_id = await conn.fetchval(
            """
            insert into modules (module_id, name, scopes)
            values ('local-worker', 'Local worker', array['jobs:read', 'jobs:write', 'matching:run', 'matches:read'])
            returning id
            """
        )
        await conn.execute(
            "insert into module_credentials (module_id, key_hash) values ($1, $2)",
            module_db_id,
            hashlib.sha256(b"local-worker-key").hexdigest(),
        )
    finally:
        await conn.close()


async def _execute(database_url: str, sql: str) -> None:
    conn = await asyncpg.connect(database_url)
    try:
        await conn.execute(sql)
    finally:
        await conn.close()


async def _fetchrow(database_url: str, sql: str) -> asyncpg.Record:
    conn = await asyncpg.connect(database_url)
    try:
        return await conn.fetchrow(sql)
    finally:
        await conn.close()


def _run(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)
