from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from bidscout_workers.services.api_client import ApiClient


def test_run_matching_sends_module_credentials() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"matches_written": 3, "alerts_queued": 1})

    client = ApiClient("http://api.test/", "worker-1", "secret", transport=httpx.MockTransport(handler))
    result = asyncio.run(client.run_matching())

    assert result["matches_written"] == 3
    assert seen[0].method == "POST"
    assert seen[0].url.path == "/matching/run"
    assert seen[0].headers["X-Module-Id"] == "worker-1"
    assert seen[0].headers["X-API-Key"] == "secret"


def test_enqueue_ingest_run_posts_source_and_run_id() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/jobs"
        assert json.loads(request.content) == {"source": "pickles", "external_run_id": "run-7"}
        return httpx.Response(201, json={"id": "job-1", "status": "queued"})

    client = ApiClient("http://api.test", "worker-1", "secret", transport=httpx.MockTransport(handler))
    job = asyncio.run(client.enqueue_ingest_run("pickles", "run-7"))

    assert job == {"id": "job-1", "status": "queued"}


def test_api_errors_propagate() -> None:
    client = ApiClient(
        "http://api.test",
        "worker-1",
        "wrong",
        transport=httpx.MockTransport(lambda request: httpx.Response(401, json={"detail": "invalid module credentials"})),
    )

    with pytest.raises(httpx.HTTPStatusError):
        asyncio.run(client.run_matching())
