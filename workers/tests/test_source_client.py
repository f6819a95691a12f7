from __future__ import annotations

import asyncio

import httpx
import pytest

from bidscout_workers.services.source_client import SourceClient, UpstreamError


def test_get_run_reads_status_and_dataset() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"data": {"status": "succeeded", "defaultDatasetId": "ds-9"}})

    client = SourceClient("https://upstream.test/v2/", "tok", transport=httpx.MockTransport(handler))
    run = asyncio.run(client.get_run("run-1"))

    assert run.status == "SUCCEEDED"
    assert run.dataset_id == "ds-9"
    assert seen[0].url.path == "/v2/actor-runs/run-1"
    assert seen[0].headers["Authorization"] == "Bearer tok"


def test_get_dataset_page_passes_offset_and_limit() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["offset"] == "200"
        assert request.url.params["limit"] == "100"
        return httpx.Response(200, json=[{"id": "1"}, {"id": "2"}])

    client = SourceClient("https://upstream.test/v2", None, transport=httpx.MockTransport(handler))
    page = asyncio.run(client.get_dataset_page("ds-1", offset=200, limit=100))

    assert page == [{"id": "1"}, {"id": "2"}]


def test_malformed_responses_raise() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"items": []})

    client = SourceClient("https://upstream.test/v2", None, transport=httpx.MockTransport(handler))

    with pytest.raises(UpstreamError):
        asyncio.run(client.get_run("run-1"))
    with pytest.raises(UpstreamError):
        asyncio.run(client.get_dataset_page("ds-1", offset=0, limit=10))


def test_http_errors_propagate() -> None:
    client = SourceClient(
        "https://upstream.test/v2",
        None,
        transport=httpx.MockTransport(lambda request: httpx.Response(503)),
    )

    with pytest.raises(httpx.HTTPStatusError):
        asyncio.run(client.get_run("run-1"))
