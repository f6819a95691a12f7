from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

RUNNING_STATUSES = frozenset({"READY", "RUNNING"})
FAILED_STATUSES = frozenset({"FAILED", "ABORTED", "TIMED-OUT"})
SUCCEEDED_STATUS = "SUCCEEDED"


class UpstreamError(Exception):
    """Raised when the upstream run API returns an unusable response."""


@dataclass(slots=True)
class UpstreamRun:
    run_id: str
    status: str
    dataset_id: str | None


class SourceClient:
    def __init__(
        self,
        base_url: str,
        token: str | None,
        *,
        timeout_seconds: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = {"Authorization": f"Bearer {token}"} if token else {}
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    async def get_run(self, run_id: str) -> UpstreamRun:
        async with self._client() as client:
            response = await client.get(f"{self.base_url}/actor-runs/{run_id}", headers=self.headers)
            response.raise_for_status()
            payload = response.json()

        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, dict):
            raise UpstreamError(f"run {run_id} response missing data")
        status = data.get("status")
        return UpstreamRun(
            run_id=run_id,
            status=str(status).upper() if status else "UNKNOWN",
            dataset_id=data.get("defaultDatasetId") or None,
        )

    async def get_dataset_page(self, dataset_id: str, *, offset: int, limit: int) -> list[Any]:
        async with self._client() as client:
            response = await client.get(
                f"{self.base_url}/datasets/{dataset_id}/items",
                params={"offset": offset, "limit": limit, "clean": "true"},
                headers=self.headers,
            )
            response.raise_for_status()
            payload = response.json()

        if not isinstance(payload, list):
            raise UpstreamError(f"dataset {dataset_id} page is not a list")
        return payload

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport)
