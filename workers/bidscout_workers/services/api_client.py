from __future__ import annotations

from typing import Any

import httpx


class ApiClient:
    def __init__(
        self,
        base_url: str,
        module_id: str,
        api_key: str,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = {
            "X-Module-Id": module_id,
            "X-API-Key": api_key,
        }
        self.transport = transport

    async def run_matching(self) -> dict[str, Any]:
        async with httpx.AsyncClient(timeout=60.0, transport=self.transport) as client:
            response = await client.post(f"{self.base_url}/matching/run", headers=self.headers)
            response.raise_for_status()
            return response.json()

    async def enqueue_ingest_run(self, source: str, external_run_id: str) -> dict[str, Any]:
        async with httpx.AsyncClient(timeout=10.0, transport=self.transport) as client:
            response = await client.post(
                f"{self.base_url}/jobs",
                json={"source": source, "external_run_id": external_run_id},
                headers=self.headers,
            )
            response.raise_for_status()
            return response.json()
