from __future__ import annotations

from typing import Any

import httpx

from opscord.core.security import JOB_SECRET_HEADER


class JobClient:
    """HTTP trigger client used by the worker loop to drive the API."""

    def __init__(
        self,
        base_url: str,
        job_secret: str,
        *,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = {JOB_SECRET_HEADER: job_secret}
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    async def reclaim_stale_queue_items(self, limit: int = 100) -> int:
        payload = await self._post("/queue/reclaim-stale", params={"limit": limit})
        return int(payload.get("reclaimed", 0))

    async def drain_queue(self, batch_size: int = 10) -> dict[str, Any]:
        return await self._post("/queue/drain", params={"batch_size": batch_size})

    async def reclaim_stale_jobs(self, limit: int = 100) -> int:
        payload = await self._post("/jobs/reclaim-stale", params={"limit": limit})
        return int(payload.get("affected", 0))

    async def process_jobs(self, max_jobs: int = 10) -> dict[str, Any]:
        return await self._post("/jobs/process", json={"mode": "batch", "max_jobs": max_jobs})

    async def _post(
        self,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
            response = await client.post(f"{self.base_url}{path}", params=params, json=json, headers=self.headers)
            response.raise_for_status()
            return response.json()
