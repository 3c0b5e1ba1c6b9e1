from __future__ import annotations

from typing import Any

import httpx


class JobClient:
    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    async def sweep_stale_jobs(self) -> dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
            response = await client.post(f"{self.base_url}/jobs/sweep-stale")
            response.raise_for_status()
            return response.json()

    async def get_stale_job_stats(self) -> dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
            response = await client.get(f"{self.base_url}/jobs/stale-stats")
            response.raise_for_status()
            return response.json()

