"""HTTP client for server-side background reply jobs."""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Mapping

import httpx

from ..chat.background import BackgroundJobSnapshot

LOGGER = logging.getLogger(__name__)


class BackgroundJobClient:
    """Reads job status by polling or over a server-sent event stream.

    Endpoints, relative to ``base_url``:

    * ``GET  /api/jobs/{id}?offset=N`` returns one status object;
    * ``GET  /api/jobs/{id}/stream?offset=N`` streams ``data: {"event": ..., "status": {...}}`` frames;
    * ``POST /api/jobs/{id}/abort`` asks the server to stop the job.
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url.rstrip("/"), headers=headers, timeout=timeout)

    async def fetch_status(self, job_id: str, *, offset: int = 0) -> BackgroundJobSnapshot:
        params = {"offset": offset} if offset > 0 else None
        response = await self._client.get(f"/api/jobs/{job_id}", params=params)
        response.raise_for_status()
        return _parse_status(response.json(), job_id)

    async def stream_updates(self, job_id: str, *, offset: int = 0) -> AsyncIterator[BackgroundJobSnapshot]:
        params = {"offset": offset} if offset > 0 else None
        async with self._client.stream(
            "GET",
            f"/api/jobs/{job_id}/stream",
            params=params,
            headers={"Accept": "text/event-stream"},
            timeout=httpx.Timeout(None, connect=10.0),
        ) as response:
            response.raise_for_status()
            data_lines: list[str] = []
            async for line in response.aiter_lines():
                if line.startswith("data:"):
                    data_lines.append(line[5:].lstrip())
                    continue
                if line or not data_lines:
                    continue
                frame = "\n".join(data_lines)
                data_lines = []
                try:
                    payload = json.loads(frame)
                except json.JSONDecodeError:
                    LOGGER.debug("Skipping malformed job stream frame for %s: %r", job_id, frame[:120])
                    continue
                snapshot = _parse_status(payload, job_id)
                yield snapshot
                if snapshot.status.terminal:
                    return

    async def abort(self, job_id: str) -> bool:
        response = await self._client.post(f"/api/jobs/{job_id}/abort")
        if response.status_code == 404:
            return False
        response.raise_for_status()
        try:
            body = response.json()
        except ValueError:
            return True
        if isinstance(body, Mapping) and "aborted" in body:
            return bool(body["aborted"])
        return True

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _parse_status(payload: Any, job_id: str) -> BackgroundJobSnapshot:
    if not isinstance(payload, Mapping):
        raise ValueError(f"Unexpected job status payload for {job_id}")
    status = payload.get("status")
    if isinstance(status, Mapping):
        payload = status
    return BackgroundJobSnapshot.from_mapping(payload, job_id=job_id)


__all__ = ["BackgroundJobClient"]
