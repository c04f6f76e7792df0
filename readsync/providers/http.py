"""
HTTP sync provider.

Talks to a small snapshot service:

    GET    /v1/snapshot          -> 200 snapshot JSON, or 404 if none yet
    PUT    /v1/snapshot          <- snapshot JSON
    DELETE /v1/content/{name}    -> 204, or 404 if already gone

Requests carry a bearer token. Plain HTTP is refused except for localhost.
"""

from __future__ import annotations

import logging
from typing import Any, Optional
from urllib.parse import urlparse

import httpx

from ..errors import SyncError
from ..types import SyncStateDocument
from .base import content_filename, parse_snapshot

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0

_LOCAL_HOSTS = ("localhost", "127.0.0.1", "::1")


class HttpProvider:
    """Snapshot exchange with a remote HTTP service."""

    name = "http"

    def __init__(
        self,
        api_url: str,
        api_key: str | None = None,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._api_url = api_url.rstrip("/")
        self._api_key = api_key

        # Refuse non-HTTPS for remote APIs (bearer token would be sent in cleartext)
        if not self._api_url.startswith("https://"):
            host = urlparse(self._api_url).hostname or ""
            if host not in _LOCAL_HOSTS:
                raise ValueError(
                    f"Sync API URL must use HTTPS (got {self._api_url}). "
                    "Use HTTPS to protect credentials, or use localhost for local development."
                )

        headers: dict[str, str] = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        self._client = httpx.AsyncClient(
            base_url=self._api_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def is_ready_to_sync(self) -> bool:
        return bool(self._api_key)

    async def upload_snapshot(self, doc: SyncStateDocument) -> None:
        """PUT /v1/snapshot."""
        await self.upload_payload(doc.to_dict())

    async def download_snapshot(self) -> Optional[SyncStateDocument]:
        """GET /v1/snapshot -> snapshot, or None when the service has none."""
        data = await self.download_payload()
        if data is None:
            return None
        return parse_snapshot(data, self._api_url)

    async def upload_payload(self, payload: dict[str, Any]) -> None:
        try:
            resp = await self._client.put("/v1/snapshot", json=payload)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise SyncError(
                f"Snapshot upload rejected: {e.response.status_code} {e.response.text}", "upload",
            ) from e
        except httpx.HTTPError as e:
            raise SyncError(f"Snapshot upload failed: {e}", "upload") from e

    async def download_payload(self) -> Optional[dict[str, Any]]:
        try:
            resp = await self._client.get("/v1/snapshot")
            if resp.status_code == 404:
                return None
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            raise SyncError(f"Snapshot download failed: {e.response.status_code}", "download") from e
        except httpx.HTTPError as e:
            raise SyncError(f"Snapshot download failed: {e}", "download") from e
        except ValueError as e:
            raise SyncError(f"Snapshot is not valid JSON: {e}", "download") from e
        if not isinstance(data, dict):
            raise SyncError(
                f"Corrupt snapshot from {self._api_url}: expected an object, got {type(data).__name__}",
                "download",
            )
        return data

    async def delete_item_content(self, identifier: str) -> None:
        """DELETE /v1/content/{name}; 404 means already gone."""
        name = content_filename(identifier)
        try:
            resp = await self._client.delete(f"/v1/content/{name}")
            if resp.status_code != 404:
                resp.raise_for_status()
        except httpx.HTTPError as e:
            raise SyncError(f"Content delete failed for {identifier}: {e}", "delete") from e

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()
