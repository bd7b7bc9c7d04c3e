"""Async client for the data and mirror endpoints served by ``app.py``."""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Mapping, Optional

import httpx

from env_validation import DEFAULT_API_BASE_URL

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """Non-2xx response or transport failure talking to the server."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class DataApiClient:
    """Thin wrapper over ``httpx.AsyncClient``.

    No client-side timeout is enforced; the server bounds its own handlers.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.base_url = (base_url or os.getenv("API_BASE_URL") or DEFAULT_API_BASE_URL).rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            transport=transport,
            timeout=timeout,
            headers={"Content-Type": "application/json"},
        )

    async def __aenter__(self) -> "DataApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, payload: Any = None) -> Any:
        try:
            response = await self._client.request(method, path, json=payload)
        except httpx.HTTPError as exc:
            raise ApiError(f"Request to {path} failed: {exc}") from exc

        if response.is_success:
            try:
                return response.json()
            except ValueError as exc:
                raise ApiError(
                    f"{method} {path} returned a body that is not JSON", status_code=response.status_code
                ) from exc

        message = response.text
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and body.get("error"):
            message = str(body["error"])
        logger.debug("%s %s responded %s: %s", method, path, response.status_code, message)
        raise ApiError(message, status_code=response.status_code)

    # ------------------------------------------------------------------
    # partitioned store
    # ------------------------------------------------------------------
    async def read(self) -> Dict[str, Any]:
        data = await self._request("GET", "/api/data")
        if not isinstance(data, dict):
            raise ApiError("Server returned a non-object data payload")
        return data

    async def write_all(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", "/api/update", dict(payload))

    async def write_key(self, key: str, value: Any) -> Dict[str, Any]:
        return await self._request("POST", "/api/update-partial", {"key": key, "value": value})

    # ------------------------------------------------------------------
    # mirror
    # ------------------------------------------------------------------
    async def publish_mirror(self, settings: Mapping[str, Any], data: Mapping[str, Any]) -> Dict[str, Any]:
        return await self._request(
            "POST", "/api/publish-github", {"settings": dict(settings), "data": dict(data)}
        )

    async def fetch_mirror(self, owner: str, repo: str, path: str, pat: str) -> Dict[str, Any]:
        data = await self._request(
            "POST", "/api/github-proxy", {"owner": owner, "repo": repo, "path": path, "pat": pat}
        )
        if not isinstance(data, dict):
            raise ApiError("Mirror file does not hold a JSON object")
        return data

    async def sync_mirror(self, snapshot: Mapping[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", "/api/sync-github", dict(snapshot))
