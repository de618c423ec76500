"""
HTTP transport for the Chorus SDK.

HttpTransport wraps an httpx.AsyncClient and speaks the server's JSON API:

    GET  /api/schema
    GET  /api/sync/{table}?initial=true
    GET  /api/sync/{table}?after=&limit=&wait=
    GET  /api/actions/{table}
    POST /api/write/{table}/{action}

Every request carries X-User-ID (and X-Tenant-ID when configured).

Invariants:
    - Network failures, timeouts, 5xx, 408 and 429 raise TransportError
      (the only retryable error)
    - 410 raises CursorExpiredError
    - 422 on a write is a per-item result, not an error: the body is returned
    - Any other 4xx raises RequestError

How to change safely:
    - Keep routes in sync with backend/chorus_server/api/http_server.py
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from .config import ClientSettings
from .errors import CursorExpiredError, RequestError, TransportError

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = frozenset({408, 429})


class HttpTransport:
    """JSON client for one Chorus server.

    Example:
        >>> async with HttpTransport(settings) as transport:
        ...     snapshot = await transport.fetch_snapshot("todos")
    """

    def __init__(
        self,
        settings: ClientSettings,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the transport.

        Args:
            settings: Client settings (base URL, identity, timeouts)
            client: Pre-built httpx client (tests inject MockTransport here)
        """
        self.settings = settings
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=settings.base_url,
            timeout=settings.request_timeout,
        )

    async def __aenter__(self) -> HttpTransport:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @property
    def headers(self) -> dict[str, str]:
        headers = {"X-User-ID": self.settings.user_id}
        if self.settings.tenant_id:
            headers["X-Tenant-ID"] = self.settings.tenant_id
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        timeout: float | None = None,
        accept: frozenset = frozenset(),
    ) -> dict[str, Any]:
        try:
            response = await self._client.request(
                method,
                path,
                params={k: v for k, v in (params or {}).items() if v is not None},
                json=json,
                headers=self.headers,
                timeout=timeout if timeout is not None else self.settings.request_timeout,
            )
        except httpx.TimeoutException as e:
            raise TransportError(f"Request timed out: {method} {path}", url=path) from e
        except httpx.TransportError as e:
            raise TransportError(f"Request failed: {e}", url=path) from e

        status = response.status_code
        if status < 400 or status in accept:
            return response.json()

        try:
            body = response.json()
        except ValueError:
            body = {"error": response.text}

        message = body.get("error") or f"HTTP {status}"
        if status >= 500 or status in _RETRYABLE_STATUS:
            raise TransportError(message, status=status, url=path)
        if status == 410:
            raise CursorExpiredError(message, body=body)
        raise RequestError(message, status=status, error_code=body.get("error_code"), body=body)

    async def fetch_schema(self) -> dict[str, Any]:
        return await self._request("GET", "/api/schema")

    async def fetch_snapshot(self, table: str) -> dict[str, Any]:
        """Current rows and cursor of a table.

        Returns:
            {"table", "rows", "cursor", "truncated"}
        """
        return await self._request("GET", f"/api/sync/{table}", params={"initial": "true"})

    async def fetch_changes(
        self,
        table: str,
        after: str | None,
        limit: int | None = None,
        wait: float = 0.0,
    ) -> dict[str, Any]:
        """Entries after a cursor, optionally long-polling for wait seconds.

        Raises:
            CursorExpiredError: If the server pruned past the cursor
            TransportError: On network failure
        """
        params: dict[str, Any] = {"after": after or None, "limit": limit}
        if wait > 0:
            params["wait"] = wait
        return await self._request(
            "GET",
            f"/api/sync/{table}",
            params=params,
            timeout=self.settings.request_timeout + wait,
        )

    async def fetch_actions(self, table: str) -> list[dict[str, Any]]:
        body = await self._request("GET", f"/api/actions/{table}")
        return body.get("actions", [])

    async def submit(
        self,
        table: str,
        action: str,
        client_request_id: str,
        items: list[dict[str, Any]],
        operation: str | None = None,
    ) -> dict[str, Any]:
        """Submit a write action.

        Returns:
            {"client_request_id", "results", "replayed"}
        """
        payload: dict[str, Any] = {"client_request_id": client_request_id, "items": items}
        if operation:
            payload["operation"] = operation
        logger.debug(
            "Submitting write",
            extra={"table": table, "action": action, "client_request_id": client_request_id},
        )
        return await self._request(
            "POST",
            f"/api/write/{table}/{action}",
            json=payload,
            accept=frozenset({422}),
        )
