"""
Unit tests for HttpTransport.

Requests are answered by httpx.MockTransport, so no server is needed.
"""

import json

import httpx
import pytest

from sdk.chorus_sdk import (
    ClientSettings,
    CursorExpiredError,
    HttpTransport,
    RequestError,
    TransportError,
)


def make_transport(handler, **overrides):
    settings = ClientSettings(base_url="http://sync.test", user_id="7", **overrides)
    client = httpx.AsyncClient(base_url=settings.base_url, transport=httpx.MockTransport(handler))
    return HttpTransport(settings, client=client), client


class TestRequests:
    """Tests for request shape."""

    @pytest.mark.asyncio
    async def test_identity_headers(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"schema": {}})

        transport, client = make_transport(handler, tenant_id="acme")
        await transport.fetch_schema()
        await client.aclose()

        assert seen[0].headers["X-User-ID"] == "7"
        assert seen[0].headers["X-Tenant-ID"] == "acme"
        assert seen[0].url.path == "/api/schema"

    @pytest.mark.asyncio
    async def test_no_tenant_header_by_default(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"actions": []})

        transport, client = make_transport(handler)
        assert await transport.fetch_actions("todos") == []
        await client.aclose()

        assert "X-Tenant-ID" not in seen[0].headers
        assert seen[0].url.path == "/api/actions/todos"

    @pytest.mark.asyncio
    async def test_snapshot_and_changes_params(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"entries": [], "has_more": False})

        transport, client = make_transport(handler)
        await transport.fetch_snapshot("todos")
        await transport.fetch_changes("todos", "0000000000001000000", limit=50)
        await transport.fetch_changes("todos", None)
        await client.aclose()

        assert seen[0].url.params["initial"] == "true"
        assert seen[1].url.params["after"] == "0000000000001000000"
        assert seen[1].url.params["limit"] == "50"
        assert "wait" not in seen[1].url.params
        assert "after" not in seen[2].url.params

    @pytest.mark.asyncio
    async def test_long_poll_extends_timeout(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"entries": []})

        transport, client = make_transport(handler, request_timeout=10.0)
        await transport.fetch_changes("todos", "1", wait=5.0)
        await client.aclose()

        assert seen[0].url.params["wait"] == "5.0"
        assert seen[0].extensions["timeout"]["read"] == 15.0

    @pytest.mark.asyncio
    async def test_submit_body(self):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(200, json={"client_request_id": "r1", "results": []})

        transport, client = make_transport(handler)
        await transport.submit("todos", "update", "r1", [{"id": "A"}], operation="update")
        await client.aclose()

        assert seen == [{"client_request_id": "r1", "items": [{"id": "A"}], "operation": "update"}]


class TestErrorMapping:
    """Tests for status code to error mapping."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [500, 503, 408, 429])
    async def test_retryable_statuses(self, status):
        transport, client = make_transport(lambda r: httpx.Response(status, json={"error": "busy"}))
        with pytest.raises(TransportError) as exc_info:
            await transport.fetch_schema()
        await client.aclose()
        assert exc_info.value.status == status

    @pytest.mark.asyncio
    async def test_network_failure(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        transport, client = make_transport(handler)
        with pytest.raises(TransportError):
            await transport.fetch_schema()
        await client.aclose()

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        transport, client = make_transport(handler)
        with pytest.raises(TransportError, match="timed out"):
            await transport.fetch_changes("todos", "1")
        await client.aclose()

    @pytest.mark.asyncio
    async def test_gone_is_cursor_expired(self):
        body = {"error": "Cursor expired", "error_code": "CURSOR_EXPIRED"}
        transport, client = make_transport(lambda r: httpx.Response(410, json=body))
        with pytest.raises(CursorExpiredError):
            await transport.fetch_changes("todos", "1")
        await client.aclose()

    @pytest.mark.asyncio
    async def test_client_error_is_terminal(self):
        body = {"error": "Unknown action", "error_code": "ACTION_NOT_FOUND"}
        transport, client = make_transport(lambda r: httpx.Response(404, json=body))
        with pytest.raises(RequestError) as exc_info:
            await transport.submit("todos", "archive", "r1", [{"id": "A"}])
        await client.aclose()

        error = exc_info.value
        assert not isinstance(error, TransportError)
        assert error.status == 404
        assert error.code == "ACTION_NOT_FOUND"
        assert error.message == "Unknown action"

    @pytest.mark.asyncio
    async def test_non_json_error_body(self):
        transport, client = make_transport(lambda r: httpx.Response(400, text="bad"))
        with pytest.raises(RequestError) as exc_info:
            await transport.fetch_schema()
        await client.aclose()
        assert exc_info.value.body == {"error": "bad"}

    @pytest.mark.asyncio
    async def test_unprocessable_write_returns_results(self):
        body = {
            "client_request_id": "r1",
            "results": [{"item_id": "A", "status": "rejected", "reason": {"code": "conflict"}}],
            "replayed": False,
        }
        transport, client = make_transport(lambda r: httpx.Response(422, json=body))
        assert await transport.submit("todos", "update", "r1", [{"id": "A"}]) == body
        await client.aclose()

    @pytest.mark.asyncio
    async def test_unprocessable_read_raises(self):
        transport, client = make_transport(lambda r: httpx.Response(422, json={"error": "bad"}))
        with pytest.raises(RequestError):
            await transport.fetch_snapshot("todos")
        await client.aclose()
