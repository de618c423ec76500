"""
Integration tests for the HTTP API.

The aiohttp app runs on a test server backed by real services (SQLite log,
in-memory broker).

Tests cover:
- Schema, health and action discovery
- Snapshot and incremental sync, including long-poll
- Write submission status codes and idempotent replay
- Identity and error responses
"""

import asyncio

import pytest
from aiohttp.test_utils import TestClient, TestServer

from backend.chorus_server.api import create_http_app

ALICE = {"X-User-ID": "7"}
BOB = {"X-User-ID": "8"}


@pytest.fixture
async def client(services):
    async with TestClient(TestServer(create_http_app(services))) as client:
        yield client


async def write(client, action, items, request_id, headers=ALICE, **extra):
    return await client.post(
        f"/api/write/todos/{action}",
        json={"client_request_id": request_id, "items": items, **extra},
        headers=headers,
    )


class TestDiscovery:
    """Tests for schema, health and actions endpoints."""

    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/api/health")
        assert resp.status == 200
        body = await resp.json()
        assert body["healthy"] is True
        assert body["harmonics"] == 0

    @pytest.mark.asyncio
    async def test_schema(self, client):
        resp = await client.get("/api/schema")
        body = await resp.json()
        assert body["schema"]["todos"] == {"primary_key": "id", "indexes": ["user_id", "done"]}
        assert body["database_version"].startswith("sha256:")

    @pytest.mark.asyncio
    async def test_actions(self, client):
        resp = await client.get("/api/actions/todos", headers=ALICE)
        assert resp.status == 200
        actions = {a["name"]: a for a in (await resp.json())["actions"]}
        assert set(actions) == {"create", "update", "delete", "import"}
        assert actions["create"]["offline"] is True
        assert actions["import"]["offline"] is False

    @pytest.mark.asyncio
    async def test_actions_unknown_table(self, client):
        resp = await client.get("/api/actions/users", headers=ALICE)
        assert resp.status == 404
        assert (await resp.json())["error_code"] == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_cors_headers(self, client):
        resp = await client.options("/api/schema", headers={"Origin": "https://app.example"})
        assert resp.status == 200
        assert resp.headers["Access-Control-Allow-Origin"] == "https://app.example"
        assert "X-User-ID" in resp.headers["Access-Control-Allow-Headers"]


class TestSync:
    """Tests for GET /api/sync/{table}."""

    @pytest.mark.asyncio
    async def test_requires_identity(self, client):
        resp = await client.get("/api/sync/todos?initial=true")
        assert resp.status == 401
        assert (await resp.json())["error_code"] == "UNAUTHENTICATED"

    @pytest.mark.asyncio
    async def test_empty_snapshot(self, client):
        resp = await client.get("/api/sync/todos?initial=true", headers=ALICE)
        assert await resp.json() == {"table": "todos", "rows": [], "cursor": None, "truncated": False}

    @pytest.mark.asyncio
    async def test_snapshot_then_changes(self, client):
        await write(client, "create", [{"id": "A", "title": "Milk", "secret": "x"}], "r1")

        snapshot = await (await client.get("/api/sync/todos?initial=true", headers=ALICE)).json()
        assert snapshot["rows"] == [{"id": "A", "title": "Milk", "user_id": "7"}]
        assert snapshot["cursor"] is not None

        await write(client, "update", [{"id": "A", "done": True}], "r2")
        resp = await client.get(
            "/api/sync/todos", params={"after": snapshot["cursor"]}, headers=ALICE
        )
        changes = await resp.json()

        assert [e["operation"] for e in changes["entries"]] == ["update"]
        assert changes["entries"][0]["payload"]["done"] is True
        assert "secret" not in changes["entries"][0]["payload"]
        assert changes["cursor"] == changes["entries"][0]["id"]
        assert changes["has_more"] is False

    @pytest.mark.asyncio
    async def test_other_users_rows_hidden(self, client):
        await write(client, "create", [{"id": "A", "title": "Milk"}], "r1")

        snapshot = await (await client.get("/api/sync/todos?initial=true", headers=BOB)).json()
        changes = await (await client.get("/api/sync/todos", headers=BOB)).json()

        assert snapshot["rows"] == []
        assert changes["entries"] == []

    @pytest.mark.asyncio
    async def test_limit_pages(self, client):
        items = [{"id": str(i), "title": f"t{i}"} for i in range(3)]
        await write(client, "create", items, "r1")

        body = await (await client.get("/api/sync/todos", params={"limit": "2"}, headers=ALICE)).json()

        assert len(body["entries"]) == 2
        assert body["has_more"] is True

    @pytest.mark.asyncio
    async def test_bad_limit(self, client):
        resp = await client.get("/api/sync/todos", params={"limit": "many"}, headers=ALICE)
        assert resp.status == 400
        assert (await resp.json())["error_code"] == "INVALID_ARGUMENT"

    @pytest.mark.asyncio
    async def test_unknown_table(self, client):
        resp = await client.get("/api/sync/users?initial=true", headers=ALICE)
        assert resp.status == 404

    @pytest.mark.asyncio
    async def test_expired_cursor(self, client, services):
        await write(client, "create", [{"id": "A"}], "r1")
        await services.dispatcher.dispatch_pending()
        await services.log.prune(older_than_ms=2**62)

        resp = await client.get("/api/sync/todos", params={"after": "0000000000000000001"}, headers=ALICE)

        assert resp.status == 410
        body = await resp.json()
        assert body["error_code"] == "CURSOR_EXPIRED"
        assert body["pruned_through"]

    @pytest.mark.asyncio
    async def test_missing_cursor_expired_after_prune(self, client, services):
        await write(client, "create", [{"id": "A"}], "r1")
        await services.dispatcher.dispatch_pending()
        await services.log.prune(older_than_ms=2**62)

        resp = await client.get("/api/sync/todos", headers=ALICE)
        assert resp.status == 410

        snapshot = await (await client.get("/api/sync/todos?initial=true", headers=ALICE)).json()
        assert [r["id"] for r in snapshot["rows"]] == ["A"]
        resp = await client.get("/api/sync/todos", params={"after": snapshot["cursor"]}, headers=ALICE)
        assert resp.status == 200
        assert (await resp.json())["entries"] == []

    @pytest.mark.asyncio
    async def test_long_poll_wakes_on_write(self, client, services):
        async def poll():
            resp = await client.get("/api/sync/todos", params={"wait": "2"}, headers=ALICE)
            return await resp.json()

        dispatcher = asyncio.create_task(services.dispatcher.start())
        try:
            waiting = asyncio.create_task(poll())
            await asyncio.sleep(0.1)
            await write(client, "create", [{"id": "A", "title": "Milk"}], "r1")

            body = await asyncio.wait_for(waiting, timeout=3)
            assert [e["record_id"] for e in body["entries"]] == ["A"]
        finally:
            await services.dispatcher.stop()
            await dispatcher

    @pytest.mark.asyncio
    async def test_long_poll_times_out_empty(self, client):
        resp = await client.get("/api/sync/todos", params={"wait": "0.1"}, headers=ALICE)
        assert resp.status == 200
        assert (await resp.json())["entries"] == []


class TestWrite:
    """Tests for POST /api/write/{table}/{action}."""

    @pytest.mark.asyncio
    async def test_success(self, client):
        resp = await write(client, "create", [{"id": "A", "title": "Milk"}], "r1")
        assert resp.status == 200
        body = await resp.json()
        assert body["client_request_id"] == "r1"
        assert body["replayed"] is False
        assert body["results"][0]["status"] == "success"
        assert body["results"][0]["data"]["user_id"] == "7"

    @pytest.mark.asyncio
    async def test_replay_returns_cached_outcome(self, client, services):
        first = await (await write(client, "create", [{"id": "A"}], "r1")).json()
        second = await (await write(client, "create", [{"id": "A"}], "r1")).json()

        assert second["replayed"] is True
        assert second["results"] == first["results"]
        assert (await services.log.stats())["harmonics"] == 1

    @pytest.mark.asyncio
    async def test_request_id_reused_for_other_action(self, client):
        await write(client, "create", [{"id": "A"}], "r1")
        resp = await write(client, "update", [{"id": "A", "done": True}], "r1")
        assert resp.status == 409
        assert (await resp.json())["error_code"] == "REQUEST_ID_CONFLICT"

    @pytest.mark.asyncio
    async def test_partial_rejection_is_200(self, client):
        await write(client, "create", [{"id": "A"}], "r1")
        resp = await write(client, "create", [{"id": "A"}, {"id": "B"}], "r2")

        assert resp.status == 200
        statuses = [r["status"] for r in (await resp.json())["results"]]
        assert statuses == ["rejected", "success"]

    @pytest.mark.asyncio
    async def test_all_invalid_is_422(self, client):
        resp = await write(client, "create", ["not an object"], "r1")
        assert resp.status == 422
        result = (await resp.json())["results"][0]
        assert result["reason"]["code"] == "validation_error"

    @pytest.mark.asyncio
    async def test_conflict_rejection_is_200(self, client):
        resp = await write(client, "update", [{"id": "missing", "done": True}], "r1")
        assert resp.status == 200
        assert (await resp.json())["results"][0]["reason"]["code"] == "conflict"

    @pytest.mark.asyncio
    async def test_unknown_action(self, client):
        resp = await write(client, "archive", [{"id": "A"}], "r1")
        assert resp.status == 404

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            {"items": [{"id": "A"}]},
            {"client_request_id": "", "items": [{"id": "A"}]},
            {"client_request_id": "r1", "items": []},
        ],
    )
    async def test_malformed_body(self, client, body):
        resp = await client.post("/api/write/todos/create", json=body, headers=ALICE)
        assert resp.status == 400
        assert (await resp.json())["error_code"] == "INVALID_ARGUMENT"

    @pytest.mark.asyncio
    async def test_invalid_json(self, client):
        resp = await client.post(
            "/api/write/todos/create",
            data="{not json",
            headers={**ALICE, "Content-Type": "application/json"},
        )
        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_batch_to_single_item_action(self, client):
        resp = await write(client, "update", [{"id": "A"}, {"id": "B"}], "r1")
        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_rejection_recorded_in_personal_feed(self, client):
        await write(client, "update", [{"id": "missing", "done": True}], "r1")

        mine = await (await client.get("/api/sync/todos", headers=ALICE)).json()
        theirs = await (await client.get("/api/sync/todos", headers=BOB)).json()

        assert len(mine["entries"]) == 1
        assert mine["entries"][0]["rejected"] is True
        assert mine["entries"][0]["rejected_reason"].startswith("conflict:")
        assert mine["entries"][0]["request_id"] == "r1"
        assert theirs["entries"] == []
