"""
HTTP server for Chorus Server.

Endpoints:
    GET  /api/health                         health and counters
    GET  /api/schema                         tracked tables, schema version
    GET  /api/sync/{table}?initial=true      snapshot {rows, cursor}
    GET  /api/sync/{table}?after=&limit=&wait=
                                             catch-up / long-poll {entries, cursor}
    GET  /api/actions/{table}                registered actions and capabilities
    POST /api/write/{table}/{action}         {client_request_id, items} -> {results}

Invariants:
    - Every sync and write endpoint requires the X-User-ID header
      (X-Tenant-ID is read for the tenant scope strategy)
    - Per-item rejections are returned with 200 unless every item failed
      validation (422)
    - JSON request/response format

How to change safely:
    - The SDK transport mirrors these routes; change both together
    - Version the API if breaking changes are needed
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from typing import Any

from aiohttp import web
from pydantic import BaseModel, Field, ValidationError

from ..capture.log import CursorExpiredError
from ..capture.tracker import UntrackedTableError
from ..config import HttpConfig
from ..gateway import (
    ActionNotFoundError,
    InvalidRequestError,
    RejectionCode,
    RequestIdConflictError,
)
from ..scope import Identity
from ..services import ChorusServices

logger = logging.getLogger(__name__)


class WriteRequestBody(BaseModel):
    """Body of POST /api/write/{table}/{action}."""

    client_request_id: str = Field(min_length=1)
    items: list[Any] = Field(min_length=1)
    operation: str | None = None


def _error(exc_class: type[web.HTTPException], message: str, code: str, **extra: Any) -> web.HTTPException:
    return exc_class(
        text=json.dumps({"error": message, "error_code": code, **extra}),
        content_type="application/json",
    )


def create_http_app(services: ChorusServices, config: HttpConfig | None = None) -> web.Application:
    """Create the aiohttp application.

    Args:
        services: Started server components
        config: HTTP server configuration

    Returns:
        aiohttp Application instance
    """
    config = config or services.config.http
    app = web.Application()

    app.router.add_get("/api/health", lambda r: handle_health(r, services))
    app.router.add_get("/api/schema", lambda r: handle_schema(r, services))
    app.router.add_get("/api/sync/{table}", lambda r: handle_sync(r, services))
    app.router.add_get("/api/actions/{table}", lambda r: handle_actions(r, services))
    app.router.add_post("/api/write/{table}/{action}", lambda r: handle_write(r, services))

    @web.middleware
    async def cors_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        if request.method == "OPTIONS":
            response = web.Response()
        else:
            try:
                response = await handler(request)
            except web.HTTPException as e:
                response = e

        origin = request.headers.get("Origin", "*")
        if "*" in config.cors_origins or origin in config.cors_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type, X-User-ID, X-Tenant-ID"
        return response

    app.middlewares.append(cors_middleware)

    @web.middleware
    async def error_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except (UntrackedTableError, ActionNotFoundError) as e:
            raise _error(web.HTTPNotFound, str(e), "NOT_FOUND")
        except Exception as e:
            logger.error(f"HTTP handler error: {e}", exc_info=True)
            return web.json_response({"error": str(e), "error_code": "INTERNAL"}, status=500)

    app.middlewares.insert(0, error_middleware)

    return app


def extract_identity(request: web.Request) -> Identity:
    """Identity from request headers.

    Raises:
        web.HTTPUnauthorized: If X-User-ID is missing
    """
    user_id = request.headers.get("X-User-ID")
    if not user_id:
        raise _error(web.HTTPUnauthorized, "X-User-ID header is required", "UNAUTHENTICATED")
    return Identity(user_id=user_id, tenant_id=request.headers.get("X-Tenant-ID") or None)


def _query_number(request: web.Request, name: str, cast: Callable[[str], Any]) -> Any:
    raw = request.query.get(name)
    if raw is None or raw == "":
        return None
    try:
        return cast(raw)
    except ValueError:
        raise _error(web.HTTPBadRequest, f"Invalid '{name}' parameter", "INVALID_ARGUMENT")


async def handle_health(request: web.Request, services: ChorusServices) -> web.Response:
    """Handle GET /api/health."""
    result = await services.health()
    status = 200 if result.get("healthy") else 503
    return web.json_response(result, status=status)


async def handle_schema(request: web.Request, services: ChorusServices) -> web.Response:
    """Handle GET /api/schema."""
    return web.json_response(services.schema())


async def handle_sync(request: web.Request, services: ChorusServices) -> web.Response:
    """Handle GET /api/sync/{table} - snapshot or incremental fetch."""
    identity = extract_identity(request)
    table = request.match_info["table"]

    if request.query.get("initial", "").lower() in ("1", "true"):
        snapshot = await services.snapshots.snapshot(table, identity)
        return web.json_response(snapshot.to_dict())

    after = request.query.get("after") or None
    limit = _query_number(request, "limit", int)
    wait = _query_number(request, "wait", float) or 0.0

    try:
        if wait > 0:
            changes = await services.snapshots.wait_for_changes(table, identity, after, wait, limit)
        else:
            changes = await services.snapshots.changes(table, identity, after, limit)
    except CursorExpiredError as e:
        raise _error(web.HTTPGone, str(e), "CURSOR_EXPIRED", pruned_through=e.pruned_through)
    except asyncio.CancelledError:
        logger.debug("Long-poll cancelled by client disconnect", extra={"table": table})
        raise

    return web.json_response(changes.to_dict())


async def handle_actions(request: web.Request, services: ChorusServices) -> web.Response:
    """Handle GET /api/actions/{table}."""
    extract_identity(request)
    table = request.match_info["table"]
    services.capture.entity(table)
    actions = [a.describe() for a in services.registry.for_table(table)]
    return web.json_response({"table": table, "actions": actions})


async def handle_write(request: web.Request, services: ChorusServices) -> web.Response:
    """Handle POST /api/write/{table}/{action}."""
    identity = extract_identity(request)
    table = request.match_info["table"]
    action = request.match_info["action"]

    try:
        body = WriteRequestBody.model_validate(await request.json())
    except json.JSONDecodeError:
        raise _error(web.HTTPBadRequest, "Invalid JSON body", "INVALID_ARGUMENT")
    except ValidationError as e:
        raise _error(
            web.HTTPBadRequest,
            "Invalid write request",
            "INVALID_ARGUMENT",
            details=e.errors(include_url=False, include_context=False),
        )

    try:
        result = await services.gateway.process_action(
            identity,
            table,
            action,
            body.client_request_id,
            body.items,
            operation=body.operation,
        )
    except InvalidRequestError as e:
        raise _error(web.HTTPBadRequest, str(e), "INVALID_ARGUMENT")
    except RequestIdConflictError as e:
        raise _error(web.HTTPConflict, str(e), "REQUEST_ID_CONFLICT")

    all_invalid = result.all_rejected and all(
        r.reason is not None and r.reason.code == RejectionCode.VALIDATION_ERROR
        for r in result.results
    )
    return web.json_response(result.to_dict(), status=422 if all_invalid else 200)


async def run_http_server(services: ChorusServices, config: HttpConfig) -> None:
    """Run the HTTP server until cancelled."""
    app = create_http_app(services, config)

    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, config.host, config.port)
    await site.start()

    logger.info(f"HTTP server running on http://{config.host}:{config.port}")

    try:
        await asyncio.Event().wait()
    except asyncio.CancelledError:
        pass
    finally:
        await runner.cleanup()
