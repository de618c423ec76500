"""
Shared helpers for Chorus tests.

configure_todos() sets up the "todos" table used across the suite:

    create  offline, batch, partial success
    update  offline
    delete  offline
    import  batch, all-or-nothing, online only
"""

from backend.chorus_server.capture import TrackedEntity
from backend.chorus_server.capture.harmonic import Operation
from backend.chorus_server.gateway import (
    CreateRecordAction,
    DeleteRecordAction,
    UpdateRecordAction,
)


def configure_todos(services):
    """Track the todos table and register its actions."""
    services.capture.track(
        TrackedEntity(
            "todos",
            sync_fields=("title", "done", "user_id"),
            indexes=("user_id", "done"),
        )
    )
    services.registry.register(
        "create",
        CreateRecordAction(),
        tables=["todos"],
        operations=[Operation.CREATE],
        batch=True,
        allow_partial=True,
        offline=True,
    )
    services.registry.register(
        "update", UpdateRecordAction(), tables=["todos"], operations=["update"], offline=True
    )
    services.registry.register(
        "delete", DeleteRecordAction(), tables=["todos"], operations=["delete"], offline=True
    )
    services.registry.register(
        "import", CreateRecordAction(), tables=["todos"], operations=["create"], batch=True
    )


class FakeTransport:
    """In-process stand-in for HttpTransport.

    Writes are answered by a handler (table, action, request_id, items,
    operation) -> body that may raise SDK errors. Snapshots and change pages
    are served from lists set by the test; tables in truncated get their
    snapshot flagged as cut short.
    """

    def __init__(self, handler=None):
        self.handler = handler or self.accept_all
        self.submitted = []
        self.snapshots = {}
        self.pages = {}
        self.truncated = set()
        self.fetches = []
        self.actions = {}
        self.schema = {"schema": {}, "schema_version": "1", "database_version": "sha256:0"}
        self.closed = False

    @staticmethod
    def accept_all(table, action, request_id, items, operation):
        return {
            "client_request_id": request_id,
            "results": [
                {"item_id": str(item.get("id")), "status": "success", "data": item}
                for item in items
            ],
            "replayed": False,
        }

    async def submit(self, table, action, client_request_id, items, operation=None):
        self.submitted.append((client_request_id, [dict(i) for i in items]))
        return self.handler(table, action, client_request_id, items, operation)

    async def fetch_schema(self):
        return self.schema

    async def fetch_actions(self, table):
        return self.actions.get(table, [])

    async def fetch_snapshot(self, table):
        self.fetches.append(("snapshot", table, None))
        rows, cursor = self.snapshots.get(table, ([], None))
        return {"table": table, "rows": rows, "cursor": cursor, "truncated": table in self.truncated}

    async def fetch_changes(self, table, after, limit=None, wait=0.0):
        self.fetches.append(("changes", table, after))
        pages = self.pages.get(table)
        if pages:
            page = pages.pop(0)
            if isinstance(page, Exception):
                raise page
            return page
        return {"table": table, "entries": [], "cursor": after, "has_more": False}

    async def close(self):
        self.closed = True


def rejected_body(request_id, items, code="conflict", message="Rejected by rule"):
    """Write response rejecting every item."""
    return {
        "client_request_id": request_id,
        "results": [
            {
                "item_id": str(item.get("id")),
                "status": "rejected",
                "reason": {"code": code, "message": message, "details": {}},
            }
            for item in items
        ],
        "replayed": False,
    }


def configure(services):
    """Application hook loaded by the server entry point (CHORUS_APP=tests.support)."""
    configure_todos(services)
