from __future__ import annotations

import copy
import json
import sys
from collections import defaultdict
from pathlib import Path
from typing import Any, Callable, Optional, Union

import httpx
import pytest


def _ensure_backend_on_path() -> None:
    here = Path(__file__).resolve()
    backend_dir = here.parent.parent
    root = backend_dir.parent
    if str(root) not in sys.path:
        sys.path.insert(0, str(root))


_ensure_backend_on_path()

from backend.whatsapp.config import ReconcilerPolicy, WhatsAppSettings  # noqa: E402
from backend.whatsapp.container import WhatsAppContainer  # noqa: E402
from backend.whatsapp.domain import parse_timestamp  # noqa: E402

QR_DATA_URI = "data:image/png;base64," + "iVBORw0KGgo" * 12


# ==================== FAKE SUPABASE ====================

class FakeResult:
    def __init__(self, data: list[dict[str, Any]], count: Optional[int] = None):
        self.data = data
        self.count = count


class FakeQuery:
    """Just enough of the postgrest builder: select / insert / update / delete with eq, lt, order, limit."""

    def __init__(self, db: "FakeSupabase", table: str):
        self._db = db
        self._table = table
        self._op = "select"
        self._payload: Any = None
        self._filters: list[tuple[str, str, Any]] = []
        self._order: Optional[tuple[str, bool]] = None
        self._limit: Optional[int] = None
        self._count = False

    def select(self, _columns: str = "*", count: Optional[str] = None) -> "FakeQuery":
        self._op = "select"
        self._count = count == "exact"
        return self

    def insert(self, payload: Union[dict[str, Any], list[dict[str, Any]]]) -> "FakeQuery":
        self._op = "insert"
        self._payload = payload
        return self

    def update(self, fields: dict[str, Any]) -> "FakeQuery":
        self._op = "update"
        self._payload = fields
        return self

    def delete(self) -> "FakeQuery":
        self._op = "delete"
        return self

    def eq(self, column: str, value: Any) -> "FakeQuery":
        self._filters.append(("eq", column, value))
        return self

    def lt(self, column: str, value: Any) -> "FakeQuery":
        self._filters.append(("lt", column, value))
        return self

    def order(self, column: str, desc: bool = False) -> "FakeQuery":
        self._order = (column, desc)
        return self

    def limit(self, n: int) -> "FakeQuery":
        self._limit = n
        return self

    def _matches(self, row: dict[str, Any]) -> bool:
        for op, column, value in self._filters:
            current = row.get(column)
            if op == "eq" and current != value:
                return False
            if op == "lt":
                left, right = parse_timestamp(current), parse_timestamp(value)
                if left is None or right is None or not left < right:
                    return False
        return True

    def execute(self) -> FakeResult:
        self._db.calls.append((self._table, self._op))
        failure = self._db.failures.get((self._table, self._op))
        if failure is not None:
            raise failure

        rows = self._db.tables[self._table]
        if self._op == "insert":
            items = self._payload if isinstance(self._payload, list) else [self._payload]
            inserted = []
            for item in items:
                self._db.check_unique(self._table, item)
                row = copy.deepcopy(item)
                rows.append(row)
                inserted.append(copy.deepcopy(row))
            return FakeResult(inserted)

        matched = [r for r in rows if self._matches(r)]
        if self._op == "update":
            for row in matched:
                row.update(copy.deepcopy(self._payload))
            return FakeResult([copy.deepcopy(r) for r in matched])
        if self._op == "delete":
            self._db.tables[self._table] = [r for r in rows if not self._matches(r)]
            return FakeResult([copy.deepcopy(r) for r in matched])

        if self._order is not None:
            column, desc = self._order
            matched = sorted(matched, key=lambda r: str(r.get(column) or ""), reverse=desc)
        total = len(matched)
        if self._limit is not None:
            matched = matched[: self._limit]
        return FakeResult([copy.deepcopy(r) for r in matched], count=total if self._count else None)


class FakeSupabase:
    UNIQUE = {
        "connections": [("instance_name",)],
        "messages": [("workspace_id", "external_id")],
        "channels": [("instance",)],
    }

    def __init__(self):
        self.tables: dict[str, list[dict[str, Any]]] = defaultdict(list)
        self.failures: dict[tuple[str, str], Exception] = {}
        self.calls: list[tuple[str, str]] = []

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def check_unique(self, table: str, item: dict[str, Any]) -> None:
        for columns in self.UNIQUE.get(table, []):
            key = tuple(item.get(c) for c in columns)
            if any(v is None for v in key):
                continue
            for row in self.tables[table]:
                if tuple(row.get(c) for c in columns) == key:
                    raise Exception(f'duplicate key value violates unique constraint "{table}_key" (23505)')

    def seed(self, table: str, **row: Any) -> dict[str, Any]:
        self.tables[table].append(row)
        return row

    def rows(self, table: str, **where: Any) -> list[dict[str, Any]]:
        return [r for r in self.tables[table] if all(r.get(k) == v for k, v in where.items())]

    def one(self, table: str, **where: Any) -> dict[str, Any]:
        found = self.rows(table, **where)
        assert len(found) == 1, f"expected one {table} row for {where}, got {len(found)}"
        return found[0]


# ==================== FAKE REMOTES ====================

Handler = Callable[[httpx.Request], httpx.Response]


class FakeRemote:
    """Routes ``(method, path)`` to canned responses through ``httpx.MockTransport``. Unknown routes are 404."""

    def __init__(self):
        self.routes: dict[tuple[str, str], Union[Handler, list[Handler]]] = {}
        self.requests: list[httpx.Request] = []

    def on(self, method: str, path: str, status: int = 200, json_body: Any = None) -> None:
        def handler(_request: httpx.Request) -> httpx.Response:
            return httpx.Response(status, json=json_body if json_body is not None else {})

        self.routes[(method.upper(), path)] = handler

    def on_call(self, method: str, path: str, handler: Handler) -> None:
        self.routes[(method.upper(), path)] = handler

    def on_sequence(self, method: str, path: str, responses: list[tuple[int, Any]]) -> None:
        handlers = [
            (lambda _r, s=s, b=b: httpx.Response(s, json=b if b is not None else {}))
            for s, b in responses
        ]
        self.routes[(method.upper(), path)] = handlers

    def fail(self, method: str, path: str) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        self.routes[(method.upper(), path)] = handler

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"error": "Not Found"})
        if isinstance(route, list):
            handler = route.pop(0) if len(route) > 1 else route[0]
            return handler(request)
        return route(request)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method.upper() and r.url.path == path]

    def json_of(self, request: httpx.Request) -> Any:
        return json.loads(request.content or b"{}")


# ==================== FIXTURES ====================

@pytest.fixture
def db() -> FakeSupabase:
    return FakeSupabase()


@pytest.fixture
def evolution_remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def automation_remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def settings() -> WhatsAppSettings:
    return WhatsAppSettings(
        evolution_base_url="http://evolution.test",
        evolution_api_key="evo-key",
        public_base_url="https://crm.test",
        default_connection_limit=1,
        reconciler=ReconcilerPolicy(poll_interval_s=0.02, qr_fallback_timeout_s=0.05, qr_fallback_interval_s=0.02),
    )


@pytest.fixture
def container(db: FakeSupabase, settings: WhatsAppSettings, evolution_remote: FakeRemote, automation_remote: FakeRemote) -> WhatsAppContainer:
    return WhatsAppContainer.build(
        client=db,
        settings=settings,
        evolution_transport=evolution_remote.transport,
        automation_transport=automation_remote.transport,
    )


@pytest.fixture
def qr_code() -> str:
    return QR_DATA_URI


@pytest.fixture
def seed_connection(db: FakeSupabase) -> Callable[..., dict[str, Any]]:
    """Insert a connection row (and its channel when ``secret`` is given) straight into the fake tables."""

    def _seed(
        instance_name: str = "loja1",
        *,
        workspace_id: str = "ws-1",
        status: str = "qr",
        updated_at: str = "2026-01-01T00:00:00+00:00",
        secret: Optional[str] = None,
        **extra: Any,
    ) -> dict[str, Any]:
        row = {
            "id": f"conn-{instance_name}",
            "workspace_id": workspace_id,
            "instance_name": instance_name,
            "status": status,
            "history_recovery": "none",
            "qr_code": None,
            "phone_number": None,
            "created_at": updated_at,
            "updated_at": updated_at,
            "last_activity_at": None,
            "metadata": {},
        }
        row.update(extra)
        db.seed("connections", **row)
        if secret:
            db.seed(
                "channels",
                id=f"chan-{instance_name}",
                workspace_id=workspace_id,
                name=instance_name,
                instance=instance_name,
                status="disconnected",
                webhook_secret=secret,
                previous_webhook_secret=None,
                previous_secret_expires_at=None,
            )
        return row

    return _seed
