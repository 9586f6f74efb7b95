"""
Shared fixtures: in-memory stand-ins for the Supabase AsyncClient.

``FakeSupabase`` implements the slice of the PostgREST builder, GoTrue
auth and Realtime channel APIs the data layer uses.
"""

from __future__ import annotations

import io
import itertools
import time
import uuid
from types import SimpleNamespace
from typing import Any, Optional

import pytest
from pydantic import SecretStr

from expenditure.auth import SessionManager
from expenditure.client import ClientHandle
from expenditure.config import ConnectionConfig, reset_config
from expenditure.logger import StructuredLogger
from expenditure.models.auth_models import SessionInfo
from expenditure.models.user import SessionUser

# Embedded relation -> foreign key column on the parent row.
_RELATION_KEYS: dict[str, str] = {
    "expense_categories": "category_id",
    "users": "user_id",
    "organizations": "organization_id",
}

_ids = itertools.count(1)


# ---------------------------------------------------------------------------
# PostgREST
# ---------------------------------------------------------------------------

class FakeQuery:
    def __init__(self, db: "FakeSupabase", table: str) -> None:
        self._db = db
        self._table = table
        self._op = "select"
        self._columns = "*"
        self._payload: Any = None
        self._filters: list[tuple[str, Any]] = []
        self._orders: list[tuple[str, bool]] = []
        self._limit: Optional[int] = None

    def select(self, columns: str = "*") -> "FakeQuery":
        self._op, self._columns = "select", columns
        return self

    def insert(self, payload: Any) -> "FakeQuery":
        self._op, self._payload = "insert", payload
        return self

    def update(self, payload: dict[str, Any]) -> "FakeQuery":
        self._op, self._payload = "update", payload
        return self

    def delete(self) -> "FakeQuery":
        self._op = "delete"
        return self

    def eq(self, column: str, value: Any) -> "FakeQuery":
        self._filters.append((column, value))
        return self

    def order(self, column: str, *, desc: bool = False) -> "FakeQuery":
        self._orders.append((column, desc))
        return self

    def limit(self, count: int) -> "FakeQuery":
        self._limit = count
        return self

    def _matches(self, row: dict[str, Any]) -> bool:
        return all(row.get(col) == value for col, value in self._filters)

    async def execute(self) -> SimpleNamespace:
        self._db.calls.append(
            {
                "table": self._table,
                "op": self._op,
                "columns": self._columns,
                "payload": self._payload,
                "filters": list(self._filters),
                "orders": list(self._orders),
            }
        )
        if self._db.errors:
            raise self._db.errors.pop(0)

        rows = self._db.tables.setdefault(self._table, [])
        if self._op == "insert":
            created = []
            for item in (self._payload if isinstance(self._payload, list) else [self._payload]):
                row = dict(item)
                row.setdefault("id", f"{self._table[:3]}-{next(_ids)}")
                if self._table == "expenses":
                    row.setdefault("status", "pending")
                rows.append(row)
                created.append(dict(row))
            return SimpleNamespace(data=created)

        if self._op == "update":
            updated = []
            for row in rows:
                if self._matches(row):
                    row.update(self._payload)
                    updated.append(dict(row))
            return SimpleNamespace(data=updated)

        if self._op == "delete":
            removed = [row for row in rows if self._matches(row)]
            self._db.tables[self._table] = [row for row in rows if not self._matches(row)]
            return SimpleNamespace(data=[dict(row) for row in removed])

        selected = [dict(row) for row in rows if self._matches(row)]
        for column, desc in reversed(self._orders):
            selected.sort(key=lambda r: r.get(column), reverse=desc)
        if self._limit is not None:
            selected = selected[: self._limit]
        for relation, fk in _RELATION_KEYS.items():
            if f"{relation}(*)" in self._columns:
                for row in selected:
                    target = next(
                        (r for r in self._db.tables.get(relation, []) if r["id"] == row.get(fk)),
                        None,
                    )
                    row[relation] = dict(target) if target else None
        return SimpleNamespace(data=selected)


# ---------------------------------------------------------------------------
# Realtime
# ---------------------------------------------------------------------------

class FakeChannel:
    def __init__(self, name: str, db: "FakeSupabase") -> None:
        self.name = name
        self._db = db
        self.params: dict[str, Any] = {}
        self.change_callbacks: list[Any] = []
        self.status_callback: Any = None
        self.removed = False

    def on_postgres_changes(
        self, event: str, callback: Any, table: str = "*", schema: str = "public",
        filter: Optional[str] = None,
    ) -> "FakeChannel":
        self.params = {"event": event, "table": table, "schema": schema}
        self.change_callbacks.append(callback)
        return self

    async def subscribe(self, callback: Any = None) -> "FakeChannel":
        self.status_callback = callback
        if self._db.subscribe_errors:
            raise self._db.subscribe_errors.pop(0)
        status = self._db.subscribe_statuses.pop(0) if self._db.subscribe_statuses else "SUBSCRIBED"
        if callback is not None and status is not None:
            callback(status, None)
        return self

    def emit(self, payload: dict[str, Any]) -> None:
        for callback in self.change_callbacks:
            callback(payload)

    def report(self, status: str, error: Optional[Exception] = None) -> None:
        self.status_callback(status, error)


def change_payload(
    kind: str, record: Optional[dict[str, Any]] = None,
    old: Optional[dict[str, Any]] = None, table: str = "expenses",
) -> dict[str, Any]:
    """Build a realtime ``postgres_changes`` payload in realtime-py shape."""
    return {
        "data": {
            "schema": "public",
            "table": table,
            "type": kind,
            "record": record or {},
            "old_record": old or {},
            "commit_timestamp": "2026-03-01T10:00:00+00:00",
            "columns": [],
            "errors": None,
        },
        "ids": [1],
    }


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

class FakeAuthError(Exception):
    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code


class FakeAuth:
    def __init__(self) -> None:
        self.accounts: dict[str, tuple[str, SimpleNamespace]] = {}
        self.current: Optional[SimpleNamespace] = None
        self.errors: list[Exception] = []

    def _raise_pending(self) -> None:
        if self.errors:
            raise self.errors.pop(0)

    def _session_for(self, user: SimpleNamespace) -> SimpleNamespace:
        return SimpleNamespace(
            access_token=f"access-{user.id}",
            refresh_token=f"refresh-{user.id}",
            expires_at=int(time.time()) + 3600,
            user=user,
        )

    async def sign_up(self, credentials: dict[str, Any]) -> SimpleNamespace:
        self._raise_pending()
        email = credentials["email"]
        if email in self.accounts:
            raise FakeAuthError("User already registered", code="user_already_exists")
        user = SimpleNamespace(
            id=str(uuid.uuid4()),
            email=email,
            user_metadata=credentials.get("options", {}).get("data", {}),
            last_sign_in_at=None,
        )
        self.accounts[email] = (credentials["password"], user)
        self.current = self._session_for(user)
        return SimpleNamespace(user=user, session=self.current)

    async def sign_in_with_password(self, credentials: dict[str, Any]) -> SimpleNamespace:
        self._raise_pending()
        account = self.accounts.get(credentials["email"])
        if account is None or account[0] != credentials["password"]:
            raise FakeAuthError("Invalid login credentials", code="invalid_credentials")
        self.current = self._session_for(account[1])
        return SimpleNamespace(user=account[1], session=self.current)

    async def sign_out(self) -> None:
        self._raise_pending()
        self.current = None

    async def get_session(self) -> Optional[SimpleNamespace]:
        self._raise_pending()
        return self.current

    async def get_user(self) -> Optional[SimpleNamespace]:
        self._raise_pending()
        if self.current is None:
            return None
        return SimpleNamespace(user=self.current.user)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class FakeSupabase:
    def __init__(self) -> None:
        self.tables: dict[str, list[dict[str, Any]]] = {}
        self.calls: list[dict[str, Any]] = []
        self.errors: list[Exception] = []
        self.channels: list[FakeChannel] = []
        self.subscribe_statuses: list[Optional[str]] = []
        self.subscribe_errors: list[Exception] = []
        self.auth = FakeAuth()

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def channel(self, name: str) -> FakeChannel:
        channel = FakeChannel(name, self)
        self.channels.append(channel)
        return channel

    async def remove_channel(self, channel: FakeChannel) -> None:
        channel.removed = True

    async def remove_all_channels(self) -> None:
        for channel in self.channels:
            channel.removed = True

    @property
    def live_channels(self) -> list[FakeChannel]:
        return [channel for channel in self.channels if not channel.removed]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def isolated_config(monkeypatch: pytest.MonkeyPatch):
    """Point the cached settings at a known environment with no log file."""
    monkeypatch.setenv("SUPABASE_URL", "https://project.supabase.co")
    monkeypatch.setenv("SUPABASE_ANON_KEY", "anon-key")
    monkeypatch.setenv("LOG_FILE", "")
    reset_config()
    yield
    reset_config()


@pytest.fixture
def log_stream() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def logger(log_stream: io.StringIO) -> StructuredLogger:
    return StructuredLogger(
        name=f"test.{uuid.uuid4().hex}", stream=log_stream, log_file="",
    )


@pytest.fixture
def supabase() -> FakeSupabase:
    fake = FakeSupabase()
    fake.tables = {
        "organizations": [{"id": "o1", "name": "Sri Venkateswara Enterprises"}],
        "expense_categories": [
            {"id": "c1", "name": "Travel", "organization_id": "o1"},
            {"id": "c2", "name": "Supplies", "organization_id": "o1"},
        ],
        "users": [
            {"id": "u1", "email": "ravi@example.com", "full_name": "Ravi", "organization_id": "o1"},
        ],
        "expenses": [
            {
                "id": "e1", "amount": "120.50", "category_id": "c1",
                "description": "Train tickets", "expense_date": "2026-02-10",
                "organization_id": "o1", "user_id": "u1", "status": "pending",
            },
            {
                "id": "e2", "amount": "40.00", "category_id": "c2",
                "description": "Printer paper", "expense_date": "2026-02-14",
                "organization_id": "o1", "user_id": "u1", "status": "approved",
            },
            {
                "id": "e3", "amount": "15.00", "category_id": "c2",
                "description": "Pens", "expense_date": "2026-02-10",
                "organization_id": "o1", "user_id": "u1", "status": "rejected",
            },
        ],
    }
    return fake


@pytest.fixture
def client(supabase: FakeSupabase, logger: StructuredLogger) -> ClientHandle:
    config = ConnectionConfig(
        endpoint="https://project.supabase.co",
        credential=SecretStr("anon-key"),
    )
    return ClientHandle(config, supabase, logger)  # type: ignore[arg-type]


@pytest.fixture
def session() -> SessionManager:
    manager = SessionManager()
    manager.set_current_user(
        SessionUser(id="u1", email="ravi@example.com", display_name="Ravi")
    )
    manager.set_session(SessionInfo(access_token="token"))
    return manager


def expense_row(
    record_id: str, expense_date: str, status: str = "pending", amount: str = "10.00",
) -> dict[str, Any]:
    return {
        "id": record_id,
        "amount": amount,
        "category_id": "c1",
        "description": f"expense {record_id}",
        "expense_date": expense_date,
        "organization_id": "o1",
        "user_id": "u1",
        "status": status,
    }
