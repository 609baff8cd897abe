from __future__ import annotations

import copy
import inspect
import itertools
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest

from tezeus_crm.whatsapp.config import PipelineConfig
from tezeus_crm.whatsapp.container import PipelineContainer


@pytest.fixture
def anyio_backend():
    return "asyncio"


# ==================== IN-MEMORY SUPABASE ====================

_EPOCH = datetime(2025, 1, 1, tzinfo=timezone.utc)


class _Result:
    def __init__(self, data=None, count=None):
        self.data = data
        self.count = count


def _field(row: dict, column: str) -> Any:
    if "->>" in column:
        base, key = column.split("->>", 1)
        container = row.get(base)
        value = container.get(key) if isinstance(container, dict) else None
        return None if value is None else str(value)
    return row.get(column)


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _split_top_level(expr: str) -> list[str]:
    parts, depth, quoted, buf = [], 0, False, []
    for ch in expr:
        if ch == '"':
            quoted = not quoted
        elif not quoted and ch == "(":
            depth += 1
        elif not quoted and ch == ")":
            depth -= 1
        if ch == "," and depth == 0 and not quoted:
            parts.append("".join(buf))
            buf = []
            continue
        buf.append(ch)
    if buf:
        parts.append("".join(buf))
    return parts


def _compile_or(expr: str):
    terms = []
    for part in _split_top_level(expr):
        part = part.strip()
        if part.startswith("and(") and part.endswith(")"):
            inner = [_compile_or(p) for p in _split_top_level(part[4:-1])]
            terms.append(lambda row, inner=inner: all(t(row) for t in inner))
            continue
        column, op, value = part.split(".", 2)
        value = value[1:-1] if value.startswith('"') and value.endswith('"') else value
        terms.append(lambda row, c=column, o=op, v=value: _OPS[o](_text(_field(row, c)), v))
    return lambda row: any(t(row) for t in terms)


_OPS = {
    "eq": lambda a, b: a is not None and a == _text(b),
    "neq": lambda a, b: a != _text(b),
    "lt": lambda a, b: a is not None and a < _text(b),
    "gt": lambda a, b: a is not None and a > _text(b),
}


class _Query:
    def __init__(self, db: "InMemorySupabase", table: str):
        self._db = db
        self._table = table
        self._filters = []
        self._orders = []
        self._limit: Optional[int] = None
        self._insert = None
        self._update = None

    def select(self, *args, **kwargs):
        return self

    def _where(self, column, op, value):
        self._filters.append(lambda row: _OPS[op](_text(_field(row, column)), value))
        return self

    def eq(self, column, value):
        return self._where(column, "eq", value)

    def neq(self, column, value):
        return self._where(column, "neq", value)

    def lt(self, column, value):
        return self._where(column, "lt", value)

    def gt(self, column, value):
        return self._where(column, "gt", value)

    def in_(self, column, values):
        allowed = {_text(v) for v in values}
        self._filters.append(lambda row: _text(_field(row, column)) in allowed)
        return self

    def or_(self, expr):
        self._filters.append(_compile_or(expr))
        return self

    def order(self, column, desc=False):
        self._orders.append((column, desc))
        return self

    def limit(self, n):
        self._limit = n
        return self

    def insert(self, data):
        self._insert = data
        return self

    def update(self, data):
        self._update = data
        return self

    def _matching(self) -> list[dict]:
        return [row for row in self._db.tables.setdefault(self._table, []) if all(f(row) for f in self._filters)]

    def execute(self):
        self._db.calls.append((self._table, "insert" if self._insert is not None else "update" if self._update is not None else "select"))
        failure = self._db.failures.get(self._table)
        if failure is not None:
            raise failure
        if self._insert is not None:
            rows = self._insert if isinstance(self._insert, list) else [self._insert]
            return _Result([self._db.insert_row(self._table, r) for r in rows])
        if self._update is not None:
            updated = []
            for row in self._matching():
                row.update(copy.deepcopy(self._update))
                updated.append(copy.deepcopy(row))
            return _Result(updated)

        rows = self._matching()
        for column, desc in reversed(self._orders):
            rows.sort(key=lambda r, c=column: (_field(r, c) is None, _field(r, c) if _field(r, c) is not None else ""), reverse=desc)
        if self._limit is not None:
            rows = rows[: self._limit]
        return _Result([copy.deepcopy(r) for r in rows])


class _RpcCall:
    def __init__(self, db: "InMemorySupabase", name: str, params: dict):
        self._db = db
        self._name = name
        self._params = params

    def execute(self):
        self._db.rpc_calls.append((self._name, self._params))
        return _Result(None)


class InMemorySupabase:
    """
    Enough of the supabase-py query builder for the pipeline's queries.

    ``unique`` declares per-table column tuples that reject duplicate inserts
    with a Postgres 23505 error, like the messages table's unique indexes.
    """

    def __init__(self, unique: Optional[dict[str, list[tuple[str, ...]]]] = None):
        self.tables: dict[str, list[dict]] = {}
        self.unique = unique or {}
        self.failures: dict[str, Exception] = {}
        self.calls: list[tuple[str, str]] = []
        self.rpc_calls: list[tuple[str, dict]] = []
        self.storage = FakeStorageApi()
        self._clock = itertools.count(1)

    def table(self, name):
        return _Query(self, name)

    def rpc(self, name, params=None):
        return _RpcCall(self, name, params or {})

    def seed(self, table: str, *rows: dict) -> list[dict]:
        return [self.insert_row(table, r) for r in rows]

    def rows(self, table: str) -> list[dict]:
        return self.tables.get(table, [])

    def insert_row(self, table: str, row: dict) -> dict:
        row = copy.deepcopy(row)
        row.setdefault("id", str(uuid.uuid4()))
        row.setdefault("created_at", (_EPOCH + timedelta(seconds=next(self._clock))).isoformat())
        existing = self.tables.setdefault(table, [])
        for columns in self.unique.get(table, []):
            key = tuple(_field(row, c) for c in columns)
            if any(k is None for k in key):
                continue
            if any(tuple(_field(r, c) for c in columns) == key for r in existing):
                raise Exception(f'duplicate key value violates unique constraint "uq_{table}" (23505)')
        existing.append(row)
        return copy.deepcopy(row)


MESSAGE_UNIQUE = {
    "messages": [
        ("conversation_id", "external_id"),
        ("conversation_id", "metadata->>client_message_id"),
    ]
}


@pytest.fixture
def db() -> InMemorySupabase:
    return InMemorySupabase(unique=MESSAGE_UNIQUE)


# ==================== PIPELINE FIXTURES ====================

WORKSPACE_ID = "11111111-1111-1111-1111-111111111111"
RELAY_URL = "https://relay.example.com/webhook/send"


def seed_workspace(db: InMemorySupabase, *, provider: Optional[dict] = None, relay_url: Optional[str] = RELAY_URL) -> dict:
    """Contact + connection + conversation for ``WORKSPACE_ID``."""
    (contact,) = db.seed("contacts", {"workspace_id": WORKSPACE_ID, "name": "Maria", "phone": "5511999990000"})
    connection_row = {
        "workspace_id": WORKSPACE_ID,
        "instance_name": "ws-main",
        "status": "connected",
        "metadata": {},
        "provider": provider,
    }
    (connection,) = db.seed("connections", connection_row)
    (conversation,) = db.seed(
        "conversations",
        {
            "workspace_id": WORKSPACE_ID,
            "contact_id": contact["id"],
            "connection_id": connection["id"],
            "status": "open",
        },
    )
    if relay_url:
        db.seed("workspace_webhook_settings", {"workspace_id": WORKSPACE_ID, "webhook_url": relay_url})
    return {"contact": contact, "connection": connection, "conversation": conversation}


EVOLUTION_PROVIDER = {
    "provider": "evolution",
    "evolution_url": "https://evo.example.com",
    "evolution_token": "evo-token",
}

ZAPI_PROVIDER = {
    "provider": "zapi",
    "zapi_url": "https://api.z-api.io",
    "zapi_token": "zapi-token",
    "zapi_client_token": "client-token",
}


class FakeRelay:
    """Records envelopes; answers with ``response`` or raises ``error``."""

    def __init__(self, response: Any = None, error: Optional[Exception] = None):
        self.response = response if response is not None else {}
        self.error = error
        self.calls: list[tuple[str, dict]] = []
        self.before_response = None

    async def post(self, url: str, payload: dict) -> Any:
        self.calls.append((url, payload))
        if self.before_response is not None:
            pending = self.before_response()
            if inspect.isawaitable(pending):
                await pending
        if self.error is not None:
            raise self.error
        return self.response


class FakeTranscoder:
    def __init__(self, output: bytes = b"ID3mp3-bytes", error: Optional[Exception] = None):
        self.output = output
        self.error = error
        self.calls: list[str] = []

    async def to_mp3(self, content: bytes, *, source_mime: str) -> bytes:
        self.calls.append(source_mime)
        if self.error is not None:
            raise self.error
        return self.output


class _Bucket:
    def __init__(self, storage: "FakeStorageApi", name: str):
        self._storage = storage
        self._name = name

    def upload(self, path, file, file_options=None):
        self._storage.uploads.append((self._name, path, file, dict(file_options or {})))
        return {"Key": f"{self._name}/{path}"}

    def get_public_url(self, path):
        return f"https://storage.example.com/{self._name}/{path}"


class FakeStorageApi:
    def __init__(self):
        self.uploads: list[tuple[str, str, bytes, dict]] = []

    def from_(self, name):
        return _Bucket(self, name)


@pytest.fixture
def relay() -> FakeRelay:
    return FakeRelay()


@pytest.fixture
def transcoder() -> FakeTranscoder:
    return FakeTranscoder()


@pytest.fixture
def container(db, relay, transcoder):
    return PipelineContainer.build(client=db, config=PipelineConfig(), relay=relay, transcoder=transcoder)
