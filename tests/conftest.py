"""Shared pytest configuration and fixtures.

Tests run without a PostgreSQL server. FakeConnection implements the part of
the asyncpg connection API the store uses (prepare, prepared statement
fetch/fetchval, parameter/attribute introspection, termination listeners)
and interprets the store's statements against plain Python lists.
"""

import os

# Keep the developer's environment out of the tests
for _var in [v for v in os.environ if v.startswith("GRAFT_")]:
    os.environ.pop(_var)


import asyncio
from collections import namedtuple
from dataclasses import dataclass, field
from typing import Any

import asyncpg
import pytest
import pytest_asyncio

from graft.metrics import metrics
from graft.options import StoreOptions
from graft.store import ENUM_INTROSPECTION_SQL, PING_SQL, STATEMENT_SQL, Store

FakeType = namedtuple("FakeType", ["oid", "name", "kind", "schema"])
FakeAttribute = namedtuple("FakeAttribute", ["name", "type"])

TYPE_OIDS = {"int8": 20, "int4": 23, "text": 25, "timestamptz": 1184, "actors_available": 16390}


def fake_type(name: str) -> FakeType:
    return FakeType(TYPE_OIDS.get(name, 99999), name, "scalar", "pg_catalog")


@dataclass
class FakeDatabase:
    """In-memory tables plus knobs for failure injection."""

    enum_name: str = "actors_available"
    enum_labels: tuple[str, ...] = ("member", "organization")
    enum_typtype: str = "e"
    message_columns: dict[str, str] = field(
        default_factory=lambda: {"id": "int8", "content": "text", "ctime": "int8", "mtime": "int8"}
    )

    actors: list[tuple[str, str]] = field(default_factory=list)
    messages: list[dict[str, Any]] = field(default_factory=list)
    sent: list[tuple[str, int]] = field(default_factory=list)
    received: list[tuple[str, int]] = field(default_factory=list)

    prepared: list[str] = field(default_factory=list)
    calls: list[tuple[str, tuple]] = field(default_factory=list)
    fail_on: dict[str, BaseException] = field(default_factory=dict)
    fail_prepare: str | None = None
    connection: "FakeConnection | None" = None
    dsn: str | None = None
    connect_kwargs: dict[str, Any] = field(default_factory=dict)

    in_flight: int = 0
    max_in_flight: int = 0

    def calls_to(self, name: str) -> list[tuple]:
        return [args for statement, args in self.calls if statement == name]

    # --- Statement semantics ---

    def _mailbox(self, links: list[tuple[str, int]], actor: str) -> list[dict[str, Any]]:
        ids = {message for linked, message in links if linked == actor}
        rows = [m for m in self.messages if m["id"] in ids]
        return sorted(rows, key=lambda m: (m["ctime"], m["id"]))

    def _link(self, links: list[tuple[str, int]], message: int, actor: str | None, table: str):
        if actor is None:
            raise asyncpg.exceptions.NotNullViolationError(
                f'null value in column "actor" of relation "{table}" violates not-null constraint'
            )
        if not any(m["id"] == message for m in self.messages):
            raise asyncpg.exceptions.ForeignKeyViolationError(
                f'insert or update on table "{table}" violates foreign key constraint'
            )
        links.append((actor, message))
        return []

    def run(self, name: str, args: tuple) -> tuple[list[dict[str, Any]], str]:
        """Apply a statement; returns (rows, status message)."""
        if name == "get_inbox":
            return self._mailbox(self.received, args[0]), "SELECT"
        if name == "get_outbox":
            return self._mailbox(self.sent, args[0]), "SELECT"
        if name == "create_message":
            content, ctime = args
            message_id = len(self.messages) + 1
            self.messages.append({"id": message_id, "content": content, "ctime": ctime, "mtime": ctime})
            return [{"id": message_id}], "INSERT 0 1"
        if name == "add_sender":
            return self._link(self.sent, args[0], args[1], "messages_sent"), "INSERT 0 1"
        if name == "add_recipient":
            return self._link(self.received, args[0], args[1], "messages_recieved"), "INSERT 0 1"
        if name == "create_actor":
            label, actor_id = args
            if label not in self.enum_labels:
                raise asyncpg.exceptions.InvalidTextRepresentationError(
                    f'invalid input value for enum {self.enum_name}: "{label}"'
                )
            if (label, actor_id) in self.actors:
                raise asyncpg.exceptions.UniqueViolationError(
                    'duplicate key value violates unique constraint "actors_pkey"'
                )
            self.actors.append((label, actor_id))
            return [], "INSERT 0 1"
        if name == "delete_actor":
            before = len(self.actors)
            self.actors = [a for a in self.actors if a != tuple(args)]
            return [], f"DELETE {before - len(self.actors)}"
        if name == "ping":
            return [{"?column?": 1}], "SELECT 1"
        raise AssertionError(f"Unexpected statement {name}")

    async def execute(self, name: str, args: tuple) -> tuple[list[dict[str, Any]], str]:
        """Run a statement, yielding to the loop so unserialized callers would overlap."""
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            self.calls.append((name, args))
            if name in self.fail_on:
                raise self.fail_on[name]
            return self.run(name, args)
        finally:
            self.in_flight -= 1


_STATEMENT_NAMES = {sql: name for name, sql in STATEMENT_SQL.items()}


class FakeStatement:
    def __init__(self, database: FakeDatabase, name: str):
        self._database = database
        self._name = name
        self._status: str | None = None

    def get_parameters(self) -> tuple[FakeType, ...]:
        if self._name in ("create_actor", "delete_actor"):
            return (fake_type(self._database.enum_name), fake_type("text"))
        if self._name == "create_message":
            return (fake_type("text"), fake_type("int8"))
        if self._name in ("add_sender", "add_recipient"):
            return (fake_type("int8"), fake_type("text"))
        return (fake_type("text"),)

    def get_attributes(self) -> tuple[FakeAttribute, ...]:
        if self._name in ("get_inbox", "get_outbox"):
            return tuple(
                FakeAttribute(name, fake_type(type_name))
                for name, type_name in self._database.message_columns.items()
            )
        if self._name == "create_message":
            return (FakeAttribute("id", fake_type("int8")),)
        return ()

    def get_statusmsg(self) -> str | None:
        return self._status

    async def fetch(self, *args):
        rows, self._status = await self._database.execute(self._name, args)
        return rows

    async def fetchval(self, *args):
        rows = await self.fetch(*args)
        return next(iter(rows[0].values())) if rows else None


class FakeConnection:
    def __init__(self, database: FakeDatabase):
        self._database = database
        self._listeners: list = []
        self.closed = False
        self.executed: list[str] = []

    async def prepare(self, sql: str) -> FakeStatement:
        name = _STATEMENT_NAMES[sql]
        if name == self._database.fail_prepare:
            raise asyncpg.exceptions.UndefinedTableError('relation "messages" does not exist')
        self._database.prepared.append(name)
        return FakeStatement(self._database, name)

    async def fetch(self, sql: str, *args):
        assert sql == ENUM_INTROSPECTION_SQL
        assert args[0] == TYPE_OIDS.get(self._database.enum_name, 99999)
        if self._database.enum_typtype != "e":
            return [{"typtype": self._database.enum_typtype, "enumlabel": None}]
        return [{"typtype": "e", "enumlabel": label} for label in self._database.enum_labels]

    async def fetchval(self, sql: str, *args):
        assert sql == PING_SQL
        rows, _ = await self._database.execute("ping", args)
        return next(iter(rows[0].values()))

    async def execute(self, sql: str, *args):
        self.executed.append(sql)
        return "CREATE TABLE"

    def add_termination_listener(self, callback) -> None:
        self._listeners.append(callback)

    def remove_termination_listener(self, callback) -> None:
        self._listeners.remove(callback)

    def terminate(self) -> None:
        """Simulate the server dropping the connection."""
        for callback in list(self._listeners):
            callback(self)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def database():
    return FakeDatabase()


@pytest.fixture
def connector(database):
    """Drop-in replacement for asyncpg.connect backed by `database`."""

    async def connect(dsn, **kwargs):
        database.dsn = dsn
        database.connect_kwargs = kwargs
        database.connection = FakeConnection(database)
        return database.connection

    return connect


@pytest.fixture
def options():
    return StoreOptions(user="graft", keepalive_interval=0)


@pytest.fixture
def fatal_faults():
    """Collects faults handed to the store's fatal handler."""
    return []


@pytest_asyncio.fixture
async def store(options, connector, fatal_faults):
    store = await Store.connect(options, connector=connector, on_fatal=fatal_faults.append)
    yield store
    await store.close()
