"""Store - the single shared PostgreSQL connection and its prepared statements.

All reads and writes go through one asyncpg connection. asyncpg connections
cannot run two operations at once, so every statement execution happens
under an asyncio.Lock: callers suspend (never block a thread) until the
current holder releases. Waiters are served in arrival order.

Usage:
    store = await Store.connect(StoreOptions(user="graft"))
    message_id = await store.create_message("hello")
    await store.add_recipient(message_id, "alice")
    inbox = await store.get_inbox("alice")

    # Raw access to the connection and statements
    async with store.acquire() as session:
        rows = await session.statements.get_inbox.fetch("alice")

Failure semantics:
- A failed statement raises StatementFailed. Nothing is retried.
- Failing to connect or to prepare any statement raises FatalProcessFault
  and no Store is returned.
- Losing the connection afterwards is fatal for the process: the
  maintenance task hands a FatalProcessFault to the store's fatal handler,
  which by default terminates the process.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, fields
from typing import Any, AsyncIterator, Awaitable, Callable

import asyncpg

from .codec import ActorKind, EnumType, decode_row, encode_actor_kind
from .errors import FatalProcessFault, InternalFault, StatementFailed
from .metrics import timed_statement
from .options import StoreOptions

logger = logging.getLogger(__name__)

# Errors raised by the driver when a statement cannot be executed
DRIVER_ERRORS: tuple[type[BaseException], ...] = (
    asyncpg.PostgresError,
    asyncpg.InterfaceError,
    OSError,
)

Connector = Callable[..., Awaitable[Any]]
FatalHandler = Callable[[FatalProcessFault], None]


# --- Statements ---

# Prepared in this order at startup
STATEMENT_SQL: dict[str, str] = {
    "get_inbox": (
        "SELECT * FROM messages WHERE id IN "
        "(SELECT message FROM messages_recieved WHERE actor = $1) ORDER BY ctime, id"
    ),
    "get_outbox": (
        "SELECT * FROM messages WHERE id IN "
        "(SELECT message FROM messages_sent WHERE actor = $1) ORDER BY ctime, id"
    ),
    "create_message": (
        "INSERT INTO messages (content, ctime, mtime) VALUES ($1, $2, $2) RETURNING id"
    ),
    "add_sender": "INSERT INTO messages_sent (message, actor) VALUES ($1, $2)",
    "add_recipient": "INSERT INTO messages_recieved (message, actor) VALUES ($1, $2)",
    "create_actor": "INSERT INTO actors (actortype, id) VALUES ($1, $2)",
    "delete_actor": "DELETE FROM actors WHERE actortype = $1 AND id = $2",
}

# Statements whose first parameter is the actor kind enum
ACTOR_KIND_STATEMENTS = ("create_actor", "delete_actor")

ENUM_INTROSPECTION_SQL = """
    SELECT t.typtype, e.enumlabel
    FROM pg_type t
    LEFT JOIN pg_enum e ON e.enumtypid = t.oid
    WHERE t.oid = $1
    ORDER BY e.enumsortorder
"""

PING_SQL = "SELECT 1"

SCHEMA_SQL = """
    DO $$ BEGIN
        CREATE TYPE actors_available AS ENUM ('member', 'organization');
    EXCEPTION
        WHEN duplicate_object THEN NULL;
    END $$;

    CREATE TABLE IF NOT EXISTS actors (
        id TEXT NOT NULL,
        actortype actors_available NOT NULL,
        PRIMARY KEY (id, actortype)
    );

    CREATE TABLE IF NOT EXISTS messages (
        id BIGSERIAL PRIMARY KEY,
        content TEXT,
        ctime BIGINT NOT NULL,
        mtime BIGINT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS messages_sent (
        actor TEXT NOT NULL,
        message BIGINT NOT NULL REFERENCES messages(id) ON DELETE CASCADE
    );

    CREATE TABLE IF NOT EXISTS messages_recieved (
        actor TEXT NOT NULL,
        message BIGINT NOT NULL REFERENCES messages(id) ON DELETE CASCADE
    );

    CREATE INDEX IF NOT EXISTS idx_messages_ctime ON messages(ctime);
    CREATE INDEX IF NOT EXISTS idx_messages_sent_actor ON messages_sent(actor);
    CREATE INDEX IF NOT EXISTS idx_messages_recieved_actor ON messages_recieved(actor);
"""


@dataclass(frozen=True)
class Statements:
    """The fixed set of prepared statements."""

    get_inbox: Any
    get_outbox: Any
    create_message: Any
    add_sender: Any
    add_recipient: Any
    create_actor: Any
    delete_actor: Any

    @classmethod
    def names(cls) -> list[str]:
        return [f.name for f in fields(cls)]


class Session:
    """Exclusive view of the connection and its statements.

    Only valid inside `Store.acquire()`; once the block exits, touching the
    connection or the statements raises InternalFault.
    """

    def __init__(self, connection: Any, statements: Statements):
        self._connection = connection
        self._statements = statements
        self._released = False

    def _check_held(self) -> None:
        if self._released:
            raise InternalFault("Session used after its exclusive access was released")

    @property
    def connection(self) -> Any:
        self._check_held()
        return self._connection

    @property
    def statements(self) -> Statements:
        self._check_held()
        return self._statements

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        self._released = True


def now_ms() -> int:
    """Current time in epoch milliseconds."""
    return int(time.time() * 1000)


def terminate_process(fault: FatalProcessFault) -> None:
    """Default fatal handler: ask the process to shut down."""
    logger.critical(f"Terminating process: {fault}")
    os.kill(os.getpid(), signal.SIGTERM)


async def install_schema(connection: Any) -> None:
    """Create the actor enum, tables and indexes if they don't exist."""
    await connection.execute(SCHEMA_SQL)
    logger.info("Schema installed")


async def _describe_parameter(connection: Any, statement: Any, index: int) -> EnumType:
    """Introspect a statement parameter's type, including enum labels."""
    param = statement.get_parameters()[index]
    rows = await connection.fetch(ENUM_INTROSPECTION_SQL, param.oid)

    typtype = rows[0]["typtype"] if rows else None
    if isinstance(typtype, bytes):
        typtype = typtype.decode()

    labels = tuple(row["enumlabel"] for row in rows if row["enumlabel"] is not None)
    kind = "enum" if typtype == "e" else param.kind
    return EnumType(name=param.name, kind=kind, labels=labels)


class Store:
    """Exclusive-access wrapper around one live connection."""

    def __init__(
        self,
        connection: Any,
        statements: Statements,
        actor_types: dict[str, EnumType],
        *,
        keepalive_interval: float = 0.0,
        on_fatal: FatalHandler | None = None,
    ):
        self._connection = connection
        self._statements = statements
        self._actor_types = actor_types
        self._lock = asyncio.Lock()
        self._keepalive_interval = keepalive_interval
        self._on_fatal = on_fatal or terminate_process
        self._terminated = asyncio.Event()
        self._maintenance: asyncio.Task | None = None
        self._closed = False

    @classmethod
    async def connect(
        cls,
        options: StoreOptions,
        *,
        connector: Connector | None = None,
        on_fatal: FatalHandler | None = None,
    ) -> "Store":
        """Connect, prepare every statement, and start connection maintenance.

        Raises:
            GraftConfigError: If no database user is configured.
            FatalProcessFault: If the connection or any statement fails.
        """
        dsn = options.dsn
        connector = connector or asyncpg.connect

        logger.info(f"Connecting to PostgreSQL database {options.database!r} on {options.host}")
        try:
            connection = await connector(dsn, ssl=False)
        except Exception as e:
            raise FatalProcessFault(f"Failed to connect to {options.database!r}: {e}") from e

        try:
            prepared = {}
            for name in Statements.names():
                prepared[name] = await connection.prepare(STATEMENT_SQL[name])
            statements = Statements(**prepared)

            actor_types = {
                name: await _describe_parameter(connection, prepared[name], 0)
                for name in ACTOR_KIND_STATEMENTS
            }
        except Exception as e:
            await connection.close()
            raise FatalProcessFault(f"Failed to prepare statements: {e}") from e

        logger.info("SQL statements prepared successfully")

        store = cls(
            connection,
            statements,
            actor_types,
            keepalive_interval=options.keepalive_interval,
            on_fatal=on_fatal,
        )
        store._start_maintenance()
        return store

    # --- Exclusive access ---

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[Session]:
        """Hold the connection exclusively for the duration of the block."""
        async with self._lock:
            session = Session(self._connection, self._statements)
            try:
                yield session
            finally:
                session.release()

    @property
    def locked(self) -> bool:
        """True while some caller holds exclusive access."""
        return self._lock.locked()

    async def _run(self, name: str, method: str, *args: Any, status: bool = False) -> Any:
        """Execute one prepared statement under exclusive access.

        With status=True, return the command status message (e.g. "DELETE 1")
        instead of the statement's result.
        """
        async with self.acquire() as session:
            statement = getattr(session.statements, name)
            with timed_statement(name):
                try:
                    result = await getattr(statement, method)(*args)
                except DRIVER_ERRORS as e:
                    raise StatementFailed(name, e) from e
            if status:
                return statement.get_statusmsg() or ""
            return result

    # --- Statement operations ---

    async def _get_mailbox(self, name: str, actor_id: str) -> list[dict[str, Any]]:
        rows = await self._run(name, "fetch", actor_id)
        attributes = getattr(self._statements, name).get_attributes()
        return [decode_row(row, attributes) for row in rows]

    async def get_inbox(self, actor_id: str) -> list[dict[str, Any]]:
        """Messages actor_id received, oldest first."""
        return await self._get_mailbox("get_inbox", actor_id)

    async def get_outbox(self, actor_id: str) -> list[dict[str, Any]]:
        """Messages actor_id sent, oldest first."""
        return await self._get_mailbox("get_outbox", actor_id)

    async def create_message(self, content: str | None, timestamp: int | None = None) -> int:
        """Insert a message and return its id.

        Args:
            content: Message payload.
            timestamp: Creation time in epoch milliseconds (default: now).
                Also used as the modification time.
        """
        if timestamp is None:
            timestamp = now_ms()
        return await self._run("create_message", "fetchval", content, timestamp)

    async def add_sender(self, message_id: int, actor_id: str | None) -> None:
        """Record actor_id as a sender of message_id."""
        await self._run("add_sender", "fetch", message_id, actor_id)

    async def add_recipient(self, message_id: int, actor_id: str | None) -> None:
        """Record actor_id as a recipient of message_id."""
        await self._run("add_recipient", "fetch", message_id, actor_id)

    async def create_actor(self, kind: ActorKind, actor_id: str) -> None:
        """Create an actor of the given kind."""
        label = encode_actor_kind(kind, self._actor_types["create_actor"])
        await self._run("create_actor", "fetch", label, actor_id)

    async def delete_actor(self, kind: ActorKind, actor_id: str) -> bool:
        """Delete the actor (actor_id, kind). Returns True if a row was removed."""
        label = encode_actor_kind(kind, self._actor_types["delete_actor"])
        status = await self._run("delete_actor", "fetch", label, actor_id, status=True)
        return status.split()[-1:] != ["0"]

    async def ping(self) -> None:
        """Round-trip a trivial query under exclusive access."""
        async with self.acquire() as session:
            with timed_statement("ping"):
                try:
                    await session.connection.fetchval(PING_SQL)
                except DRIVER_ERRORS as e:
                    raise StatementFailed("ping", e) from e

    # --- Connection maintenance ---

    def _start_maintenance(self) -> None:
        """Spawn the detached task that watches the connection."""
        self._connection.add_termination_listener(self._on_termination)
        self._maintenance = asyncio.create_task(self._maintain(), name="graft-store-maintenance")
        self._maintenance.add_done_callback(self._maintenance_done)

    def _on_termination(self, connection: Any) -> None:
        if not self._closed:
            self._terminated.set()

    async def _maintain(self) -> None:
        """Ping periodically; raise once the connection is gone."""
        while True:
            if self._keepalive_interval > 0:
                try:
                    await asyncio.wait_for(
                        self._terminated.wait(),
                        timeout=self._keepalive_interval,
                    )
                except asyncio.TimeoutError:
                    await self.ping()
                    continue
            else:
                await self._terminated.wait()
            raise FatalProcessFault("Database connection terminated")

    def _maintenance_done(self, task: asyncio.Task) -> None:
        if task.cancelled() or self._closed:
            return
        exc = task.exception()
        if isinstance(exc, FatalProcessFault):
            fault = exc
        else:
            fault = FatalProcessFault(f"Connection maintenance failed: {exc}")
            fault.__cause__ = exc
        logger.critical(f"Database connection lost: {fault}")
        self._on_fatal(fault)

    async def close(self) -> None:
        """Stop maintenance and close the connection."""
        if self._closed:
            return
        self._closed = True
        task = self._maintenance
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._connection.remove_termination_listener(self._on_termination)
        await self._connection.close()
        logger.info("Database connection closed")
