"""
Database handles for the canonical store and the source systems.

Every pipeline stage receives its handles explicitly; nothing here is a
process-wide singleton. Both implementations speak the same SQL with
asyncpg-style ``$n`` placeholders:

- PostgresDatabase: asyncpg connection pool (production)
- SqliteDatabase: single aiosqlite connection (local runs and tests)
"""
import asyncio
import re
from contextlib import asynccontextmanager
from datetime import date, datetime
from enum import Enum
from itertools import islice
from typing import Any, AsyncIterator, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

import aiosqlite
import asyncpg
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = structlog.get_logger(__name__)

Row = Dict[str, Any]

_PLACEHOLDER = re.compile(r"\$(\d+)")


def chunked(iterable: Iterable, size: int) -> Iterator[List]:
    """Yield lists of at most ``size`` items."""
    it = iter(iterable)
    while True:
        batch = list(islice(it, size))
        if not batch:
            return
        yield batch


def affected_rows(status: str) -> int:
    """
    Parse the affected row count from an asyncpg command status.

    Args:
        status: Command tag such as "DELETE 3" or "INSERT 0 5"

    Returns:
        Row count, 0 for tags without one (DDL)
    """
    tail = status.rsplit(" ", 1)[-1] if status else ""
    return int(tail) if tail.isdigit() else 0


def values_table(keys: Sequence[Tuple], offset: int = 0) -> Tuple[str, List[Any]]:
    """
    Build an inline ``(VALUES ...)`` table for bulk key matching.

    Columns are addressed as ``column1``, ``column2``... which both
    PostgreSQL and SQLite assign to VALUES lists.

    Args:
        keys: Non-empty list of equal-length tuples
        offset: Number of placeholders already used by the statement

    Returns:
        (sql fragment, flat argument list)
    """
    if not keys:
        raise ValueError("values_table requires at least one key")

    width = len(keys[0])
    rows = []
    args: List[Any] = []
    n = offset
    for key in keys:
        placeholders = ", ".join(f"${n + i + 1}" for i in range(width))
        rows.append(f"({placeholders})")
        args.extend(key)
        n += width
    return f"(VALUES {', '.join(rows)})", args


class _PostgresSession:
    """Operations bound to one asyncpg connection."""

    rowid = "ctid"

    def __init__(self, conn: asyncpg.Connection):
        self._conn = conn

    async def fetch(self, sql: str, *args) -> List[Row]:
        rows = await self._conn.fetch(sql, *args)
        return [dict(row) for row in rows]

    async def execute(self, sql: str, *args) -> int:
        return affected_rows(await self._conn.execute(sql, *args))

    async def executemany(self, sql: str, rows: Iterable[Sequence]) -> int:
        rows = list(rows)
        if rows:
            await self._conn.executemany(sql, rows)
        return len(rows)


class PostgresDatabase:
    """Async PostgreSQL handle with connection pooling."""

    rowid = "ctid"

    def __init__(
        self,
        dsn: str,
        name: str = "canonical",
        read_only: bool = False,
        min_size: int = 1,
        max_size: int = 4,
        command_timeout: float = 600.0,
        connect_retries: int = 3,
    ):
        """
        Initialize PostgreSQL handle.

        Args:
            dsn: Connection string
            name: Store name used in log lines
            read_only: Open every session with default_transaction_read_only
            min_size: Minimum pool size
            max_size: Maximum pool size
            command_timeout: Per-statement timeout in seconds
            connect_retries: Attempts to establish the pool
        """
        self.dsn = dsn
        self.name = name
        self.read_only = read_only
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self.connect_retries = connect_retries
        self._pool: Optional[asyncpg.Pool] = None

    async def connect(self) -> None:
        """Create connection pool, retrying transient connection errors."""
        server_settings = {"application_name": "authz_sync"}
        if self.read_only:
            server_settings["default_transaction_read_only"] = "on"

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(max(self.connect_retries, 1)),
            wait=wait_exponential(multiplier=1, min=2, max=30),
            retry=retry_if_exception_type(
                (OSError, asyncio.TimeoutError, asyncpg.CannotConnectNowError)
            ),
            reraise=True,
        ):
            with attempt:
                self._pool = await asyncpg.create_pool(
                    self.dsn,
                    min_size=self.min_size,
                    max_size=self.max_size,
                    command_timeout=self.command_timeout,
                    server_settings=server_settings,
                )
        logger.info("postgres_connected", store=self.name, read_only=self.read_only)

    async def close(self) -> None:
        """Close connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("postgres_closed", store=self.name)

    @property
    def pool(self) -> asyncpg.Pool:
        """Get connection pool."""
        if not self._pool:
            raise RuntimeError(f"PostgresDatabase {self.name} not connected")
        return self._pool

    async def fetch(self, sql: str, *args) -> List[Row]:
        async with self.pool.acquire() as conn:
            return await _PostgresSession(conn).fetch(sql, *args)

    async def iterate(self, sql: str, *args, prefetch: int = 500) -> AsyncIterator[Row]:
        """Stream rows through a server-side cursor."""
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                async for record in conn.cursor(sql, *args, prefetch=prefetch):
                    yield dict(record)

    async def execute(self, sql: str, *args) -> int:
        async with self.pool.acquire() as conn:
            return await _PostgresSession(conn).execute(sql, *args)

    async def executemany(self, sql: str, rows: Iterable[Sequence]) -> int:
        async with self.pool.acquire() as conn:
            return await _PostgresSession(conn).executemany(sql, rows)

    @asynccontextmanager
    async def transaction(self, isolation: Optional[str] = None):
        """
        Run statements on one connection inside a transaction.

        Args:
            isolation: asyncpg isolation level, e.g. "repeatable_read"
        """
        async with self.pool.acquire() as conn:
            async with conn.transaction(isolation=isolation):
                yield _PostgresSession(conn)


def _adapt(value: Any) -> Any:
    """Bind dates, timestamps and enums as SQLite-comparable values."""
    if isinstance(value, datetime):
        return value.isoformat(sep=" ")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


class SqliteDatabase:
    """Async SQLite handle speaking the same SQL as PostgresDatabase."""

    rowid = "rowid"

    def __init__(self, path: str = ":memory:", name: str = "sqlite"):
        """
        Initialize SQLite handle.

        Args:
            path: Database file path, ":memory:" for a private in-memory store
            name: Store name used in log lines
        """
        self.path = path
        self.name = name
        self._conn: Optional[aiosqlite.Connection] = None
        self._in_transaction = False

    async def connect(self) -> None:
        """Open the connection in autocommit mode."""
        self._conn = await aiosqlite.connect(self.path, isolation_level=None)
        self._conn.row_factory = aiosqlite.Row
        logger.info("sqlite_connected", store=self.name, path=self.path)

    async def close(self) -> None:
        """Close the connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None
            logger.info("sqlite_closed", store=self.name)

    @property
    def conn(self) -> aiosqlite.Connection:
        if not self._conn:
            raise RuntimeError(f"SqliteDatabase {self.name} not connected")
        return self._conn

    @staticmethod
    def _sql(sql: str) -> str:
        return _PLACEHOLDER.sub(r"?\1", sql)

    @staticmethod
    def _params(args: Sequence) -> tuple:
        return tuple(_adapt(arg) for arg in args)

    async def fetch(self, sql: str, *args) -> List[Row]:
        async with self.conn.execute(self._sql(sql), self._params(args)) as cursor:
            rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def iterate(self, sql: str, *args) -> AsyncIterator[Row]:
        async with self.conn.execute(self._sql(sql), self._params(args)) as cursor:
            async for row in cursor:
                yield dict(row)

    async def execute(self, sql: str, *args) -> int:
        async with self.conn.execute(self._sql(sql), self._params(args)) as cursor:
            return max(cursor.rowcount, 0)

    async def executemany(self, sql: str, rows: Iterable[Sequence]) -> int:
        params = [self._params(row) for row in rows]
        if params:
            async with self.conn.executemany(self._sql(sql), params):
                pass
        return len(params)

    @asynccontextmanager
    async def transaction(self, isolation: Optional[str] = None):
        """
        Run statements inside BEGIN/COMMIT, rolling back on error.

        SQLite transactions are serializable, so ``isolation`` is ignored.
        """
        if self._in_transaction:
            raise RuntimeError("nested transactions are not supported")
        await self.conn.execute("BEGIN")
        self._in_transaction = True
        try:
            yield self
        except BaseException:
            await self.conn.execute("ROLLBACK")
            raise
        else:
            await self.conn.execute("COMMIT")
        finally:
            self._in_transaction = False


# Either handle; stages only rely on the shared method set.
Database = Union[PostgresDatabase, SqliteDatabase]
