"""PostgreSQL driver built on asyncpg."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any

import asyncpg

from ..models import ConnectionProfile
from .base import DriverError, NoticeListener, is_connection_broken

LOG = logging.getLogger(__name__)

DEFAULT_PORT = 5432


class PostgresReader:
    """Reader over a single result set, fetched through a server-side cursor."""

    def __init__(
        self,
        conn: asyncpg.Connection,
        statement: Any | None,
        *,
        prefetch: int,
        timeout: float | None,
    ) -> None:
        self._conn = conn
        self._statement = statement
        self._prefetch = prefetch
        self._timeout = timeout
        self._attributes = tuple(statement.get_attributes()) if statement is not None else ()
        self._buffer: deque[Any] = deque()
        self._current: Any = None
        self._cursor: Any = None
        self._transaction: Any = None
        self._exhausted = not self._attributes
        self._pending: asyncio.Future[Any] | None = None
        self._cancelled = False
        self._closed = False

    @property
    def field_count(self) -> int:
        return len(self._attributes)

    async def read(self) -> bool:
        if self._closed or self._cancelled:
            return False
        if not self._buffer and not self._exhausted:
            await self._fill()
        if not self._buffer:
            self._current = None
            return False
        self._current = self._buffer.popleft()
        return True

    async def next_result(self) -> bool:
        return False

    def get_name(self, index: int) -> str:
        return self._attributes[index].name

    def get_type_name(self, index: int) -> str | None:
        return self._attributes[index].type.name

    def get_value(self, index: int) -> object:
        if self._current is None:
            raise DriverError("No current row; call read() first.")
        return self._current[index]

    async def cancel(self) -> None:
        self._cancelled = True
        if self._pending is not None and not self._pending.done():
            # asyncpg sends a server-side cancel when the awaiting fetch is cancelled.
            self._pending.cancel()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._buffer.clear()
        if self._transaction is None:
            return
        try:
            if self._cancelled:
                await self._transaction.rollback()
            else:
                await self._transaction.commit()
        except Exception:  # pragma: no cover - best effort cleanup
            LOG.debug("Failed to finish cursor transaction", exc_info=True)

    async def _fill(self) -> None:
        if self._cursor is None:
            if not self._conn.is_in_transaction():
                self._transaction = self._conn.transaction()
                await self._transaction.start()
            self._cursor = await self._statement.cursor(timeout=self._timeout)
        self._pending = asyncio.ensure_future(self._cursor.fetch(self._prefetch, timeout=self._timeout))
        try:
            rows = await self._pending
        except asyncio.CancelledError:
            if not self._cancelled:
                raise
            raise DriverError("canceling statement due to user request") from None
        finally:
            self._pending = None
        if len(rows) < self._prefetch:
            self._exhausted = True
        self._buffer.extend(rows)


class PostgresCommand:
    """Statement bound to an asyncpg connection."""

    def __init__(self, conn: asyncpg.Connection, sql: str, *, prefetch: int) -> None:
        self._conn = conn
        self._sql = sql
        self._prefetch = prefetch
        self._reader: PostgresReader | None = None
        self.timeout: int | None = None

    async def execute_reader(self) -> PostgresReader:
        timeout = float(self.timeout) if self.timeout else None
        try:
            statement = await self._conn.prepare(self._sql, timeout=timeout)
        except asyncpg.PostgresSyntaxError as exc:
            if "multiple commands" not in str(exc):
                raise
            # Multi-statement text cannot be prepared; run it through the simple protocol.
            await self._conn.execute(self._sql, timeout=timeout)
            statement = None
        else:
            if not statement.get_attributes():
                await statement.fetch(timeout=timeout)
        self._reader = PostgresReader(self._conn, statement, prefetch=self._prefetch, timeout=timeout)
        return self._reader

    async def cancel(self) -> None:
        if self._reader is not None:
            await self._reader.cancel()


class PostgresDriver:
    """Single asyncpg connection exposed through the driver protocol."""

    def __init__(
        self,
        profile: ConnectionProfile,
        database: str | None,
        *,
        connect_timeout: float = 5.0,
        prefetch: int = 500,
    ) -> None:
        self._profile = profile
        self._database = database
        self._connect_timeout = connect_timeout
        self._prefetch = prefetch
        self._conn: asyncpg.Connection | None = None
        self._listeners: dict[NoticeListener, Any] = {}

    async def connect(self) -> None:
        self._conn = await asyncpg.connect(**self._connect_kwargs())
        for callback in self._listeners.values():
            self._conn.add_log_listener(callback)

    async def close(self) -> None:
        if self._conn is None:
            return
        conn, self._conn = self._conn, None
        await conn.close()

    def create_command(self, sql: str) -> PostgresCommand:
        return PostgresCommand(self._require_connection(), sql, prefetch=self._prefetch)

    def add_notice_listener(self, listener: NoticeListener) -> None:
        def _callback(_conn: Any, message: Any) -> None:
            listener(str(getattr(message, "message", message)))

        self._listeners[listener] = _callback
        if self._conn is not None:
            self._conn.add_log_listener(_callback)

    def remove_notice_listener(self, listener: NoticeListener) -> None:
        callback = self._listeners.pop(listener, None)
        if callback is not None and self._conn is not None:
            self._conn.remove_log_listener(callback)

    def _require_connection(self) -> asyncpg.Connection:
        if self._conn is None or self._conn.is_closed():
            raise DriverError("connection is closed")
        return self._conn

    def _connect_kwargs(self) -> dict[str, object]:
        profile = self._profile
        kwargs: dict[str, object] = {"host": profile.host or "localhost"}
        kwargs["port"] = profile.port or DEFAULT_PORT
        if profile.user:
            kwargs["user"] = profile.user
        if profile.password:
            kwargs["password"] = profile.password
        if self._database:
            kwargs["database"] = self._database
        kwargs.setdefault("timeout", self._connect_timeout)
        return kwargs


class PostgresDriverFactory:
    """Creates asyncpg drivers and maps PostgreSQL's session controls."""

    session_id_sql = "SELECT pg_backend_pid()"

    def __init__(self, *, connect_timeout: float = 5.0, prefetch: int = 500) -> None:
        self._connect_timeout = connect_timeout
        self._prefetch = prefetch

    def create(self, profile: ConnectionProfile, database: str | None) -> PostgresDriver:
        return PostgresDriver(
            profile,
            database,
            connect_timeout=self._connect_timeout,
            prefetch=self._prefetch,
        )

    def is_retryable(self, exc: BaseException) -> bool:
        if isinstance(exc, asyncpg.ConnectionDoesNotExistError):
            return True
        if isinstance(exc, asyncpg.InterfaceError) and "closed" in str(exc).lower():
            return True
        return is_connection_broken(exc)

    def drop_session_sql(self, session_id: str) -> str:
        return f"SELECT pg_terminate_backend({int(session_id)})"


__all__ = [
    "PostgresCommand",
    "PostgresDriver",
    "PostgresDriverFactory",
    "PostgresReader",
]
