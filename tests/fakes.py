"""In-memory driver used by the engine, registry and escalation tests."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Sequence

from nzquery.drivers import DriverError, is_connection_broken
from nzquery.models import ConnectionProfile

SESSION_SQL = "SELECT CURRENT_SID"


@dataclass
class FakeResultSet:
    columns: Sequence[tuple[str, str]] = ()
    rows: Sequence[tuple[object, ...]] = ()
    endless: bool = False
    hang: bool = False
    ignore_cancel: bool = False


@dataclass
class FakeScript:
    result_sets: list[FakeResultSet] = field(default_factory=list)
    notices: list[str] = field(default_factory=list)
    errors: list[BaseException] = field(default_factory=list)
    read_error: BaseException | None = None
    read_error_after: int = 0


class FakeReader:
    def __init__(self, command: FakeCommand, script: FakeScript) -> None:
        self._command = command
        self._script = script
        self._sets = script.result_sets or [FakeResultSet()]
        self._set_index = 0
        self._row_index = -1
        self.reads = 0
        self.value_reads = 0
        self.closed = False

    @property
    def _current(self) -> FakeResultSet:
        return self._sets[self._set_index]

    @property
    def field_count(self) -> int:
        return len(self._current.columns)

    async def read(self) -> bool:
        self.reads += 1
        self._command.factory.total_reads += 1
        if self._script.read_error is not None and self.reads > self._script.read_error_after:
            raise self._script.read_error
        current = self._current
        if current.endless:
            await asyncio.sleep(0)
            if self._command.cancelled and not current.ignore_cancel:
                return False
            return True
        if self._row_index + 1 >= len(current.rows):
            if current.hang:
                # Stuck inside a read until the server honours the cancel.
                if current.ignore_cancel:
                    await asyncio.Event().wait()
                await self._command.cancel_event.wait()
            return False
        self._row_index += 1
        return True

    async def next_result(self) -> bool:
        if self._set_index + 1 >= len(self._sets):
            return False
        self._set_index += 1
        self._row_index = -1
        return True

    def get_name(self, index: int) -> str:
        return self._current.columns[index][0]

    def get_type_name(self, index: int) -> str | None:
        return self._current.columns[index][1]

    def get_value(self, index: int) -> object:
        self.value_reads += 1
        if self._current.endless:
            return index
        return self._current.rows[self._row_index][index]

    async def close(self) -> None:
        self.closed = True


class FakeCommand:
    def __init__(self, driver: FakeDriver, sql: str) -> None:
        self.driver = driver
        self.factory = driver.factory
        self.sql = sql
        self.timeout: int | None = None
        self.cancelled = False
        self.cancel_calls = 0
        self.cancel_event = asyncio.Event()
        self.reader: FakeReader | None = None

    async def execute_reader(self) -> FakeReader:
        self.factory.executed.append(self.sql)
        if self.sql == SESSION_SQL:
            script = FakeScript([FakeResultSet([("SID", "INT4")], [(self.driver.session_id,)])])
        else:
            script = self.factory.scripts.get(self.sql, FakeScript())
        if script.errors:
            raise script.errors.pop(0)
        for notice in script.notices:
            self.driver.emit_notice(notice)
        self.reader = FakeReader(self, script)
        self.factory.readers.append(self.reader)
        return self.reader

    async def cancel(self) -> None:
        self.cancelled = True
        self.cancel_calls += 1
        self.cancel_event.set()
        self.factory.cancelled_sql.append(self.sql)


class FakeDriver:
    def __init__(self, factory: FakeDriverFactory, profile: ConnectionProfile, database: str | None) -> None:
        self.factory = factory
        self.profile = profile
        self.database = database
        self.session_id = factory.next_session_id()
        self.connected = False
        self.closed = False
        self.listeners: list = []

    async def connect(self) -> None:
        if self.factory.connect_errors:
            raise self.factory.connect_errors.pop(0)
        self.connected = True

    async def close(self) -> None:
        self.closed = True

    def create_command(self, sql: str) -> FakeCommand:
        if self.closed or not self.connected:
            raise DriverError("connection is closed")
        command = FakeCommand(self, sql)
        self.factory.commands.append(command)
        return command

    def add_notice_listener(self, listener) -> None:  # type: ignore[no-untyped-def]
        self.listeners.append(listener)

    def remove_notice_listener(self, listener) -> None:  # type: ignore[no-untyped-def]
        if listener in self.listeners:
            self.listeners.remove(listener)

    def emit_notice(self, message: str) -> None:
        for listener in list(self.listeners):
            listener(message)


class FakeDriverFactory:
    session_id_sql = SESSION_SQL

    def __init__(self) -> None:
        self.scripts: dict[str, FakeScript] = {}
        self.drivers: list[FakeDriver] = []
        self.commands: list[FakeCommand] = []
        self.readers: list[FakeReader] = []
        self.executed: list[str] = []
        self.cancelled_sql: list[str] = []
        self.connect_errors: list[BaseException] = []
        self.total_reads = 0
        self._session_counter = 100

    def next_session_id(self) -> int:
        self._session_counter += 1
        return self._session_counter

    def script(self, sql: str, *result_sets: FakeResultSet, notices: Sequence[str] = ()) -> FakeScript:
        script = FakeScript(list(result_sets), list(notices))
        self.scripts[sql] = script
        return script

    def fail(self, sql: str, *errors: BaseException) -> None:
        self.scripts.setdefault(sql, FakeScript()).errors.extend(errors)

    def create(self, profile: ConnectionProfile, database: str | None) -> FakeDriver:
        driver = FakeDriver(self, profile, database)
        self.drivers.append(driver)
        return driver

    def is_retryable(self, exc: BaseException) -> bool:
        return is_connection_broken(exc)

    def drop_session_sql(self, session_id: str) -> str:
        return f"DROP SESSION {session_id}"

    def executed_user_sql(self) -> list[str]:
        return [sql for sql in self.executed if sql != SESSION_SQL]


def rows(count: int, width: int = 1) -> list[tuple[object, ...]]:
    return [tuple(index * width + column for column in range(width)) for index in range(count)]
