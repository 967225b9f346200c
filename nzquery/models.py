"""Shared dataclasses used across the registry, executor and engine modules."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

Row = tuple[object, ...]


@dataclass(frozen=True, slots=True)
class ConnectionProfile:
    """Runtime representation of a connection profile."""

    name: str
    host: str = "localhost"
    port: int | None = None
    database: str | None = None
    user: str | None = None
    password: str | None = None
    driver: str = "postgres"


@dataclass(frozen=True, slots=True)
class DocumentBinding:
    """Profile (and optional database override) a document executes against."""

    document_id: str
    profile_name: str
    database_override: str | None = None


@dataclass(slots=True)
class LiveConnection:
    """Open driver handle plus the identity it was opened for."""

    handle: Any
    profile_name: str
    effective_database: str | None
    document_id: str | None = None
    last_session_id: str | None = None
    # Set once the server session behind ``handle`` was terminated on purpose.
    session_dropped: bool = False

    @property
    def is_persistent(self) -> bool:
        return self.document_id is not None

    def matches(self, profile_name: str, database: str | None) -> bool:
        return self.profile_name == profile_name and self.effective_database == database


@dataclass(frozen=True, slots=True)
class ColumnInfo:
    """Column name and the type name reported by the server."""

    name: str
    type_name: str | None = None


@dataclass(frozen=True, slots=True)
class StreamingChunk:
    """Bounded batch of rows delivered while a result set streams."""

    columns: tuple[ColumnInfo, ...]
    rows: tuple[Row, ...]
    is_first_chunk: bool
    is_last_chunk: bool
    total_rows_so_far: int
    limit_reached: bool = False


@dataclass(frozen=True, slots=True)
class QueryResult:
    """Normalized result set returned to the UI."""

    columns: tuple[ColumnInfo, ...]
    rows: tuple[Row, ...]
    sql: str
    message: str | None = None
    limit_reached: bool = False
    is_error: bool = False
    is_cancelled: bool = False
    elapsed_ms: int | None = None
    row_count: int | None = None
    statement_index: int = 0
    result_index: int = 0

    @classmethod
    def error(cls, sql: str, message: str, *, statement_index: int = 0) -> QueryResult:
        """Build the record shown for a failed statement."""

        return cls(
            columns=(),
            rows=(),
            sql=sql,
            message=message,
            is_error=True,
            statement_index=statement_index,
        )


@dataclass(frozen=True, slots=True)
class ExecuteOptions:
    """Caller knobs for a single execution request."""

    silent: bool = False
    streaming: bool = True
    chunk_size: int | None = None
    overrides: Mapping[str, str] = field(default_factory=dict)
    profile_name: str | None = None


class ExecutionStatus(str, Enum):
    """Terminal state of an execution that did not raise."""

    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class ExecutionReport:
    """Outcome of `QueryEngine.execute`."""

    status: ExecutionStatus
    results: tuple[QueryResult, ...] = ()
    attempts: int = 1

    @property
    def cancelled(self) -> bool:
        return self.status is ExecutionStatus.CANCELLED


__all__ = [
    "ColumnInfo",
    "ConnectionProfile",
    "DocumentBinding",
    "ExecuteOptions",
    "ExecutionReport",
    "ExecutionStatus",
    "LiveConnection",
    "QueryResult",
    "Row",
    "StreamingChunk",
]
