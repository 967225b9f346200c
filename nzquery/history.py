"""Query history sinks."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field, ValidationError

LOG = logging.getLogger(__name__)

HISTORY_LIMIT = 1000
HISTORY_FILE = Path.home() / ".config" / "nzquery" / "history.json"


class HistoryEntry(BaseModel):
    """One executed statement."""

    host: str
    database: str | None = None
    schema_name: str = Field(default="unknown", alias="schema")
    query: str
    profile_name: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True)


@runtime_checkable
class HistorySink(Protocol):
    """Receives every statement the engine runs."""

    async def record(
        self,
        host: str,
        database: str | None,
        schema: str,
        sql: str,
        profile_name: str | None,
    ) -> None: ...


class MemoryHistory:
    """Keeps entries in a list, newest last."""

    def __init__(self, limit: int = HISTORY_LIMIT) -> None:
        self._limit = limit
        self._entries: list[HistoryEntry] = []

    async def record(
        self,
        host: str,
        database: str | None,
        schema: str,
        sql: str,
        profile_name: str | None,
    ) -> None:
        self._entries.append(
            HistoryEntry(host=host, database=database, schema=schema, query=sql, profile_name=profile_name)
        )
        del self._entries[: -self._limit]

    def entries(self) -> tuple[HistoryEntry, ...]:
        return tuple(self._entries)


class JsonHistoryStore:
    """History persisted as a JSON array, trimmed to the newest ``limit`` entries."""

    def __init__(self, path: Path | None = None, *, limit: int = HISTORY_LIMIT) -> None:
        self._path = path or HISTORY_FILE
        self._limit = limit

    @property
    def path(self) -> Path:
        return self._path

    async def record(
        self,
        host: str,
        database: str | None,
        schema: str,
        sql: str,
        profile_name: str | None,
    ) -> None:
        entries = list(self.entries())
        entries.append(
            HistoryEntry(host=host, database=database, schema=schema, query=sql, profile_name=profile_name)
        )
        entries = entries[-self._limit :]
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = [entry.model_dump(mode="json", by_alias=True) for entry in entries]
        self._path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    def entries(self) -> tuple[HistoryEntry, ...]:
        """Stored entries, oldest first; unreadable files yield nothing."""

        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return ()
        except (OSError, json.JSONDecodeError):
            LOG.warning("Ignoring unreadable history file", extra={"path": str(self._path)})
            return ()
        if not isinstance(data, list):
            return ()
        entries: list[HistoryEntry] = []
        for item in data:
            try:
                entries.append(HistoryEntry.model_validate(item))
            except ValidationError:
                LOG.debug("Skipping malformed history entry", extra={"path": str(self._path)})
        return tuple(entries)

    def search(self, term: str) -> tuple[HistoryEntry, ...]:
        """Entries whose query, database or profile contains ``term`` (case-insensitive), newest first."""

        needle = term.lower()
        matches = [
            entry
            for entry in self.entries()
            if needle in entry.query.lower()
            or needle in (entry.database or "").lower()
            or needle in (entry.profile_name or "").lower()
        ]
        return tuple(reversed(matches))


__all__ = [
    "HISTORY_FILE",
    "HISTORY_LIMIT",
    "HistoryEntry",
    "HistorySink",
    "JsonHistoryStore",
    "MemoryHistory",
]
