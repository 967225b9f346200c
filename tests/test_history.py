"""Tests for the history stores."""

from __future__ import annotations

from pathlib import Path

import pytest

from nzquery.history import HistorySink, JsonHistoryStore, MemoryHistory


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.mark.anyio
async def test_json_store_appends_and_trims(tmp_path: Path) -> None:
    store = JsonHistoryStore(tmp_path / "history" / "history.json", limit=2)

    await store.record("nz1", "SALES", "ADMIN", "SELECT 1", "Warehouse")
    await store.record("nz1", "SALES", "ADMIN", "SELECT 2", "Warehouse")
    await store.record("nz1", "HR", "unknown", "SELECT 3", None)

    entries = store.entries()
    assert [entry.query for entry in entries] == ["SELECT 2", "SELECT 3"]
    assert entries[0].schema_name == "ADMIN"
    assert entries[1].profile_name is None


@pytest.mark.anyio
async def test_json_store_search_is_case_insensitive_newest_first(tmp_path: Path) -> None:
    store = JsonHistoryStore(tmp_path / "history.json")
    await store.record("nz1", "SALES", "unknown", "select * from orders", "Warehouse")
    await store.record("nz1", "SALES", "unknown", "SELECT * FROM ORDERS o JOIN lines", "Warehouse")
    await store.record("nz1", "HR", "unknown", "SELECT 1", "Warehouse")

    matches = store.search("Orders")

    assert [entry.query for entry in matches] == [
        "SELECT * FROM ORDERS o JOIN lines",
        "select * from orders",
    ]
    assert len(store.search("hr")) == 1


def test_json_store_ignores_corrupt_file(tmp_path: Path) -> None:
    path = tmp_path / "history.json"
    path.write_text("{not json")

    assert JsonHistoryStore(path).entries() == ()
    assert JsonHistoryStore(tmp_path / "missing.json").entries() == ()


@pytest.mark.anyio
async def test_memory_history_is_a_history_sink() -> None:
    history = MemoryHistory(limit=1)

    await history.record("h", None, "unknown", "SELECT 1", None)
    await history.record("h", None, "unknown", "SELECT 2", None)

    assert isinstance(history, HistorySink)
    assert [entry.query for entry in history.entries()] == ["SELECT 2"]
