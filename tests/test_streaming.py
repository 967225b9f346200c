"""Tests for the streaming fetch loop."""

from __future__ import annotations

import asyncio

import pytest

from fakes import FakeDriverFactory, FakeResultSet, rows
from nzquery.config import AppConfig, ConnectionProfileConfig
from nzquery.escalation import CancellationEscalator
from nzquery.models import StreamingChunk
from nzquery.registry import ConnectionRegistry
from nzquery.streaming import QueryCancelled, StreamingExecutor
from nzquery.tracker import CommandTracker


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class _Harness:
    def __init__(self, *, row_limit: int = 200_000, chunk_size: int = 5000) -> None:
        self.factory = FakeDriverFactory()
        self.registry = ConnectionRegistry(
            AppConfig(profiles=[ConnectionProfileConfig(name="Local")]),
            driver_factory=self.factory,
        )
        self.tracker = CommandTracker()
        self.escalator = CancellationEscalator(self.registry, self.tracker, drain_timeout=0.2)
        self.executor = StreamingExecutor(
            self.tracker, self.escalator, row_limit=row_limit, chunk_size=chunk_size, query_timeout=30
        )
        self.chunks: list[StreamingChunk] = []

    async def connection(self):  # type: ignore[no-untyped-def]
        return await self.registry.get_or_create_persistent("doc")


@pytest.mark.anyio
async def test_row_cap_stops_reads_and_cancels_remainder() -> None:
    harness = _Harness()
    harness.factory.script("SELECT big", FakeResultSet([("ID", "INT4")], rows(210_000)))
    live = await harness.connection()

    summaries = await harness.executor.stream(live, "SELECT big", harness.chunks.append, document_id="doc")

    chunks = harness.chunks
    assert len(chunks) == 41
    assert [chunk.is_last_chunk for chunk in chunks].count(True) == 1
    assert chunks[-1].is_last_chunk is True
    assert chunks[-1].limit_reached is True
    assert chunks[-1].rows == ()
    assert chunks[-1].total_rows_so_far == 200_000
    assert all(len(chunk.rows) == 5000 for chunk in chunks[:40])
    assert chunks[0].columns[0].name == "ID"
    assert all(chunk.columns == () for chunk in chunks[1:])
    reader = harness.factory.readers[-1]
    assert reader.value_reads == 200_000
    assert harness.factory.commands[-1].cancel_calls == 1
    assert reader.closed is True
    assert summaries[0].limit_reached is True
    assert harness.tracker.is_executing("doc") is False


@pytest.mark.anyio
async def test_empty_result_still_delivers_schema() -> None:
    harness = _Harness()
    harness.factory.script("SELECT none", FakeResultSet([("A", "TEXT"), ("B", "INT4")], []))
    live = await harness.connection()

    await harness.executor.stream(live, "SELECT none", harness.chunks.append, document_id="doc")

    assert len(harness.chunks) == 1
    chunk = harness.chunks[0]
    assert chunk.is_first_chunk and chunk.is_last_chunk
    assert [column.name for column in chunk.columns] == ["A", "B"]
    assert chunk.rows == ()


@pytest.mark.anyio
async def test_exact_multiple_of_chunk_size_ends_with_empty_last_chunk() -> None:
    harness = _Harness(chunk_size=2)
    harness.factory.script("SELECT four", FakeResultSet([("N", "INT4")], rows(4)))
    live = await harness.connection()

    await harness.executor.stream(live, "SELECT four", harness.chunks.append)

    assert [len(chunk.rows) for chunk in harness.chunks] == [2, 2, 0]
    assert harness.chunks[-1].is_last_chunk is True
    assert harness.chunks[-1].limit_reached is False


@pytest.mark.anyio
async def test_every_result_set_is_streamed_in_order() -> None:
    harness = _Harness(chunk_size=10)
    harness.factory.script(
        "CALL multi",
        FakeResultSet([("A", "INT4")], rows(3)),
        FakeResultSet([("B", "TEXT")], [("x",)]),
    )
    live = await harness.connection()

    summaries = await harness.executor.stream(live, "CALL multi", harness.chunks.append)

    assert [summary.total_rows for summary in summaries] == [3, 1]
    assert [summary.result_index for summary in summaries] == [0, 1]
    assert [chunk.columns[0].name for chunk in harness.chunks] == ["A", "B"]


@pytest.mark.anyio
async def test_cancel_flag_stops_the_loop_and_clears_tracker() -> None:
    harness = _Harness(chunk_size=10)
    harness.factory.script("SELECT many", FakeResultSet([("N", "INT4")], rows(1000)))
    live = await harness.connection()

    async def _on_chunk(chunk: StreamingChunk) -> None:
        harness.chunks.append(chunk)
        if len(harness.chunks) == 2:
            harness.tracker.cancel("doc")

    with pytest.raises(QueryCancelled):
        await harness.executor.stream(live, "SELECT many", _on_chunk, document_id="doc")

    assert len(harness.chunks) == 2
    assert harness.tracker.is_executing("doc") is False
    assert harness.factory.commands[-1].cancel_calls == 1
    assert harness.factory.commands[-1].timeout == 30


@pytest.mark.anyio
async def test_reader_errors_propagate_and_clear_tracker() -> None:
    harness = _Harness()
    script = harness.factory.script("SELECT bad", FakeResultSet([("N", "INT4")], rows(10)))
    script.read_error = RuntimeError("division by zero")
    script.read_error_after = 3
    live = await harness.connection()

    with pytest.raises(RuntimeError, match="division by zero"):
        await harness.executor.stream(live, "SELECT bad", harness.chunks.append, document_id="doc")

    assert harness.tracker.is_executing("doc") is False
    assert harness.factory.readers[-1].closed is True


@pytest.mark.anyio
async def test_collect_gathers_rows_per_result_set() -> None:
    harness = _Harness(chunk_size=2)
    harness.factory.script("SELECT five", FakeResultSet([("N", "INT4")], rows(5)))
    live = await harness.connection()

    results = await harness.executor.collect(live, "SELECT five", statement_index=3)

    assert len(results) == 1
    assert results[0].rows == tuple(rows(5))
    assert results[0].row_count == 5
    assert results[0].statement_index == 3


@pytest.mark.anyio
async def test_external_cancel_is_observed_between_chunks() -> None:
    harness = _Harness(chunk_size=100)
    harness.factory.script("SELECT endless", FakeResultSet([("N", "INT4")], endless=True))
    live = await harness.connection()

    task = asyncio.create_task(
        harness.executor.stream(live, "SELECT endless", harness.chunks.append, document_id="doc")
    )
    while len(harness.chunks) < 3:
        await asyncio.sleep(0)
    harness.tracker.cancel("doc")

    with pytest.raises(QueryCancelled):
        await task
    assert harness.tracker.is_executing("doc") is False
