"""Streaming fetch loop: bounded chunks, a hard row cap and cooperative cancellation."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from .drivers import Reader
from .escalation import CancellationEscalator, CancelOutcome
from .logsink import LogSink
from .models import ColumnInfo, LiveConnection, QueryResult, Row, StreamingChunk
from .tracker import CommandTracker, ExecutingCommandState

LOG = logging.getLogger(__name__)

ROW_LIMIT = 200_000
CHUNK_SIZE = 5000

T = TypeVar("T")

ChunkSink = Callable[[StreamingChunk], Awaitable[None] | None]


class QueryCancelled(RuntimeError):
    """Raised when a fetch loop stops because its command was cancelled."""


@dataclass(frozen=True, slots=True)
class ResultSetSummary:
    """What one result set produced once streaming finished."""

    columns: tuple[ColumnInfo, ...]
    total_rows: int
    limit_reached: bool
    result_index: int


class StreamingExecutor:
    """Runs one statement and pushes its rows to a sink chunk by chunk.

    Every result set ends with a chunk flagged ``is_last_chunk`` (possibly
    empty); only the first chunk carries the column schema. The tracker
    entry for the document lives exactly as long as the fetch loop.
    """

    def __init__(
        self,
        tracker: CommandTracker,
        escalator: CancellationEscalator,
        *,
        row_limit: int = ROW_LIMIT,
        chunk_size: int = CHUNK_SIZE,
        query_timeout: int | None = None,
    ) -> None:
        self._tracker = tracker
        self._escalator = escalator
        self._row_limit = row_limit
        self._chunk_size = chunk_size
        self._query_timeout = query_timeout

    @property
    def row_limit(self) -> int:
        return self._row_limit

    async def stream(
        self,
        connection: LiveConnection,
        sql: str,
        on_chunk: ChunkSink,
        *,
        document_id: str | None = None,
        session_id: str | None = None,
        chunk_size: int | None = None,
        log_sink: LogSink | None = None,
    ) -> list[ResultSetSummary]:
        """Execute ``sql`` and stream every result set it returns."""

        size = chunk_size or self._chunk_size
        command = connection.handle.create_command(sql)
        if self._query_timeout and self._query_timeout > 0:
            command.timeout = self._query_timeout
        if document_id is not None:
            state = self._tracker.register(document_id, command, session_id=session_id)
        else:
            state = ExecutingCommandState(command=command, session_id=session_id)
        try:
            reader = await command.execute_reader()
            try:
                summaries: list[ResultSetSummary] = []
                while True:
                    summary = await self._stream_result_set(
                        reader,
                        state,
                        on_chunk,
                        connection=connection,
                        size=size,
                        result_index=len(summaries),
                        document_id=document_id,
                        log_sink=log_sink,
                    )
                    summaries.append(summary)
                    if summary.limit_reached:
                        # The escalator already drained or cancelled the remainder.
                        break
                    if state.is_cancelled:
                        state.mark_draining()
                        await self._escalator.drain_and_cancel(reader, command)
                        raise QueryCancelled("Query cancelled.")
                    if not await reader.next_result():
                        break
                return summaries
            finally:
                await _close_reader(reader)
        except QueryCancelled:
            raise
        except Exception as exc:
            # A driver cancel surfaces as a query error; report it as the cancel it was.
            if state.is_cancelled:
                raise QueryCancelled("Query cancelled.") from exc
            raise
        finally:
            if document_id is not None:
                self._tracker.finish(document_id, state)
            else:
                state.mark_finished()

    async def collect(
        self,
        connection: LiveConnection,
        sql: str,
        *,
        document_id: str | None = None,
        session_id: str | None = None,
        statement_index: int = 0,
        log_sink: LogSink | None = None,
    ) -> list[QueryResult]:
        """Execute ``sql`` and gather every result set in memory (still capped)."""

        rows: list[list[Row]] = [[]]
        columns: list[tuple[ColumnInfo, ...]] = []

        def _accumulate(chunk: StreamingChunk) -> None:
            if chunk.is_first_chunk:
                columns.append(chunk.columns)
            rows[-1].extend(chunk.rows)
            if chunk.is_last_chunk:
                rows.append([])

        summaries = await self.stream(
            connection,
            sql,
            _accumulate,
            document_id=document_id,
            session_id=session_id,
            log_sink=log_sink,
        )
        results: list[QueryResult] = []
        for summary in summaries:
            index = summary.result_index
            result_rows = tuple(rows[index])
            results.append(
                QueryResult(
                    columns=columns[index],
                    rows=result_rows,
                    sql=sql,
                    message=None if columns[index] else "Query executed successfully (no results).",
                    limit_reached=summary.limit_reached,
                    row_count=len(result_rows),
                    statement_index=statement_index,
                    result_index=index,
                )
            )
        return results

    async def _stream_result_set(
        self,
        reader: Reader,
        state: ExecutingCommandState,
        on_chunk: ChunkSink,
        *,
        connection: LiveConnection,
        size: int,
        result_index: int,
        document_id: str | None,
        log_sink: LogSink | None,
    ) -> ResultSetSummary:
        field_count = reader.field_count
        # Schema is captured before the first read so empty results still carry a header.
        columns = tuple(
            ColumnInfo(reader.get_name(index), reader.get_type_name(index))
            for index in range(field_count)
        )
        chunk: list[Row] = []
        total = 0
        first = True
        limit_reached = False
        while True:
            if state.is_cancelled:
                state.mark_draining()
                await self._escalator.drain_and_cancel(reader, state.command)
                raise QueryCancelled("Query cancelled.")
            if not await reader.read():
                break
            chunk.append(tuple(reader.get_value(index) for index in range(field_count)))
            total += 1
            if len(chunk) >= size:
                await deliver(on_chunk, StreamingChunk(columns if first else (), tuple(chunk), first, False, total))
                chunk = []
                first = False
                # Let a pending cancel request run before the next read.
                await asyncio.sleep(0)
            if total >= self._row_limit:
                limit_reached = True
                break

        await deliver(
            on_chunk,
            StreamingChunk(columns if first else (), tuple(chunk), first, True, total, limit_reached),
        )
        if limit_reached:
            LOG.info("Row limit reached; cancelling remainder", extra={"limit": self._row_limit})
            state.mark_draining()
            drained = await self._escalator.drain_and_cancel(reader, state.command)
            if not drained:
                outcome = await self._escalator.escalate_runaway(reader, state, document_id, log_sink=log_sink)
                if outcome is CancelOutcome.SESSION_DROPPED:
                    connection.session_dropped = True
        return ResultSetSummary(columns, total, limit_reached, result_index)


async def deliver(sink: Callable[[T], Awaitable[None] | None], item: T) -> None:
    """Call a sync or async sink."""

    result = sink(item)
    if inspect.isawaitable(result):
        await result


async def _close_reader(reader: Reader) -> None:
    try:
        await reader.close()
    except Exception:
        LOG.debug("Failed to close reader", exc_info=True)


__all__ = [
    "CHUNK_SIZE",
    "ChunkSink",
    "QueryCancelled",
    "ROW_LIMIT",
    "ResultSetSummary",
    "StreamingExecutor",
    "deliver",
]
