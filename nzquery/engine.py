"""Query engine: variable resolution, connection choice, streaming and retry."""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager, suppress
from dataclasses import replace
from typing import AsyncIterator, Awaitable, Callable, Sequence

from .config import EngineSettings
from .drivers import DriverFactory
from .escalation import CancellationEscalator, CancelOutcome
from .fanout import Outcome, run_bounded
from .history import HistorySink
from .logsink import ExecutionLog, LogSink
from .models import (
    ExecuteOptions,
    ExecutionReport,
    ExecutionStatus,
    LiveConnection,
    QueryResult,
    StreamingChunk,
)
from .prompts import SessionDropPrompt, VariablePrompt
from .registry import ConnectionRegistry
from .streaming import ChunkSink, QueryCancelled, StreamingExecutor, deliver
from .tracker import COMMAND_TRACKER, CommandTracker
from .variables import VariableResolutionError, prepare_batch

LOG = logging.getLogger(__name__)

MAX_ATTEMPTS = 2

ResultSink = Callable[[QueryResult], Awaitable[None] | None]


class QueryExecutionError(RuntimeError):
    """Raised when a statement fails; carries a single descriptive message."""


class _StatementFailed(Exception):
    def __init__(self, index: int, sql: str, *, session_dropped: bool = False) -> None:
        super().__init__(sql)
        self.index = index
        self.sql = sql
        self.session_dropped = session_dropped


class QueryEngine:
    """Runs SQL batches for documents.

    A document with keep-open enabled reuses its persistent connection;
    everything else runs on an ad-hoc connection closed right after use.
    When a persistent connection turns out to be broken by the peer the
    whole batch is re-run once on a fresh connection with the values
    already resolved, so the user is not prompted again.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        *,
        settings: EngineSettings | None = None,
        tracker: CommandTracker = COMMAND_TRACKER,
        variable_prompt: VariablePrompt | None = None,
        drop_prompt: SessionDropPrompt | None = None,
        history: HistorySink | None = None,
        log_sink: LogSink | None = None,
    ) -> None:
        self._registry = registry
        self._settings = settings or registry.config.engine
        self._tracker = tracker
        self._variable_prompt = variable_prompt
        self._history = history
        self._log = ExecutionLog(LOG, log_sink)
        self._escalator = CancellationEscalator(
            registry,
            tracker,
            prompt=drop_prompt,
            drain_timeout=self._settings.drain_timeout,
            extended_wait=self._settings.extended_wait,
            log_sink=log_sink,
        )
        self._executor = StreamingExecutor(
            tracker,
            self._escalator,
            row_limit=self._settings.row_limit,
            chunk_size=self._settings.chunk_size,
            query_timeout=self._settings.query_timeout,
        )
        self._history_tasks: set[asyncio.Task[None]] = set()

    @property
    def registry(self) -> ConnectionRegistry:
        return self._registry

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    @property
    def escalator(self) -> CancellationEscalator:
        return self._escalator

    async def execute(
        self,
        document_id: str | None,
        statements: Sequence[str] | str,
        options: ExecuteOptions | None = None,
        *,
        on_chunk: ChunkSink | None = None,
        on_result: ResultSink | None = None,
        log_sink: LogSink | None = None,
    ) -> ExecutionReport:
        """Execute a batch sequentially and report how it ended.

        Cancellation is a normal outcome (``status=CANCELLED``). A failing
        statement stops the batch: its error result goes to ``on_result``
        first, then `QueryExecutionError` is raised.
        """

        options = options or ExecuteOptions(streaming=self._settings.streaming)
        log = self._log.bind(log_sink)
        if isinstance(statements, str):
            statements = (statements,)
        sqls = await self._resolve_variables(statements, options, log)
        if not sqls:
            log.info("Nothing to execute.")
            return ExecutionReport(ExecutionStatus.COMPLETED)

        profile_name = options.profile_name or self._registry.profile_for_execution(document_id)
        factory = self._registry.factory_for(profile_name)
        persistent = document_id is not None and self._registry.keep_connection_open(document_id)
        attempt = 1
        while True:
            try:
                results = await self._attempt(
                    document_id,
                    profile_name,
                    factory,
                    sqls,
                    options,
                    persistent=persistent,
                    on_chunk=on_chunk,
                    on_result=on_result,
                    log=log,
                )
            except QueryCancelled:
                log.info("Query cancelled.", document=document_id)
                return ExecutionReport(ExecutionStatus.CANCELLED, attempts=attempt)
            except _StatementFailed as failure:
                exc = failure.__cause__ or failure
                retryable = persistent and not failure.session_dropped and _is_retryable(factory, exc)
                if attempt < MAX_ATTEMPTS and retryable:
                    log.warning(
                        f"Connection lost ({exc}); reconnecting and retrying.",
                        document=document_id,
                        attempt=attempt,
                    )
                    await self._registry.close_persistent(document_id)
                    attempt += 1
                    continue
                message = str(exc) or type(exc).__name__
                log.error(f"Query failed: {message}", document=document_id, statement=failure.index)
                await _deliver_result(on_result, QueryResult.error(failure.sql, message, statement_index=failure.index))
                raise QueryExecutionError(message) from exc
            if attempt > 1:
                log.info("Retry succeeded.", document=document_id)
            return ExecutionReport(ExecutionStatus.COMPLETED, tuple(results), attempt)

    async def iter_chunks(
        self,
        document_id: str | None,
        statements: Sequence[str] | str,
        options: ExecuteOptions | None = None,
        *,
        log_sink: LogSink | None = None,
    ) -> AsyncIterator[StreamingChunk]:
        """Yield chunks as they are produced; errors surface after the last one.

        The channel holds a single chunk so the fetch loop never runs more
        than one chunk ahead of the consumer.
        """

        options = replace(options or ExecuteOptions(), streaming=True)
        channel: asyncio.Queue[StreamingChunk | None] = asyncio.Queue(maxsize=1)

        async def _produce() -> ExecutionReport:
            try:
                return await self.execute(
                    document_id, statements, options, on_chunk=channel.put, log_sink=log_sink
                )
            finally:
                # Nobody reads the channel once the consumer has cancelled us.
                if not asyncio.current_task().cancelling():
                    await channel.put(None)

        producer = asyncio.create_task(_produce())
        try:
            while (chunk := await channel.get()) is not None:
                yield chunk
            await producer
        finally:
            if not producer.done():
                producer.cancel()
                with suppress(asyncio.CancelledError):
                    await producer

    async def cancel(self, document_id: str, *, log_sink: LogSink | None = None) -> CancelOutcome:
        """Cancel the document's running command; a no-op when idle."""

        return await self._escalator.request_cancel(document_id, log_sink=log_sink)

    def is_executing(self, document_id: str) -> bool:
        return self._tracker.is_executing(document_id)

    async def set_keep_connection_open(self, document_id: str, keep_open: bool) -> None:
        await self._registry.set_keep_connection_open(document_id, keep_open)

    async def set_database_override(self, document_id: str, database: str) -> None:
        await self._registry.set_database_override(document_id, database)

    async def clear_database_override(self, document_id: str) -> None:
        await self._registry.clear_database_override(document_id)

    async def close_document(self, document_id: str) -> None:
        """Stop anything running for the document and release its connection."""

        if self._tracker.is_executing(document_id):
            await self.cancel(document_id)
        await self._registry.clear_document(document_id)

    async def explain(
        self,
        document_id: str | None,
        sql: str,
        options: ExecuteOptions | None = None,
        *,
        log_sink: LogSink | None = None,
    ) -> str:
        """Run an EXPLAIN statement and return the plan text.

        Servers that emit plans as notices are read from the notice channel;
        otherwise the first column of every returned row is used.
        """

        options = options or ExecuteOptions(streaming=self._settings.streaming)
        log = self._log.bind(log_sink)
        sqls = await self._resolve_variables((sql,), options, log)
        if not sqls:
            raise QueryExecutionError("Provide SQL to explain.")
        profile_name = options.profile_name or self._registry.profile_for_execution(document_id)
        persistent = document_id is not None and self._registry.keep_connection_open(document_id)
        notices: list[str] = []
        async with self._connection(document_id, profile_name, persistent=persistent) as live:
            listener = notices.append
            live.handle.add_notice_listener(listener)
            try:
                results = await self._executor.collect(live, sqls[0], document_id=document_id)
            except QueryCancelled:
                log.info("Explain cancelled.", document=document_id)
                return ""
            except Exception as exc:
                raise QueryExecutionError(str(exc)) from exc
            finally:
                live.handle.remove_notice_listener(listener)
        if notices:
            return "\n".join(notices)
        return "\n".join(str(row[0]) for result in results for row in result.rows if row)

    async def query_databases(
        self,
        profile_name: str,
        databases: Sequence[str],
        sql: str,
        *,
        workers: int | None = None,
    ) -> list[Outcome[str, list[QueryResult]]]:
        """Run ``sql`` against every database on bounded ad-hoc connections."""

        async def _query(database: str) -> list[QueryResult]:
            live = await self._registry.create_ad_hoc(profile_name, database)
            try:
                return await self._executor.collect(live, sql)
            finally:
                await self._registry.close_ad_hoc(live)

        concurrency = workers or self._settings.search_workers
        LOG.debug(
            "Querying databases",
            extra={"profile": profile_name, "databases": len(databases), "workers": concurrency},
        )
        return await run_bounded(list(databases), _query, concurrency)

    async def close(self) -> None:
        """Flush pending history writes and close every persistent connection."""

        if self._history_tasks:
            await asyncio.gather(*tuple(self._history_tasks), return_exceptions=True)
        await self._registry.close_all()

    async def _resolve_variables(
        self,
        statements: Sequence[str],
        options: ExecuteOptions,
        log: ExecutionLog,
    ) -> tuple[str, ...]:
        batch = prepare_batch(statements)
        values = dict(options.overrides)
        missing = batch.unresolved(values)
        if missing:
            if options.silent:
                message = (
                    "Query contains variables but silent mode is enabled; cannot prompt for values. "
                    f"Missing: {', '.join(missing)}"
                )
                log.error(message)
                raise VariableResolutionError(message)
            if self._variable_prompt is None:
                raise VariableResolutionError(f"No variable prompt available. Missing: {', '.join(missing)}")
            defaults = {name: value for name, value in batch.defaults().items() if name in missing}
            answers = await self._variable_prompt.prompt(missing, defaults)
            if answers is None:
                raise VariableResolutionError("Variable input cancelled by user")
            values.update(answers)
        return batch.render(values)

    async def _attempt(
        self,
        document_id: str | None,
        profile_name: str,
        factory: DriverFactory,
        sqls: Sequence[str],
        options: ExecuteOptions,
        *,
        persistent: bool,
        on_chunk: ChunkSink | None,
        on_result: ResultSink | None,
        log: ExecutionLog,
    ) -> list[QueryResult]:
        def _on_notice(message: str) -> None:
            log.info(f"NOTICE: {message}", document=document_id)

        live: LiveConnection | None = None
        try:
            live = await self._acquire(document_id, profile_name, persistent=persistent)
            session_id = await self._open_session(live, document_id, profile_name, factory, _on_notice, log)
            results: list[QueryResult] = []
            total = len(sqls)
            for index, sql in enumerate(sqls):
                if live.session_dropped:
                    # The session was terminated at the row cap; carry on with a new one.
                    log.info("Session was dropped; continuing on a new connection.", document=document_id)
                    stale, live = live, None
                    await self._release(stale, _on_notice)
                    live = await self._acquire(document_id, profile_name, persistent=persistent)
                    session_id = await self._open_session(live, document_id, profile_name, factory, _on_notice, log)
                if total > 1:
                    log.info(f"Executing query {index + 1}/{total}...", document=document_id)
                else:
                    log.info("Executing query...", document=document_id)
                try:
                    statement_results = await self._run_statement(
                        live, sql, index, options, document_id, session_id, on_chunk, log
                    )
                except QueryCancelled:
                    raise
                except Exception as exc:
                    raise _StatementFailed(index, sql, session_dropped=live.session_dropped) from exc
                for result in statement_results:
                    await _deliver_result(on_result, result)
                results.extend(statement_results)
                self._record_history(live, profile_name, sql)
            return results
        finally:
            if live is not None:
                await self._release(live, _on_notice)

    async def _open_session(
        self,
        live: LiveConnection,
        document_id: str | None,
        profile_name: str,
        factory: DriverFactory,
        on_notice: Callable[[str], None],
        log: ExecutionLog,
    ) -> str | None:
        log.info(
            f"Connected to {profile_name} ({live.effective_database or 'default database'}).",
            document=document_id,
        )
        session_id = await self._capture_session_id(live, factory)
        if session_id is not None:
            log.info(f"Session ID: {session_id}", document=document_id)
            if live.is_persistent:
                self._registry.record_session_id(document_id, session_id)
        live.handle.add_notice_listener(on_notice)
        return session_id

    async def _release(self, live: LiveConnection, on_notice: Callable[[str], None] | None = None) -> None:
        if on_notice is not None:
            live.handle.remove_notice_listener(on_notice)
        if not live.is_persistent:
            await self._registry.close_ad_hoc(live)

    async def _run_statement(
        self,
        live: LiveConnection,
        sql: str,
        index: int,
        options: ExecuteOptions,
        document_id: str | None,
        session_id: str | None,
        on_chunk: ChunkSink | None,
        log: ExecutionLog,
    ) -> list[QueryResult]:
        started = time.perf_counter()
        if options.streaming:
            summaries = await self._executor.stream(
                live,
                sql,
                on_chunk or _discard_chunk,
                document_id=document_id,
                session_id=session_id,
                chunk_size=options.chunk_size,
                log_sink=log.sink,
            )
            elapsed_ms = int((time.perf_counter() - started) * 1000)
            results = [
                QueryResult(
                    columns=summary.columns,
                    rows=(),
                    sql=sql,
                    message=f"{summary.total_rows} row(s)" if summary.columns else "Query executed successfully.",
                    limit_reached=summary.limit_reached,
                    elapsed_ms=elapsed_ms,
                    row_count=summary.total_rows,
                    statement_index=index,
                    result_index=summary.result_index,
                )
                for summary in summaries
            ]
        else:
            collected = await self._executor.collect(
                live,
                sql,
                document_id=document_id,
                session_id=session_id,
                statement_index=index,
                log_sink=log.sink,
            )
            elapsed_ms = int((time.perf_counter() - started) * 1000)
            results = [replace(result, elapsed_ms=elapsed_ms) for result in collected]
        for result in results:
            if result.limit_reached:
                log.warning(
                    f"Row limit of {self._executor.row_limit} reached; remaining rows were discarded.",
                    document=document_id,
                )
        return results

    @asynccontextmanager
    async def _connection(
        self,
        document_id: str | None,
        profile_name: str,
        *,
        persistent: bool,
    ) -> AsyncIterator[LiveConnection]:
        live = await self._acquire(document_id, profile_name, persistent=persistent)
        try:
            yield live
        finally:
            await self._release(live)

    async def _acquire(self, document_id: str | None, profile_name: str, *, persistent: bool) -> LiveConnection:
        if persistent and document_id is not None:
            return await self._registry.get_or_create_persistent(document_id, profile_name)
        database = self._registry.effective_database(document_id, profile_name)
        return await self._registry.create_ad_hoc(profile_name, database)

    async def _capture_session_id(self, live: LiveConnection, factory: DriverFactory) -> str | None:
        try:
            results = await self._executor.collect(live, factory.session_id_sql)
        except Exception:
            LOG.debug("Could not read session id", exc_info=True)
            return None
        for result in results:
            if result.rows and result.rows[0]:
                return str(result.rows[0][0])
        return None

    def _record_history(self, live: LiveConnection, profile_name: str, sql: str) -> None:
        if self._history is None:
            return
        host = self._registry.profile(profile_name).host
        task = asyncio.create_task(
            self._write_history(host, live.effective_database, sql, profile_name)
        )
        self._history_tasks.add(task)
        task.add_done_callback(self._history_tasks.discard)

    async def _write_history(self, host: str, database: str | None, sql: str, profile_name: str) -> None:
        try:
            await self._history.record(host, database, "unknown", sql, profile_name)
        except Exception:
            LOG.exception("Failed to record query history", extra={"profile": profile_name})


def _is_retryable(factory: DriverFactory, exc: BaseException) -> bool:
    try:
        return factory.is_retryable(exc)
    except Exception:
        LOG.debug("Retry classifier failed", exc_info=True)
        return False


def _discard_chunk(chunk: StreamingChunk) -> None:
    return None


async def _deliver_result(on_result: ResultSink | None, result: QueryResult) -> None:
    if on_result is None:
        return
    await deliver(on_result, result)


__all__ = [
    "MAX_ATTEMPTS",
    "QueryEngine",
    "QueryExecutionError",
    "ResultSink",
]
