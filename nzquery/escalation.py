"""Staged cancellation: flag, drain, driver cancel, then optional session drop."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable

from .drivers import Command, Reader
from .logsink import ExecutionLog, LogSink
from .prompts import EscalationChoice, SessionDropPrompt
from .registry import ConnectionRegistry
from .tracker import CommandTracker, ExecutingCommandState

LOG = logging.getLogger(__name__)

DRAIN_TIMEOUT = 5.0
EXTENDED_WAIT = 15.0
DRAIN_GRACE = 1.0

Waiter = Callable[[float], Awaitable[bool]]


class CancelOutcome(str, Enum):
    """How a cancel request ended."""

    NOT_RUNNING = "not_running"
    CANCELLED = "cancelled"
    CANCEL_SENT = "cancel_sent"
    SESSION_DROPPED = "session_dropped"


class CancellationEscalator:
    """Cancels in-flight commands without desynchronising the driver.

    Buffered rows are drained before the driver cancel goes out. When the
    server keeps sending past the drain timeout and a session id is known,
    the user may terminate the session on a separate connection or keep
    waiting. Terminating is never automatic.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        tracker: CommandTracker,
        *,
        prompt: SessionDropPrompt | None = None,
        drain_timeout: float = DRAIN_TIMEOUT,
        extended_wait: float = EXTENDED_WAIT,
        log_sink: LogSink | None = None,
    ) -> None:
        self._registry = registry
        self._tracker = tracker
        self._prompt = prompt
        self._drain_timeout = drain_timeout
        self._extended_wait = extended_wait
        self._log = ExecutionLog(LOG, log_sink)

    @property
    def drain_timeout(self) -> float:
        return self._drain_timeout

    async def request_cancel(self, document_id: str, *, log_sink: LogSink | None = None) -> CancelOutcome:
        """Cancel whatever the document is executing."""

        log = self._log.bind(log_sink)
        state = self._tracker.cancel(document_id)
        if state is None:
            return CancelOutcome.NOT_RUNNING
        log.info("Cancellation requested.", document=document_id)
        if await state.wait(self._drain_timeout):
            return CancelOutcome.CANCELLED
        if state.is_draining:
            # The loop runs its own drain and sends the cancel when that ends.
            if await state.wait(self._drain_timeout + DRAIN_GRACE):
                return CancelOutcome.CANCELLED
        else:
            # The fetch loop is stuck inside a read; cancel underneath it.
            await cancel_command(state.command)
            log.info("Cancel sent to server.", document=document_id)
        if state.finished:
            return CancelOutcome.CANCELLED
        return await self._offer_session_drop(state, document_id, state.wait, log)

    async def drain_and_cancel(self, reader: Reader, command: Command, *, timeout: float | None = None) -> bool:
        """Discard already-sent rows, then cancel; False when draining timed out."""

        drained = await self.drain(reader, self._drain_timeout if timeout is None else timeout)
        if not drained:
            LOG.warning("Draining timed out; forcing cancel")
        await cancel_command(command)
        return drained

    async def drain(self, reader: Reader, timeout: float) -> bool:
        async def _consume() -> None:
            while True:
                while await reader.read():
                    pass
                if not await reader.next_result():
                    return

        try:
            await asyncio.wait_for(_consume(), timeout)
        except TimeoutError:
            return False
        except Exception:
            # Nothing left to protect once the stream itself has failed.
            LOG.debug("Reader failed while draining", exc_info=True)
        return True

    async def escalate_runaway(
        self,
        reader: Reader,
        state: ExecutingCommandState,
        document_id: str | None,
        *,
        log_sink: LogSink | None = None,
    ) -> CancelOutcome:
        """Offer a session drop after the row cap was hit and draining timed out."""

        log = self._log.bind(log_sink)

        async def _wait(timeout: float) -> bool:
            return await self.drain(reader, timeout)

        return await self._offer_session_drop(state, document_id, _wait, log)

    async def drop_session(
        self,
        session_id: str,
        document_id: str | None,
        *,
        profile_name: str | None = None,
        log_sink: LogSink | None = None,
    ) -> bool:
        """Terminate ``session_id`` from a brand-new ad-hoc connection."""

        log = self._log.bind(log_sink)
        profile_name = profile_name or self._registry.profile_for_execution(document_id)
        factory = self._registry.factory_for(profile_name)
        database = self._registry.effective_database(document_id, profile_name)
        try:
            live = await self._registry.create_ad_hoc(profile_name, database)
            try:
                command = live.handle.create_command(factory.drop_session_sql(session_id))
                reader = await command.execute_reader()
                try:
                    await self.drain(reader, self._drain_timeout)
                finally:
                    await reader.close()
            finally:
                await self._registry.close_ad_hoc(live)
        except Exception as exc:
            LOG.exception("Failed to drop session", extra={"session_id": session_id})
            log.error(f"Failed to drop session {session_id}: {exc}")
            return False
        log.info(f"Session {session_id} terminated.", document=document_id)
        if document_id is not None and self._registry.persistent(document_id) is not None:
            try:
                await self._registry.reconnect_persistent(document_id)
            except Exception as exc:
                LOG.exception("Failed to re-establish connection", extra={"document": document_id})
                log.error(f"Reconnect after session drop failed: {exc}")
            else:
                log.info("Reconnected.", document=document_id)
        return True

    async def _offer_session_drop(
        self,
        state: ExecutingCommandState,
        document_id: str | None,
        wait: Waiter,
        log: ExecutionLog,
    ) -> CancelOutcome:
        session_id = state.session_id
        if session_id is None or self._prompt is None:
            return CancelOutcome.CANCEL_SENT
        while True:
            choice = await self._prompt.choose(session_id, document_id)
            if choice is EscalationChoice.DROP:
                dropped = await self.drop_session(session_id, document_id, log_sink=log.sink)
                return CancelOutcome.SESSION_DROPPED if dropped else CancelOutcome.CANCEL_SENT
            if choice is EscalationChoice.WAIT:
                log.info(f"Waiting {self._extended_wait:g}s for the server to stop.", document=document_id)
                if await wait(self._extended_wait):
                    return CancelOutcome.CANCELLED
                continue
            return CancelOutcome.CANCEL_SENT


async def cancel_command(command: Command) -> None:
    """Driver-level cancel; failures are logged, not raised."""

    try:
        await command.cancel()
    except Exception:
        LOG.warning("Failed to cancel command", exc_info=True)


__all__ = [
    "CancelOutcome",
    "CancellationEscalator",
    "DRAIN_GRACE",
    "DRAIN_TIMEOUT",
    "EXTENDED_WAIT",
    "cancel_command",
]
