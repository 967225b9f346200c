"""Process-wide table of in-flight commands, keyed by document."""

from __future__ import annotations

import asyncio
import logging
import re
import threading
import time
from dataclasses import dataclass, field

from .drivers import Command

LOG = logging.getLogger(__name__)

_WINDOWS_PATH_RE = re.compile(r"^([A-Za-z]):(?=[\\/]|$)")
_FILE_URI_DRIVE_RE = re.compile(r"^(file:///)([A-Za-z])(?::|%3[Aa])", re.IGNORECASE)


def normalize_document_id(document_id: str) -> str:
    """Collapse spellings of the same document that differ only in drive-letter case.

    ``C:\\work\\a.sql`` and ``c:\\work\\a.sql`` map to the same key, as do
    ``file:///C:/work/a.sql`` and ``file:///c%3A/work/a.sql``.
    """

    uri = _FILE_URI_DRIVE_RE.match(document_id)
    if uri:
        return f"file:///{uri.group(2).lower()}%3A{document_id[uri.end():]}"
    path = _WINDOWS_PATH_RE.match(document_id)
    if path:
        return f"{path.group(1).lower()}:{document_id[path.end():]}"
    return document_id


@dataclass(slots=True, eq=False)
class ExecutingCommandState:
    """The command currently running for one document."""

    command: Command
    session_id: str | None = None
    started_at: float = field(default_factory=time.monotonic)
    _cancelled: bool = False
    _draining: bool = False
    _finished: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    @property
    def is_draining(self) -> bool:
        """True once the fetch loop has seen the cancel and is discarding rows."""

        return self._draining

    @property
    def finished(self) -> bool:
        return self._finished.is_set()

    def mark_cancelled(self) -> None:
        self._cancelled = True

    def mark_draining(self) -> None:
        self._draining = True

    def mark_finished(self) -> None:
        self._finished.set()

    async def wait(self, timeout: float) -> bool:
        """Wait up to ``timeout`` seconds for the fetch loop to let go."""

        try:
            await asyncio.wait_for(self._finished.wait(), timeout)
        except TimeoutError:
            return False
        return True


class CommandTracker:
    """Signalling point between cancel requests and fetch loops.

    An entry exists exactly while a fetch loop is consuming rows for the
    document; the map is read for flags, never used to hand values over.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._states: dict[str, ExecutingCommandState] = {}

    def register(self, document_id: str, command: Command, *, session_id: str | None = None) -> ExecutingCommandState:
        """Record ``command`` as executing for the document."""

        state = ExecutingCommandState(command=command, session_id=session_id)
        key = normalize_document_id(document_id)
        with self._lock:
            previous = self._states.get(key)
            self._states[key] = state
        if previous is not None:
            LOG.warning("Replacing tracked command that never finished", extra={"document": key})
            previous.mark_finished()
        return state

    def get(self, document_id: str) -> ExecutingCommandState | None:
        with self._lock:
            return self._states.get(normalize_document_id(document_id))

    def is_executing(self, document_id: str) -> bool:
        return self.get(document_id) is not None

    def is_cancelled(self, document_id: str) -> bool:
        state = self.get(document_id)
        return bool(state and state.is_cancelled)

    def cancel(self, document_id: str) -> ExecutingCommandState | None:
        """Flag the document's command as cancelled; no-op when idle."""

        state = self.get(document_id)
        if state is None:
            LOG.debug("Cancel requested with nothing executing", extra={"document": document_id})
            return None
        state.mark_cancelled()
        return state

    def finish(self, document_id: str, state: ExecutingCommandState) -> None:
        """Drop the entry if it still belongs to ``state``."""

        key = normalize_document_id(document_id)
        with self._lock:
            if self._states.get(key) is state:
                del self._states[key]
        state.mark_finished()

    async def wait_finished(self, document_id: str, timeout: float) -> bool:
        state = self.get(document_id)
        if state is None:
            return True
        return await state.wait(timeout)

    def executing_documents(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(self._states)


COMMAND_TRACKER = CommandTracker()


__all__ = [
    "COMMAND_TRACKER",
    "CommandTracker",
    "ExecutingCommandState",
    "normalize_document_id",
]
