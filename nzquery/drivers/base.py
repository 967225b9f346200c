"""Driver capability consumed by the registry and executor."""

from __future__ import annotations

from typing import Callable, Protocol, runtime_checkable

from ..models import ConnectionProfile

NoticeListener = Callable[[str], None]

# Substrings (lower-cased) that mark an error as the peer tearing the connection down.
BROKEN_CONNECTION_MARKERS: tuple[str, ...] = (
    "socket closed",
    "socket destroyed",
    "socket hang up",
    "socket is closed",
    "connection reset",
    "connection closed",
    "connection is closed",
    "connection was closed",
    "connection terminated",
    "econnreset",
    "epipe",
    "broken pipe",
)


class DriverError(RuntimeError):
    """Raised by drivers for failures they detect themselves."""


@runtime_checkable
class Reader(Protocol):
    """Forward-only cursor over one or more result sets."""

    @property
    def field_count(self) -> int: ...

    async def read(self) -> bool:
        """Advance to the next row; False once the current result set is exhausted."""

    async def next_result(self) -> bool:
        """Advance to the next result set; False when none remain."""

    def get_name(self, index: int) -> str: ...

    def get_type_name(self, index: int) -> str | None: ...

    def get_value(self, index: int) -> object: ...

    async def close(self) -> None: ...


@runtime_checkable
class Command(Protocol):
    """A statement bound to a connection, ready to run."""

    timeout: int | None

    async def execute_reader(self) -> Reader: ...

    async def cancel(self) -> None: ...


@runtime_checkable
class Driver(Protocol):
    """One server connection."""

    async def connect(self) -> None: ...

    async def close(self) -> None: ...

    def create_command(self, sql: str) -> Command: ...

    def add_notice_listener(self, listener: NoticeListener) -> None: ...

    def remove_notice_listener(self, listener: NoticeListener) -> None: ...


@runtime_checkable
class DriverFactory(Protocol):
    """Creates drivers for a profile and knows the server's session dialect."""

    session_id_sql: str

    def create(self, profile: ConnectionProfile, database: str | None) -> Driver:
        """Return an unopened driver for the profile/database pair."""

    def is_retryable(self, exc: BaseException) -> bool:
        """Whether ``exc`` means the peer broke the connection."""

    def drop_session_sql(self, session_id: str) -> str:
        """Statement that forcibly terminates the given server session."""


def is_connection_broken(exc: BaseException) -> bool:
    """Best-effort classification of peer-broken connections by message text.

    Walks ``__cause__``/``__context__`` so wrapped driver errors still match.
    """

    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, (ConnectionResetError, BrokenPipeError)):
            return True
        message = str(current).lower()
        if any(marker in message for marker in BROKEN_CONNECTION_MARKERS):
            return True
        current = current.__cause__ or current.__context__
    return False


__all__ = [
    "BROKEN_CONNECTION_MARKERS",
    "Command",
    "Driver",
    "DriverError",
    "DriverFactory",
    "NoticeListener",
    "Reader",
    "is_connection_broken",
]
