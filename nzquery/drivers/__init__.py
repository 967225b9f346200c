"""Driver capability and the built-in driver factories."""

from __future__ import annotations

from typing import Callable

from .base import (
    BROKEN_CONNECTION_MARKERS,
    Command,
    Driver,
    DriverError,
    DriverFactory,
    NoticeListener,
    Reader,
    is_connection_broken,
)
from .postgres import PostgresDriverFactory

_FACTORIES: dict[str, Callable[[], DriverFactory]] = {
    "postgres": PostgresDriverFactory,
}


def register_driver_factory(kind: str, factory: Callable[[], DriverFactory]) -> None:
    """Make a driver kind available to profiles."""

    _FACTORIES[kind] = factory


def get_driver_factory(kind: str) -> DriverFactory:
    """Instantiate the factory registered for ``kind``."""

    try:
        builder = _FACTORIES[kind]
    except KeyError:
        raise DriverError(f"Unknown driver kind '{kind}'.") from None
    return builder()


__all__ = [
    "BROKEN_CONNECTION_MARKERS",
    "Command",
    "Driver",
    "DriverError",
    "DriverFactory",
    "NoticeListener",
    "PostgresDriverFactory",
    "Reader",
    "get_driver_factory",
    "is_connection_broken",
    "register_driver_factory",
]
