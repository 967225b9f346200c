"""Connection registry: profiles, document bindings and per-document live connections."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from .config import AppConfig, ConnectionProfileConfig
from .drivers import DriverFactory, get_driver_factory
from .models import ConnectionProfile, DocumentBinding, LiveConnection
from .tracker import normalize_document_id

LOG = logging.getLogger(__name__)


class RegistryError(RuntimeError):
    """Raised when no usable profile can be resolved."""


class RegistryEventKind(str, Enum):
    """What changed in the registry."""

    CONNECTIONS = "connections"
    ACTIVE_CONNECTION = "active_connection"
    DOCUMENT_CONNECTION = "document_connection"
    DOCUMENT_DATABASE = "document_database"


@dataclass(frozen=True, slots=True)
class RegistryEvent:
    """Change notification delivered to subscribers."""

    kind: RegistryEventKind
    document_id: str | None = None


RegistryListener = Callable[[RegistryEvent], None]


class ConnectionRegistry:
    """Owns connection profiles and the live connection bound to each document.

    At most one live connection exists per document. It is reused while the
    (profile, effective database) pair is unchanged and closed whenever the
    binding changes, the document closes or keep-open is switched off.
    Ad-hoc connections are never recorded here.
    """

    def __init__(
        self,
        config: AppConfig | None = None,
        *,
        driver_factory: DriverFactory | None = None,
        save: Callable[[AppConfig], None] | None = None,
    ) -> None:
        self._config = config or AppConfig()
        self._driver_factory = driver_factory
        self._save = save
        self._profiles: dict[str, ConnectionProfile] = {
            entry.name: entry.to_profile() for entry in self._config.profiles
        }
        self._active_name = self._config.active_profile or next(iter(self._profiles), None)
        self._bindings: dict[str, DocumentBinding] = {}
        self._keep_open: dict[str, bool] = {}
        self._connections: dict[str, LiveConnection] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._listeners: set[RegistryListener] = set()

    # ---- profiles -------------------------------------------------------

    @property
    def config(self) -> AppConfig:
        return self._config

    @property
    def profiles(self) -> tuple[ConnectionProfile, ...]:
        """Profiles available in the current config."""

        return tuple(self._profiles.values())

    @property
    def active_profile_name(self) -> str | None:
        return self._active_name

    def profile(self, name: str) -> ConnectionProfile:
        try:
            return self._profiles[name]
        except KeyError:
            raise RegistryError(f"Connection '{name}' not found.") from None

    def save_profile(self, profile: ConnectionProfile) -> None:
        """Add or replace a profile; live connections keep their old settings."""

        if not profile.name:
            raise RegistryError("Connection name is required.")
        self._profiles[profile.name] = profile
        self._config = self._config.with_profile(ConnectionProfileConfig.from_profile(profile))
        if self._active_name is None:
            self._active_name = profile.name
        self._persist()
        self._notify(RegistryEvent(RegistryEventKind.CONNECTIONS))

    def delete_profile(self, name: str) -> None:
        if name not in self._profiles:
            return
        del self._profiles[name]
        self._config = self._config.without_profile(name)
        if self._active_name == name:
            self._active_name = self._config.active_profile
            self._notify(RegistryEvent(RegistryEventKind.ACTIVE_CONNECTION))
        self._persist()
        self._notify(RegistryEvent(RegistryEventKind.CONNECTIONS))

    def set_active_profile(self, name: str | None) -> None:
        if name is not None:
            self.profile(name)
        self._active_name = name
        self._config = self._config.with_active_profile(name)
        self._persist()
        self._notify(RegistryEvent(RegistryEventKind.ACTIVE_CONNECTION))

    def factory_for(self, profile_name: str) -> DriverFactory:
        if self._driver_factory is not None:
            return self._driver_factory
        return get_driver_factory(self.profile(profile_name).driver)

    # ---- document bindings ----------------------------------------------

    def binding(self, document_id: str) -> DocumentBinding | None:
        return self._bindings.get(normalize_document_id(document_id))

    async def set_document_profile(self, document_id: str, profile_name: str) -> None:
        """Bind the document to a profile; its open connection is dropped."""

        self.profile(profile_name)
        key = normalize_document_id(document_id)
        current = self._bindings.get(key)
        override = current.database_override if current else None
        self._bindings[key] = DocumentBinding(document_id, profile_name, override)
        await self.close_persistent(document_id)
        self._notify(RegistryEvent(RegistryEventKind.DOCUMENT_CONNECTION, document_id))

    async def clear_document(self, document_id: str) -> None:
        """Forget everything about a closed document."""

        key = normalize_document_id(document_id)
        self._bindings.pop(key, None)
        self._keep_open.pop(key, None)
        await self.close_persistent(document_id)
        self._locks.pop(key, None)
        self._notify(RegistryEvent(RegistryEventKind.DOCUMENT_CONNECTION, document_id))

    def profile_for_execution(self, document_id: str | None = None) -> str:
        """Document's bound profile, else the active profile."""

        if document_id is not None:
            binding = self.binding(document_id)
            if binding is not None:
                return binding.profile_name
        if self._active_name:
            return self._active_name
        raise RegistryError("No connection selected")

    def database_override(self, document_id: str) -> str | None:
        binding = self.binding(document_id)
        return binding.database_override if binding else None

    def effective_database(self, document_id: str | None, profile_name: str | None = None) -> str | None:
        if document_id is not None:
            override = self.database_override(document_id)
            if override:
                return override
        name = profile_name or self.profile_for_execution(document_id)
        return self.profile(name).database

    async def set_database_override(self, document_id: str, database: str) -> None:
        """Point the document at another database; forces a reconnect."""

        key = normalize_document_id(document_id)
        current = self._bindings.get(key)
        profile_name = current.profile_name if current else self.profile_for_execution(None)
        self._bindings[key] = DocumentBinding(document_id, profile_name, database)
        await self.close_persistent(document_id)
        self._notify(RegistryEvent(RegistryEventKind.DOCUMENT_DATABASE, document_id))

    async def clear_database_override(self, document_id: str) -> None:
        key = normalize_document_id(document_id)
        current = self._bindings.get(key)
        if current is not None:
            self._bindings[key] = DocumentBinding(current.document_id, current.profile_name, None)
        await self.close_persistent(document_id)
        self._notify(RegistryEvent(RegistryEventKind.DOCUMENT_DATABASE, document_id))

    def keep_connection_open(self, document_id: str) -> bool:
        default = self._config.engine.keep_connection_open
        return self._keep_open.get(normalize_document_id(document_id), default)

    async def set_keep_connection_open(self, document_id: str, keep_open: bool) -> None:
        self._keep_open[normalize_document_id(document_id)] = keep_open
        if not keep_open:
            await self.close_persistent(document_id)

    # ---- live connections -----------------------------------------------

    def persistent(self, document_id: str) -> LiveConnection | None:
        return self._connections.get(normalize_document_id(document_id))

    async def get_or_create_persistent(self, document_id: str, profile_name: str | None = None) -> LiveConnection:
        """Return the document's connection, reopening it if the target moved."""

        target = profile_name or self.profile_for_execution(document_id)
        database = self.effective_database(document_id, target)
        key = normalize_document_id(document_id)
        async with self._lock_for(key):
            existing = self._connections.get(key)
            if existing is not None:
                if existing.matches(target, database):
                    return existing
                LOG.debug(
                    "Persistent connection target changed; reconnecting",
                    extra={"document": document_id, "profile": target, "database": database},
                )
                await self._close_entry(key)
            live = await self._open(target, database, document_id)
            self._connections[key] = live
            return live

    async def create_ad_hoc(self, profile_name: str, database: str | None = None) -> LiveConnection:
        """Open an isolated connection the caller must close."""

        return await self._open(profile_name, database or self.profile(profile_name).database, None)

    async def close_ad_hoc(self, live: LiveConnection) -> None:
        await _close_quietly(live)

    async def close_persistent(self, document_id: str) -> None:
        """Close and forget the document's connection; safe when none exists."""

        await self._close_entry(normalize_document_id(document_id))

    async def reconnect_persistent(self, document_id: str) -> LiveConnection | None:
        """Replace the document's connection with a fresh one (after a session drop)."""

        previous = self.persistent(document_id)
        if previous is None:
            return None
        await self.close_persistent(document_id)
        return await self.get_or_create_persistent(document_id, previous.profile_name)

    async def close_all(self) -> None:
        for key in tuple(self._connections):
            await self._close_entry(key)

    def record_session_id(self, document_id: str, session_id: str) -> None:
        live = self.persistent(document_id)
        if live is not None:
            live.last_session_id = session_id

    def last_session_id(self, document_id: str) -> str | None:
        live = self.persistent(document_id)
        return live.last_session_id if live else None

    def subscribe(self, listener: RegistryListener) -> Callable[[], None]:
        """Subscribe to registry changes; returns an unsubscribe handle."""

        self._listeners.add(listener)

        def _unsubscribe() -> None:
            self._listeners.discard(listener)

        return _unsubscribe

    # ---- internals ------------------------------------------------------

    async def _open(self, profile_name: str, database: str | None, document_id: str | None) -> LiveConnection:
        profile = self.profile(profile_name)
        driver = self.factory_for(profile_name).create(profile, database)
        await driver.connect()
        LOG.debug(
            "Opened connection",
            extra={"profile": profile_name, "database": database, "document": document_id},
        )
        return LiveConnection(
            handle=driver,
            profile_name=profile_name,
            effective_database=database,
            document_id=document_id,
        )

    async def _close_entry(self, key: str) -> None:
        live = self._connections.pop(key, None)
        if live is not None:
            await _close_quietly(live)

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def _persist(self) -> None:
        if self._save is None:
            return
        try:
            self._save(self._config)
        except OSError:
            LOG.exception("Failed to persist connection profiles")

    def _notify(self, event: RegistryEvent) -> None:
        for listener in tuple(self._listeners):
            listener(event)


async def _close_quietly(live: LiveConnection) -> None:
    try:
        await live.handle.close()
    except Exception:
        LOG.exception(
            "Error closing connection",
            extra={"profile": live.profile_name, "document": live.document_id},
        )


__all__ = [
    "ConnectionRegistry",
    "RegistryError",
    "RegistryEvent",
    "RegistryEventKind",
    "RegistryListener",
]
