"""Engine configuration: profiles, limits and where they live on disk."""

from __future__ import annotations

import re
from pathlib import Path

import tomllib

from pydantic import BaseModel, Field, ValidationError

from .models import ConnectionProfile

CONFIG_FILE = Path.home() / ".config" / "nzquery" / "config.toml"

# Characters TOML basic strings only accept as escapes (tab is allowed as-is).
_CONTROL_RE = re.compile(r"[\x00-\x08\x0a-\x1f\x7f]")


class EngineSettings(BaseModel):
    """Execution limits and connection policy for the query engine."""

    query_timeout: int = 1800
    chunk_size: int = Field(default=5000, gt=0)
    row_limit: int = Field(default=200_000, gt=0)
    drain_timeout: float = 5.0
    extended_wait: float = 15.0
    keep_connection_open: bool = True
    streaming: bool = True
    search_workers: int = Field(default=8, gt=0)
    history_limit: int = 1000


class ConnectionProfileConfig(BaseModel):
    """One `[[profiles]]` table from config.toml."""

    name: str
    host: str = "localhost"
    port: int | None = None
    database: str | None = None
    user: str | None = None
    password: str | None = None
    driver: str = "postgres"

    def to_profile(self) -> ConnectionProfile:
        return ConnectionProfile(
            name=self.name,
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
            driver=self.driver,
        )

    @classmethod
    def from_profile(cls, profile: ConnectionProfile) -> ConnectionProfileConfig:
        return cls(
            name=profile.name,
            host=profile.host,
            port=profile.port,
            database=profile.database,
            user=profile.user,
            password=profile.password,
            driver=profile.driver,
        )


class AppConfig(BaseModel):
    """Everything config.toml can hold."""

    profiles: list[ConnectionProfileConfig] = Field(default_factory=list)
    active_profile: str | None = None
    engine: EngineSettings = Field(default_factory=EngineSettings)
    history_file: str | None = None

    def profile(self, name: str) -> ConnectionProfileConfig | None:
        for profile in self.profiles:
            if profile.name == name:
                return profile
        return None

    def with_profile(self, profile: ConnectionProfileConfig) -> AppConfig:
        """Return a copy with the profile added or replaced by name."""

        profiles = [entry for entry in self.profiles if entry.name != profile.name]
        profiles.append(profile)
        update: dict[str, object] = {"profiles": profiles}
        if not self.active_profile:
            update["active_profile"] = profile.name
        return self.model_copy(update=update)

    def without_profile(self, name: str) -> AppConfig:
        """Return a copy with the named profile removed."""

        profiles = [entry for entry in self.profiles if entry.name != name]
        active = self.active_profile
        if active == name:
            active = profiles[0].name if profiles else None
        return self.model_copy(update={"profiles": profiles, "active_profile": active})

    def with_active_profile(self, name: str | None) -> AppConfig:
        """Return a copy with the active profile updated."""

        return self.model_copy(update={"active_profile": name})

    def with_engine(self, **updates: object) -> AppConfig:
        """Return a copy with engine settings changes applied."""

        engine = self.engine.model_copy(update=updates)
        return self.model_copy(update={"engine": engine})


def load_config() -> AppConfig:
    """Read config.toml; a missing or malformed file yields the defaults."""

    try:
        data = _read_config_file()
    except (tomllib.TOMLDecodeError, OSError):
        return AppConfig()

    try:
        return AppConfig.model_validate(data)
    except ValidationError:
        return AppConfig()


def save_config(config: AppConfig) -> None:
    """Write ``config`` back to config.toml."""

    CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
    lines: list[str] = []
    if config.active_profile:
        lines.append(f"active_profile = {_toml_string(config.active_profile)}")
    if config.history_file:
        lines.append(f"history_file = {_toml_string(config.history_file)}")
    lines.append("")
    lines.append("[engine]")
    for key, value in config.engine.model_dump().items():
        lines.append(f"{key} = {_toml_value(value)}")
    if config.profiles:
        lines.append("")
        for profile in config.profiles:
            lines.append("[[profiles]]")
            lines.append(f"name = {_toml_string(profile.name)}")
            lines.append(f"host = {_toml_string(profile.host)}")
            if profile.port is not None:
                lines.append(f"port = {profile.port}")
            if profile.database:
                lines.append(f"database = {_toml_string(profile.database)}")
            if profile.user:
                lines.append(f"user = {_toml_string(profile.user)}")
            if profile.password:
                lines.append(f"password = {_toml_string(profile.password)}")
            lines.append(f"driver = {_toml_string(profile.driver)}")
            lines.append("")
    CONFIG_FILE.write_text("\n".join(lines) + "\n")


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return _toml_string(str(value))


def _toml_string(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    escaped = _CONTROL_RE.sub(lambda match: f"\\u{ord(match.group(0)):04x}", escaped)
    return f'"{escaped}"'


def _read_config_file() -> dict[str, object]:
    with CONFIG_FILE.open("rb") as handle:
        raw = tomllib.load(handle)
    data: dict[str, object] = {}
    if not isinstance(raw, dict):
        return data
    active_profile = raw.get("active_profile")
    if isinstance(active_profile, str):
        data["active_profile"] = active_profile
    history_file = raw.get("history_file")
    if isinstance(history_file, str):
        data["history_file"] = history_file
    profiles = raw.get("profiles")
    if isinstance(profiles, list):
        parsed_profiles: list[dict[str, object]] = []
        for profile in profiles:
            if not isinstance(profile, dict):
                continue
            parsed: dict[str, object] = {}
            for key in ("name", "host", "database", "user", "password", "driver"):
                value = profile.get(key)
                if isinstance(value, str):
                    parsed[key] = value
            port = profile.get("port")
            if isinstance(port, int):
                parsed["port"] = port
            if parsed.get("name"):
                parsed_profiles.append(parsed)
        if parsed_profiles:
            data["profiles"] = parsed_profiles
    engine = raw.get("engine")
    if isinstance(engine, dict):
        known = EngineSettings.model_fields
        data["engine"] = {key: value for key, value in engine.items() if key in known}
    return data


__all__ = [
    "AppConfig",
    "CONFIG_FILE",
    "ConnectionProfileConfig",
    "EngineSettings",
    "load_config",
    "save_config",
]
