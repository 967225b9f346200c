"""Tests for AppConfig helpers."""

from __future__ import annotations

from pathlib import Path

import pytest

from nzquery import config as config_module
from nzquery.config import AppConfig, ConnectionProfileConfig, EngineSettings, load_config, save_config


def test_engine_defaults_match_execution_limits() -> None:
    settings = EngineSettings()

    assert settings.chunk_size == 5000
    assert settings.row_limit == 200_000
    assert settings.query_timeout == 1800
    assert settings.drain_timeout == 5.0
    assert settings.extended_wait == 15.0
    assert settings.search_workers == 8


def test_load_config_returns_defaults_when_missing(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config_module, "CONFIG_FILE", tmp_path / "config.toml")

    result = load_config()

    assert result == AppConfig()


def test_load_config_reads_values(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = tmp_path / "config.toml"
    config_path.write_text(
        """
active_profile = "Warehouse"

[engine]
chunk_size = 100
keep_connection_open = false
unknown_setting = 1

[[profiles]]
name = "Warehouse"
host = "nz.example.com"
port = 5480
database = "SYSTEM"
user = "admin"
driver = "postgres"
"""
    )
    monkeypatch.setattr(config_module, "CONFIG_FILE", config_path)

    result = load_config()

    assert result.active_profile == "Warehouse"
    assert result.engine.chunk_size == 100
    assert result.engine.keep_connection_open is False
    assert result.profiles[0].port == 5480
    assert result.profiles[0].to_profile().database == "SYSTEM"


def test_load_config_handles_toml_errors(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = tmp_path / "config.toml"
    config_path.write_text("active_profile = [unterminated")
    monkeypatch.setattr(config_module, "CONFIG_FILE", config_path)

    result = load_config()

    assert result == AppConfig()


def test_load_config_rejects_invalid_engine_values(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = tmp_path / "config.toml"
    config_path.write_text("[engine]\nchunk_size = 0\n")
    monkeypatch.setattr(config_module, "CONFIG_FILE", config_path)

    result = load_config()

    assert result.engine.chunk_size == 5000


def test_save_config_round_trips(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = tmp_path / "nested" / "config.toml"
    monkeypatch.setattr(config_module, "CONFIG_FILE", config_path)
    original = AppConfig(
        profiles=[ConnectionProfileConfig(name="Local", database="postgres", user="postgres", port=5432)],
        active_profile="Local",
    ).with_engine(row_limit=1000)

    save_config(original)

    content = config_path.read_text()
    assert "[engine]" in content
    assert "row_limit = 1000" in content
    assert "[[profiles]]" in content
    assert load_config() == original


def test_save_config_escapes_special_characters(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config_module, "CONFIG_FILE", tmp_path / "config.toml")
    original = AppConfig(
        profiles=[ConnectionProfileConfig(name='Warehouse "prod"', password='pa"ss\\1\nx\ty')],
        active_profile='Warehouse "prod"',
        history_file="C:\\Users\\me\\history.json",
    )

    save_config(original)

    reloaded = load_config()
    assert reloaded == original
    assert reloaded.profiles[0].password == 'pa"ss\\1\nx\ty'


def test_with_profile_sets_first_profile_active() -> None:
    config = AppConfig()

    updated = config.with_profile(ConnectionProfileConfig(name="Local"))

    assert updated.active_profile == "Local"
    assert updated.profile("Local") is not None


def test_without_profile_moves_active_selection() -> None:
    config = AppConfig(
        profiles=[ConnectionProfileConfig(name="A"), ConnectionProfileConfig(name="B")],
        active_profile="A",
    )

    updated = config.without_profile("A")

    assert updated.active_profile == "B"
    assert [profile.name for profile in updated.profiles] == ["B"]
