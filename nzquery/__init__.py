"""Streaming, cancellable query execution for per-document SQL sessions."""

from __future__ import annotations

from .config import AppConfig, EngineSettings, load_config, save_config
from .engine import QueryEngine, QueryExecutionError
from .escalation import CancelOutcome
from .models import (
    ColumnInfo,
    ConnectionProfile,
    ExecuteOptions,
    ExecutionReport,
    ExecutionStatus,
    QueryResult,
    StreamingChunk,
)
from .registry import ConnectionRegistry, RegistryError
from .streaming import QueryCancelled
from .variables import VariableResolutionError, resolve

__version__ = "0.1.0"

__all__ = [
    "AppConfig",
    "CancelOutcome",
    "ColumnInfo",
    "ConnectionProfile",
    "ConnectionRegistry",
    "EngineSettings",
    "ExecuteOptions",
    "ExecutionReport",
    "ExecutionStatus",
    "QueryCancelled",
    "QueryEngine",
    "QueryExecutionError",
    "QueryResult",
    "RegistryError",
    "StreamingChunk",
    "VariableResolutionError",
    "load_config",
    "resolve",
    "save_config",
]
