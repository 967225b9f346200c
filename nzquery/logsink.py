"""Forward execution progress to both `logging` and a caller-supplied sink."""

from __future__ import annotations

import logging
from typing import Callable

LogSink = Callable[[str], None]


class ExecutionLog:
    """Pairs a module logger with the optional sink of the current caller."""

    def __init__(self, logger: logging.Logger, sink: LogSink | None = None) -> None:
        self._logger = logger
        self._sink = sink

    @property
    def sink(self) -> LogSink | None:
        return self._sink

    def bind(self, sink: LogSink | None) -> ExecutionLog:
        """Return a log writing to ``sink`` (falls back to this log's sink)."""

        return ExecutionLog(self._logger, sink or self._sink)

    def info(self, message: str, **extra: object) -> None:
        self._write(logging.INFO, message, extra)

    def warning(self, message: str, **extra: object) -> None:
        self._write(logging.WARNING, message, extra)

    def error(self, message: str, **extra: object) -> None:
        self._write(logging.ERROR, message, extra)

    def _write(self, level: int, message: str, extra: dict[str, object]) -> None:
        self._logger.log(level, message, extra=extra or None)
        if self._sink is None:
            return
        try:
            self._sink(message)
        except Exception:  # pragma: no cover - defensive logging path
            self._logger.exception("Log sink raised", extra={"log_message": message})


__all__ = ["ExecutionLog", "LogSink"]
