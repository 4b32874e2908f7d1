"""Logging for SQLStream.

Every event is emitted on a logger under the ``sqlstream`` namespace with a
dotted event name as the message (``pool.connection.create``) and its fields
under ``extra_fields``. Records carry the correlation id bound in the calling
context; pipeline tasks run in a copy of the caller's context so events logged
on worker threads keep it.
"""

from __future__ import annotations

import logging
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import TYPE_CHECKING, Any

from sqlstream._serialization import encode_json

if TYPE_CHECKING:
    from collections.abc import Generator
    from logging import LogRecord
    from typing import TextIO

__all__ = (
    "CURSOR_LOGGER_NAME",
    "PIPELINE_LOGGER_NAME",
    "POOL_LOGGER_NAME",
    "ROOT_LOGGER_NAME",
    "EventTextFormatter",
    "StructuredFormatter",
    "configure_logging",
    "correlation_id_var",
    "correlation_scope",
    "get_correlation_id",
    "get_logger",
    "log_with_context",
    "set_correlation_id",
)

ROOT_LOGGER_NAME = "sqlstream"
POOL_LOGGER_NAME = "sqlstream.pool"
CURSOR_LOGGER_NAME = "sqlstream.cursor"
PIPELINE_LOGGER_NAME = "sqlstream.pipeline"

_TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(threadName)s] %(message)s"

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)


def set_correlation_id(correlation_id: str | None) -> None:
    """Set the correlation ID for the current context, or clear it with None."""
    correlation_id_var.set(correlation_id)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


@contextmanager
def correlation_scope(correlation_id: str | None = None) -> Generator[str, None, None]:
    """Bind a correlation id for the duration of a ``with`` block.

    Args:
        correlation_id: Id to bind. A random hex id is generated when omitted.

    Yields:
        The bound correlation id
    """
    bound = correlation_id or uuid.uuid4().hex
    token = correlation_id_var.set(bound)
    try:
        yield bound
    finally:
        correlation_id_var.reset(token)


def _event_fields(record: LogRecord) -> dict[str, Any]:
    return getattr(record, "extra_fields", None) or {}


def _record_correlation_id(record: LogRecord) -> str | None:
    return getattr(record, "correlation_id", None) or get_correlation_id()


class StructuredFormatter(logging.Formatter):
    """Render each record as one JSON object holding the event and its fields."""

    def format(self, record: LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
            "thread": record.threadName,
        }
        correlation_id = _record_correlation_id(record)
        if correlation_id:
            entry["correlation_id"] = correlation_id
        entry.update(_event_fields(record))
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return encode_json(entry)


class EventTextFormatter(logging.Formatter):
    """Single-line text output with event fields appended as ``key=value`` pairs."""

    def __init__(self, fmt: str = _TEXT_FORMAT, datefmt: str | None = None) -> None:
        super().__init__(fmt, datefmt)

    def format(self, record: LogRecord) -> str:
        line = super().format(record)
        pairs = [f"{key}={value!r}" for key, value in _event_fields(record).items()]
        correlation_id = _record_correlation_id(record)
        if correlation_id:
            pairs.insert(0, f"correlation_id={correlation_id}")
        if not pairs:
            return line
        head, sep, tail = line.partition("\n")
        return f"{head} {' '.join(pairs)}{sep}{tail}"


def get_logger(name: str | None = None) -> logging.Logger:
    """Return a logger under the ``sqlstream`` namespace.

    Args:
        name: Logger name, prefixed with ``sqlstream.`` when it lacks the prefix.
            The package logger is returned when omitted.
    """
    if name is None:
        return logging.getLogger(ROOT_LOGGER_NAME)
    if name != ROOT_LOGGER_NAME and not name.startswith(f"{ROOT_LOGGER_NAME}."):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    return logging.getLogger(name)


def configure_logging(
    level: int | str = logging.INFO,
    *,
    structured: bool = True,
    stream: TextIO | None = None,
    handlers: list[logging.Handler] | None = None,
) -> logging.Logger:
    """Send SQLStream events to ``stream`` and stop them reaching the root logger.

    Calling it again replaces the handlers installed by the previous call.

    Args:
        level: Level name or number for the package logger
        structured: JSON lines when True, single-line text otherwise
        stream: Output stream, ``sys.stderr`` by default
        handlers: Additional handlers, used as given

    Returns:
        The configured package logger
    """
    package_logger = logging.getLogger(ROOT_LOGGER_NAME)
    package_logger.setLevel(level.upper() if isinstance(level, str) else level)
    package_logger.handlers.clear()

    stream_handler = logging.StreamHandler(stream or sys.stderr)
    stream_handler.setFormatter(StructuredFormatter() if structured else EventTextFormatter())
    package_logger.addHandler(stream_handler)
    for handler in handlers or ():
        package_logger.addHandler(handler)
    package_logger.propagate = False

    log_with_context(
        package_logger,
        logging.DEBUG,
        "logging.configure",
        structured=structured,
        handlers=len(package_logger.handlers),
    )
    return package_logger


def log_with_context(logger: logging.Logger, level: int, event: str, **fields: Any) -> None:
    """Emit ``event`` with ``fields`` and the current correlation id.

    The record reports the caller's location, not this helper's.
    """
    if not logger.isEnabledFor(level):
        return
    logger.log(
        level,
        event,
        extra={"extra_fields": fields, "correlation_id": get_correlation_id()},
        stacklevel=2,
    )
