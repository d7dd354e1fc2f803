"""Structured logging for promtables.

Library modules log through ``logging.getLogger(__name__)``. Operational
events of the exporter process (startup, shutdown, restarts, disabled
metrics) go through :class:`StructuredLogger`, which supports:

- Multiple output formats (JSON, logfmt, console)
- Contextual logging with automatic field propagation
- Console and file handlers (the configured ``log`` path)
- Forwarding of standard library records from the ``promtables`` loggers

Example:
    >>> configure_logging(level="debug", format="logfmt", log_file="/var/log/promtables.log")
    >>> logger = get_logger("promtables.exporter")
    >>> with log_context(tables_dir="/var/lib/promtables"):
    ...     logger.info("Exporter listening", address="0.0.0.0:9273")
"""

from __future__ import annotations

import json
import logging
import sys
import threading
import traceback
from abc import ABC, abstractmethod
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntEnum
from pathlib import Path
from typing import Any, Iterator, TextIO


# =============================================================================
# Log Levels
# =============================================================================


class LogLevel(IntEnum):
    """Log severity levels (aligned with the standard library values)."""

    TRACE = 5
    DEBUG = 10
    INFO = 20
    WARNING = 30
    ERROR = 40
    CRITICAL = 50

    @classmethod
    def from_string(cls, level: str) -> "LogLevel":
        """Convert string to LogLevel."""
        mapping = {
            "trace": cls.TRACE,
            "debug": cls.DEBUG,
            "info": cls.INFO,
            "warning": cls.WARNING,
            "warn": cls.WARNING,
            "error": cls.ERROR,
            "critical": cls.CRITICAL,
            "fatal": cls.CRITICAL,
        }
        return mapping.get(level.lower(), cls.INFO)

    @classmethod
    def from_stdlib(cls, levelno: int) -> "LogLevel":
        """Map a standard library level number to the closest LogLevel."""
        for level in sorted(cls, reverse=True):
            if levelno >= level:
                return level
        return cls.TRACE


# =============================================================================
# Log Record
# =============================================================================


@dataclass
class LogRecord:
    """Log record with structured data.

    Attributes:
        timestamp: When the log was created (UTC).
        level: Log severity level.
        message: Human-readable log message.
        logger_name: Name of the logger.
        fields: Structured key-value data.
        exception: Exception info if present.
    """

    timestamp: datetime
    level: LogLevel
    message: str
    logger_name: str
    fields: dict[str, Any] = field(default_factory=dict)
    exception: BaseException | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        data = {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level.name.lower(),
            "message": self.message,
            "logger": self.logger_name,
            **self.fields,
        }
        if self.exception:
            data["exception"] = {
                "type": type(self.exception).__name__,
                "message": str(self.exception),
                "traceback": traceback.format_exception(
                    type(self.exception),
                    self.exception,
                    self.exception.__traceback__,
                ),
            }
        return data


# =============================================================================
# Log Context
# =============================================================================

_context_fields: ContextVar[dict[str, Any]] = ContextVar("promtables_log_fields", default={})


class LogContext:
    """Fields added to every structured log emitted in the current context.

    Backed by a :class:`~contextvars.ContextVar`, so new threads start empty.

    Example:
        >>> with log_context(tables_dir="/var/lib/promtables"):
        ...     logger.info("Opening store")  # includes tables_dir
    """

    @staticmethod
    def get_current() -> dict[str, Any]:
        """Get current context fields."""
        return dict(_context_fields.get())


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Add ``fields`` to every log emitted inside the block."""
    token = _context_fields.set({**_context_fields.get(), **fields})
    try:
        yield
    finally:
        _context_fields.reset(token)


# =============================================================================
# Log Formatters
# =============================================================================


class LogFormatter(ABC):
    """Converts LogRecord objects to string output."""

    @abstractmethod
    def format(self, record: LogRecord) -> str:
        pass


class JSONFormatter(LogFormatter):
    """JSON log formatter, one object per line.

    Example output:
        {"timestamp":"2024-01-15T10:30:00+00:00","level":"info","message":"Exporter listening",...}
    """

    def __init__(self, *, sort_keys: bool = False, ensure_ascii: bool = False) -> None:
        self._sort_keys = sort_keys
        self._ensure_ascii = ensure_ascii

    def format(self, record: LogRecord) -> str:
        return json.dumps(
            record.to_dict(),
            sort_keys=self._sort_keys,
            ensure_ascii=self._ensure_ascii,
            separators=(",", ":"),
            default=str,
        )


class LogfmtFormatter(LogFormatter):
    """Logfmt formatter (key=value pairs).

    Example output:
        ts=2024-01-15T10:30:00+00:00 level=info msg="Exporter listening" address=0.0.0.0:9273
    """

    def __init__(self, *, timestamp_key: str = "ts") -> None:
        self._timestamp_key = timestamp_key

    def format(self, record: LogRecord) -> str:
        parts = [
            f"{self._timestamp_key}={record.timestamp.isoformat()}",
            f"level={record.level.name.lower()}",
            f'msg="{self._escape(record.message)}"',
            f"logger={record.logger_name}",
        ]
        for key, value in record.fields.items():
            parts.append(f"{key}={self._format_value(value)}")
        if record.exception:
            parts.append(f'error="{self._escape(str(record.exception))}"')
        return " ".join(parts)

    def _escape(self, value: str) -> str:
        return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")

    def _format_value(self, value: Any) -> str:
        if isinstance(value, bool):
            return "true" if value else "false"
        elif isinstance(value, (int, float)):
            return str(value)
        elif isinstance(value, str):
            if not value or " " in value or '"' in value or "=" in value:
                return f'"{self._escape(value)}"'
            return value
        else:
            return f'"{self._escape(str(value))}"'


class ConsoleFormatter(LogFormatter):
    """Human-readable console formatter.

    Example output:
        2024-01-15 10:30:00 INFO  [promtables.exporter] Exporter listening address=0.0.0.0:9273
    """

    COLORS = {
        LogLevel.TRACE: "\033[90m",
        LogLevel.DEBUG: "\033[36m",
        LogLevel.INFO: "\033[32m",
        LogLevel.WARNING: "\033[33m",
        LogLevel.ERROR: "\033[31m",
        LogLevel.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(
        self,
        *,
        color: bool = True,
        show_timestamp: bool = True,
        timestamp_format: str = "%Y-%m-%d %H:%M:%S",
    ) -> None:
        self._color = color and sys.stdout.isatty()
        self._show_timestamp = show_timestamp
        self._timestamp_format = timestamp_format

    def format(self, record: LogRecord) -> str:
        parts = []

        if self._show_timestamp:
            parts.append(record.timestamp.strftime(self._timestamp_format))

        level = record.level.name.ljust(5)
        if self._color:
            level = f"{self.COLORS.get(record.level, '')}{level}{self.RESET}"
        parts.append(level)

        parts.append(f"[{record.logger_name}]")
        parts.append(record.message)

        if record.fields:
            parts.append(" ".join(f"{k}={v}" for k, v in record.fields.items()))

        result = " ".join(parts)

        if record.exception:
            tb = "".join(
                traceback.format_exception(
                    type(record.exception),
                    record.exception,
                    record.exception.__traceback__,
                )
            )
            result = f"{result}\n{tb}"

        return result


def make_formatter(format: str) -> LogFormatter:
    """Return the formatter for ``console``, ``json`` or ``logfmt``."""
    if format == "json":
        return JSONFormatter()
    if format == "logfmt":
        return LogfmtFormatter()
    return ConsoleFormatter()


# =============================================================================
# Log Handlers
# =============================================================================


class LogHandler(ABC):
    """Outputs formatted log records."""

    def __init__(
        self,
        formatter: LogFormatter | None = None,
        level: LogLevel = LogLevel.DEBUG,
    ) -> None:
        self._formatter = formatter or ConsoleFormatter()
        self._level = level
        self._lock = threading.Lock()

    def should_handle(self, record: LogRecord) -> bool:
        return record.level >= self._level

    @abstractmethod
    def emit(self, record: LogRecord) -> None:
        pass

    def handle(self, record: LogRecord) -> None:
        """Handle a log record (thread-safe)."""
        if self.should_handle(record):
            with self._lock:
                self.emit(record)

    def close(self) -> None:
        pass


class ConsoleHandler(LogHandler):
    """Writes INFO and below to stdout, WARNING and above to stderr."""

    def __init__(
        self,
        *,
        stream: TextIO | None = None,
        split_stderr: bool = True,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._stream = stream
        self._split_stderr = split_stderr

    def emit(self, record: LogRecord) -> None:
        message = self._formatter.format(record)

        if self._stream:
            stream = self._stream
        elif self._split_stderr and record.level >= LogLevel.WARNING:
            stream = sys.stderr
        else:
            stream = sys.stdout

        stream.write(message + "\n")
        stream.flush()


class FileHandler(LogHandler):
    """Appends log lines to a file, opened on first use."""

    def __init__(
        self,
        path: str | Path,
        *,
        mode: str = "a",
        encoding: str = "utf-8",
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._path = Path(path)
        self._mode = mode
        self._encoding = encoding
        self._file: TextIO | None = None

    @property
    def path(self) -> Path:
        return self._path

    def _ensure_file(self) -> TextIO:
        if self._file is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._file = open(self._path, self._mode, encoding=self._encoding)
        return self._file

    def emit(self, record: LogRecord) -> None:
        f = self._ensure_file()
        f.write(self._formatter.format(record) + "\n")
        f.flush()

    def close(self) -> None:
        with self._lock:
            if self._file:
                self._file.close()
                self._file = None


# =============================================================================
# Structured Logger
# =============================================================================


class StructuredLogger:
    """Structured logger with context and multiple handlers.

    Example:
        >>> logger = StructuredLogger("promtables.exporter")
        >>> logger.add_handler(ConsoleHandler(formatter=JSONFormatter()))
        >>> logger.info("Exporter stopped", graceful=True)
    """

    def __init__(
        self,
        name: str,
        *,
        level: LogLevel = LogLevel.INFO,
        handlers: list[LogHandler] | None = None,
    ) -> None:
        self._name = name
        self._level = level
        self._handlers: list[LogHandler] = handlers if handlers is not None else []
        self._bound_fields: dict[str, Any] = {}

    @property
    def name(self) -> str:
        return self._name

    @property
    def level(self) -> LogLevel:
        return self._level

    @level.setter
    def level(self, value: LogLevel) -> None:
        self._level = value

    @property
    def handlers(self) -> list[LogHandler]:
        return list(self._handlers)

    def add_handler(self, handler: LogHandler) -> None:
        self._handlers.append(handler)

    def set_handlers(self, handlers: list[LogHandler]) -> None:
        """Replace every handler."""
        self._handlers = list(handlers)

    def bind(self, **fields: Any) -> "StructuredLogger":
        """Create a child logger with bound fields."""
        new_logger = StructuredLogger(self._name, level=self._level, handlers=self._handlers)
        new_logger._bound_fields = {**self._bound_fields, **fields}
        return new_logger

    def log(
        self,
        level: LogLevel,
        message: str,
        exception: BaseException | None = None,
        **fields: Any,
    ) -> None:
        """Emit a record at ``level``."""
        if level < self._level:
            return

        # bound -> context -> call-time
        merged_fields = {
            **self._bound_fields,
            **LogContext.get_current(),
            **fields,
        }

        record = LogRecord(
            timestamp=datetime.now(timezone.utc),
            level=level,
            message=message,
            logger_name=self._name,
            fields=merged_fields,
            exception=exception,
        )

        for handler in self._handlers:
            try:
                handler.handle(record)
            except (OSError, ValueError) as e:
                # Same policy as logging.Handler.handleError.
                sys.stderr.write(f"--- Logging error in {type(handler).__name__}: {e}\n")

    def trace(self, message: str, **fields: Any) -> None:
        self.log(LogLevel.TRACE, message, **fields)

    def debug(self, message: str, **fields: Any) -> None:
        self.log(LogLevel.DEBUG, message, **fields)

    def info(self, message: str, **fields: Any) -> None:
        self.log(LogLevel.INFO, message, **fields)

    def warning(self, message: str, **fields: Any) -> None:
        self.log(LogLevel.WARNING, message, **fields)

    def error(self, message: str, **fields: Any) -> None:
        self.log(LogLevel.ERROR, message, **fields)

    def exception(
        self,
        message: str,
        exc: BaseException | None = None,
        **fields: Any,
    ) -> None:
        """Log exception with traceback."""
        if exc is None:
            exc = sys.exc_info()[1]
        self.log(LogLevel.ERROR, message, exception=exc, **fields)


# =============================================================================
# Standard library bridge
# =============================================================================


class StructuredBridgeHandler(logging.Handler):
    """Forwards standard library records to structured handlers.

    Installed on the ``promtables`` logger so records emitted through
    ``logging.getLogger(__name__)`` reach the configured console or file.
    """

    def __init__(self, logger: StructuredLogger) -> None:
        super().__init__(level=logging.NOTSET)
        self._logger = logger

    def emit(self, record: logging.LogRecord) -> None:
        exception = record.exc_info[1] if record.exc_info else None
        self._logger.bind(source=record.name).log(
            LogLevel.from_stdlib(record.levelno),
            record.getMessage(),
            exception=exception,
        )


# =============================================================================
# Global Logger Management
# =============================================================================

ROOT_LOGGER_NAME = "promtables"

_loggers: dict[str, StructuredLogger] = {}
_default_handlers: list[LogHandler] = []
_default_level: LogLevel = LogLevel.INFO
_bridge: StructuredBridgeHandler | None = None
_lock = threading.Lock()


def configure_logging(
    *,
    level: LogLevel | str = LogLevel.INFO,
    format: str = "console",
    log_file: str | Path | None = None,
    handlers: list[LogHandler] | None = None,
) -> None:
    """Configure logging for the exporter process.

    Args:
        level: Default log level.
        format: Output format ("console", "json", "logfmt").
        log_file: Write to this file instead of the console.
        handlers: Custom handlers (overrides format and log_file).
    """
    global _default_handlers, _default_level, _bridge

    if isinstance(level, str):
        level = LogLevel.from_string(level)

    if handlers is None:
        formatter = make_formatter(format)
        if log_file is not None:
            handlers = [FileHandler(log_file, formatter=formatter, level=level)]
        else:
            handlers = [ConsoleHandler(formatter=formatter, level=level)]

    with _lock:
        for handler in _default_handlers:
            if handler not in handlers:
                handler.close()

        _default_level = level
        _default_handlers = list(handlers)
        for logger in _loggers.values():
            logger.level = level
            logger.set_handlers(_default_handlers)

        stdlib_logger = logging.getLogger(ROOT_LOGGER_NAME)
        if _bridge is not None:
            stdlib_logger.removeHandler(_bridge)
        _bridge = StructuredBridgeHandler(
            StructuredLogger(ROOT_LOGGER_NAME, level=level, handlers=_default_handlers)
        )
        stdlib_logger.addHandler(_bridge)
        stdlib_logger.setLevel(int(level))
        stdlib_logger.propagate = False


def get_logger(name: str) -> StructuredLogger:
    """Get or create a structured logger.

    Args:
        name: Logger name (usually __name__).
    """
    with _lock:
        if name not in _loggers:
            _loggers[name] = StructuredLogger(
                name,
                level=_default_level,
                handlers=list(_default_handlers)
                if _default_handlers
                else [ConsoleHandler(formatter=ConsoleFormatter())],
            )
        return _loggers[name]


def shutdown_logging() -> None:
    """Close every configured handler and detach the bridge.

    Loggers handed out earlier fall back to the console.
    """
    global _bridge, _default_handlers

    with _lock:
        for handler in _default_handlers:
            handler.close()
        _default_handlers = []
        fallback: list[LogHandler] = [ConsoleHandler(formatter=ConsoleFormatter())]
        for logger in _loggers.values():
            logger.set_handlers(fallback)

        if _bridge is not None:
            stdlib_logger = logging.getLogger(ROOT_LOGGER_NAME)
            stdlib_logger.removeHandler(_bridge)
            stdlib_logger.setLevel(logging.NOTSET)
            stdlib_logger.propagate = True
            _bridge = None
