"""Tests for structured logging."""

import io
import json
import logging
import threading
from datetime import datetime, timezone

import pytest

from promtables.observability.logging import (
    ConsoleFormatter,
    ConsoleHandler,
    FileHandler,
    JSONFormatter,
    LogContext,
    LogfmtFormatter,
    LogLevel,
    LogRecord,
    StructuredLogger,
    configure_logging,
    get_logger,
    log_context,
    make_formatter,
    shutdown_logging,
)


def _record(**fields):
    return LogRecord(
        timestamp=datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc),
        level=LogLevel.INFO,
        message="Exporter listening",
        logger_name="promtables.exporter",
        fields=fields,
    )


class TestLogLevel:
    """Tests for LogLevel."""

    def test_values_match_stdlib(self):
        """Test numeric values line up with the standard library."""
        assert LogLevel.DEBUG == logging.DEBUG
        assert LogLevel.INFO == logging.INFO
        assert LogLevel.ERROR == logging.ERROR
        assert LogLevel.TRACE < LogLevel.DEBUG

    def test_from_string(self):
        """Test log level from string."""
        assert LogLevel.from_string("trace") == LogLevel.TRACE
        assert LogLevel.from_string("DEBUG") == LogLevel.DEBUG
        assert LogLevel.from_string("warn") == LogLevel.WARNING
        assert LogLevel.from_string("fatal") == LogLevel.CRITICAL
        assert LogLevel.from_string("unknown") == LogLevel.INFO

    def test_from_stdlib(self):
        """Test mapping standard library level numbers."""
        assert LogLevel.from_stdlib(logging.WARNING) == LogLevel.WARNING
        assert LogLevel.from_stdlib(25) == LogLevel.INFO
        assert LogLevel.from_stdlib(1) == LogLevel.TRACE


class TestLogContext:
    """Tests for LogContext."""

    def test_nested_context(self):
        """Test nested context merging."""
        with log_context(tables_dir="/var/lib/promtables"):
            with log_context(address="0.0.0.0:9273"):
                ctx = LogContext.get_current()
                assert ctx == {"tables_dir": "/var/lib/promtables", "address": "0.0.0.0:9273"}
            assert "address" not in LogContext.get_current()
        assert LogContext.get_current() == {}

    def test_new_thread_starts_empty(self):
        """Test context fields do not leak into other threads."""
        seen = []
        with log_context(tables_dir="/var/lib/promtables"):
            thread = threading.Thread(target=lambda: seen.append(LogContext.get_current()))
            thread.start()
            thread.join()
        assert seen == [{}]


class TestFormatters:
    """Tests for log formatters."""

    def test_json(self):
        """Test JSON output."""
        data = json.loads(JSONFormatter().format(_record(graceful=True)))
        assert data["level"] == "info"
        assert data["message"] == "Exporter listening"
        assert data["logger"] == "promtables.exporter"
        assert data["graceful"] is True
        assert data["timestamp"].startswith("2024-01-15T10:30:00")

    def test_logfmt(self):
        """Test logfmt output quotes values when needed."""
        line = LogfmtFormatter().format(_record(address="0.0.0.0:9273", error="bad thing"))
        assert 'msg="Exporter listening"' in line
        assert "level=info" in line
        assert "address=0.0.0.0:9273" in line
        assert 'error="bad thing"' in line

    def test_console(self):
        """Test console output."""
        line = ConsoleFormatter(color=False).format(_record(port=9273))
        assert line == "2024-01-15 10:30:00 INFO  [promtables.exporter] Exporter listening port=9273"

    def test_make_formatter(self):
        """Test formatter selection by name."""
        assert isinstance(make_formatter("json"), JSONFormatter)
        assert isinstance(make_formatter("logfmt"), LogfmtFormatter)
        assert isinstance(make_formatter("console"), ConsoleFormatter)


class TestHandlers:
    """Tests for log handlers."""

    def test_console_stream(self):
        """Test console handler writes to a given stream."""
        stream = io.StringIO()
        handler = ConsoleHandler(stream=stream, formatter=JSONFormatter())
        handler.handle(_record())
        assert json.loads(stream.getvalue())["message"] == "Exporter listening"

    def test_level_filter(self):
        """Test records below the handler level are dropped."""
        stream = io.StringIO()
        handler = ConsoleHandler(stream=stream, level=LogLevel.WARNING)
        handler.handle(_record())
        assert stream.getvalue() == ""

    def test_file_handler(self, tmp_path):
        """Test file handler creates and appends to its file."""
        path = tmp_path / "logs" / "promtables.log"
        handler = FileHandler(path, formatter=LogfmtFormatter())
        handler.handle(_record())
        handler.handle(_record())
        handler.close()

        assert handler.path == path
        assert len(path.read_text().splitlines()) == 2


class TestStructuredLogger:
    """Tests for StructuredLogger."""

    def setup_method(self):
        """Set up logger writing JSON to a buffer."""
        self.stream = io.StringIO()
        self.logger = StructuredLogger(
            "promtables.test",
            level=LogLevel.DEBUG,
            handlers=[ConsoleHandler(stream=self.stream, formatter=JSONFormatter())],
        )

    def _lines(self):
        return [json.loads(line) for line in self.stream.getvalue().splitlines()]

    def test_fields(self):
        """Test bound, context and call-time fields are merged."""
        logger = self.logger.bind(component="exporter")
        with log_context(tables_dir="/tmp/t"):
            logger.info("Started", port=9273)

        (line,) = self._lines()
        assert line["component"] == "exporter"
        assert line["tables_dir"] == "/tmp/t"
        assert line["port"] == 9273

    def test_level(self):
        """Test records below the logger level are dropped."""
        self.logger.level = LogLevel.WARNING
        self.logger.info("dropped")
        self.logger.error("kept")
        assert [line["message"] for line in self._lines()] == ["kept"]

    def test_exception(self):
        """Test exception details are included."""
        try:
            raise ValueError("boom")
        except ValueError:
            self.logger.exception("Failed")

        (line,) = self._lines()
        assert line["level"] == "error"
        assert line["exception"]["type"] == "ValueError"

    def test_handler_error_does_not_raise(self, capsys):
        """Test a failing handler is reported on stderr."""

        class BrokenStream(io.StringIO):
            def write(self, s):
                raise OSError("disk full")

        self.logger.set_handlers([ConsoleHandler(stream=BrokenStream())])
        self.logger.info("lost")
        assert "disk full" in capsys.readouterr().err


class TestConfigureLogging:
    """Tests for configure_logging."""

    def teardown_method(self):
        """Detach the bridge after each test."""
        shutdown_logging()

    def test_configure_file(self, tmp_path):
        """Test structured and standard library records reach the file."""
        path = tmp_path / "promtables.log"
        configure_logging(level="debug", format="json", log_file=path)

        get_logger("promtables.test.configure").info("structured", answer=42)
        logging.getLogger("promtables.stores.database").warning("stdlib %s", "record")

        lines = [json.loads(line) for line in path.read_text().splitlines()]
        assert lines[0]["message"] == "structured"
        assert lines[0]["answer"] == 42
        assert lines[1]["message"] == "stdlib record"
        assert lines[1]["source"] == "promtables.stores.database"
        assert lines[1]["level"] == "warning"

    def test_shutdown_restores_propagation(self, tmp_path):
        """Test shutdown detaches the bridge."""
        configure_logging(log_file=tmp_path / "promtables.log")
        assert logging.getLogger("promtables").propagate is False
        shutdown_logging()
        assert logging.getLogger("promtables").propagate is True

    @pytest.mark.parametrize("level", ["info", LogLevel.INFO])
    def test_level_types(self, level, tmp_path):
        """Test the level may be a name or a LogLevel."""
        configure_logging(level=level, log_file=tmp_path / "promtables.log")
        assert logging.getLogger("promtables").level == logging.INFO
