"""Tests for the metrics lifecycle context."""

import socket
import urllib.error
import urllib.request

import pytest

from promtables.errors import BindError
from promtables.infrastructure.config import ExporterConfig
from promtables.infrastructure.context import MetricsContext
from promtables.infrastructure.server import ExporterState


def _free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def _scrape(url, headers=None):
    request = urllib.request.Request(url, headers=headers or {})
    with urllib.request.urlopen(request, timeout=5) as response:
        return response.read().decode()


def _config(tables_dir, **kwargs):
    values = {
        "tables_dir": str(tables_dir),
        "exporter": f"127.0.0.1:{_free_port()}",
        "poll_interval": 0.05,
        "vacuum_on_start": False,
    }
    values.update(kwargs)
    return ExporterConfig(**values).validate()


class TestMetricsContext:
    """Tests for MetricsContext."""

    def setup_method(self):
        """Set up placeholders."""
        self.context = None

    def teardown_method(self):
        """Stop the context."""
        if self.context is not None:
            self.context.stop()

    def test_start_record_scrape(self, tables_dir):
        """Test events recorded by the producer show up in a scrape."""
        self.context = MetricsContext(_config(tables_dir), base_labels={"protocol": "ftp"})
        self.context.start()

        assert self.context.enabled
        assert self.context.server.state is ExporterState.LISTENING
        assert self.context.producer_store is not self.context.exporter_store

        assert self.context.recorder.incr("login")
        assert self.context.recorder.incr("session")
        assert self.context.recorder.record_transfer("file_download_bytes", 4096) == 4

        body = _scrape(self.context.server.url)
        lines = body.splitlines()

        assert 'proftpd_login_total{protocol="ftp"} 1' in lines
        assert 'proftpd_session_total{protocol="ftp"} 1' in lines
        assert 'proftpd_session_count{protocol="ftp"} 1' in lines
        assert 'proftpd_file_download_bytes_bucket{le="10",protocol="ftp"} 1' in lines
        assert 'proftpd_file_download_bytes_sum{protocol="ftp"} 4' in lines
        assert any(line.startswith("proftpd_build_info{") for line in lines)
        assert any(line.startswith("proftpd_startup_time_seconds ") for line in lines)

    def test_metrics_sorted(self, tables_dir):
        """Test metrics are rendered in name order."""
        self.context = MetricsContext(_config(tables_dir)).start()
        names = self.context.registry.names()
        assert names == sorted(names)

    def test_basic_auth(self, tables_dir):
        """Test configured credentials protect the scrape path."""
        config = _config(tables_dir, username="prom", password="secret")
        self.context = MetricsContext(config).start()

        with pytest.raises(urllib.error.HTTPError) as exc_info:
            _scrape(self.context.server.url)
        assert exc_info.value.code == 401

    def test_disabled(self, tables_dir):
        """Test a disabled configuration does nothing."""
        self.context = MetricsContext(_config(tables_dir, engine=False))
        self.context.start()

        assert not self.context.enabled
        assert self.context.server is None
        assert not self.context.recorder.enabled
        assert self.context.recorder.incr("login") is False
        assert not (tables_dir / "metrics.db").exists()

    def test_storage_failure_disables(self, tables_dir):
        """Test an unusable store disables metrics without raising."""
        (tables_dir / "metrics.db").write_bytes(b"this is not a database file\n" * 64)
        self.context = MetricsContext(_config(tables_dir))
        self.context.start()

        assert not self.context.enabled
        assert self.context.producer_store is None
        assert self.context.registry is None
        assert self.context.recorder.incr("login") is False

    def test_bind_error_raised(self, tables_dir):
        """Test a bind failure disables metrics and is re-raised."""
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        blocker.bind(("127.0.0.1", 0))
        blocker.listen(1)
        port = blocker.getsockname()[1]

        try:
            self.context = MetricsContext(_config(tables_dir, exporter=f"127.0.0.1:{port}"))
            with pytest.raises(BindError):
                self.context.start()
        finally:
            blocker.close()

        assert not self.context.enabled
        assert self.context.producer_store is None
        assert self.context.exporter_store is None

    def test_restart_keeps_samples(self, tables_dir):
        """Test restart reopens the stores and keeps recorded values."""
        self.context = MetricsContext(_config(tables_dir)).start()
        self.context.recorder.incr("login", 2)
        old_store = self.context.producer_store

        self.context.restart()

        assert self.context.enabled
        assert self.context.producer_store is not old_store
        assert not old_store.is_open

        self.context.recorder.incr("login")
        assert "proftpd_login_total 3" in _scrape(self.context.server.url).splitlines()

    def test_truncate_on_start(self, tables_dir):
        """Test a new start begins from zero unless truncation is off."""
        config = _config(tables_dir)
        with MetricsContext(config) as metrics:
            metrics.recorder.incr("login", 5)

        with MetricsContext(_config(tables_dir)) as metrics:
            assert "proftpd_login_total 5" not in _scrape(metrics.server.url).splitlines()
            metrics.recorder.incr("login", 5)

        with MetricsContext(_config(tables_dir, truncate_on_start=False)) as metrics:
            assert "proftpd_login_total 5" in _scrape(metrics.server.url).splitlines()

    def test_stop(self, tables_dir):
        """Test stop releases everything and is idempotent."""
        context = MetricsContext(_config(tables_dir)).start()
        producer = context.producer_store

        assert context.stop() is True
        assert not context.enabled
        assert context.server is None
        assert not producer.is_open
        assert context.stop() is True

    def test_start_twice(self, tables_dir):
        """Test starting an enabled context is a no-op."""
        self.context = MetricsContext(_config(tables_dir)).start()
        server = self.context.server
        self.context.start()
        assert self.context.server is server
