"""Tests for the HTTP exporter."""

import base64
import errno
import socket
import threading
import time
import urllib.error
import urllib.request
from unittest.mock import patch

import pytest

from promtables.errors import AuthRejected, BindError, InvalidArgument
from promtables.infrastructure.server import (
    BasicAuthCredentials,
    ExporterState,
    MetricsServer,
)
from promtables.observability.exposition import CONTENT_TYPE
from promtables.observability.metrics import Metric


def _request(url, method="GET", headers=None, timeout=5):
    request = urllib.request.Request(url, method=method, headers=headers or {})
    return urllib.request.urlopen(request, timeout=timeout)


def _auth(username, password):
    token = base64.b64encode(f"{username}:{password}".encode()).decode()
    return f"Basic {token}"


class TestBasicAuthCredentials:
    """Tests for BasicAuthCredentials."""

    def setup_method(self):
        """Set up credentials."""
        self.credentials = BasicAuthCredentials("prom", "s3cret:with:colons")

    def test_requires_both(self):
        """Test username and password are both required."""
        with pytest.raises(InvalidArgument):
            BasicAuthCredentials("", "secret")
        with pytest.raises(InvalidArgument):
            BasicAuthCredentials("prom", "")

    def test_check(self):
        """Test matching and mismatching headers."""
        assert self.credentials.check(_auth("prom", "s3cret:with:colons"))
        assert self.credentials.check(self.credentials.header_value())
        assert not self.credentials.check(_auth("prom", "wrong"))
        assert not self.credentials.check(_auth("other", "s3cret:with:colons"))

    @pytest.mark.parametrize(
        "header",
        [
            None,
            "",
            "Basic",
            "Bearer abc",
            "Basic !!!notbase64",
            "Basic " + base64.b64encode(b"nocolon").decode(),
        ],
    )
    def test_check_malformed(self, header):
        """Test malformed headers are rejected."""
        assert not self.credentials.check(header)

    def test_verify(self):
        """Test verify raises AuthRejected."""
        self.credentials.verify(self.credentials.header_value())
        with pytest.raises(AuthRejected):
            self.credentials.verify(None)
        with pytest.raises(AuthRejected):
            self.credentials.verify(_auth("prom", "wrong"))

    def test_repr_hides_password(self):
        """Test the password is not shown."""
        assert "s3cret" not in repr(self.credentials)
        assert self.credentials.username == "prom"


class TestMetricsServerLifecycle:
    """Tests for starting and stopping the exporter."""

    def test_start_stop(self, registry):
        """Test starting and stopping the server."""
        server = MetricsServer(registry, host="127.0.0.1", port=0, poll_interval=0.05)
        assert server.state is ExporterState.STOPPED

        server.start_background()
        assert server.state is ExporterState.LISTENING
        host, port = server.address
        assert host == "127.0.0.1"
        assert port != 0
        assert server.url == f"http://127.0.0.1:{port}/metrics"

        assert server.stop() is True
        assert server.state is ExporterState.STOPPED

    def test_stop_idempotent(self, registry):
        """Test stopping a stopped server."""
        server = MetricsServer(registry, host="127.0.0.1", port=0, poll_interval=0.05)
        assert server.stop() is True
        server.start_background()
        server.stop()
        assert server.stop() is True

    def test_bind_error(self, registry):
        """Test a port in use raises BindError and stays stopped."""
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        blocker.bind(("127.0.0.1", 0))
        blocker.listen(1)
        port = blocker.getsockname()[1]

        try:
            server = MetricsServer(registry, host="127.0.0.1", port=port)
            with pytest.raises(BindError) as exc_info:
                server.start()
        finally:
            blocker.close()

        assert exc_info.value.errno == errno.EADDRINUSE
        assert exc_info.value.address == ("127.0.0.1", port)
        assert server.state is ExporterState.STOPPED

    def test_run_loop_requires_start(self, registry):
        """Test the loop cannot run before start."""
        server = MetricsServer(registry, host="127.0.0.1", port=0)
        with pytest.raises(RuntimeError):
            server.run_loop()

    def test_context_manager(self, registry, counter_metric):
        """Test the server as a context manager."""
        counter_metric.increment()
        with MetricsServer(registry, host="127.0.0.1", port=0, poll_interval=0.05) as server:
            body = _request(server.url).read().decode()
        assert "prt_test_total 1" in body
        assert server.state is ExporterState.STOPPED


class TestMetricsServerRequests:
    """Tests for scrape request handling."""

    def setup_method(self):
        """Set up placeholders."""
        self.server = None

    def teardown_method(self):
        """Stop the server."""
        if self.server is not None:
            self.server.stop()

    def _start(self, registry, **kwargs):
        self.server = MetricsServer(
            registry, host="127.0.0.1", port=0, poll_interval=0.05, **kwargs
        )
        self.server.start_background()
        return self.server

    def test_scrape(self, registry, counter_metric):
        """Test the scrape path returns the exposition."""
        counter_metric.increment(6)
        counter_metric.increment(8, {"protocol": "ftp", "foo": "BAR"})
        server = self._start(registry)

        response = _request(server.url)
        body = response.read().decode()

        assert response.status == 200
        assert response.headers["Content-Type"] == CONTENT_TYPE
        assert "prt_test_total 6\n" in body
        assert 'prt_test_total{foo="BAR",protocol="ftp"} 8\n' in body

    def test_scrape_query_string(self, registry, counter_metric):
        """Test a query string does not change the path."""
        server = self._start(registry)
        assert _request(server.url + "?format=text").status == 200

    def test_head_not_allowed(self, registry):
        """Test HEAD is answered with 405 and no body."""
        server = self._start(registry)
        with pytest.raises(urllib.error.HTTPError) as exc_info:
            _request(server.url, method="HEAD")
        assert exc_info.value.code == 405
        assert exc_info.value.read() == b""

    def test_not_found(self, registry):
        """Test other paths return 404."""
        server = self._start(registry)
        with pytest.raises(urllib.error.HTTPError) as exc_info:
            _request(server.url.replace("/metrics", "/other"))
        assert exc_info.value.code == 404

    def test_method_not_allowed(self, registry):
        """Test non-GET methods return 405."""
        server = self._start(registry)
        with pytest.raises(urllib.error.HTTPError) as exc_info:
            _request(server.url, method="POST")
        assert exc_info.value.code == 405
        assert exc_info.value.headers["Allow"] == "GET"

    def test_custom_path(self, registry):
        """Test a custom scrape path."""
        server = self._start(registry, path="/prom")
        assert server.url.endswith("/prom")
        assert _request(server.url).status == 200

    def test_auth_required(self, registry, counter_metric):
        """Test missing or wrong credentials return 401 without a body."""
        server = self._start(registry, credentials=BasicAuthCredentials("prom", "secret"))

        with pytest.raises(urllib.error.HTTPError) as exc_info:
            _request(server.url)
        assert exc_info.value.code == 401
        assert exc_info.value.headers["WWW-Authenticate"] == 'Basic realm="metrics"'
        assert exc_info.value.read() == b""

        with pytest.raises(urllib.error.HTTPError) as exc_info:
            _request(server.url, headers={"Authorization": _auth("prom", "wrong")})
        assert exc_info.value.code == 401

    def test_auth_accepted(self, registry, counter_metric):
        """Test valid credentials are accepted."""
        counter_metric.increment()
        server = self._start(registry, credentials=BasicAuthCredentials("prom", "secret"))
        response = _request(server.url, headers={"Authorization": _auth("prom", "secret")})
        assert response.status == 200
        assert "prt_test_total 1" in response.read().decode()

    def test_damaged_metric_skipped(self, registry, counter_metric, damage_sample_labels):
        """Test one unreadable metric does not cost the rest of the scrape."""
        other = registry.register(Metric("other"))
        other.add_counter("total", "Other")
        counter_metric.increment()
        other.increment(2)
        damage_sample_labels("test", "{broken")

        server = self._start(registry)
        response = _request(server.url)
        body = response.read().decode()

        assert response.status == 200
        assert "prt_other_total 2\n" in body
        assert "prt_test_total" not in body

    def test_storage_failure(self, store, registry, counter_metric):
        """Test a closed store returns 500."""
        counter_metric.increment()
        server = self._start(registry)
        store.close()

        with pytest.raises(urllib.error.HTTPError) as exc_info:
            _request(server.url)
        assert exc_info.value.code == 500

    def test_unexpected_error(self, registry, counter_metric):
        """Test an unexpected rendering error still gets a 500 response."""
        server = self._start(registry)
        with patch.object(registry, "snapshot_text", side_effect=RuntimeError("boom")):
            with pytest.raises(urllib.error.HTTPError) as exc_info:
                _request(server.url)
        assert exc_info.value.code == 500

    def test_concurrent_scrapes(self, registry, counter_metric):
        """Test several scrapes at once."""
        counter_metric.increment(3)
        server = self._start(registry)
        bodies = []

        def scrape():
            bodies.append(_request(server.url).read().decode())

        threads = [threading.Thread(target=scrape) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(bodies) == 8
        assert all("prt_test_total 3" in body for body in bodies)


class TestMetricsServerStop:
    """Tests for stopping with a scrape in flight."""

    def test_graceful_stop_waits_for_scrape(self, registry, counter_metric):
        """Test an in-flight scrape completes when it fits in the timeout."""
        counter_metric.increment()
        server = MetricsServer(registry, host="127.0.0.1", port=0, poll_interval=0.05)
        server.start_background()

        entered = threading.Event()
        original = registry.snapshot_text

        def slow_snapshot(namespace=None):
            entered.set()
            time.sleep(0.3)
            return original(namespace)

        results = []

        def scrape():
            response = _request(server.url)
            results.append((response.status, response.read().decode()))

        with patch.object(registry, "snapshot_text", side_effect=slow_snapshot):
            client = threading.Thread(target=scrape)
            client.start()
            assert entered.wait(5)
            graceful = server.stop(timeout=3.0)
            client.join(5)

        assert graceful is True
        assert results and results[0][0] == 200
        assert "prt_test_total 1" in results[0][1]

    def test_stop_refuses_new_connections(self, registry, counter_metric):
        """Test no new scrape is accepted once stop has begun."""
        counter_metric.increment()
        server = MetricsServer(registry, host="127.0.0.1", port=0, poll_interval=0.05)
        server.start_background()
        url = server.url

        entered = threading.Event()
        original = registry.snapshot_text

        def slow_snapshot(namespace=None):
            entered.set()
            time.sleep(1.0)
            return original(namespace)

        results = []

        def scrape():
            response = _request(url)
            results.append(response.status)

        with patch.object(registry, "snapshot_text", side_effect=slow_snapshot):
            client = threading.Thread(target=scrape)
            client.start()
            assert entered.wait(5)

            stopper = threading.Thread(target=server.stop, kwargs={"timeout": 5.0})
            stopper.start()
            deadline = time.monotonic() + 5
            while server.state is not ExporterState.STOPPING and time.monotonic() < deadline:
                time.sleep(0.01)
            time.sleep(0.1)

            with pytest.raises((urllib.error.URLError, OSError)):
                _request(url, timeout=2).read()

            client.join(5)
            stopper.join(5)

        assert results == [200]
        assert server.state is ExporterState.STOPPED

    def test_forced_stop_after_timeout(self, registry):
        """Test a scrape exceeding the timeout is terminated."""
        server = MetricsServer(registry, host="127.0.0.1", port=0, poll_interval=0.05)
        server.start_background()

        entered = threading.Event()
        release = threading.Event()

        def stuck_snapshot(namespace=None):
            entered.set()
            release.wait(5)
            return ""

        errors = []

        def scrape():
            try:
                _request(server.url).read()
            except (urllib.error.URLError, OSError) as e:
                errors.append(e)

        with patch.object(registry, "snapshot_text", side_effect=stuck_snapshot):
            client = threading.Thread(target=scrape)
            client.start()
            assert entered.wait(5)

            start = time.monotonic()
            graceful = server.stop(timeout=0.2)
            elapsed = time.monotonic() - start

            release.set()
            client.join(5)

        assert graceful is False
        assert elapsed < 2.0
        assert server.state is ExporterState.STOPPED
        assert errors
