"""HTTP exporter serving the text exposition.

The exporter runs in its own execution context (a dedicated thread) and
reads the registry through its own store handle. Every connection is
handled on its own thread.

State machine:
    STOPPED -> STARTING -> LISTENING -> STOPPING -> STOPPED

Example:
    >>> server = MetricsServer(registry.bind(exporter_store), host="127.0.0.1", port=9273)
    >>> server.start_background()
    >>> # ... metrics available at http://127.0.0.1:9273/metrics
    >>> server.stop(timeout=1.0)
    True
"""

from __future__ import annotations

import base64
import binascii
import hmac
import http.server
import logging
import socket
import socketserver
import threading
import time
from enum import Enum
from typing import TYPE_CHECKING, Any
from urllib.parse import urlsplit

from promtables.errors import AuthRejected, BindError, InvalidArgument
from promtables.infrastructure.config import format_address
from promtables.observability.exposition import CONTENT_TYPE
from promtables.stores.base import StorageError

if TYPE_CHECKING:
    from promtables.observability.metrics import Registry

logger = logging.getLogger(__name__)

AUTH_REALM = "metrics"


class ExporterState(Enum):
    """Lifecycle states of the exporter."""

    STOPPED = "stopped"
    STARTING = "starting"
    LISTENING = "listening"
    STOPPING = "stopping"


class BasicAuthCredentials:
    """A single static Basic-Auth credential pair."""

    def __init__(self, username: str, password: str) -> None:
        if not username or not password:
            raise InvalidArgument("Basic auth requires both username and password")
        self._username = username.encode("utf-8")
        self._password = password.encode("utf-8")

    def __repr__(self) -> str:
        return f"BasicAuthCredentials(username={self._username.decode('utf-8')!r})"

    @property
    def username(self) -> str:
        return self._username.decode("utf-8")

    def header_value(self) -> str:
        """Return the ``Authorization`` header value for these credentials."""
        token = base64.b64encode(self._username + b":" + self._password).decode("ascii")
        return f"Basic {token}"

    def check(self, header: str | None) -> bool:
        """Check an ``Authorization`` header in constant time."""
        if not header:
            return False
        scheme, _, token = header.strip().partition(" ")
        if scheme.lower() != "basic" or not token:
            return False
        try:
            decoded = base64.b64decode(token.strip(), validate=True)
        except (binascii.Error, ValueError):
            return False

        username, sep, password = decoded.partition(b":")
        if not sep:
            return False
        user_ok = hmac.compare_digest(username, self._username)
        password_ok = hmac.compare_digest(password, self._password)
        return user_ok and password_ok

    def verify(self, header: str | None) -> None:
        """Like :meth:`check`, but raise on failure.

        Raises:
            AuthRejected: The header is missing or does not match.
        """
        if not header:
            raise AuthRejected("Missing Authorization header")
        if not self.check(header):
            raise AuthRejected(f"Invalid credentials for realm '{AUTH_REALM}'")


# =============================================================================
# HTTP plumbing
# =============================================================================


class MetricsRequestHandler(http.server.BaseHTTPRequestHandler):
    """Dispatches every request to the owning :class:`MetricsServer`."""

    server: "_ExporterTCPServer"
    protocol_version = "HTTP/1.0"
    server_version = "promtables"
    timeout = 30

    def do_GET(self) -> None:
        self.server.exporter.handle_request(self, "GET")

    def do_HEAD(self) -> None:
        self.server.exporter.handle_request(self, "HEAD")

    def do_POST(self) -> None:
        self.server.exporter.handle_request(self, "POST")

    def do_PUT(self) -> None:
        self.server.exporter.handle_request(self, "PUT")

    def do_DELETE(self) -> None:
        self.server.exporter.handle_request(self, "DELETE")

    def do_PATCH(self) -> None:
        self.server.exporter.handle_request(self, "PATCH")

    def do_OPTIONS(self) -> None:
        self.server.exporter.handle_request(self, "OPTIONS")

    def log_message(self, format: str, *args: Any) -> None:
        logger.debug(f"{self.address_string()} - {format % args}")


class _ExporterTCPServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    """Threaded TCP server tracking in-flight connections."""

    allow_reuse_address = True
    daemon_threads = True
    block_on_close = False

    def __init__(self, address: tuple[str, int], exporter: "MetricsServer") -> None:
        self.exporter = exporter
        self._active: set[socket.socket] = set()
        self._active_lock = threading.Lock()
        super().__init__(address, MetricsRequestHandler)

    def process_request(self, request: Any, client_address: Any) -> None:
        with self._active_lock:
            self._active.add(request)
        super().process_request(request, client_address)

    def shutdown_request(self, request: Any) -> None:
        with self._active_lock:
            self._active.discard(request)
        super().shutdown_request(request)

    def active_count(self) -> int:
        with self._active_lock:
            return len(self._active)

    def close_listener(self) -> None:
        """Stop accepting connections; in-flight ones stay open."""
        try:
            self.socket.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.server_close()

    def close_active(self) -> int:
        """Forcibly close every in-flight connection."""
        with self._active_lock:
            active = list(self._active)
            self._active.clear()
        for sock in active:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            sock.close()
        return len(active)

    def handle_error(self, request: Any, client_address: Any) -> None:
        logger.debug(f"Error handling scrape from {client_address}", exc_info=True)


class _ExporterTCPServer6(_ExporterTCPServer):
    address_family = socket.AF_INET6


# =============================================================================
# Metrics Server
# =============================================================================


class MetricsServer:
    """HTTP server for the Prometheus scrape endpoint.

    Example:
        >>> server = MetricsServer(registry, host="127.0.0.1", port=9273)
        >>> server.start()
        >>> threading.Thread(target=server.run_loop).start()
        >>> server.stop()
    """

    def __init__(
        self,
        registry: Registry,
        *,
        host: str = "0.0.0.0",
        port: int = 9273,
        path: str = "/metrics",
        credentials: BasicAuthCredentials | None = None,
        poll_interval: float = 0.5,
    ) -> None:
        """Initialize metrics server.

        Args:
            registry: Registry rendered on every scrape.
            host: Listen host.
            port: Listen port (0 picks an ephemeral port).
            path: Scrape path.
            credentials: Require Basic-Auth when set.
            poll_interval: Seconds between loop and shutdown checks.
        """
        self._registry = registry
        self._host = host
        self._port = port
        self._path = path
        self._credentials = credentials
        self._poll_interval = poll_interval
        self._server: _ExporterTCPServer | None = None
        self._thread: threading.Thread | None = None
        self._state = ExporterState.STOPPED
        self._state_lock = threading.Lock()
        self._stop_requested = threading.Event()
        self._loop_running = threading.Event()
        self._loop_done = threading.Event()

    def __repr__(self) -> str:
        return f"MetricsServer({self.url!r}, state={self._state.value})"

    @property
    def state(self) -> ExporterState:
        return self._state

    @property
    def registry(self) -> Registry:
        return self._registry

    @property
    def address(self) -> tuple[str, int]:
        """The bound ``(host, port)``, or the configured one before start."""
        server = self._server
        if server is not None:
            host, port = server.server_address[:2]
            return host, port
        return self._host, self._port

    @property
    def url(self) -> str:
        """Get the metrics endpoint URL."""
        host, port = self.address
        if host == "0.0.0.0":
            host = "127.0.0.1"
        elif host == "::":
            host = "::1"
        return f"http://{format_address(host, port)}{self._path}"

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Bind the listener.

        Raises:
            BindError: The address could not be bound; the state stays STOPPED.
        """
        with self._state_lock:
            if self._state is not ExporterState.STOPPED:
                return
            self._state = ExporterState.STARTING

        server_class = _ExporterTCPServer6 if ":" in self._host else _ExporterTCPServer
        try:
            server = server_class((self._host, self._port), self)
        except OSError as e:
            with self._state_lock:
                self._state = ExporterState.STOPPED
            raise BindError((self._host, self._port), e.errno, e.strerror or str(e)) from e

        server.timeout = self._poll_interval
        self._server = server
        self._stop_requested.clear()
        self._loop_running.clear()
        self._loop_done.clear()

        with self._state_lock:
            self._state = ExporterState.LISTENING
        logger.info(f"Exporter listening on {self.url}")

    def run_loop(self) -> None:
        """Dispatch requests until :meth:`stop` is called."""
        server = self._server
        if self._stop_requested.is_set():
            return
        if server is None or self._state is not ExporterState.LISTENING:
            raise RuntimeError("Exporter is not listening")

        self._loop_running.set()
        try:
            while not self._stop_requested.is_set():
                try:
                    server.handle_request()
                except (OSError, ValueError):
                    if self._stop_requested.is_set():
                        break
                    raise
        finally:
            self._loop_done.set()

    def start_background(self) -> threading.Thread:
        """Start the server and run its loop on a dedicated daemon thread."""
        self.start()
        thread = threading.Thread(
            target=self.run_loop,
            daemon=True,
            name="promtables-exporter",
        )
        self._thread = thread
        thread.start()
        return thread

    def stop(self, timeout: float = 1.0) -> bool:
        """Stop the server.

        The listener is closed at once, so no new connection is accepted.
        In-flight requests are given ``timeout`` seconds to finish; after that
        every open connection is closed forcibly.

        Returns:
            True on a graceful stop, False when termination was forced.
        """
        with self._state_lock:
            if self._state in (ExporterState.STOPPED, ExporterState.STOPPING):
                return True
            self._state = ExporterState.STOPPING

        server = self._server
        self._stop_requested.set()
        if server is None:
            with self._state_lock:
                self._state = ExporterState.STOPPED
            return True
        server.close_listener()

        start = time.monotonic()
        graceful = True
        while True:
            loop_idle = not self._loop_running.is_set() or self._loop_done.is_set()
            if loop_idle and server.active_count() == 0:
                break
            elapsed = time.monotonic() - start
            if elapsed > timeout:
                graceful = False
                break
            time.sleep(min(self._poll_interval, max(timeout - elapsed, 0.0) + 0.01))

        if not graceful:
            closed = server.close_active()
            logger.warning(
                f"Exporter took longer than {timeout}s to stop, "
                f"closed {closed} connection(s) forcibly"
            )

        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(self._poll_interval * 2)

        self._server = None
        self._thread = None
        with self._state_lock:
            self._state = ExporterState.STOPPED
        logger.info(f"Exporter stopped (graceful={graceful})")
        return graceful

    def __enter__(self) -> "MetricsServer":
        self.start_background()
        return self

    def __exit__(self, *args: Any) -> None:
        self.stop()

    # -------------------------------------------------------------------------
    # Request handling
    # -------------------------------------------------------------------------

    def handle_request(self, handler: MetricsRequestHandler, method: str) -> None:
        """Answer one request."""
        path = urlsplit(handler.path).path

        if path != self._path:
            self._send(handler, method, 404)
            return

        if method != "GET":
            self._send(handler, method, 405, headers={"Allow": "GET"})
            return

        if self._credentials is not None:
            try:
                self._credentials.verify(handler.headers.get("Authorization"))
            except AuthRejected as e:
                logger.debug(f"Rejected scrape from {handler.address_string()}: {e}")
                self._send(
                    handler,
                    method,
                    401,
                    headers={"WWW-Authenticate": f'Basic realm="{AUTH_REALM}"'},
                )
                return

        try:
            body = self._registry.snapshot_text().encode("utf-8")
        except StorageError as e:
            logger.warning(f"Failed to render metrics: {e}")
            self._send(handler, method, 500)
            return
        except Exception:
            logger.exception("Unexpected error rendering metrics")
            self._send(handler, method, 500)
            return

        self._send(handler, method, 200, body, {"Content-Type": CONTENT_TYPE})

    @staticmethod
    def _send(
        handler: MetricsRequestHandler,
        method: str,
        status: int,
        body: bytes = b"",
        headers: dict[str, str] | None = None,
    ) -> None:
        handler.send_response(status)
        for name, value in (headers or {}).items():
            handler.send_header(name, value)
        handler.send_header("Content-Length", str(len(body)))
        handler.end_headers()
        if body and method != "HEAD":
            handler.wfile.write(body)
