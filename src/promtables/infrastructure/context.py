"""Metrics lifecycle context.

:class:`MetricsContext` owns everything the metrics system needs at
runtime: the producer store handle, the registry with the default
catalog, the exporter's own store handle and the HTTP exporter thread.
Nothing is kept in module globals, so several contexts can coexist (e.g.
in tests).

Example:
    >>> config = load_config(tables_dir="/var/lib/promtables", exporter="127.0.0.1:9273")
    >>> with MetricsContext(config) as metrics:
    ...     metrics.recorder.incr("login", method="password")
"""

from __future__ import annotations

import threading
from typing import Any

from promtables.catalog import DEFAULT_METRICS, EventRecorder, MetricSpec, register_default_metrics
from promtables.errors import BindError
from promtables.infrastructure.config import ExporterConfig
from promtables.infrastructure.server import BasicAuthCredentials, MetricsServer
from promtables.labels import LabelsLike
from promtables.observability.logging import get_logger, log_context
from promtables.observability.metrics import Registry
from promtables.stores.base import OpenFlags, SampleStoreConfig, StorageError
from promtables.stores.database import SampleStore

logger = get_logger(__name__)


class MetricsContext:
    """Explicit lifecycle object for the metrics system.

    Storage failures at startup disable metrics without raising; a failure
    to bind the exporter disables metrics and is re-raised.
    """

    def __init__(
        self,
        config: ExporterConfig,
        *,
        base_labels: LabelsLike = None,
        specs: tuple[MetricSpec, ...] = DEFAULT_METRICS,
    ) -> None:
        """Initialize context.

        Args:
            config: Exporter configuration.
            base_labels: Labels added to every recorded event.
            specs: Metric catalog to register.
        """
        self._config = config
        self._base_labels = base_labels
        self._specs = specs
        self._store_config = SampleStoreConfig(busy_timeout=config.busy_timeout)

        self._producer_store: SampleStore | None = None
        self._exporter_store: SampleStore | None = None
        self._registry: Registry | None = None
        self._server: MetricsServer | None = None
        self._recorder = EventRecorder(None)
        self._enabled = False
        self._lock = threading.RLock()

    def __repr__(self) -> str:
        return f"MetricsContext(enabled={self._enabled}, exporter={self._config.exporter!r})"

    @property
    def config(self) -> ExporterConfig:
        return self._config

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def registry(self) -> Registry | None:
        return self._registry

    @property
    def server(self) -> MetricsServer | None:
        return self._server

    @property
    def producer_store(self) -> SampleStore | None:
        return self._producer_store

    @property
    def exporter_store(self) -> SampleStore | None:
        return self._exporter_store

    @property
    def recorder(self) -> EventRecorder:
        """Recorder for the producer side; a no-op while disabled."""
        return self._recorder

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> "MetricsContext":
        """Open the stores, build the registry and start the exporter.

        Raises:
            BindError: The exporter could not bind; metrics are disabled.
        """
        with self._lock:
            if self._enabled:
                return self

            if not self._config.enabled:
                logger.info(
                    "Metrics disabled",
                    engine=self._config.engine,
                    exporter=self._config.exporter,
                )
                return self

            with log_context(tables_dir=self._config.tables_dir):
                flags = OpenFlags.INIT
                if not self._config.vacuum_on_start:
                    flags |= OpenFlags.SKIP_VACUUM
                if self._config.truncate_on_start:
                    flags |= OpenFlags.TRUNCATE

                try:
                    tables_dir = self._config.ensure_tables_dir()
                    self._producer_store = SampleStore.open(
                        tables_dir, flags, config=self._store_config
                    )
                    registry = Registry(self._config.namespace, self._producer_store)
                    register_default_metrics(registry, self._producer_store, self._specs)
                    self._registry = registry
                    EventRecorder(registry).record_startup()

                    self._exporter_store = SampleStore.open(
                        tables_dir, config=self._store_config
                    )
                except (StorageError, OSError) as e:
                    logger.error("Unable to open metrics store, metrics disabled", error=str(e))
                    self._teardown()
                    return self

                try:
                    self._start_server()
                except BindError as e:
                    logger.error("Unable to start exporter, metrics disabled", error=str(e))
                    self._teardown()
                    raise

                self._recorder = EventRecorder(self._registry, self._base_labels)
                self._enabled = True
                logger.info("Metrics started", url=self._server.url if self._server else None)
            return self

    def _start_server(self) -> None:
        address = self._config.exporter_address
        if address is None or self._registry is None:
            raise RuntimeError("Exporter address and registry are required to start the server")

        credentials = None
        if self._config.credentials is not None:
            credentials = BasicAuthCredentials(*self._config.credentials)

        host, port = address
        server = MetricsServer(
            self._registry.bind(self._exporter_store),
            host=host,
            port=port,
            path=self._config.scrape_path,
            credentials=credentials,
            poll_interval=self._config.poll_interval,
        )
        server.start_background()
        self._server = server

    def restart(self) -> "MetricsContext":
        """Reopen both store handles and restart the exporter.

        Recorded samples are kept.

        Raises:
            BindError: The exporter could not bind again; metrics are disabled.
        """
        with self._lock:
            if not self._enabled:
                return self.start()

            self._stop_server()
            self._close_stores()

            try:
                tables_dir = self._config.ensure_tables_dir()
                self._producer_store = SampleStore.open(
                    tables_dir, OpenFlags.SCHEMA_VERSION_CHECK, config=self._store_config
                )
                self._exporter_store = SampleStore.open(tables_dir, config=self._store_config)
            except (StorageError, OSError) as e:
                logger.error("Unable to reopen metrics store, metrics disabled", error=str(e))
                self._teardown()
                return self

            if self._registry is None:
                raise RuntimeError("Metrics context lost its registry")
            self._registry.set_store_handle(self._producer_store)

            try:
                self._start_server()
            except BindError as e:
                logger.error("Unable to restart exporter, metrics disabled", error=str(e))
                self._teardown()
                raise

            logger.info("Metrics restarted")
            return self

    def stop(self) -> bool:
        """Stop the exporter and release every handle. Idempotent.

        Returns:
            False when the exporter had to be stopped forcibly.
        """
        with self._lock:
            graceful = self._stop_server()
            was_enabled = self._enabled
            self._teardown()
            if was_enabled:
                logger.info("Metrics stopped", graceful=graceful)
            return graceful

    def _stop_server(self) -> bool:
        server, self._server = self._server, None
        if server is None:
            return True
        return server.stop(self._config.exporter_timeout)

    def _close_stores(self) -> None:
        for store in (self._exporter_store, self._producer_store):
            if store is not None:
                store.close()
        self._exporter_store = None
        self._producer_store = None

    def _teardown(self) -> None:
        self._stop_server()
        self._close_stores()
        if self._registry is not None:
            self._registry.close()
            self._registry = None
        self._recorder = EventRecorder(None)
        self._enabled = False

    def __enter__(self) -> "MetricsContext":
        return self.start()

    def __exit__(self, *args: Any) -> None:
        self.stop()
