"""Default metric catalog and event recording.

The catalog lists the metrics an FTP server exposes. The
:class:`EventRecorder` is what request handlers call: it looks metrics up
by name and treats every failure as non-fatal, so recording a metric can
never break the request being served.

Example:
    >>> registry = Registry("proftpd", store)
    >>> register_default_metrics(registry)
    >>> recorder = EventRecorder(registry, base_labels={"protocol": "ftp"})
    >>> recorder.incr("login", method="password")
    >>> recorder.record_transfer("file_download_bytes", 1500)
    1
"""

from __future__ import annotations

import logging
import platform
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from promtables.errors import MetricsError
from promtables.labels import LabelSet, LabelsLike
from promtables.observability.metrics import (
    CounterDef,
    GaugeDef,
    HistogramDef,
    Metric,
    Registry,
)

if TYPE_CHECKING:
    from promtables.stores.database import SampleStore

logger = logging.getLogger(__name__)

# Transfer sizes, in KB
TRANSFER_KB_BUCKETS = (1.0, 10.0, 100.0, 1000.0, 10000.0, 100000.0, 1000000.0)


@dataclass(frozen=True)
class MetricSpec:
    """Blueprint of one catalog metric."""

    name: str
    counter: CounterDef | None = None
    gauge: GaugeDef | None = None
    histogram: HistogramDef | None = None

    def create(self, store: SampleStore | None = None) -> Metric:
        """Build a metric carrying these sub-definitions."""
        metric = Metric(self.name, store)
        if self.counter is not None:
            metric.add_counter(self.counter.suffix, self.counter.help)
        if self.gauge is not None:
            metric.add_gauge(self.gauge.suffix, self.gauge.help)
        if self.histogram is not None:
            metric.add_histogram(
                self.histogram.suffix, self.histogram.help, self.histogram.buckets
            )
        return metric


def _counted(name: str, what: str) -> MetricSpec:
    return MetricSpec(
        name,
        counter=CounterDef("total", f"Number of {what}"),
        gauge=GaugeDef("count", f"Current count of {what}"),
    )


DEFAULT_METRICS: tuple[MetricSpec, ...] = (
    MetricSpec("build_info", counter=CounterDef("", "ProFTPD build information")),
    MetricSpec(
        "startup_time_seconds",
        counter=CounterDef("", "ProFTPD startup time, in unixtime seconds"),
    ),
    # Server
    MetricSpec("connection_refused", counter=CounterDef("total", "Number of refused connections")),
    MetricSpec("log_message", counter=CounterDef("total", "Number of log_messages")),
    MetricSpec("segfault", counter=CounterDef("total", "Number of segfaults")),
    _counted("session", "sessions"),
    # Session
    _counted("directory_list", "directory listings"),
    MetricSpec(
        "directory_list_error",
        counter=CounterDef("total", "Number of failed directory listings"),
    ),
    _counted("file_download", "file downloads"),
    MetricSpec("file_download_error", counter=CounterDef("total", "Number of failed file downloads")),
    MetricSpec(
        "file_download_bytes",
        histogram=HistogramDef("", "Downloaded data, in KB", TRANSFER_KB_BUCKETS),
    ),
    _counted("file_upload", "file uploads"),
    MetricSpec("file_upload_error", counter=CounterDef("total", "Number of failed file uploads")),
    MetricSpec(
        "file_upload_bytes",
        histogram=HistogramDef("", "Uploaded data, in KB", TRANSFER_KB_BUCKETS),
    ),
    MetricSpec("login", counter=CounterDef("total", "Number of logins")),
    MetricSpec("login_error", counter=CounterDef("total", "Number of failed logins")),
    MetricSpec("timeout", counter=CounterDef("total", "Number of timeouts")),
    MetricSpec(
        "handshake_error",
        counter=CounterDef("total", "Number of failed SFTP/TLS handshakes"),
    ),
    MetricSpec(
        "sftp_protocol",
        counter=CounterDef("", "Number of SFTP sessions by protocol version"),
    ),
    MetricSpec(
        "tls_protocol",
        counter=CounterDef("", "Number of TLS sessions by protocol version"),
    ),
)


def register_default_metrics(
    registry: Registry,
    store: SampleStore | None = None,
    specs: tuple[MetricSpec, ...] = DEFAULT_METRICS,
) -> list[Metric]:
    """Create and register the catalog metrics, then sort the registry.

    Metrics that fail to register are logged and skipped.

    Returns:
        The metrics that were registered.
    """
    registered = []
    for spec in specs:
        try:
            metric = registry.register(spec.create(store))
        except MetricsError as e:
            logger.warning(f"Error registering metric '{spec.name}': {e}")
            continue
        registered.append(metric)

    registry.sort()
    return registered


def package_version() -> str:
    from promtables import __version__

    return __version__


class EventRecorder:
    """Best-effort recording of server events into a registry.

    Unknown metric names are logged at debug level and skipped. Any other
    metric error is logged and swallowed. A recorder without a registry
    does nothing.
    """

    def __init__(self, registry: Registry | None, base_labels: LabelsLike = None) -> None:
        """Initialize recorder.

        Args:
            registry: Registry to record into; None disables recording.
            base_labels: Labels added to every event (e.g. ``protocol``).
        """
        self._registry = registry
        self._base_labels = LabelSet.coerce(base_labels)
        self._held_bytes: dict[str, int] = {}
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self._registry is not None

    @property
    def base_labels(self) -> LabelSet:
        return self._base_labels

    def with_labels(self, **labels: Any) -> "EventRecorder":
        """Return a recorder adding ``labels`` to the base labels."""
        return EventRecorder(self._registry, self._base_labels.merge(labels))

    def _metric(self, name: str) -> Metric | None:
        if self._registry is None:
            return None
        metric = self._registry.get(name)
        if metric is None:
            logger.debug(f"Unknown metric name '{name}' requested")
        return metric

    def incr(self, name: str, delta: float = 1, /, **labels: Any) -> bool:
        """Increment ``name`` by ``delta``; a negative delta decrements.

        Returns:
            True when the event was recorded.
        """
        metric = self._metric(name)
        if metric is None:
            return False

        try:
            label_set = self._base_labels.merge(labels)
            if delta >= 0:
                metric.increment(delta, label_set)
            else:
                metric.decrement(-delta, label_set)
        except MetricsError as e:
            action = "decrementing" if delta < 0 else "incrementing"
            logger.warning(f"Error {action} {name}: {e}")
            return False
        return True

    def set(self, name: str, value: float, /, **labels: Any) -> bool:
        """Set the gauge of ``name``."""
        metric = self._metric(name)
        if metric is None:
            return False
        try:
            metric.set(value, self._base_labels.merge(labels))
        except MetricsError as e:
            logger.warning(f"Error setting {name}: {e}")
            return False
        return True

    def observe(self, name: str, value: float, /, **labels: Any) -> bool:
        """Record a histogram observation for ``name``."""
        metric = self._metric(name)
        if metric is None:
            return False
        try:
            metric.observe(value, self._base_labels.merge(labels))
        except MetricsError as e:
            logger.warning(f"Error observing {name}: {e}")
            return False
        return True

    def record_transfer(self, name: str, nbytes: int, /, **labels: Any) -> int:
        """Record transferred bytes as whole kilobytes.

        Bytes are added to a per-metric holding bucket; the whole kilobytes
        are observed and the remainder is kept for the next transfer, so
        many small transfers still add up.

        Returns:
            The number of kilobytes emitted.
        """
        if nbytes < 0:
            logger.warning(f"Ignoring negative transfer size for {name}: {nbytes}")
            return 0

        with self._lock:
            held = self._held_bytes.get(name, 0) + int(nbytes)
            kb, self._held_bytes[name] = divmod(held, 1024)

        if kb == 0:
            return 0
        self.observe(name, kb, **labels)
        return kb

    def held_bytes(self, name: str) -> int:
        """Bytes waiting in the holding bucket of ``name``."""
        with self._lock:
            return self._held_bytes.get(name, 0)

    def record_startup(self, now: float | None = None) -> None:
        """Record ``build_info`` and ``startup_time_seconds``."""
        self.incr(
            "build_info",
            1,
            promtables_version=package_version(),
            python_version=platform.python_version(),
        )
        self.incr("startup_time_seconds", int(now if now is not None else time.time()))
