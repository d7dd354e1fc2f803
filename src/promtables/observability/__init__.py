"""Metrics and logging for promtables.

Architecture:
    Metrics:
        Registry -> Metric -> SampleStore
                   (Counter/Gauge/Histogram)
        Registry -> PrometheusFormatter -> text exposition

    Logging:
        Logger -> Handler -> Formatter -> Output
                            (JSON/logfmt/console)

Usage:
    >>> from promtables.observability import Metric, Registry, get_logger
    >>>
    >>> registry = Registry("proftpd", store)
    >>> login = registry.register(Metric("login"))
    >>> login.add_counter("total", "Number of logins")
    >>> login.increment(labels={"protocol": "ftp"})
    >>> print(registry.snapshot_text())
"""

from promtables.observability.exposition import (
    CONTENT_TYPE,
    PrometheusFormatter,
    format_value,
    render_registry,
)
from promtables.observability.logging import (
    ConsoleFormatter,
    ConsoleHandler,
    FileHandler,
    JSONFormatter,
    LogContext,
    LogfmtFormatter,
    LogLevel,
    StructuredLogger,
    configure_logging,
    get_logger,
    log_context,
    shutdown_logging,
)
from promtables.observability.metrics import (
    CounterDef,
    GaugeDef,
    HistogramDef,
    HistogramSamples,
    Metric,
    MetricKind,
    Registry,
    Sample,
)

__all__ = [
    # Metrics
    "MetricKind",
    "CounterDef",
    "GaugeDef",
    "HistogramDef",
    "Sample",
    "HistogramSamples",
    "Metric",
    "Registry",
    # Exposition
    "CONTENT_TYPE",
    "PrometheusFormatter",
    "format_value",
    "render_registry",
    # Logging
    "StructuredLogger",
    "LogLevel",
    "LogContext",
    "log_context",
    "JSONFormatter",
    "LogfmtFormatter",
    "ConsoleFormatter",
    "ConsoleHandler",
    "FileHandler",
    "configure_logging",
    "get_logger",
    "shutdown_logging",
]
