"""Runtime infrastructure for promtables.

This module provides:
- Layered configuration (file, environment, command line)
- The HTTP exporter serving the scrape endpoint
- MetricsContext, the explicit lifecycle object tying them together

Usage:
    >>> from promtables.infrastructure import MetricsContext, load_config
    >>>
    >>> config = load_config("/etc/promtables.yaml")
    >>> with MetricsContext(config, base_labels={"protocol": "ftp"}) as metrics:
    ...     metrics.recorder.incr("session")
"""

from promtables.infrastructure.config import (
    DEFAULT_EXPORTER_PORT,
    ConfigError,
    ConfigManager,
    ConfigSource,
    ConfigSourceError,
    ConfigValidationError,
    DictConfigSource,
    EnvConfigSource,
    ExporterConfig,
    FileConfigSource,
    format_address,
    load_config,
    parse_exporter_address,
)
from promtables.infrastructure.context import MetricsContext
from promtables.infrastructure.server import (
    BasicAuthCredentials,
    ExporterState,
    MetricsServer,
)

__all__ = [
    # Config
    "DEFAULT_EXPORTER_PORT",
    "ConfigError",
    "ConfigValidationError",
    "ConfigSourceError",
    "ConfigSource",
    "EnvConfigSource",
    "FileConfigSource",
    "DictConfigSource",
    "ConfigManager",
    "ExporterConfig",
    "load_config",
    "parse_exporter_address",
    "format_address",
    # Exporter
    "MetricsServer",
    "ExporterState",
    "BasicAuthCredentials",
    # Lifecycle
    "MetricsContext",
]
