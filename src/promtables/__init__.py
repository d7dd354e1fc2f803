"""promtables - Prometheus metrics persisted in an embedded SQLite store."""

# Version: Single source of truth from pyproject.toml
try:
    from importlib.metadata import version, PackageNotFoundError

    __version__ = version("promtables")
except PackageNotFoundError:
    # Package not installed (development mode)
    __version__ = "0.0.0.dev"

from promtables.catalog import DEFAULT_METRICS, EventRecorder, MetricSpec, register_default_metrics
from promtables.errors import (
    AlreadyExists,
    AuthRejected,
    BindError,
    InvalidArgument,
    MetricsError,
    NotFound,
    NotPermitted,
)
from promtables.infrastructure import (
    BasicAuthCredentials,
    ExporterConfig,
    MetricsContext,
    MetricsServer,
    load_config,
)
from promtables.labels import LabelSet
from promtables.observability import (
    CONTENT_TYPE,
    Metric,
    MetricKind,
    PrometheusFormatter,
    Registry,
)
from promtables.stores import (
    OpenFlags,
    SampleKind,
    SampleStore,
    StorageError,
    StoreCorruptionError,
    StoreIOError,
    StoreReadError,
    StoreVersionMismatchError,
    StoreWriteError,
)

__all__ = [
    "__version__",
    # Core
    "LabelSet",
    "Metric",
    "MetricKind",
    "Registry",
    "PrometheusFormatter",
    "CONTENT_TYPE",
    # Storage
    "SampleStore",
    "SampleKind",
    "OpenFlags",
    # Runtime
    "ExporterConfig",
    "load_config",
    "MetricsServer",
    "BasicAuthCredentials",
    "MetricsContext",
    # Catalog
    "DEFAULT_METRICS",
    "MetricSpec",
    "EventRecorder",
    "register_default_metrics",
    # Errors
    "MetricsError",
    "InvalidArgument",
    "NotPermitted",
    "NotFound",
    "AlreadyExists",
    "BindError",
    "AuthRejected",
    "StorageError",
    "StoreIOError",
    "StoreVersionMismatchError",
    "StoreCorruptionError",
    "StoreReadError",
    "StoreWriteError",
]
