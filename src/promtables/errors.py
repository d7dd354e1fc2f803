"""Exception hierarchy for promtables.

Every error raised by the registry, the sample store and the exporter
derives from :class:`MetricsError`, so callers that only want to keep metric
emission best-effort can catch a single type.

Error kinds:
    - InvalidArgument: empty/missing required input, malformed buckets,
      unknown metric kind
    - NotPermitted: operation against a metric lacking the sub-definition
    - NotFound: metric name not registered
    - AlreadyExists: duplicate metric name at registration
    - StorageError: sample store failure (see ``promtables.stores.base``)
    - BindError: the HTTP listener could not bind
    - AuthRejected: Basic-Auth failure on a scrape request
"""

from __future__ import annotations


class MetricsError(Exception):
    """Base exception for all promtables errors."""

    pass


class InvalidArgument(MetricsError, ValueError):
    """Raised when a required input is missing or malformed."""

    pass


class NotPermitted(MetricsError):
    """Raised when a metric lacks the sub-definition an operation needs."""

    def __init__(self, metric_name: str, operation: str, reason: str = "") -> None:
        self.metric_name = metric_name
        self.operation = operation
        message = f"'{operation}' not permitted on metric '{metric_name}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class NotFound(MetricsError, KeyError):
    """Raised when a metric name is not registered."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(name)

    def __str__(self) -> str:
        return f"Metric not found: {self.name}"


class AlreadyExists(MetricsError):
    """Raised when registering a metric whose name is already taken."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Metric already registered: {name}")


class BindError(MetricsError):
    """Raised when the exporter cannot bind its listener."""

    def __init__(self, address: tuple[str, int], errno: int | None, message: str) -> None:
        self.address = address
        self.errno = errno
        self.strerror = message
        host, port = address
        super().__init__(f"Unable to bind exporter to {host}:{port}: {message}")


class AuthRejected(MetricsError):
    """Raised when a scrape request fails Basic authentication."""

    pass
