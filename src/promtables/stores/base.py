"""Base types for the sample store.

This module defines the storage error family, the open flags that select
the maintenance steps run when a store is opened, and the configuration
shared by store backends.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntFlag
from pathlib import Path

from promtables.errors import MetricsError


# =============================================================================
# Exceptions
# =============================================================================


class StorageError(MetricsError):
    """Base exception for all sample store errors.

    Attributes:
        code: Underlying driver/OS error code, when one is known.
        path: Path of the backing database file.
    """

    def __init__(
        self,
        message: str,
        *,
        code: int | None = None,
        path: str | Path | None = None,
    ) -> None:
        self.code = code
        self.path = str(path) if path is not None else None
        super().__init__(message)


class StoreIOError(StorageError):
    """Raised when the backing database cannot be opened, read or written."""

    pass


class StoreVersionMismatchError(StorageError):
    """Raised when the stored schema version differs from the expected one.

    The caller decides whether to migrate or fail startup.
    """

    def __init__(self, schema_name: str, expected: int, found: int, **kwargs) -> None:
        self.schema_name = schema_name
        self.expected = expected
        self.found = found
        super().__init__(
            f"Schema '{schema_name}' version mismatch: expected {expected}, found {found}",
            **kwargs,
        )


class StoreCorruptionError(StorageError):
    """Raised when the backing database fails its integrity check."""

    pass


class StoreReadError(StorageError):
    """Raised when reading samples fails."""

    pass


class StoreWriteError(StorageError):
    """Raised when writing samples fails."""

    pass


# =============================================================================
# Open Flags
# =============================================================================


class OpenFlags(IntFlag):
    """Maintenance steps performed by :meth:`SampleStore.open`."""

    NONE = 0
    SCHEMA_VERSION_CHECK = 1
    INTEGRITY_CHECK = 2
    VACUUM = 4
    SKIP_VACUUM = 8
    TRUNCATE = 16

    # Flags used by the metric-producing side at startup.
    INIT = SCHEMA_VERSION_CHECK | INTEGRITY_CHECK | VACUUM


# =============================================================================
# Sample Kinds
# =============================================================================


class SampleKind(str, Enum):
    """Kind tag stored with each sample row."""

    COUNTER = "counter"
    GAUGE = "gauge"
    BUCKET = "bucket"
    COUNT = "count"
    SUM = "sum"


# =============================================================================
# Configuration
# =============================================================================


@dataclass
class SampleStoreConfig:
    """Configuration for a sample store.

    Attributes:
        filename: Database file name used when the store path is a directory.
        busy_timeout: Seconds SQLite waits on a locked database.
        echo: Whether to echo SQL statements.
    """

    filename: str = "metrics.db"
    busy_timeout: float = 5.0
    echo: bool = False

    def resolve_path(self, path: str | Path) -> Path:
        """Resolve the database file for ``path`` (directory or file)."""
        path = Path(path)
        if path.is_dir():
            return path / self.filename
        return path
