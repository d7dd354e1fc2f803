"""Persistent sample storage.

Every counter, gauge and histogram series lives in an embedded SQLite
database so that the metric-producing side and the exporter can share
state through their own handles.

Example:
    >>> from promtables.stores import OpenFlags, SampleKind, SampleStore
    >>>
    >>> with SampleStore.open("/var/lib/promtables", OpenFlags.INIT) as store:
    ...     metric_id = store.record_metric("login")
    ...     store.add_sample(metric_id, "", 1, SampleKind.COUNTER)
"""

from promtables.stores.base import (
    OpenFlags,
    SampleKind,
    SampleStoreConfig,
    StorageError,
    StoreCorruptionError,
    StoreIOError,
    StoreReadError,
    StoreVersionMismatchError,
    StoreWriteError,
)
from promtables.stores.database import (
    SCHEMA_NAME,
    SCHEMA_VERSION,
    SampleRow,
    SampleStore,
)

__all__ = [
    # Store
    "SampleStore",
    "SampleRow",
    "SampleStoreConfig",
    "OpenFlags",
    "SampleKind",
    "SCHEMA_NAME",
    "SCHEMA_VERSION",
    # Errors
    "StorageError",
    "StoreIOError",
    "StoreVersionMismatchError",
    "StoreCorruptionError",
    "StoreReadError",
    "StoreWriteError",
]
