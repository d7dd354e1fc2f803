"""SQLite sample store.

This module persists metric samples to an embedded SQLite database through
SQLAlchemy. The store is the source of truth for every counter, gauge and
histogram series: process memory only caches metric ids.

Schema:
    metrics(metric_id, metric_name unique, metric_labels)
    samples(sample_id, metric_id, sample_kind, sample_labels, sample_value)
    schema_version(schema_name, schema_version)

Each execution context (the metric-producing side and the exporter) opens
its own :class:`SampleStore`; concurrent writers rely on SQLite's locking.
Increments are single ``INSERT .. ON CONFLICT DO UPDATE`` statements, so
concurrent deltas against the same series are never lost.

Example:
    >>> store = SampleStore.open("/var/lib/promtables", OpenFlags.INIT)
    >>> metric_id = store.record_metric("login")
    >>> store.add_sample(metric_id, "", 1, SampleKind.COUNTER)
    >>> store.query_samples(metric_id, SampleKind.COUNTER)
    [SampleRow(label_key='', value=1.0, kind=<SampleKind.COUNTER: 'counter'>)]
    >>> store.close()
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from pathlib import Path
from typing import Any, NamedTuple

from sqlalchemy import (
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    event,
    select,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

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

logger = logging.getLogger(__name__)

SCHEMA_NAME = "prom_metrics"
SCHEMA_VERSION = 1

# SQLite primary result codes
_SQLITE_CORRUPT = 11
_SQLITE_NOTADB = 26

Base = declarative_base()


class MetricModel(Base):  # type: ignore
    """SQLAlchemy model for known metric names."""

    __tablename__ = "metrics"

    metric_id = Column(Integer, primary_key=True, autoincrement=True)
    metric_name = Column(Text, unique=True, nullable=False)
    metric_labels = Column(Text, nullable=True)


class SampleModel(Base):  # type: ignore
    """SQLAlchemy model for one (metric, kind, label set) series."""

    __tablename__ = "samples"

    sample_id = Column(Integer, primary_key=True, autoincrement=True)
    metric_id = Column(Integer, ForeignKey("metrics.metric_id"), nullable=False)
    sample_kind = Column(String(16), nullable=False)
    sample_labels = Column(Text, nullable=False, default="")
    sample_value = Column(Float, nullable=False, default=0.0)

    __table_args__ = (
        UniqueConstraint("metric_id", "sample_kind", "sample_labels", name="uq_samples_series"),
        Index("ix_samples_metric_kind", "metric_id", "sample_kind"),
    )


class SchemaVersionModel(Base):  # type: ignore
    """SQLAlchemy model recording the schema version per schema name."""

    __tablename__ = "schema_version"

    schema_name = Column(String(64), primary_key=True)
    schema_version = Column(Integer, nullable=False)


class SampleRow(NamedTuple):
    """One stored series value."""

    label_key: str
    value: float
    kind: SampleKind


def _error_code(error: BaseException) -> int | None:
    """Extract the SQLite error code from a driver exception, if any."""
    orig = getattr(error, "orig", None) or error
    return getattr(orig, "sqlite_errorcode", None)


def _is_corruption(error: BaseException) -> bool:
    code = _error_code(error)
    if code is not None:
        return (code & 0xFF) in (_SQLITE_CORRUPT, _SQLITE_NOTADB)
    message = str(error).lower()
    return "file is not a database" in message or "malformed" in message


class SampleStore:
    """Durable storage of metric samples in SQLite.

    Use :meth:`open` to construct a store; it runs the maintenance steps
    selected by ``flags`` and creates the schema.
    """

    def __init__(self, path: str | Path, config: SampleStoreConfig | None = None) -> None:
        """Initialize the store without touching the database.

        Args:
            path: Directory holding ``metrics.db``, or the database file itself.
            config: Store configuration.
        """
        self._config = config or SampleStoreConfig()
        self._path = self._config.resolve_path(path)
        self._engine: Engine | None = None
        self._session_factory: sessionmaker | None = None
        self._metric_ids: dict[str, int] = {}
        self._lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @classmethod
    def open(
        cls,
        path: str | Path,
        flags: OpenFlags = OpenFlags.NONE,
        *,
        config: SampleStoreConfig | None = None,
    ) -> "SampleStore":
        """Open or create the store at ``path``.

        Args:
            path: Directory holding ``metrics.db``, or the database file itself.
            flags: Maintenance steps to run (see :class:`OpenFlags`).
            config: Store configuration.

        Returns:
            An open SampleStore.

        Raises:
            StoreIOError: The database cannot be opened.
            StoreVersionMismatchError: The stored schema version differs.
            StoreCorruptionError: The database is corrupt or not a database.
        """
        store = cls(path, config)
        store._connect()
        try:
            if flags & OpenFlags.INTEGRITY_CHECK:
                result = store.integrity_check()
                if result != "ok":
                    raise StoreCorruptionError(
                        f"Integrity check failed for {store.path}: {result}",
                        code=_SQLITE_CORRUPT,
                        path=store.path,
                    )

            store.ensure_schema()

            if flags & OpenFlags.SCHEMA_VERSION_CHECK:
                store._check_schema_version()

            if flags & OpenFlags.TRUNCATE:
                store.truncate()

            if flags & OpenFlags.VACUUM and not flags & OpenFlags.SKIP_VACUUM:
                store.vacuum()
        except StorageError:
            store.close()
            raise

        logger.debug(f"Opened sample store {store.path} (flags={int(flags)})")
        return store

    def _connect(self) -> None:
        """Create the engine and session factory."""
        try:
            self._engine = create_engine(
                f"sqlite:///{self._path}",
                echo=self._config.echo,
                connect_args={
                    "check_same_thread": False,
                    "timeout": self._config.busy_timeout,
                },
            )
            event.listen(self._engine, "connect", self._on_connect)
            self._session_factory = sessionmaker(bind=self._engine)
        except SQLAlchemyError as e:
            raise StoreIOError(
                f"Failed to open {self._path}: {e}", code=_error_code(e), path=self._path
            )

    @staticmethod
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute("PRAGMA foreign_keys=ON")
        finally:
            cursor.close()

    def close(self) -> None:
        """Release the connection pool. Persisted data is kept."""
        with self._lock:
            if self._engine is not None:
                self._engine.dispose()
                logger.debug(f"Closed sample store {self._path}")
            self._engine = None
            self._session_factory = None
            self._metric_ids.clear()

    def __enter__(self) -> "SampleStore":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    @property
    def path(self) -> Path:
        """Path of the backing database file."""
        return self._path

    @property
    def is_open(self) -> bool:
        """Whether the store has not been closed."""
        return self._engine is not None

    def _require_engine(self) -> Engine:
        engine = self._engine
        if engine is None:
            raise StoreIOError(f"Sample store {self._path} is closed", path=self._path)
        return engine

    def _get_session(self) -> Session:
        factory = self._session_factory
        if factory is None:
            raise StoreIOError(f"Sample store {self._path} is closed", path=self._path)
        return factory()

    def _raise(self, error: SQLAlchemyError, action: str, default: type[StorageError]) -> None:
        """Translate a driver error into the storage error family."""
        cls = StoreCorruptionError if _is_corruption(error) else default
        raise cls(
            f"Failed to {action} in {self._path}: {error}",
            code=_error_code(error),
            path=self._path,
        ) from error

    # -------------------------------------------------------------------------
    # Schema
    # -------------------------------------------------------------------------

    def ensure_schema(self) -> None:
        """Create the tables if they do not exist yet (idempotent)."""
        engine = self._require_engine()
        try:
            Base.metadata.create_all(engine)
            with self._get_session() as session:
                row = session.get(SchemaVersionModel, SCHEMA_NAME)
                if row is None:
                    session.add(
                        SchemaVersionModel(schema_name=SCHEMA_NAME, schema_version=SCHEMA_VERSION)
                    )
                    session.commit()
        except SQLAlchemyError as e:
            self._raise(e, "create schema", StoreIOError)

    def schema_version(self) -> int | None:
        """Return the recorded schema version, or None if absent."""
        try:
            with self._get_session() as session:
                row = session.get(SchemaVersionModel, SCHEMA_NAME)
                return row.schema_version if row is not None else None
        except SQLAlchemyError as e:
            self._raise(e, "read schema version", StoreReadError)
            return None

    def _check_schema_version(self) -> None:
        found = self.schema_version()
        if found is not None and found != SCHEMA_VERSION:
            raise StoreVersionMismatchError(
                SCHEMA_NAME, SCHEMA_VERSION, found, path=self._path
            )

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    def integrity_check(self) -> str:
        """Run SQLite's integrity check.

        Returns:
            ``"ok"`` when the database is sound, else the reported problems.
        """
        engine = self._require_engine()
        try:
            with engine.connect() as conn:
                rows = conn.exec_driver_sql("PRAGMA integrity_check").scalars().all()
        except SQLAlchemyError as e:
            self._raise(e, "check integrity", StoreIOError)
        return "; ".join(str(r) for r in rows) if rows else "ok"

    def vacuum(self) -> None:
        """Reclaim unused space."""
        engine = self._require_engine()
        try:
            with engine.connect().execution_options(isolation_level="AUTOCOMMIT") as conn:
                conn.exec_driver_sql("VACUUM")
        except SQLAlchemyError as e:
            self._raise(e, "vacuum", StoreWriteError)

    def truncate(self) -> None:
        """Delete every sample row, returning all series to zero state."""
        try:
            with self._get_session() as session:
                result = session.execute(delete(SampleModel))
                session.commit()
                logger.debug(f"Truncated {result.rowcount} samples in {self._path}")
        except SQLAlchemyError as e:
            self._raise(e, "truncate samples", StoreWriteError)

    # -------------------------------------------------------------------------
    # Metrics
    # -------------------------------------------------------------------------

    def record_metric(self, name: str, labels: str | None = None) -> int:
        """Register ``name`` as a known metric (idempotent).

        Args:
            name: Metric name.
            labels: Optional descriptive text stored with the metric.

        Returns:
            The metric's id.
        """
        with self._lock:
            cached = self._metric_ids.get(name)
        if cached is not None:
            return cached

        stmt = (
            sqlite_insert(MetricModel)
            .values(metric_name=name, metric_labels=labels)
            .on_conflict_do_nothing(index_elements=["metric_name"])
        )
        try:
            with self._get_session() as session:
                session.execute(stmt)
                session.commit()
                metric_id = session.execute(
                    select(MetricModel.metric_id).where(MetricModel.metric_name == name)
                ).scalar_one()
        except SQLAlchemyError as e:
            self._raise(e, f"record metric '{name}'", StoreWriteError)

        with self._lock:
            self._metric_ids[name] = metric_id
        return metric_id

    def lookup_metric(self, name: str) -> int | None:
        """Return the id of a known metric, or None."""
        try:
            with self._get_session() as session:
                return session.execute(
                    select(MetricModel.metric_id).where(MetricModel.metric_name == name)
                ).scalar_one_or_none()
        except SQLAlchemyError as e:
            self._raise(e, f"look up metric '{name}'", StoreReadError)
            return None

    # -------------------------------------------------------------------------
    # Samples
    # -------------------------------------------------------------------------

    @staticmethod
    def _upsert(
        metric_id: int,
        label_key: str,
        value: float,
        kind: SampleKind,
        *,
        accumulate: bool,
    ) -> Any:
        stmt = sqlite_insert(SampleModel).values(
            metric_id=metric_id,
            sample_kind=SampleKind(kind).value,
            sample_labels=label_key,
            sample_value=float(value),
        )
        column = SampleModel.__table__.c.sample_value
        new_value = column + stmt.excluded.sample_value if accumulate else stmt.excluded.sample_value
        return stmt.on_conflict_do_update(
            index_elements=["metric_id", "sample_kind", "sample_labels"],
            set_={"sample_value": new_value},
        )

    def add_sample(
        self,
        metric_id: int,
        label_key: str,
        delta: float,
        kind: SampleKind = SampleKind.COUNTER,
    ) -> None:
        """Add ``delta`` to a series, creating it if absent."""
        self.add_samples([(metric_id, label_key, delta, kind)])

    def add_samples(self, rows: Iterable[tuple[int, str, float, SampleKind]]) -> None:
        """Add several deltas in one transaction.

        Args:
            rows: ``(metric_id, label_key, delta, kind)`` tuples.
        """
        try:
            with self._get_session() as session:
                for metric_id, label_key, delta, kind in rows:
                    session.execute(
                        self._upsert(metric_id, label_key, delta, kind, accumulate=True)
                    )
                session.commit()
        except SQLAlchemyError as e:
            self._raise(e, "add samples", StoreWriteError)

    def set_sample(
        self,
        metric_id: int,
        label_key: str,
        value: float,
        kind: SampleKind = SampleKind.GAUGE,
    ) -> None:
        """Overwrite the value of a series, creating it if absent."""
        try:
            with self._get_session() as session:
                session.execute(self._upsert(metric_id, label_key, value, kind, accumulate=False))
                session.commit()
        except SQLAlchemyError as e:
            self._raise(e, "set sample", StoreWriteError)

    def query_samples(
        self,
        metric_id: int,
        kind: SampleKind | Iterable[SampleKind] | None = None,
    ) -> list[SampleRow]:
        """Return the stored series of a metric, ordered by label key.

        Args:
            metric_id: Metric id from :meth:`record_metric`.
            kind: Restrict to one kind or a collection of kinds.

        Returns:
            List of SampleRow.
        """
        stmt = select(
            SampleModel.sample_labels,
            SampleModel.sample_value,
            SampleModel.sample_kind,
        ).where(SampleModel.metric_id == metric_id)

        if isinstance(kind, (SampleKind, str)):
            stmt = stmt.where(SampleModel.sample_kind == SampleKind(kind).value)
        elif kind is not None:
            stmt = stmt.where(SampleModel.sample_kind.in_([SampleKind(k).value for k in kind]))

        stmt = stmt.order_by(SampleModel.sample_labels, SampleModel.sample_kind)

        try:
            with self._get_session() as session:
                rows = session.execute(stmt).all()
        except SQLAlchemyError as e:
            self._raise(e, f"query samples for metric {metric_id}", StoreReadError)

        return [SampleRow(label_key, float(value), SampleKind(k)) for label_key, value, k in rows]
