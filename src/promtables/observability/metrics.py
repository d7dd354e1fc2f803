"""Metric definitions and the metric registry.

A :class:`Metric` is a named entity owning at most one counter, one gauge
and one histogram definition. Samples are not kept in memory: every
operation goes straight to the :class:`~promtables.stores.SampleStore`
the metric is bound to, so several execution contexts can share one
on-disk state through their own store handles.

Metric Types:
    - Counter: Monotonically increasing value (e.g., logins)
    - Gauge: Point-in-time value (e.g., open sessions)
    - Histogram: Distribution of values with cumulative buckets

Design Principles:
    1. Label-based: Dimensional metrics with key-value labels
    2. Store-backed: The sample store is the single source of truth
    3. Explicit kinds: Sub-definitions are optional, checked per operation
    4. Thread-safe: All registry operations are thread-safe

Example:
    >>> metric = Metric("login", store)
    >>> metric.add_counter("total", "Number of logins")
    >>> metric.increment(labels={"protocol": "ftp"})
    >>> registry = Registry("proftpd", store)
    >>> registry.register(metric)
"""

from __future__ import annotations

import logging
import math
import threading
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from promtables.errors import AlreadyExists, InvalidArgument, MetricsError, NotFound, NotPermitted
from promtables.labels import BUCKET_LABEL, LabelSet, LabelsLike
from promtables.observability.exposition import PrometheusFormatter, format_value
from promtables.stores.base import SampleKind, StoreReadError

if TYPE_CHECKING:
    from promtables.stores.database import SampleStore

logger = logging.getLogger(__name__)


# =============================================================================
# Metric Types
# =============================================================================


class MetricKind(Enum):
    """Kinds of sub-definitions a metric may carry."""

    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"

    @classmethod
    def parse(cls, value: "MetricKind | str") -> "MetricKind":
        """Return the kind for an enum member or its string value."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise InvalidArgument(f"Unknown metric kind: {value!r}")


@dataclass(frozen=True)
class CounterDef:
    """Counter sub-definition."""

    suffix: str = ""
    help: str = ""


@dataclass(frozen=True)
class GaugeDef:
    """Gauge sub-definition."""

    suffix: str = ""
    help: str = ""


@dataclass(frozen=True)
class HistogramDef:
    """Histogram sub-definition.

    Attributes:
        suffix: Name suffix.
        help: Help text.
        buckets: Strictly ascending finite upper bounds. The ``+Inf`` bucket
            is implicit and always present.
    """

    suffix: str = ""
    help: str = ""
    buckets: tuple[float, ...] = ()


@dataclass(frozen=True)
class Sample:
    """One series value read back from the store."""

    labels: LabelSet
    value: float

    @property
    def label_key(self) -> str:
        return self.labels.canonical_key()


@dataclass
class HistogramSamples:
    """Histogram series read back from the store.

    ``buckets`` carry the ``le`` label and are sorted by base label set, then
    by ascending bound. ``counts`` and ``sums`` are sorted by label set.
    """

    buckets: list[Sample] = field(default_factory=list)
    counts: list[Sample] = field(default_factory=list)
    sums: list[Sample] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.buckets or self.counts or self.sums)


def _bound_of(labels: LabelSet) -> float:
    bound = labels.get(BUCKET_LABEL, "+Inf")
    return float(bound.replace("+Inf", "inf"))


# =============================================================================
# Metric
# =============================================================================


class Metric:
    """A named metric backed by the sample store.

    Sub-definitions are attached after construction, each at most once.
    Operations that need a missing sub-definition raise
    :class:`~promtables.errors.NotPermitted`.
    """

    def __init__(self, name: str, store: SampleStore | None = None) -> None:
        """Initialize metric.

        Args:
            name: Metric name (lowercase with underscores).
            store: Sample store handle; may be set later.
        """
        if not name:
            raise InvalidArgument("Metric name is required")

        self._name = name
        self._store = store
        self._metric_id: int | None = None
        self._counter: CounterDef | None = None
        self._gauge: GaugeDef | None = None
        self._histogram: HistogramDef | None = None
        self._destroyed = False
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        kinds = ",".join(k.value for k in self.kinds)
        return f"Metric({self._name!r}, kinds=[{kinds}])"

    @property
    def name(self) -> str:
        """Get metric name."""
        return self._name

    @property
    def store(self) -> SampleStore | None:
        """Get the current store handle."""
        return self._store

    @property
    def counter(self) -> CounterDef | None:
        return self._counter

    @property
    def gauge(self) -> GaugeDef | None:
        return self._gauge

    @property
    def histogram(self) -> HistogramDef | None:
        return self._histogram

    @property
    def kinds(self) -> tuple[MetricKind, ...]:
        """Defined kinds, in rendering order."""
        return tuple(kind for kind in MetricKind if self.has(kind))

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def has(self, kind: MetricKind | str) -> bool:
        """Check whether a sub-definition of ``kind`` is attached."""
        return self.definition(kind) is not None

    def definition(self, kind: MetricKind | str) -> CounterDef | GaugeDef | HistogramDef | None:
        """Return the sub-definition of ``kind``, or None."""
        kind = MetricKind.parse(kind)
        if kind is MetricKind.COUNTER:
            return self._counter
        if kind is MetricKind.GAUGE:
            return self._gauge
        return self._histogram

    # -------------------------------------------------------------------------
    # Definitions
    # -------------------------------------------------------------------------

    def _check_definition(self, kind: MetricKind, help: str) -> None:
        if self._destroyed:
            raise NotPermitted(self._name, f"add_{kind.value}", "metric destroyed")
        if not help:
            raise InvalidArgument(f"Help text is required for {kind.value} '{self._name}'")
        if self.has(kind):
            raise InvalidArgument(f"Metric '{self._name}' already has a {kind.value}")

    def add_counter(self, suffix: str | None, help: str) -> CounterDef:
        """Attach a counter.

        Args:
            suffix: Name suffix (may be empty).
            help: Help text.

        Returns:
            The attached definition.
        """
        self._check_definition(MetricKind.COUNTER, help)
        self._counter = CounterDef(suffix or "", help)
        return self._counter

    def add_gauge(self, suffix: str | None, help: str) -> GaugeDef:
        """Attach a gauge."""
        self._check_definition(MetricKind.GAUGE, help)
        self._gauge = GaugeDef(suffix or "", help)
        return self._gauge

    def add_histogram(
        self,
        suffix: str | None,
        help: str,
        buckets: Iterable[float] = (),
    ) -> HistogramDef:
        """Attach a histogram.

        Args:
            suffix: Name suffix (may be empty).
            help: Help text.
            buckets: Strictly ascending finite upper bounds. An empty sequence
                leaves only the implicit ``+Inf`` bucket.

        Returns:
            The attached definition.
        """
        self._check_definition(MetricKind.HISTOGRAM, help)

        bounds: list[float] = []
        for bound in buckets:
            if isinstance(bound, bool) or not isinstance(bound, (int, float)):
                raise InvalidArgument(f"Bucket bound must be a number, got {bound!r}")
            if not math.isfinite(bound):
                raise InvalidArgument(f"Bucket bound must be finite, got {bound!r}")
            if bounds and bound <= bounds[-1]:
                raise InvalidArgument(
                    f"Bucket bounds must be strictly ascending: {bound} after {bounds[-1]}"
                )
            bounds.append(float(bound))

        self._histogram = HistogramDef(suffix or "", help, tuple(bounds))
        return self._histogram

    # -------------------------------------------------------------------------
    # Store access
    # -------------------------------------------------------------------------

    def _require_store(self, operation: str) -> SampleStore:
        if self._destroyed:
            raise NotPermitted(self._name, operation, "metric destroyed")
        store = self._store
        if store is None:
            raise NotPermitted(self._name, operation, "no sample store set")
        return store

    def _resolve_id(self, store: SampleStore, *, create: bool) -> int | None:
        with self._lock:
            if self._metric_id is not None:
                return self._metric_id
        metric_id = store.record_metric(self._name) if create else store.lookup_metric(self._name)
        if metric_id is not None:
            with self._lock:
                self._metric_id = metric_id
        return metric_id

    def _labels(self, labels: LabelsLike) -> LabelSet:
        label_set = LabelSet.coerce(labels)
        if BUCKET_LABEL in label_set:
            raise InvalidArgument(f"Label name '{BUCKET_LABEL}' is reserved")
        return label_set

    @staticmethod
    def _amount(value: Any, what: str, *, non_negative: bool = True) -> float:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise InvalidArgument(f"{what} must be a number, got {value!r}")
        if not math.isfinite(value):
            raise InvalidArgument(f"{what} must be finite, got {value!r}")
        if non_negative and value < 0:
            raise InvalidArgument(f"{what} must not be negative, got {value!r}")
        return value

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def increment(
        self,
        amount: float = 1,
        labels: LabelsLike = None,
        *,
        kind: MetricKind | str | None = None,
    ) -> None:
        """Increment the counter and/or gauge for a label set.

        Args:
            amount: Non-negative amount to add.
            labels: Label set of the series.
            kind: Restrict the update to the counter or the gauge. When None,
                every defined counter/gauge is updated.
        """
        amount = self._amount(amount, "Increment")
        label_set = self._labels(labels)

        if kind is None:
            kinds = [k for k in (MetricKind.COUNTER, MetricKind.GAUGE) if self.has(k)]
            if not kinds:
                raise NotPermitted(self._name, "increment", "no counter or gauge defined")
        else:
            kind = MetricKind.parse(kind)
            if kind is MetricKind.HISTOGRAM:
                raise InvalidArgument("Histograms are updated with observe(), not increment()")
            if not self.has(kind):
                raise NotPermitted(self._name, "increment", f"no {kind.value} defined")
            kinds = [kind]

        store = self._require_store("increment")
        metric_id = self._resolve_id(store, create=True)
        key = label_set.canonical_key()
        store.add_samples([(metric_id, key, amount, SampleKind(k.value)) for k in kinds])

    def decrement(self, amount: float = 1, labels: LabelsLike = None) -> None:
        """Decrement the gauge for a label set. Values are not clamped."""
        amount = self._amount(amount, "Decrement")
        label_set = self._labels(labels)
        if self._gauge is None:
            raise NotPermitted(self._name, "decrement", "no gauge defined")

        store = self._require_store("decrement")
        metric_id = self._resolve_id(store, create=True)
        store.add_sample(metric_id, label_set.canonical_key(), -amount, SampleKind.GAUGE)

    def set(self, value: float, labels: LabelsLike = None) -> None:
        """Set the gauge for a label set."""
        value = self._amount(value, "Gauge value", non_negative=False)
        label_set = self._labels(labels)
        if self._gauge is None:
            raise NotPermitted(self._name, "set", "no gauge defined")

        store = self._require_store("set")
        metric_id = self._resolve_id(store, create=True)
        store.set_sample(metric_id, label_set.canonical_key(), value, SampleKind.GAUGE)

    def observe(self, value: float, labels: LabelsLike = None) -> None:
        """Record one histogram observation.

        Every bucket with bound >= ``value``, the ``+Inf`` bucket, the count
        and the sum are updated in one transaction.
        """
        value = self._amount(value, "Observed value")
        label_set = self._labels(labels)
        histogram = self._histogram
        if histogram is None:
            raise NotPermitted(self._name, "observe", "no histogram defined")

        store = self._require_store("observe")
        metric_id = self._resolve_id(store, create=True)

        rows = []
        for bound in histogram.buckets:
            if value <= bound:
                key = label_set.merge({BUCKET_LABEL: format_value(bound)}).canonical_key()
                rows.append((metric_id, key, 1, SampleKind.BUCKET))
        inf_key = label_set.merge({BUCKET_LABEL: "+Inf"}).canonical_key()
        rows.append((metric_id, inf_key, 1, SampleKind.BUCKET))

        key = label_set.canonical_key()
        rows.append((metric_id, key, 1, SampleKind.COUNT))
        rows.append((metric_id, key, value, SampleKind.SUM))
        store.add_samples(rows)

    def get_samples(self, kind: MetricKind | str) -> list[Sample] | HistogramSamples:
        """Read back the series of one kind.

        Args:
            kind: Counter, gauge or histogram.

        Returns:
            For counters and gauges, samples sorted by label key. For
            histograms, a HistogramSamples.
        """
        kind = MetricKind.parse(kind)
        if not self.has(kind):
            raise NotPermitted(self._name, "get_samples", f"no {kind.value} defined")

        store = self._require_store("get_samples")
        metric_id = self._resolve_id(store, create=False)

        if kind is not MetricKind.HISTOGRAM:
            if metric_id is None:
                return []
            rows = store.query_samples(metric_id, SampleKind(kind.value))
            samples = [Sample(LabelSet.from_key(row.label_key), row.value) for row in rows]
            return sorted(samples, key=lambda s: s.label_key)

        result = HistogramSamples()
        if metric_id is None:
            return result

        rows = store.query_samples(
            metric_id, (SampleKind.BUCKET, SampleKind.COUNT, SampleKind.SUM)
        )
        for row in rows:
            sample = Sample(LabelSet.from_key(row.label_key), row.value)
            if row.kind is SampleKind.BUCKET:
                result.buckets.append(sample)
            elif row.kind is SampleKind.COUNT:
                result.counts.append(sample)
            else:
                result.sums.append(sample)

        result.buckets.sort(
            key=lambda s: (s.labels.without(BUCKET_LABEL).canonical_key(), _bound_of(s.labels))
        )
        result.counts.sort(key=lambda s: s.label_key)
        result.sums.sort(key=lambda s: s.label_key)
        return result

    # -------------------------------------------------------------------------
    # Naming and rendering
    # -------------------------------------------------------------------------

    def full_name(self, namespace: str | None, kind: MetricKind | str) -> str:
        """Return ``namespace_name_suffix`` with empty parts omitted."""
        definition = self.definition(kind)
        suffix = definition.suffix if definition is not None else ""
        return "_".join(part for part in (namespace, self._name, suffix) if part)

    def render_text(self, namespace: str | None = None) -> str:
        """Render the exposition block of this metric."""
        return PrometheusFormatter().render_metric(self, namespace)

    # -------------------------------------------------------------------------
    # Handles and lifecycle
    # -------------------------------------------------------------------------

    def set_store(self, store: SampleStore | None) -> None:
        """Swap the store handle. The cached metric id is reset."""
        with self._lock:
            self._store = store
            self._metric_id = None

    def bind(self, store: SampleStore | None) -> "Metric":
        """Return a copy sharing this metric's definitions with another store."""
        if self._destroyed:
            raise NotPermitted(self._name, "bind", "metric destroyed")
        clone = Metric(self._name, store)
        clone._counter = self._counter
        clone._gauge = self._gauge
        clone._histogram = self._histogram
        return clone

    def destroy(self) -> None:
        """Release per-process state. Persisted rows are kept."""
        with self._lock:
            self._destroyed = True
            self._store = None
            self._metric_id = None


# =============================================================================
# Registry
# =============================================================================


class Registry:
    """Named collection of metrics sharing a namespace and a store handle.

    Ensures unique metric names, keeps a stable rendering order, and
    produces the text snapshot served by the exporter.
    """

    def __init__(self, namespace: str, store: SampleStore | None = None) -> None:
        """Initialize registry.

        Args:
            namespace: Exposition name prefix.
            store: Store handle bound to metrics registered without one.
        """
        if not namespace:
            raise InvalidArgument("Registry namespace is required")
        self._namespace = namespace
        self._store = store
        self._metrics: list[Metric] = []
        self._index: dict[str, Metric] = {}
        self._lock = threading.RLock()

    def __repr__(self) -> str:
        return f"Registry({self._namespace!r}, metrics={len(self)})"

    @property
    def namespace(self) -> str:
        return self._namespace

    @property
    def store(self) -> SampleStore | None:
        return self._store

    def register(self, metric: Metric) -> Metric:
        """Register a metric.

        Args:
            metric: Metric to register.

        Returns:
            The registered metric.

        Raises:
            AlreadyExists: If the name is already registered.
        """
        with self._lock:
            if metric.name in self._index:
                raise AlreadyExists(metric.name)
            if metric.store is None and self._store is not None:
                metric.set_store(self._store)
            self._metrics.append(metric)
            self._index[metric.name] = metric
            return metric

    def lookup(self, name: str) -> Metric:
        """Get a registered metric by name.

        Raises:
            NotFound: If no metric has this name.
        """
        with self._lock:
            metric = self._index.get(name)
        if metric is None:
            raise NotFound(name)
        return metric

    def get(self, name: str) -> Metric | None:
        """Get a registered metric by name, or None."""
        with self._lock:
            return self._index.get(name)

    def sort(self) -> None:
        """Order metrics by name."""
        with self._lock:
            self._metrics.sort(key=lambda m: m.name)

    def metrics(self) -> list[Metric]:
        """Return the registered metrics in their current order."""
        with self._lock:
            return list(self._metrics)

    def names(self) -> list[str]:
        return [m.name for m in self.metrics()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._metrics)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._index

    def __iter__(self) -> Iterator[Metric]:
        return iter(self.metrics())

    def set_store_handle(self, store: SampleStore | None) -> None:
        """Point the registry and every metric at a new store handle."""
        with self._lock:
            self._store = store
            for metric in self._metrics:
                metric.set_store(store)

    def bind(self, store: SampleStore | None) -> "Registry":
        """Return a registry with the same metrics bound to another store."""
        with self._lock:
            bound = Registry(self._namespace, store)
            for metric in self._metrics:
                bound.register(metric.bind(store))
            return bound

    def snapshot_text(self, namespace: str | None = None) -> str:
        """Render every metric, in registry order.

        A metric whose stored rows cannot be read or decoded is skipped.

        Raises:
            StoreReadError: If every metric failed to render.
        """
        namespace = namespace or self._namespace
        metrics = self.metrics()

        chunks: list[str] = []
        last_error: Exception | None = None
        failures = 0

        for metric in metrics:
            try:
                chunks.append(metric.render_text(namespace))
            except (MetricsError, ValueError) as e:
                failures += 1
                last_error = e
                logger.warning(f"Skipping metric '{metric.name}' in snapshot: {e}")

        if metrics and failures == len(metrics):
            raise StoreReadError(
                f"Failed to read all {failures} metrics",
                code=getattr(last_error, "code", None),
                path=getattr(last_error, "path", None),
            ) from last_error

        return "".join(chunks)

    def close(self) -> None:
        """Destroy every metric. Persisted data is kept."""
        with self._lock:
            for metric in self._metrics:
                metric.destroy()
            self._metrics.clear()
            self._index.clear()
            self._store = None
