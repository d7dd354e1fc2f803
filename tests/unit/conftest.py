"""Pytest fixtures shared by the unit tests."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Generator

import pytest

from promtables.observability.metrics import Metric, Registry
from promtables.stores import OpenFlags, SampleStore


@pytest.fixture
def tables_dir(tmp_path: Path) -> Path:
    """Empty directory for a metrics database."""
    path = tmp_path / "tables"
    path.mkdir()
    return path


@pytest.fixture
def store(tables_dir: Path) -> Generator[SampleStore, None, None]:
    """Freshly initialized sample store."""
    store = SampleStore.open(tables_dir, OpenFlags.INIT)
    yield store
    store.close()


@pytest.fixture
def registry(store: SampleStore) -> Generator[Registry, None, None]:
    """Registry with the ``prt`` namespace bound to the store."""
    registry = Registry("prt", store)
    yield registry
    registry.close()


@pytest.fixture
def counter_metric(registry: Registry) -> Metric:
    """Registered metric with a ``total`` counter."""
    metric = Metric("test")
    metric.add_counter("total", "Testing counters")
    return registry.register(metric)


@pytest.fixture
def histogram_metric(registry: Registry) -> Metric:
    """Registered metric with a ``weight`` histogram."""
    metric = Metric("test")
    metric.add_histogram("weight", "Testing histograms", [1.0, 5.0, 10.0])
    return registry.register(metric)


@pytest.fixture
def damage_sample_labels(store: SampleStore):
    """Overwrite the stored label keys of one metric with raw text."""

    def damage(
        metric_name: str,
        label_key: str,
        kind: str | None = None,
        current: str | None = None,
    ) -> None:
        metric_id = store.lookup_metric(metric_name)
        query = "UPDATE samples SET sample_labels = ? WHERE metric_id = ?"
        params: list = [label_key, metric_id]
        if kind is not None:
            query += " AND sample_kind = ?"
            params.append(kind)
        if current is not None:
            query += " AND sample_labels = ?"
            params.append(current)
        conn = sqlite3.connect(store.path)
        try:
            conn.execute(query, params)
            conn.commit()
        finally:
            conn.close()

    return damage
