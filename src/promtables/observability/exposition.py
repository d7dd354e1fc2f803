"""Prometheus text exposition format.

Generates output compatible with the Prometheus text exposition format,
version 0.0.4.

Example output:
    # HELP proftpd_login_total Number of successful logins
    # TYPE proftpd_login_total counter
    proftpd_login_total 6
    proftpd_login_total{protocol="ftp"} 4
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING

from promtables.labels import BUCKET_LABEL, LabelSet

if TYPE_CHECKING:
    from promtables.observability.metrics import Metric, Registry

CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"


def format_value(value: float) -> str:
    """Format a sample value or bucket bound.

    Integral values render without a fraction (``6``), infinities as
    ``+Inf``/``-Inf``.
    """
    value = float(value)
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value.is_integer():
        return str(int(value))
    return repr(value)


def escape_help(text: str) -> str:
    """Escape help text (backslash and newline)."""
    return text.replace("\\", "\\\\").replace("\n", "\\n")


def _sample_line(name: str, labels: LabelSet, value: float, extra: dict[str, str] | None = None) -> str:
    rendered = labels.render(extra)
    if rendered:
        return f"{name}{{{rendered}}} {format_value(value)}"
    return f"{name} {format_value(value)}"


class PrometheusFormatter:
    """Render metrics in the text exposition format."""

    def render_metric(self, metric: Metric, namespace: str | None = None) -> str:
        """Render the HELP/TYPE block and samples of every sub-definition.

        Sub-definitions are rendered in the order counter, gauge, histogram.
        Within one sub-definition the label-less series comes first.
        """
        from promtables.observability.metrics import MetricKind

        lines: list[str] = []

        for kind in metric.kinds:
            definition = metric.definition(kind)
            name = metric.full_name(namespace, kind)

            lines.append(f"# HELP {name} {escape_help(definition.help)}")
            lines.append(f"# TYPE {name} {kind.value}")

            if kind is MetricKind.HISTOGRAM:
                lines.extend(self._histogram_lines(metric, name))
            else:
                for sample in metric.get_samples(kind):
                    lines.append(_sample_line(name, sample.labels, sample.value))

        if not lines:
            return ""
        return "\n".join(lines) + "\n"

    def _histogram_lines(self, metric: Metric, name: str) -> list[str]:
        from promtables.observability.metrics import MetricKind

        samples = metric.get_samples(MetricKind.HISTOGRAM)
        bounds = metric.histogram.buckets if metric.histogram else ()

        # base label key -> {le value -> cumulative count}
        buckets: dict[str, dict[str, float]] = {}
        label_sets: dict[str, LabelSet] = {}
        for sample in samples.buckets:
            base = sample.labels.without(BUCKET_LABEL)
            key = base.canonical_key()
            label_sets.setdefault(key, base)
            buckets.setdefault(key, {})[sample.labels[BUCKET_LABEL]] = sample.value

        counts = {s.label_key: s for s in samples.counts}
        sums = {s.label_key: s for s in samples.sums}
        for sample in samples.counts:
            label_sets.setdefault(sample.label_key, sample.labels)

        lines: list[str] = []
        for key in sorted(label_sets):
            labels = label_sets[key]
            observed = buckets.get(key, {})

            previous = 0.0
            for bound in bounds:
                le = format_value(bound)
                previous = observed.get(le, previous)
                lines.append(_sample_line(f"{name}_bucket", labels, previous, {BUCKET_LABEL: le}))

            count = counts[key].value if key in counts else 0.0
            total = observed.get("+Inf", count)
            lines.append(_sample_line(f"{name}_bucket", labels, total, {BUCKET_LABEL: "+Inf"}))
            lines.append(_sample_line(f"{name}_count", labels, count))
            lines.append(_sample_line(f"{name}_sum", labels, sums[key].value if key in sums else 0.0))

        return lines


def render_registry(registry: Registry, namespace: str | None = None) -> str:
    """Render every metric of a registry."""
    return registry.snapshot_text(namespace)
