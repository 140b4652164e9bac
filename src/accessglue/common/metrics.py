"""In-process metrics rendered in the Prometheus text exposition format."""

from __future__ import annotations

from typing import Dict, Sequence, Tuple

LabelValues = Tuple[str, ...]


def _format_labels(names: Sequence[str], values: LabelValues, extra: str = "") -> str:
    pairs = [f'{name}="{value}"' for name, value in zip(names, values)]
    if extra:
        pairs.append(extra)
    return "{" + ",".join(pairs) + "}" if pairs else ""


def _format_value(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else repr(value)


class _Metric:
    kind = "untyped"

    def __init__(self, name: str, description: str = "", labelnames: Sequence[str] = ()) -> None:
        self.name = name
        self.description = description
        self.labelnames = tuple(labelnames)

    def _key(self, labels: Dict[str, str]) -> LabelValues:
        if set(labels) != set(self.labelnames):
            raise ValueError(f"{self.name} expects labels {list(self.labelnames)}, got {sorted(labels)}")
        return tuple(str(labels[name]) for name in self.labelnames)

    def _header(self) -> list[str]:
        return [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} {self.kind}"]


class Counter(_Metric):
    kind = "counter"

    def __init__(self, name: str, description: str = "", labelnames: Sequence[str] = ()) -> None:
        super().__init__(name, description, labelnames)
        self._values: Dict[LabelValues, float] = {}

    def inc(self, amount: float = 1.0, **labels: str) -> None:
        if amount < 0:
            raise ValueError("counters only increase")
        key = self._key(labels)
        self._values[key] = self._values.get(key, 0.0) + amount

    def value(self, **labels: str) -> float:
        return self._values.get(self._key(labels), 0.0)

    def render(self) -> str:
        lines = self._header()
        if not self.labelnames and not self._values:
            lines.append(f"{self.name} 0")
        for key, value in sorted(self._values.items()):
            lines.append(f"{self.name}{_format_labels(self.labelnames, key)} {_format_value(value)}")
        return "\n".join(lines) + "\n"


class _Series:
    def __init__(self, buckets: Sequence[float]) -> None:
        self.bucket_counts = [0] * len(buckets)
        self.total = 0.0
        self.count = 0


class Histogram(_Metric):
    kind = "histogram"

    def __init__(
        self,
        name: str,
        buckets: Sequence[float],
        description: str = "",
        labelnames: Sequence[str] = (),
    ) -> None:
        super().__init__(name, description, labelnames)
        self._buckets = sorted(buckets)
        self._series: Dict[LabelValues, _Series] = {}

    def observe(self, value: float, **labels: str) -> None:
        key = self._key(labels)
        series = self._series.setdefault(key, _Series(self._buckets))
        series.count += 1
        series.total += value
        for index, bound in enumerate(self._buckets):
            if value <= bound:
                series.bucket_counts[index] += 1

    def count(self, **labels: str) -> int:
        series = self._series.get(self._key(labels))
        return series.count if series else 0

    def render(self) -> str:
        lines = self._header()
        for key, series in sorted(self._series.items()):
            for bound, cumulative in zip(self._buckets, series.bucket_counts):
                le = _format_labels(self.labelnames, key, f'le="{bound}"')
                lines.append(f"{self.name}_bucket{le} {cumulative}")
            le = _format_labels(self.labelnames, key, 'le="+Inf"')
            lines.append(f"{self.name}_bucket{le} {series.count}")
            suffix = _format_labels(self.labelnames, key)
            lines.append(f"{self.name}_sum{suffix} {_format_value(series.total)}")
            lines.append(f"{self.name}_count{suffix} {series.count}")
        return "\n".join(lines) + "\n"


class MetricsRegistry:
    def __init__(self) -> None:
        self._metrics: Dict[str, _Metric] = {}

    def register(self, metric):
        if metric.name in self._metrics:
            raise ValueError(f"metric {metric.name} already registered")
        self._metrics[metric.name] = metric
        return metric

    def render(self) -> str:
        return "\n".join(metric.render() for metric in self._metrics.values())


GLOBAL_REGISTRY = MetricsRegistry()

PROVISION_COUNTER = GLOBAL_REGISTRY.register(
    Counter(
        "accessglue_provision_total",
        "Workload provisioning attempts by outcome",
        labelnames=("outcome",),
    )
)
REQUEST_LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "accessglue_request_duration_seconds",
        buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
        description="Provisioning API request latency",
        labelnames=("method", "path"),
    )
)
