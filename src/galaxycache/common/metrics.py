"""In-process metrics rendered in the Prometheus text format.

Counters and gauges may declare label names; every distinct label set is its
own series, so the proxy can split cache outcomes by asset kind.
"""

from __future__ import annotations

from typing import Dict, Sequence, Tuple


LabelKey = Tuple[str, ...]


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


class _LabelledMetric:
    type_name = ""

    def __init__(self, name: str, description: str = "", labelnames: Sequence[str] = ()) -> None:
        self.name = name
        self.description = description
        self.labelnames = tuple(labelnames)
        self._values: Dict[LabelKey, float] = {}
        if not self.labelnames:
            self._values[()] = 0.0

    def _key(self, labels: Dict[str, str]) -> LabelKey:
        if set(labels) != set(self.labelnames):
            raise ValueError(f"{self.name} expects labels {list(self.labelnames)}, got {sorted(labels)}")
        return tuple(str(labels[label]) for label in self.labelnames)

    def value(self, **labels: str) -> float:
        return self._values.get(self._key(labels), 0.0)

    def _series(self, key: LabelKey) -> str:
        if not key:
            return self.name
        pairs = ",".join(f'{label}="{_escape(value)}"' for label, value in zip(self.labelnames, key))
        return f"{self.name}{{{pairs}}}"

    def render(self) -> str:
        lines = [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} {self.type_name}"]
        for key in sorted(self._values):
            lines.append(f"{self._series(key)} {self._values[key]}")
        return "\n".join(lines) + "\n"


class Counter(_LabelledMetric):
    type_name = "counter"

    def inc(self, amount: float = 1.0, **labels: str) -> None:
        if amount < 0:
            raise ValueError("counters only increase")
        key = self._key(labels)
        self._values[key] = self._values.get(key, 0.0) + amount


class Gauge(_LabelledMetric):
    type_name = "gauge"

    def set(self, value: float, **labels: str) -> None:
        self._values[self._key(labels)] = float(value)


class Histogram:
    def __init__(self, name: str, buckets: list[float], description: str = "") -> None:
        self.name = name
        self.description = description
        self._buckets = sorted(buckets)
        self._counts = {bucket: 0 for bucket in self._buckets}
        self._sum = 0.0
        self._count = 0

    def observe(self, value: float) -> None:
        self._count += 1
        self._sum += value
        for bucket in self._buckets:
            if value <= bucket:
                self._counts[bucket] += 1

    def render(self) -> str:
        lines = [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} histogram"]
        for bucket in self._buckets:
            lines.append(f'{self.name}_bucket{{le="{bucket}"}} {self._counts[bucket]}')
        lines.append(f'{self.name}_bucket{{le="+Inf"}} {self._count}')
        lines.append(f"{self.name}_sum {self._sum}")
        lines.append(f"{self.name}_count {self._count}")
        return "\n".join(lines) + "\n"


class MetricsRegistry:
    def __init__(self) -> None:
        self._metrics: Dict[str, object] = {}

    def register(self, metric):
        # Re-registering a name returns the existing metric so module reloads keep counting.
        return self._metrics.setdefault(metric.name, metric)

    def get(self, name: str):
        return self._metrics.get(name)

    def render(self) -> str:
        return "\n".join(metric.render() for metric in self._metrics.values()) + "\n"


GLOBAL_REGISTRY = MetricsRegistry()
