"""Minimal in-process metrics rendered in the Prometheus text format."""

from __future__ import annotations

import math
from typing import Callable, Dict, Iterable, TypeVar


class Counter:
    kind = "counter"

    def __init__(self, name: str, description: str = "") -> None:
        self.name = name
        self.description = description
        self._value = 0.0

    def inc(self, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("counters only move forward")
        self._value += amount

    @property
    def value(self) -> float:
        return self._value

    def samples(self) -> Iterable[str]:
        yield f"{self.name} {self._value}"


class Gauge:
    kind = "gauge"

    def __init__(self, name: str, description: str = "", supplier: Callable[[], float] | None = None) -> None:
        self.name = name
        self.description = description
        self._value = 0.0
        self._supplier = supplier

    def set(self, value: float) -> None:
        self._value = value

    @property
    def value(self) -> float:
        return self._supplier() if self._supplier else self._value

    def samples(self) -> Iterable[str]:
        yield f"{self.name} {self.value}"


class Histogram:
    kind = "histogram"

    def __init__(self, name: str, buckets: list[float], description: str = "") -> None:
        self.name = name
        self.description = description
        self._bounds = sorted(buckets) + [math.inf]
        self._counts = [0] * len(self._bounds)
        self._sum = 0.0
        self._count = 0

    def observe(self, value: float) -> None:
        self._count += 1
        self._sum += value
        for index, bound in enumerate(self._bounds):
            if value <= bound:
                self._counts[index] += 1
                break

    @property
    def count(self) -> int:
        return self._count

    def samples(self) -> Iterable[str]:
        cumulative = 0
        for bound, hits in zip(self._bounds, self._counts):
            cumulative += hits
            label = "+Inf" if math.isinf(bound) else bound
            yield f'{self.name}_bucket{{le="{label}"}} {cumulative}'
        yield f"{self.name}_sum {self._sum}"
        yield f"{self.name}_count {self._count}"


MetricT = TypeVar("MetricT", Counter, Gauge, Histogram)


class MetricsRegistry:
    def __init__(self) -> None:
        self._metrics: Dict[str, Counter | Gauge | Histogram] = {}

    def register(self, metric: MetricT) -> MetricT:
        self._metrics[metric.name] = metric
        return metric

    def render(self) -> str:
        lines: list[str] = []
        for metric in self._metrics.values():
            lines.append(f"# HELP {metric.name} {metric.description}")
            lines.append(f"# TYPE {metric.name} {metric.kind}")
            lines.extend(metric.samples())
        return "\n".join(lines) + "\n"


GLOBAL_REGISTRY = MetricsRegistry()
