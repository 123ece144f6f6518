"""
Minimal Prometheus text-format exporter.

Only the metric types the ledger records are implemented:
- Counter (labelled)
- Histogram (unlabelled buckets)
"""
from __future__ import annotations

import threading
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

CONTENT_TYPE_LATEST = "text/plain; version=0.0.4; charset=utf-8"


def _label_block(names: Sequence[str], values: Sequence[str]) -> str:
    if not names:
        return ""
    return "{" + ",".join(f'{n}="{v}"' for n, v in zip(names, values)) + "}"


class Registry:
    """Process-wide collection of metrics."""

    def __init__(self) -> None:
        self._metrics: List["_Metric"] = []
        self._lock = threading.Lock()

    def register(self, metric: "_Metric") -> None:
        with self._lock:
            self._metrics.append(metric)

    def collect(self) -> List["_Metric"]:
        with self._lock:
            return list(self._metrics)


REGISTRY = Registry()


class _Metric:
    kind = "untyped"

    def __init__(self, name: str, description: str, labelnames: Optional[Iterable[str]] = None,
                 registry: Optional[Registry] = None) -> None:
        self.name = name
        self.description = description
        self.labelnames: Tuple[str, ...] = tuple(labelnames or ())
        self._lock = threading.Lock()
        (registry or REGISTRY).register(self)

    def _header(self) -> List[str]:
        return [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} {self.kind}"]

    def render(self) -> List[str]:
        raise NotImplementedError


class Counter(_Metric):
    """Monotonic counter keyed by label values."""

    kind = "counter"

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._values: Dict[Tuple[str, ...], float] = {}

    def inc(self, amount: float = 1.0, **labels: str) -> None:
        if amount < 0:
            raise ValueError("Counters can only increase")
        key = tuple(str(labels.get(n, "")) for n in self.labelnames)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + amount

    def value(self, **labels: str) -> float:
        key = tuple(str(labels.get(n, "")) for n in self.labelnames)
        with self._lock:
            return self._values.get(key, 0.0)

    def render(self) -> List[str]:
        with self._lock:
            items = sorted(self._values.items())
        return self._header() + [
            f"{self.name}{_label_block(self.labelnames, key)} {value}" for key, value in items
        ]


class Histogram(_Metric):
    """Cumulative histogram without labels."""

    kind = "histogram"

    def __init__(self, name: str, description: str, buckets: Iterable[float],
                 registry: Optional[Registry] = None) -> None:
        super().__init__(name, description, registry=registry)
        self.buckets = tuple(sorted(buckets))
        self._counts = [0] * len(self.buckets)
        self._sum = 0.0
        self._count = 0

    def observe(self, amount: float) -> None:
        with self._lock:
            for i, bound in enumerate(self.buckets):
                if amount <= bound:
                    self._counts[i] += 1
            self._sum += amount
            self._count += 1

    def render(self) -> List[str]:
        with self._lock:
            counts, total, count = list(self._counts), self._sum, self._count
        lines = self._header()
        for bound, c in zip(self.buckets, counts):
            lines.append(f'{self.name}_bucket{{le="{bound}"}} {c}')
        lines.append(f'{self.name}_bucket{{le="+Inf"}} {count}')
        lines.append(f"{self.name}_sum {total}")
        lines.append(f"{self.name}_count {count}")
        return lines


def generate_latest(registry: Optional[Registry] = None) -> bytes:
    """Render all metrics to Prometheus text exposition format."""
    lines: List[str] = []
    for metric in (registry or REGISTRY).collect():
        lines.extend(metric.render())
    return ("\n".join(lines) + "\n").encode("utf-8")
