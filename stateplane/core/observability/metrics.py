"""
Metrics — lightweight counters and histograms.

No external dependencies. In-process only, with JSON export for the
CLI ``health`` command. The registry is shared by the members of a
parallel group, so every mutation goes through a lock.
"""

from __future__ import annotations

import builtins
import threading
from dataclasses import dataclass, field
from typing import Any


@dataclass
class Counter:
    """Monotonically increasing counter."""

    name: str
    value: int = 0
    labels: dict[str, str] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def inc(self, n: int = 1) -> None:
        with self._lock:
            self.value += n

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "type": "counter", "value": self.value, "labels": self.labels}


@dataclass
class Histogram:
    """Simple histogram tracking min, max, sum, count."""

    name: str
    _values: list[float] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def observe(self, value: float) -> None:
        with self._lock:
            self._values.append(value)

    @property
    def count(self) -> int:
        return len(self._values)

    @property
    def total(self) -> float:
        return sum(self._values)

    @property
    def mean(self) -> float:
        if not self._values:
            return 0.0
        return self.total / self.count

    @property
    def min(self) -> float:
        return builtins.min(self._values) if self._values else 0.0

    @property
    def max(self) -> float:
        return builtins.max(self._values) if self._values else 0.0

    @property
    def p95(self) -> float:
        if not self._values:
            return 0.0
        sorted_vals = sorted(self._values)
        idx = int(len(sorted_vals) * 0.95)
        return sorted_vals[builtins.min(idx, len(sorted_vals) - 1)]

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "type": "histogram",
            "count": self.count,
            "total": round(self.total, 3),
            "mean": round(self.mean, 3),
            "min": self.min,
            "max": self.max,
            "p95": self.p95,
            "labels": self.labels,
        }


class MetricsRegistry:
    """Central registry for all metrics."""

    def __init__(self) -> None:
        self._counters: dict[str, Counter] = {}
        self._histograms: dict[str, Histogram] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _key(name: str, labels: dict[str, str]) -> str:
        return f"{name}:{sorted(labels.items())}" if labels else name

    def counter(self, name: str, **labels: str) -> Counter:
        """Get or create a counter."""
        key = self._key(name, labels)
        with self._lock:
            if key not in self._counters:
                self._counters[key] = Counter(name=name, labels=labels)
            return self._counters[key]

    def histogram(self, name: str, **labels: str) -> Histogram:
        """Get or create a histogram."""
        key = self._key(name, labels)
        with self._lock:
            if key not in self._histograms:
                self._histograms[key] = Histogram(name=name, labels=labels)
            return self._histograms[key]

    def to_dict(self) -> dict[str, list[dict]]:
        with self._lock:
            return {
                "counters": [c.to_dict() for c in self._counters.values()],
                "histograms": [h.to_dict() for h in self._histograms.values()],
            }

    def reset(self) -> None:
        """Clear all metrics."""
        with self._lock:
            self._counters.clear()
            self._histograms.clear()

