"""
Restore metrics — what restores cost, kept in process.

The reconciler owns one registry and feeds it on every restore; the CLI
prints it with its JSON output. Series are keyed by name and labels:

    restore.invocations         restores requested
    restore.passes              passes run, all restores together
    restore.tasks{kind}         corrective tasks executed per unit kind
    restore.suppressed_errors   failures retried instead of raised
    restore.failures            restores that raised
    restore.duration_ms         wall time of each restore
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, TypeVar

INVOCATIONS = "restore.invocations"
PASSES = "restore.passes"
TASKS = "restore.tasks"
SUPPRESSED_ERRORS = "restore.suppressed_errors"
FAILURES = "restore.failures"
DURATION_MS = "restore.duration_ms"

SeriesKey = tuple[str, tuple[tuple[str, str], ...]]

S = TypeVar("S")


def _key(name: str, labels: dict[str, str]) -> SeriesKey:
    return name, tuple(sorted(labels.items()))


@dataclass
class Counter:
    """Running total of one event under one label set."""

    name: str
    labels: dict[str, str] = field(default_factory=dict)
    value: int = 0

    def inc(self, n: int = 1) -> Counter:
        self.value += n
        return self

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "labels": self.labels, "value": self.value}


@dataclass
class Histogram:
    """Streaming summary of observed values; nothing is kept per sample."""

    name: str
    labels: dict[str, str] = field(default_factory=dict)
    count: int = 0
    total: float = 0.0
    low: float | None = None
    high: float | None = None

    def observe(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.low = value if self.low is None else min(self.low, value)
        self.high = value if self.high is None else max(self.high, value)

    @property
    def mean(self) -> float:
        return self.total / self.count if self.count else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "labels": self.labels,
            "count": self.count,
            "total": round(self.total, 2),
            "mean": round(self.mean, 2),
            "min": round(self.low or 0.0, 2),
            "max": round(self.high or 0.0, 2),
        }


@dataclass
class Stopwatch:
    """Milliseconds since creation, frozen by ``stop()``."""

    started: float = field(default_factory=time.monotonic)
    elapsed_ms: float = 0.0

    def stop(self) -> float:
        self.elapsed_ms = (time.monotonic() - self.started) * 1000
        return self.elapsed_ms


class MetricsRegistry:
    """Counters and histograms, created on first use."""

    def __init__(self) -> None:
        self._counters: dict[SeriesKey, Counter] = {}
        self._histograms: dict[SeriesKey, Histogram] = {}

    def counter(self, name: str, **labels: str) -> Counter:
        return self._series(self._counters, Counter, name, labels)

    def histogram(self, name: str, **labels: str) -> Histogram:
        return self._series(self._histograms, Histogram, name, labels)

    @contextmanager
    def timer(self, name: str, **labels: str) -> Iterator[Stopwatch]:
        """Observe the block's duration in milliseconds, even if it raises."""
        watch = Stopwatch()
        try:
            yield watch
        finally:
            self.histogram(name, **labels).observe(watch.stop())

    def value(self, name: str, **labels: str) -> int:
        """Counter value; with no labels, the sum over every label set."""
        if labels:
            counter = self._counters.get(_key(name, labels))
            return counter.value if counter is not None else 0
        return sum(c.value for c in self._counters.values() if c.name == name)

    def to_dict(self) -> dict[str, list[dict[str, Any]]]:
        return {
            "counters": [c.to_dict() for c in self._counters.values()],
            "histograms": [h.to_dict() for h in self._histograms.values()],
        }

    def reset(self) -> None:
        self._counters.clear()
        self._histograms.clear()

    @staticmethod
    def _series(
        store: dict[SeriesKey, S],
        factory: Callable[..., S],
        name: str,
        labels: dict[str, str],
    ) -> S:
        key = _key(name, labels)
        series = store.get(key)
        if series is None:
            series = store[key] = factory(name=name, labels=labels)
        return series
