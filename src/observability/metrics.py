"""Simple in-process metrics collection.

Counters, gauges and histograms kept in memory, optionally split per agent.
Dumped as a JSON-friendly snapshot by the CLI and by tests.
"""

from __future__ import annotations

import math
import time
from collections import defaultdict
from contextlib import contextmanager
from threading import Lock
from typing import Any, Iterator

_MAX_SAMPLES = 2_000  # per histogram


def _percentile(sorted_data: list[float], pct: float) -> float:
    """Linear-interpolated percentile over pre-sorted data."""
    if not sorted_data:
        return 0.0
    k = (len(sorted_data) - 1) * (pct / 100.0)
    lo = math.floor(k)
    hi = math.ceil(k)
    if lo == hi:
        return sorted_data[int(k)]
    return sorted_data[lo] * (hi - k) + sorted_data[hi] * (k - lo)


def _metric_key(name: str, agent_id: int | None) -> str:
    return name if agent_id is None else f"{name}{{agent={agent_id}}}"


class MetricsCollector:
    """Thread-safe in-process metrics collector."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: dict[str, float] = defaultdict(float)
        self._gauges: dict[str, float] = {}
        self._histograms: dict[str, list[float]] = defaultdict(list)

    def incr(self, name: str, value: float = 1.0, agent_id: int | None = None) -> None:
        with self._lock:
            self._counters[name] += value
            if agent_id is not None:
                self._counters[_metric_key(name, agent_id)] += value

    def gauge(self, name: str, value: float, agent_id: int | None = None) -> None:
        with self._lock:
            self._gauges[_metric_key(name, agent_id)] = value

    def observe(self, name: str, value: float) -> None:
        with self._lock:
            samples = self._histograms[name]
            samples.append(value)
            if len(samples) > _MAX_SAMPLES:
                del samples[: len(samples) - _MAX_SAMPLES]

    @contextmanager
    def timer(self, name: str) -> Iterator[None]:
        """Record the wall time of a block into histogram ``name``."""
        start = time.monotonic()
        try:
            yield
        finally:
            self.observe(name, time.monotonic() - start)

    def counter(self, name: str, agent_id: int | None = None) -> float:
        with self._lock:
            return self._counters.get(_metric_key(name, agent_id), 0.0)

    def snapshot(self) -> dict[str, Any]:
        """JSON-serializable view of all metrics."""
        with self._lock:
            hists: dict[str, Any] = {}
            for name, values in self._histograms.items():
                s = sorted(values)
                hists[name] = {
                    "count": len(s),
                    "avg": (sum(s) / len(s)) if s else 0.0,
                    "p50": _percentile(s, 50),
                    "p95": _percentile(s, 95),
                    "max": s[-1] if s else 0.0,
                }
            return {
                "counters": dict(self._counters),
                "gauges": dict(self._gauges),
                "histograms": hists,
            }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()


# Global singleton
metrics = MetricsCollector()
