"""In-process job metrics.

Counters, gauges and timing histograms recorded by the periodic
position and verification jobs. Snapshots are plain dicts so the driver
can print or ship them.
"""

from __future__ import annotations

import math
import time
from collections import defaultdict
from contextlib import contextmanager
from threading import Lock
from typing import Any, Iterator


def _percentile(sorted_data: list[float], pct: float) -> float:
    """Linear-interpolated percentile of pre-sorted data."""
    if not sorted_data:
        return 0.0
    k = (len(sorted_data) - 1) * (pct / 100.0)
    f = math.floor(k)
    c = math.ceil(k)
    if f == c:
        return sorted_data[int(k)]
    return sorted_data[int(f)] * (c - k) + sorted_data[int(c)] * (k - f)


def _timing_stats(values: list[float]) -> dict[str, Any]:
    if not values:
        return {"count": 0, "min": 0, "max": 0, "avg": 0, "p50": 0, "p95": 0}
    s = sorted(values)
    return {
        "count": len(s),
        "min": s[0],
        "max": s[-1],
        "avg": sum(s) / len(s),
        "p50": _percentile(s, 50),
        "p95": _percentile(s, 95),
    }


class MetricsCollector:
    """Thread-safe counters/gauges/timings keyed by dotted names."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: dict[str, float] = defaultdict(float)
        self._gauges: dict[str, float] = {}
        self._timings: dict[str, list[float]] = defaultdict(list)

    def incr(self, name: str, value: float = 1.0) -> None:
        with self._lock:
            self._counters[name] += value

    def gauge(self, name: str, value: float) -> None:
        with self._lock:
            self._gauges[name] = value

    def observe(self, name: str, value: float) -> None:
        with self._lock:
            self._timings[name].append(value)

    @contextmanager
    def timer(self, name: str) -> Iterator[None]:
        """Record the wall time of the enclosed block in milliseconds."""
        start = time.monotonic()
        try:
            yield
        finally:
            self.observe(name, (time.monotonic() - start) * 1000)

    def counter(self, name: str) -> float:
        with self._lock:
            return self._counters.get(name, 0.0)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "counters": dict(self._counters),
                "gauges": dict(self._gauges),
                "timings_ms": {k: _timing_stats(v) for k, v in self._timings.items()},
            }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._timings.clear()


# Global singleton
metrics = MetricsCollector()
