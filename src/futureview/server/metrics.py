"""In-process job and broadcast metrics.

Counters and gauges are plain floats keyed by name. Timings (``*_ms``) go
into fixed-size windows summarised with numpy on `snapshot()`, so recording
stays O(1) on the event loop. Everything here is read by `scripts/run_job.py`
and the tests; nothing is exported over the network.
"""

from __future__ import annotations

import time
from collections import deque
from typing import Deque, Dict

import numpy as np


class _Window:
    """Most recent ``size`` samples plus lifetime count and maximum."""

    __slots__ = ("samples", "count", "peak")

    def __init__(self, size: int) -> None:
        self.samples: Deque[float] = deque(maxlen=size)
        self.count = 0
        self.peak = 0.0

    def add(self, value: float) -> None:
        self.samples.append(value)
        self.count += 1
        self.peak = value if self.count == 1 else max(self.peak, value)

    def summary(self) -> Dict[str, float]:
        if not self.samples:
            return {"last_ms": 0.0, "mean_ms": 0.0, "p50_ms": 0.0, "p90_ms": 0.0, "max_ms": 0.0, "count": 0}
        arr = np.fromiter(self.samples, dtype=np.float64, count=len(self.samples))
        p50, p90 = np.percentile(arr, [50, 90])
        return {
            "last_ms": float(arr[-1]),
            "mean_ms": float(arr.mean()),
            "p50_ms": float(p50),
            "p90_ms": float(p90),
            "max_ms": self.peak,
            "count": self.count,
        }


class Metrics:
    def __init__(self, window: int = 512) -> None:
        self._window = max(16, int(window))
        self._counters: Dict[str, float] = {}
        self._gauges: Dict[str, float] = {}
        self._timings: Dict[str, _Window] = {}

    def inc(self, name: str, value: float = 1.0) -> None:
        self._counters[name] = self._counters.get(name, 0.0) + float(value)

    def set(self, name: str, value: float) -> None:
        self._gauges[name] = float(value)

    def observe_ms(self, name: str, value_ms: float) -> None:
        self._timings.setdefault(name, _Window(self._window)).add(float(value_ms))

    def counter(self, name: str) -> float:
        return self._counters.get(name, 0.0)

    def gauge(self, name: str) -> float:
        return self._gauges.get(name, 0.0)

    def snapshot(self) -> Dict[str, object]:
        """JSON-ready view; whole-number counters are reported as ints."""

        return {
            "version": "v1",
            "ts": time.time(),
            "gauges": dict(self._gauges),
            "counters": {k: int(v) if v.is_integer() else v for k, v in self._counters.items()},
            "histograms": {k: w.summary() for k, w in self._timings.items()},
        }


__all__ = ["Metrics"]
