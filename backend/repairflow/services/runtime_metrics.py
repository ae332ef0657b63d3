# backend/repairflow/services/runtime_metrics.py
from __future__ import annotations

import threading


class _Metrics:
    """
    In-process counters for the API and scheduler loops.
    Exposed read-only at /api/meta/metrics; reset on process restart.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, int] = {}

    def inc(self, name: str, n: int = 1) -> None:
        with self._lock:
            self._counters[name] = int(self._counters.get(name, 0)) + int(n)

    def get(self, name: str) -> int:
        with self._lock:
            return int(self._counters.get(name, 0))

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(sorted(self._counters.items()))


METRICS = _Metrics()
