"""
Counter-delta engine.

Prometheus counters only move forward. The engine remembers the last
absolute value applied per series and only ever adds the positive
difference, so a caller that re-reports an unchanged (or smaller) total
leaves the exported counter untouched.
"""

import threading
from typing import Dict, Mapping, Protocol


class Incrementable(Protocol):
    def inc(self, amount: float = 1) -> None: ...


def metric_key(name: str, labels: Mapping[str, str]) -> str:
    """Composite key: metric name plus label pairs sorted by label name"""
    parts = [name]
    parts.extend(f"{k}={labels[k]}" for k in sorted(labels))
    return "|".join(parts)


class CounterDeltaEngine:
    def __init__(self) -> None:
        self._last: Dict[str, float] = {}
        self._lock = threading.Lock()

    def apply_delta(self, key: str, new_value: float, counter: Incrementable) -> float:
        """Add max(0, new_value - previous) to counter; returns the delta applied"""
        with self._lock:
            previous = self._last.get(key, 0.0)
            delta = new_value - previous
            if delta > 0:
                counter.inc(delta)
            self._last[key] = new_value
            return delta if delta > 0 else 0.0

    def last_value(self, key: str) -> float:
        with self._lock:
            return self._last.get(key, 0.0)

    def __len__(self) -> int:
        with self._lock:
            return len(self._last)


class CumulativeTotals:
    """
    Running totals per metric key since process start.

    The aggregator adds each run's counts here and feeds the resulting
    absolute values to the delta engine.
    """

    def __init__(self) -> None:
        self._totals: Dict[str, float] = {}
        self._lock = threading.Lock()

    def add(self, key: str, amount: float) -> float:
        with self._lock:
            total = self._totals.get(key, 0.0) + amount
            self._totals[key] = total
            return total

    def get(self, key: str) -> float:
        with self._lock:
            return self._totals.get(key, 0.0)
