"""
In-process operational metrics for the usage analytics service.
"""

import time
import threading
import statistics
from collections import defaultdict, deque
from datetime import datetime, timezone
from typing import Dict, Any, Optional


class MetricsCollector:
    """Thread-safe counters, gauges and timers."""

    def __init__(self, max_samples: int = 1000):
        self._lock = threading.Lock()
        self._counters: Dict[str, float] = defaultdict(float)
        self._gauges: Dict[str, float] = {}
        self._timers: Dict[str, deque] = defaultdict(lambda: deque(maxlen=max_samples))

    def counter(self, name: str, value: float = 1, tags: Optional[Dict[str, str]] = None) -> None:
        """Increment a counter metric."""
        with self._lock:
            self._counters[self._make_key(name, tags)] += value

    def gauge(self, name: str, value: float, tags: Optional[Dict[str, str]] = None) -> None:
        """Set a gauge metric."""
        with self._lock:
            self._gauges[self._make_key(name, tags)] = value

    def timer(self, name: str, duration: float, tags: Optional[Dict[str, str]] = None) -> None:
        """Record a timer value in seconds."""
        with self._lock:
            self._timers[self._make_key(name, tags)].append(duration)

    def timing(self, name: str, tags: Optional[Dict[str, str]] = None) -> 'TimingContext':
        """Context manager for timing operations."""
        return TimingContext(self, name, tags)

    def get_counter(self, name: str, tags: Optional[Dict[str, str]] = None) -> float:
        """Get counter value."""
        with self._lock:
            return self._counters.get(self._make_key(name, tags), 0)

    def get_gauge(self, name: str, tags: Optional[Dict[str, str]] = None) -> Optional[float]:
        """Get gauge value."""
        with self._lock:
            return self._gauges.get(self._make_key(name, tags))

    def get_metrics(self) -> Dict[str, Any]:
        """Get a snapshot of all metrics."""
        with self._lock:
            timers = {}
            for key, durations in self._timers.items():
                if durations:
                    timers[key] = {
                        "count": len(durations),
                        "min": min(durations),
                        "max": max(durations),
                        "mean": statistics.mean(durations),
                        "median": statistics.median(durations),
                    }
            return {
                "counters": dict(self._counters),
                "gauges": dict(self._gauges),
                "timers": timers,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }

    def reset(self) -> None:
        """Reset all metrics."""
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._timers.clear()

    def _make_key(self, name: str, tags: Optional[Dict[str, str]]) -> str:
        if not tags:
            return name
        tag_str = ",".join(f"{k}={v}" for k, v in sorted(tags.items()))
        return f"{name}[{tag_str}]"


class TimingContext:
    """Context manager for timing operations, usable with ``with`` and ``async with``."""

    def __init__(self, collector: MetricsCollector, name: str, tags: Optional[Dict[str, str]] = None):
        self.collector = collector
        self.name = name
        self.tags = tags
        self.start_time: Optional[float] = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time is not None:
            self.collector.timer(self.name, time.perf_counter() - self.start_time, self.tags)

    async def __aenter__(self):
        return self.__enter__()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.__exit__(exc_type, exc_val, exc_tb)


_global_collector = MetricsCollector()


def get_metrics_collector() -> MetricsCollector:
    """Get the process-wide metrics collector."""
    return _global_collector


__all__ = [
    'MetricsCollector',
    'TimingContext',
    'get_metrics_collector',
]
