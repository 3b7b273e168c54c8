"""In-process metrics for crawlhost.

Counters and gauges keep their current value; every update is also appended
to a bounded per-name history so summaries can be computed later.
"""

import math
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Deque, Dict, Iterator, List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class MetricValue:
    """One observation of a metric."""
    value: float
    timestamp: datetime = field(default_factory=_utcnow)
    tags: Dict[str, str] = field(default_factory=dict)


@dataclass
class MetricSummary:
    """Summary statistics over a metric's retained history."""
    name: str
    count: int
    sum: float
    min: float
    max: float
    avg: float
    latest: float
    latest_timestamp: datetime

    @classmethod
    def from_values(cls, name: str, values: List[MetricValue]) -> "MetricSummary":
        if not values:
            return cls(name, 0, 0.0, 0.0, 0.0, 0.0, 0.0, _utcnow())

        numbers = [v.value for v in values]
        total = math.fsum(numbers)
        last = values[-1]
        return cls(
            name=name,
            count=len(numbers),
            sum=total,
            min=min(numbers),
            max=max(numbers),
            avg=total / len(numbers),
            latest=last.value,
            latest_timestamp=last.timestamp
        )


class MetricsCollector:
    """Thread-safe counters, gauges and value histories."""

    def __init__(self, max_values_per_metric: int = 1000):
        self.max_values_per_metric = max_values_per_metric
        self._history: Dict[str, Deque[MetricValue]] = {}
        self._counters: Dict[str, float] = {}
        self._gauges: Dict[str, float] = {}
        self._lock = Lock()

    def _append(self, name: str, observation: MetricValue) -> None:
        series = self._history.get(name)
        if series is None:
            series = self._history[name] = deque(maxlen=self.max_values_per_metric)
        series.append(observation)

    def record_metric(
        self,
        name: str,
        value: float,
        tags: Optional[Dict[str, str]] = None,
        timestamp: Optional[datetime] = None
    ) -> None:
        """Append a raw observation without touching counters or gauges."""
        observation = MetricValue(value, timestamp or _utcnow(), dict(tags or {}))
        with self._lock:
            self._append(name, observation)

    def increment_counter(
        self,
        name: str,
        value: float = 1.0,
        tags: Optional[Dict[str, str]] = None
    ) -> None:
        with self._lock:
            current = self._counters.get(name, 0.0) + value
            self._counters[name] = current
            self._append(name, MetricValue(current, tags=dict(tags or {})))

    def set_gauge(
        self,
        name: str,
        value: float,
        tags: Optional[Dict[str, str]] = None
    ) -> None:
        with self._lock:
            self._gauges[name] = value
            self._append(name, MetricValue(value, tags=dict(tags or {})))

    def record_timing(
        self,
        name: str,
        duration: float,
        tags: Optional[Dict[str, str]] = None
    ) -> None:
        """Record ``<name>.duration`` in seconds and bump ``<name>.count``."""
        self.record_metric(f"{name}.duration", duration, tags)
        self.increment_counter(f"{name}.count", tags=tags)

    @contextmanager
    def timer(self, name: str, tags: Optional[Dict[str, str]] = None) -> Iterator[None]:
        """Time the enclosed block, including blocks that raise.

        Usage:
            with metrics.timer("hostdb.dump"):
                ...
        """
        started = time.perf_counter()
        try:
            yield
        finally:
            self.record_timing(name, time.perf_counter() - started, tags)

    def get_metric_summary(self, name: str) -> Optional[MetricSummary]:
        """Summary for ``name``, or None if it was never recorded."""
        with self._lock:
            series = self._history.get(name)
            if series is None:
                return None
            values = list(series)
        return MetricSummary.from_values(name, values)

    def get_counter_value(self, name: str) -> float:
        with self._lock:
            return self._counters.get(name, 0.0)

    def get_gauge_value(self, name: str) -> float:
        with self._lock:
            return self._gauges.get(name, 0.0)

    def snapshot(self) -> Dict[str, Any]:
        """Current counters and gauges as plain dicts."""
        with self._lock:
            return {"counters": dict(self._counters), "gauges": dict(self._gauges)}

    def reset(self) -> None:
        with self._lock:
            self._history.clear()
            self._counters.clear()
            self._gauges.clear()


_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector instance."""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector()
    return _metrics_collector


def increment_counter(name: str, value: float = 1.0, tags: Optional[Dict[str, str]] = None) -> None:
    get_metrics_collector().increment_counter(name, value, tags)


def set_gauge(name: str, value: float, tags: Optional[Dict[str, str]] = None) -> None:
    get_metrics_collector().set_gauge(name, value, tags)


def timer(name: str, tags: Optional[Dict[str, str]] = None):
    """Time a block on the global collector."""
    return get_metrics_collector().timer(name, tags)
