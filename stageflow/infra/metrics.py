# stageflow/infra/metrics.py
"""
In-process counters and histograms.

Each StageEngine owns its own MetricsCollector so engines never share
counts.  ``EngineMetrics`` names the counters the engine records.
"""
from __future__ import annotations
import time
from collections import defaultdict
from threading import Lock
from typing import Dict
from dataclasses import dataclass, field
from stageflow.infra.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class Counter:
    """Simple counter metric"""
    value: int = 0

    def inc(self, amount: int = 1) -> None:
        self.value += amount


@dataclass
class Histogram:
    """Track distribution of values (e.g., commit durations)"""
    values: list[float] = field(default_factory=list)

    def observe(self, value: float) -> None:
        self.values.append(value)

    def get_stats(self) -> dict:
        if not self.values:
            return {"count": 0, "min": 0, "max": 0, "avg": 0, "p95": 0, "p99": 0}

        sorted_values = sorted(self.values)
        count = len(sorted_values)

        def percentile(p: float) -> float:
            idx = int(count * p)
            return sorted_values[min(idx, count - 1)]

        return {
            "count": count,
            "min": sorted_values[0],
            "max": sorted_values[-1],
            "avg": sum(sorted_values) / count,
            "p95": percentile(0.95),
            "p99": percentile(0.99),
        }


class MetricsCollector:
    """
    Lightweight metrics collection.
    Export is left to the embedding application (``get_metrics()``).
    """

    def __init__(self):
        self._counters: Dict[str, Counter] = defaultdict(Counter)
        self._histograms: Dict[str, Histogram] = defaultdict(Histogram)
        self._lock = Lock()

    def inc_counter(self, name: str, amount: int = 1, labels: dict | None = None) -> None:
        """Increment a counter metric"""
        key = self._make_key(name, labels)
        with self._lock:
            self._counters[key].inc(amount)

    def observe_histogram(self, name: str, value: float, labels: dict | None = None) -> None:
        """Add a value to histogram"""
        key = self._make_key(name, labels)
        with self._lock:
            self._histograms[key].observe(value)

    def get_counter(self, name: str, labels: dict | None = None) -> int:
        key = self._make_key(name, labels)
        with self._lock:
            counter = self._counters.get(key)
            return counter.value if counter else 0

    def get_metrics(self) -> dict:
        """Get all current metrics"""
        with self._lock:
            counters = {k: v.value for k, v in self._counters.items()}
            histograms = {k: v.get_stats() for k, v in self._histograms.items()}

        return {
            "counters": counters,
            "histograms": histograms,
        }

    def reset(self) -> None:
        """Reset all metrics"""
        with self._lock:
            self._counters.clear()
            self._histograms.clear()
        logger.debug("Metrics reset")

    @staticmethod
    def _make_key(name: str, labels: dict | None) -> str:
        """Create a metric key from name and labels"""
        if not labels:
            return name
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"


class Timer:
    """Context manager to time operations into a histogram"""

    def __init__(self, collector: MetricsCollector, metric_name: str, **labels):
        self.collector = collector
        self.metric_name = metric_name
        self.labels = labels
        self.start_time: float | None = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time is not None:
            duration = time.perf_counter() - self.start_time
            self.collector.observe_histogram(self.metric_name, duration, self.labels or None)


class EngineMetrics:
    """Engine-level metrics tracking"""

    def __init__(self, collector: MetricsCollector | None = None):
        self.collector = collector or MetricsCollector()

    def transition_committed(self, from_stage: str, to_stage: str) -> None:
        self.collector.inc_counter("transitions_committed_total", labels={"from": from_stage, "to": to_stage})

    def transition_rejected(self, reason: str) -> None:
        self.collector.inc_counter("transitions_rejected_total", labels={"reason": reason})

    def transition_cancelled(self, middleware: str) -> None:
        self.collector.inc_counter("transitions_cancelled_total", labels={"middleware": middleware})

    def plugin_hook_failed(self, plugin: str, hook: str) -> None:
        self.collector.inc_counter("plugin_hook_failures_total", labels={"plugin": plugin, "hook": hook})

    def subscriber_failed(self) -> None:
        self.collector.inc_counter("subscriber_failures_total")

    def timer_fired(self, stage: str, event: str) -> None:
        self.collector.inc_counter("timers_fired_total", labels={"stage": stage, "event": event})

    def track_commit_time(self) -> Timer:
        return Timer(self.collector, "transition_commit_seconds")
