# app/infra/metrics.py
from __future__ import annotations
import time
from collections import defaultdict, deque
from threading import Lock
from typing import Dict
from dataclasses import dataclass, field
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

# Histograms keep a sliding window of samples so a long-lived process
# does not grow without bound.
_HISTOGRAM_WINDOW = 2048


@dataclass
class Counter:
    """Monotonic counter"""
    value: int = 0

    def inc(self, amount: int = 1) -> None:
        self.value += amount


@dataclass
class Histogram:
    """Distribution of recent observations (e.g., gateway latency)"""
    values: deque = field(default_factory=lambda: deque(maxlen=_HISTOGRAM_WINDOW))
    total_count: int = 0

    def observe(self, value: float) -> None:
        self.values.append(value)
        self.total_count += 1

    def get_stats(self) -> dict:
        if not self.values:
            return {"count": 0, "min": 0, "max": 0, "avg": 0, "p95": 0, "p99": 0}

        ordered = sorted(self.values)
        n = len(ordered)

        def percentile(p: float) -> float:
            return ordered[min(int(n * p), n - 1)]

        return {
            "count": self.total_count,
            "min": ordered[0],
            "max": ordered[-1],
            "avg": sum(ordered) / n,
            "p95": percentile(0.95),
            "p99": percentile(0.99),
        }


class MetricsCollector:
    """In-process counters and histograms, served by /metrics."""

    def __init__(self):
        self._counters: Dict[str, Counter] = defaultdict(Counter)
        self._histograms: Dict[str, Histogram] = defaultdict(Histogram)
        self._lock = Lock()

    def inc_counter(self, name: str, amount: int = 1, labels: dict | None = None) -> None:
        key = self._make_key(name, labels)
        with self._lock:
            self._counters[key].inc(amount)

    def observe_histogram(self, name: str, value: float, labels: dict | None = None) -> None:
        key = self._make_key(name, labels)
        with self._lock:
            self._histograms[key].observe(value)

    def get_counter(self, name: str, **labels) -> int:
        key = self._make_key(name, labels or None)
        with self._lock:
            counter = self._counters.get(key)
            return counter.value if counter else 0

    def get_metrics(self) -> dict:
        with self._lock:
            counters = {k: v.value for k, v in self._counters.items()}
            histograms = {k: v.get_stats() for k, v in self._histograms.items()}

        return {
            "counters": counters,
            "histograms": histograms,
        }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._histograms.clear()
        logger.info("Metrics reset")

    @staticmethod
    def _make_key(name: str, labels: dict | None) -> str:
        if not labels:
            return name
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"


_metrics = MetricsCollector()


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector"""
    return _metrics


def inc_counter(name: str, amount: int = 1, **labels) -> None:
    _metrics.inc_counter(name, amount, labels or None)


def observe_histogram(name: str, value: float, **labels) -> None:
    _metrics.observe_histogram(name, value, labels or None)


class Timer:
    """Context manager recording elapsed seconds into a histogram"""

    def __init__(self, metric_name: str, **labels):
        self.metric_name = metric_name
        self.labels = labels
        self.start_time: float | None = None

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time is not None:
            observe_histogram(self.metric_name, time.perf_counter() - self.start_time, **self.labels)


class AppMetrics:
    """Application-level metrics tracking"""

    @staticmethod
    def event_processed(tenant_id: str, event: str, outcome: str) -> None:
        inc_counter("events_total", tenant_id=tenant_id, event=event, outcome=outcome)

    @staticmethod
    def session_transition(tenant_id: str, to_status: str) -> None:
        inc_counter("session_transitions_total", tenant_id=tenant_id, to=to_status)

    @staticmethod
    def status_regression_ignored(tenant_id: str) -> None:
        inc_counter("message_status_regressions_total", tenant_id=tenant_id)

    @staticmethod
    def message_stored(tenant_id: str, direction: str) -> None:
        inc_counter("messages_stored_total", tenant_id=tenant_id, direction=direction)

    @staticmethod
    def conversation_created(tenant_id: str) -> None:
        inc_counter("conversations_created_total", tenant_id=tenant_id)

    @staticmethod
    def write_conflict(entity: str) -> None:
        inc_counter("write_conflicts_total", entity=entity)

    @staticmethod
    def gateway_error(operation: str, kind: str) -> None:
        inc_counter("gateway_errors_total", operation=operation, kind=kind)

    @staticmethod
    def database_error(operation: str) -> None:
        inc_counter("database_errors_total", operation=operation)

    @staticmethod
    def webhook_auth_failed() -> None:
        inc_counter("webhook_auth_failures_total")

    @staticmethod
    def track_gateway_call(operation: str) -> Timer:
        return Timer("gateway_request_seconds", operation=operation)
