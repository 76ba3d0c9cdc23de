"""
In-process metrics for the reminder worker.

Counters and timers live in memory only (reset on restart). The
notification log in Postgres stays the durable record; these numbers are
for the /health endpoint and quick debugging.
"""

from typing import Dict, Any, Optional
from enum import Enum
from collections import defaultdict
import threading
import time


class MetricType(str, Enum):
    """Types of metrics supported"""
    COUNTER = "counter"
    GAUGE = "gauge"
    TIMER = "timer"


class Metrics:
    """
    Thread-safe metrics storage.

    - Counters: monotonically increasing values
    - Gauges: point-in-time values
    - Timers: duration measurements (last 1000 kept)
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._counters: Dict[str, float] = defaultdict(float)
        self._gauges: Dict[str, float] = {}
        self._timers: Dict[str, list[float]] = defaultdict(list)
        self._metadata: Dict[str, Dict[str, Any]] = {}

    def register_counter(self, name: str, description: str = "") -> None:
        with self._lock:
            self._metadata[name] = {
                "type": MetricType.COUNTER,
                "description": description,
            }
            if name not in self._counters:
                self._counters[name] = 0.0

    def increment_counter(self, name: str, value: float = 1.0) -> None:
        with self._lock:
            if name not in self._metadata:
                self.register_counter(name)
            self._counters[name] += value

    def set_gauge(self, name: str, value: float, description: str = "") -> None:
        with self._lock:
            if name not in self._metadata:
                self._metadata[name] = {
                    "type": MetricType.GAUGE,
                    "description": description,
                }
            self._gauges[name] = value

    def record_timer(self, name: str, duration_ms: float, description: str = "") -> None:
        """
        Record a timer metric (duration in milliseconds).

        Args:
            name: Metric name (e.g., "reminder_scan_duration_ms")
            duration_ms: Duration in milliseconds
            description: Human-readable description
        """
        with self._lock:
            if name not in self._metadata:
                self._metadata[name] = {
                    "type": MetricType.TIMER,
                    "description": description,
                }
            if len(self._timers[name]) >= 1000:
                self._timers[name] = self._timers[name][-999:]
            self._timers[name].append(duration_ms)

    def get_counter(self, name: str) -> float:
        with self._lock:
            return self._counters.get(name, 0.0)

    def get_gauge(self, name: str) -> Optional[float]:
        with self._lock:
            return self._gauges.get(name)

    def get_timer_stats(self, name: str) -> Dict[str, float]:
        """
        Get timer statistics (min, max, avg, p50, p95, count).

        Returns:
            Dictionary with statistics or empty dict if no data
        """
        with self._lock:
            values = self._timers.get(name, [])
            if not values:
                return {}

            sorted_values = sorted(values)
            n = len(sorted_values)

            return {
                "min": sorted_values[0],
                "max": sorted_values[-1],
                "avg": sum(sorted_values) / n,
                "p50": sorted_values[int(n * 0.50)],
                "p95": sorted_values[int(n * 0.95)],
                "count": n,
            }

    def get_all_metrics(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "counters": dict(self._counters),
                "gauges": dict(self._gauges),
                "timers": {name: self.get_timer_stats(name) for name in self._timers},
            }

    def reset(self) -> None:
        """Reset all metrics (for testing)"""
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._timers.clear()
            self._metadata.clear()


_metrics: Optional[Metrics] = None


def get_metrics() -> Metrics:
    """Get or create global metrics instance."""
    global _metrics

    if _metrics is None:
        _metrics = Metrics()
        _register_default_metrics(_metrics)

    return _metrics


def reset_metrics() -> None:
    """Reset global metrics instance (for testing)"""
    global _metrics
    _metrics = None


def _register_default_metrics(metrics: Metrics) -> None:
    metrics.register_counter("reminder_scans_total", "Reminder scans started")
    metrics.register_counter("reminder_scans_skipped_total", "Scans skipped (overlap or kill switch)")
    metrics.register_counter("reminder_scans_aborted_total", "Scans aborted (store unavailable, timeout)")
    metrics.register_counter("reminders_sent_total", "Reminder deliveries that succeeded")
    metrics.register_counter("reminders_failed_total", "Reminder deliveries that failed")
    metrics.register_counter("reminders_skipped_total", "Users skipped (no tier, preferences, dedup, bad data)")
    metrics.register_counter("reminder_log_write_errors_total", "Notification log writes that failed")
    metrics.register_counter("retries_total", "Total retry attempts")


class TimerContext:
    """Context manager for measuring operation duration"""

    def __init__(self, metric_name: str):
        self.metric_name = metric_name
        self.start_time: Optional[float] = None

    def __enter__(self):
        self.start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time is not None:
            duration_ms = (time.time() - self.start_time) * 1000.0
            get_metrics().record_timer(self.metric_name, duration_ms)
        return False


def timer(metric_name: str) -> TimerContext:
    """
    Usage:
        with timer("db_latency_ms"):
            await database.list_users_with_subscription()
    """
    return TimerContext(metric_name)
