"""
Metrics collection for the delivery pipeline.

Transient failures (5xx, timeouts, store or queue hiccups) are surfaced
here rather than as process errors. Counters accumulate, gauges hold the
last value, histograms keep a bounded window of samples.
"""

import time
from collections import defaultdict, deque
from typing import Any, Deque, Dict, List, Optional, Union

import structlog

logger = structlog.get_logger(__name__)


class MetricsCollector:
    """
    In-process metrics registry.

    Metrics are keyed by name plus sorted labels, e.g.
    ``dispatch_outcomes_total[outcome=success]``.
    """

    def __init__(self, max_samples_per_histogram: int = 10000):
        """
        Initialize metrics collector.

        Args:
            max_samples_per_histogram: Samples kept per histogram key
        """
        self.max_samples_per_histogram = max_samples_per_histogram

        self._counters: Dict[str, float] = defaultdict(float)
        self._gauges: Dict[str, float] = {}
        self._histograms: Dict[str, Deque[float]] = defaultdict(
            lambda: deque(maxlen=max_samples_per_histogram)
        )

        self._total_points_collected = 0
        self._start_time = time.time()

    def record_counter(
        self,
        name: str,
        value: Union[int, float] = 1,
        labels: Optional[Dict[str, str]] = None,
    ) -> None:
        """Increase a counter."""
        key = self._get_metric_key(name, labels or {})
        self._counters[key] += value
        self._total_points_collected += 1

    def record_gauge(
        self,
        name: str,
        value: Union[int, float],
        labels: Optional[Dict[str, str]] = None,
    ) -> None:
        """Set a gauge to its current value."""
        key = self._get_metric_key(name, labels or {})
        self._gauges[key] = float(value)
        self._total_points_collected += 1

    def record_histogram(
        self,
        name: str,
        value: Union[int, float],
        labels: Optional[Dict[str, str]] = None,
    ) -> None:
        """Add a sample to a histogram."""
        key = self._get_metric_key(name, labels or {})
        self._histograms[key].append(float(value))
        self._total_points_collected += 1

    def get_counter(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        return self._counters.get(self._get_metric_key(name, labels or {}), 0.0)

    def get_gauge(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        return self._gauges.get(self._get_metric_key(name, labels or {}))

    def get_histogram_summary(
        self, name: str, labels: Optional[Dict[str, str]] = None
    ) -> Dict[str, float]:
        samples = self._histograms.get(self._get_metric_key(name, labels or {}))
        return self._summarize(list(samples) if samples else [])

    def get_summary(self) -> Dict[str, Any]:
        """All metrics, aggregated."""
        return {
            "counters": dict(self._counters),
            "gauges": dict(self._gauges),
            "histograms": {
                key: self._summarize(list(samples)) for key, samples in self._histograms.items()
            },
        }

    def get_stats(self) -> Dict[str, Any]:
        """Get collector statistics."""
        return {
            "uptime_seconds": time.time() - self._start_time,
            "total_points_collected": self._total_points_collected,
            "unique_metrics": len(self._counters) + len(self._gauges) + len(self._histograms),
        }

    def reset(self) -> None:
        self._counters.clear()
        self._gauges.clear()
        self._histograms.clear()
        self._total_points_collected = 0
        logger.info("Metrics reset")

    def _summarize(self, values: List[float]) -> Dict[str, float]:
        if not values:
            return {"count": 0}
        sorted_values = sorted(values)
        return {
            "count": len(values),
            "sum": sum(values),
            "min": sorted_values[0],
            "max": sorted_values[-1],
            "avg": sum(values) / len(values),
            "p50": self._percentile(sorted_values, 0.5),
            "p95": self._percentile(sorted_values, 0.95),
            "p99": self._percentile(sorted_values, 0.99),
        }

    def _get_metric_key(self, name: str, labels: Dict[str, str]) -> str:
        """Generate a unique key for a metric with labels."""
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}[{label_str}]" if label_str else name

    def _percentile(self, sorted_values: List[float], percentile: float) -> float:
        """Calculate percentile from sorted values."""
        index = percentile * (len(sorted_values) - 1)
        lower_index = int(index)
        upper_index = min(lower_index + 1, len(sorted_values) - 1)

        if lower_index == upper_index:
            return sorted_values[lower_index]

        # Linear interpolation
        weight = index - lower_index
        return sorted_values[lower_index] * (1 - weight) + sorted_values[upper_index] * weight
