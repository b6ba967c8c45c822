"""
Unit tests for the metrics collector.
"""

from webhook_brain.analytics.collector import MetricsCollector


class TestMetricsCollector:
    """Test metric recording and summaries."""

    def test_counters_by_label(self):
        """Test that labelled counters are kept apart."""
        metrics = MetricsCollector()
        metrics.record_counter("dispatch_outcomes_total", labels={"outcome": "success"})
        metrics.record_counter("dispatch_outcomes_total", labels={"outcome": "success"})
        metrics.record_counter("dispatch_outcomes_total", labels={"outcome": "retryable_failure"})

        assert metrics.get_counter("dispatch_outcomes_total", {"outcome": "success"}) == 2
        assert metrics.get_counter("dispatch_outcomes_total", {"outcome": "retryable_failure"}) == 1
        assert metrics.get_counter("dispatch_outcomes_total") == 0

    def test_gauge_keeps_last_value(self):
        """Test that a gauge reports its latest value."""
        metrics = MetricsCollector()
        assert metrics.get_gauge("cache_event_types") is None

        metrics.record_gauge("cache_event_types", 3)
        metrics.record_gauge("cache_event_types", 5)

        assert metrics.get_gauge("cache_event_types") == 5
        assert metrics.get_summary()["gauges"] == {"cache_event_types": 5}

    def test_histogram_window_and_summary(self):
        """Test that histograms are bounded and summarized."""
        metrics = MetricsCollector(max_samples_per_histogram=4)
        for value in [100, 1, 2, 3, 4]:
            metrics.record_histogram("dispatch_latency_ms", value)

        summary = metrics.get_histogram_summary("dispatch_latency_ms")

        assert summary["count"] == 4
        assert summary["min"] == 1
        assert summary["max"] == 4
        assert summary["p50"] == 2.5
        assert metrics.get_summary()["histograms"]["dispatch_latency_ms"]["count"] == 4

    def test_reset(self):
        """Test clearing all metrics."""
        metrics = MetricsCollector()
        metrics.record_counter("events_failed_total")
        metrics.reset()

        assert metrics.get_summary() == {"counters": {}, "gauges": {}, "histograms": {}}
        assert metrics.get_stats()["total_points_collected"] == 0
