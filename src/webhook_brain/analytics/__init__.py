"""Metrics collection for the delivery pipeline."""

from .collector import MetricsCollector

__all__ = ["MetricsCollector"]
