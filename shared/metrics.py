"""
Shared metrics configuration for the PagerDuty directory cache.
"""

import threading
from typing import Dict, Any, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, Info


class MetricsCollector:
    """Centralized metrics collector.

    Each collector owns its own registry unless one is passed in, so several
    cache services (or test cases) can live in one process.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up cache and upstream metrics."""

        self._metrics["service_info"] = Info(
            "service_info",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        self._metrics["cache_operations_total"] = Counter(
            "cache_operations_total",
            "Cache operations by collection, operation and result",
            ["collection", "operation", "result"],
            registry=self.registry
        )

        self._metrics["cache_refresh_total"] = Counter(
            "cache_refresh_total",
            "Bulk refresh attempts by outcome",
            ["result"],
            registry=self.registry
        )

        self._metrics["cache_refresh_duration_seconds"] = Histogram(
            "cache_refresh_duration_seconds",
            "Bulk refresh duration in seconds",
            registry=self.registry
        )

        self._metrics["cache_refresh_records"] = Gauge(
            "cache_refresh_records",
            "Records written by the last successful refresh",
            ["collection"],
            registry=self.registry
        )

        self._metrics["team_members_cache_total"] = Counter(
            "team_members_cache_total",
            "Team membership lookups by result",
            ["result"],
            registry=self.registry
        )

        self._metrics["upstream_requests_total"] = Counter(
            "upstream_requests_total",
            "Upstream API requests",
            ["method", "status_code"],
            registry=self.registry
        )

        self._metrics["upstream_request_duration_seconds"] = Histogram(
            "upstream_request_duration_seconds",
            "Upstream API request duration in seconds",
            ["method"],
            registry=self.registry
        )

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        with self._lock:
            if labels:
                metric.labels(**labels).inc()
            else:
                metric.inc()

    def set_gauge(self, metric_name: str, value: float, **labels):
        """Set a gauge metric."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        with self._lock:
            if labels:
                metric.labels(**labels).set(value)
            else:
                metric.set(value)

    def observe_histogram(self, metric_name: str, value: float, **labels):
        """Observe a histogram metric."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        with self._lock:
            if labels:
                metric.labels(**labels).observe(value)
            else:
                metric.observe(value)

    def get_sample_value(self, name: str, **labels) -> Optional[float]:
        """Read back a sample, mostly useful for diagnostics and tests."""
        return self.registry.get_sample_value(name, labels or None)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Create a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
