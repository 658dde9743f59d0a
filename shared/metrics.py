"""
Shared metrics configuration for the Warehouse Rules platform.
"""

from typing import Dict, Any, Optional

from prometheus_client import Counter, Histogram, Gauge, Info, CollectorRegistry, start_http_server


class MetricsCollector:
    """Centralized metrics collector for services."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up common metrics for the service."""

        # Service info
        self._metrics["service_info"] = Info(
            "service_info",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        # HTTP metrics
        self._metrics["http_requests_total"] = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code"],
            registry=self.registry
        )

        self._metrics["http_request_duration_seconds"] = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            registry=self.registry
        )

        # Health check metrics
        self._metrics["health_check_total"] = Counter(
            "health_check_total",
            "Total health check requests",
            ["status"],
            registry=self.registry
        )

        # Error metrics
        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry
        )

        if self.service_name == "rules":
            self._setup_rules_metrics()

    def _setup_rules_metrics(self):
        """Set up rule-engine-specific metrics."""
        self._metrics["rule_fires_total"] = Counter(
            "rule_fires_total",
            "Total fire calls by triggering event",
            ["event_type"],
            registry=self.registry
        )

        self._metrics["rule_evaluations_total"] = Counter(
            "rule_evaluations_total",
            "Total rule evaluations by outcome",
            ["rule_type", "outcome"],
            registry=self.registry
        )

        self._metrics["rule_actions_total"] = Counter(
            "rule_actions_total",
            "Total rule actions executed",
            ["action_type", "status"],
            registry=self.registry
        )

        self._metrics["rule_fire_duration_seconds"] = Histogram(
            "rule_fire_duration_seconds",
            "Duration of a full fire call in seconds",
            ["event_type"],
            registry=self.registry
        )

        self._metrics["rule_audit_failures_total"] = Counter(
            "rule_audit_failures_total",
            "Execution records the audit sink failed to accept",
            ["reason"],
            registry=self.registry
        )

        self._metrics["rule_cache_lookups_total"] = Counter(
            "rule_cache_lookups_total",
            "Rule snapshot cache lookups",
            ["result"],
            registry=self.registry
        )

        self._metrics["active_rules"] = Gauge(
            "active_rules",
            "Number of ACTIVE rules known to the service",
            registry=self.registry
        )

    def start_metrics_server(self, port: int = 9090):
        """Start the Prometheus metrics server."""
        if self.registry is not None:
            start_http_server(port, registry=self.registry)
        else:
            start_http_server(port)

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        """Record HTTP request metrics."""
        self._metrics["http_requests_total"].labels(
            method=method,
            endpoint=endpoint,
            status_code=str(status_code)
        ).inc()

        self._metrics["http_request_duration_seconds"].labels(
            method=method,
            endpoint=endpoint
        ).observe(duration)

    def record_health_check(self, status: str):
        """Record health check metrics."""
        self._metrics["health_check_total"].labels(status=status).inc()

    def record_error(self, error_type: str, service: Optional[str] = None):
        """Record error metrics."""
        service_name = service or self.service_name
        self._metrics["errors_total"].labels(error_type=error_type, service=service_name).inc()

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric."""
        if metric_name in self._metrics:
            metric = self._metrics[metric_name]
            (metric.labels(**labels) if labels else metric).inc()

    def set_gauge(self, metric_name: str, value: float, **labels):
        """Set a gauge metric value."""
        if metric_name in self._metrics:
            metric = self._metrics[metric_name]
            (metric.labels(**labels) if labels else metric).set(value)

    def observe_histogram(self, metric_name: str, value: float, **labels):
        """Observe a histogram metric."""
        if metric_name in self._metrics:
            metric = self._metrics[metric_name]
            (metric.labels(**labels) if labels else metric).observe(value)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
