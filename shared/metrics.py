"""
Shared metrics configuration for the SoundCloud Access Gateway.
"""

from typing import Any, Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, Info, generate_latest


class MetricsCollector:
    """Prometheus metrics for one gateway instance.

    Each collector owns its registry unless one is supplied, so several
    gateways (for example in tests) can be constructed in one process.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up gateway metrics."""

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
            ["method", "route_prefix", "status_code"],
            registry=self.registry
        )

        self._metrics["http_request_duration_seconds"] = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "route_prefix"],
            registry=self.registry
        )

        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total error responses",
            ["code"],
            registry=self.registry
        )

        # Auth metrics
        self._metrics["token_refresh_total"] = Counter(
            "token_refresh_total",
            "Total client-credentials token refreshes",
            ["status"],
            registry=self.registry
        )

        self._metrics["pkce_events_total"] = Counter(
            "pkce_events_total",
            "Total PKCE login flow events",
            ["event"],
            registry=self.registry
        )

        # Upstream metrics
        self._metrics["upstream_requests_total"] = Counter(
            "upstream_requests_total",
            "Total upstream API requests",
            ["method", "status_code"],
            registry=self.registry
        )

    def record_http_request(self, method: str, route_prefix: str, status_code: int, duration: float):
        """Record HTTP request metrics."""
        self._metrics["http_requests_total"].labels(
            method=method,
            route_prefix=route_prefix,
            status_code=str(status_code)
        ).inc()

        self._metrics["http_request_duration_seconds"].labels(
            method=method,
            route_prefix=route_prefix
        ).observe(duration)

    def record_error(self, code: str):
        self._metrics["errors_total"].labels(code=code).inc()

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric."""
        if metric_name in self._metrics:
            self._metrics[metric_name].labels(**labels).inc()

    def sample_value(self, metric_name: str, **labels) -> float:
        """Current value of a counter sample, 0.0 when never incremented."""
        value = self.registry.get_sample_value(f"{metric_name}", labels)
        if value is None:
            value = self.registry.get_sample_value(f"{metric_name}_total", labels)
        return value or 0.0

    def render(self) -> bytes:
        """Prometheus text exposition for this collector's registry."""
        return generate_latest(self.registry)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
