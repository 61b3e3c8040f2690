"""
Prometheus metrics for the dashboard authentication broker.

Each collector owns its own ``CollectorRegistry`` so several services (or
test instances) can live in one process without duplicate-timeseries errors.
"""

from typing import Dict, Any, Optional, Tuple

from prometheus_client import CollectorRegistry, Counter, Histogram, Info, generate_latest


# name -> (help, labels)
COMMON_COUNTERS: Dict[str, Tuple[str, Tuple[str, ...]]] = {
    "http_requests_total": ("Total HTTP requests", ("method", "endpoint", "status_code")),
    "health_check_total": ("Total health check requests", ("status",)),
    "errors_total": ("Total errors by error code", ("error_type", "service")),
    "business_events_total": ("Total business events", ("event_type", "service")),
}

BROKER_COUNTERS: Dict[str, Tuple[str, Tuple[str, ...]]] = {
    "auth_flow_transitions_total": ("Authorization flow state transitions", ("from_state", "to_state")),
    "session_resolutions_total": ("Session resolutions by credential source", ("source",)),
    "token_refresh_total": ("Token refresh attempts by outcome", ("outcome",)),
    "rate_limit_rejections_total": ("Requests rejected by the attempt limiter", ("scope",)),
}

# Upstream calls time out well below 10s
UPSTREAM_BUCKETS = (0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)


class MetricsCollector:
    """Per-service metric set with a dedicated registry."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry or CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _counters(self, specs: Dict[str, Tuple[str, Tuple[str, ...]]]):
        for name, (documentation, labels) in specs.items():
            self._metrics[name] = Counter(name, documentation, list(labels), registry=self.registry)

    def _setup_metrics(self):
        info = Info("service", "Service information", registry=self.registry)
        info.info({"service": self.service_name, "version": "1.0.0"})

        self._counters(COMMON_COUNTERS)
        self._metrics["http_request_duration_seconds"] = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            registry=self.registry
        )

        if self.service_name == "broker":
            self._setup_broker_metrics()

    def _setup_broker_metrics(self):
        self._counters(BROKER_COUNTERS)
        self._metrics["upstream_request_duration_seconds"] = Histogram(
            "upstream_request_duration_seconds",
            "Identity, Token Service and gateway call duration in seconds",
            ["upstream", "operation", "outcome"],
            buckets=UPSTREAM_BUCKETS,
            registry=self.registry
        )

    def render(self) -> bytes:
        """Render the registry in the Prometheus text format."""
        return generate_latest(self.registry)

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        self.increment_counter("http_requests_total", method=method, endpoint=endpoint,
                               status_code=str(status_code))
        self.observe_histogram("http_request_duration_seconds", duration, method=method, endpoint=endpoint)

    def record_health_check(self, status: str):
        self.increment_counter("health_check_total", status=status)

    def record_error(self, error_type: str, service: Optional[str] = None):
        self.increment_counter("errors_total", error_type=error_type, service=service or self.service_name)

    def record_business_event(self, event_type: str, service: Optional[str] = None):
        self.increment_counter("business_events_total", event_type=event_type,
                               service=service or self.service_name)

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter; unknown names are ignored."""
        if metric_name in self._metrics:
            self._metrics[metric_name].labels(**labels).inc()

    def observe_histogram(self, metric_name: str, value: float, **labels):
        """Observe a histogram; unknown names are ignored."""
        if metric_name in self._metrics:
            self._metrics[metric_name].labels(**labels).observe(value)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
