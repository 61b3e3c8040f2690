"""
Observability helpers tying logging, metrics and tracing together.
"""

import time
from typing import Optional, Dict, Any

from .logging import get_logger, set_request_id, set_user_context, clear_context
from .metrics import MetricsCollector
from .tracing import add_span_attributes, add_span_event

# Liveness and scrape endpoints
QUIET_ENDPOINTS = frozenset({"/health", "/metrics"})


class ObservabilityManager:
    """Centralized observability manager for services."""

    def __init__(self, service_name: str, metrics: MetricsCollector):
        self.service_name = service_name
        self.metrics = metrics
        self.logger = get_logger(f"{service_name}.observability")

    def trace_request(self, request_id: Optional[str] = None,
                      user_id: Optional[str] = None) -> str:
        """Set up request context for logging and tracing."""
        request_id = set_request_id(request_id)
        if user_id:
            set_user_context(user_id)

        add_span_attributes(request_id=request_id, user_id=user_id)
        return request_id

    def clear_request_context(self):
        """Clear request context."""
        clear_context()

    def log_request(self, method: str, endpoint: str, status_code: int,
                    duration: float, **kwargs):
        """Log an HTTP request; liveness and scrape endpoints log at debug."""
        log = self.logger.debug if endpoint in QUIET_ENDPOINTS else self.logger.info
        log(
            "HTTP request",
            method=method,
            path=endpoint,
            status_code=status_code,
            duration_ms=round(duration * 1000, 2),
            **kwargs
        )
        self.metrics.record_http_request(method, endpoint, status_code, duration)

    def log_error(self, error_type: str, error_message: str, **kwargs):
        """Log error with full context."""
        self.logger.error(
            "Error occurred",
            error_type=error_type,
            error_message=error_message,
            **kwargs
        )
        self.metrics.record_error(error_type)
        add_span_event("error", error_type=error_type)

    def log_business_event(self, event_type: str, **kwargs):
        """Log business event with full context."""
        self.logger.info(
            "Business event",
            event_type=event_type,
            **kwargs
        )
        self.metrics.record_business_event(event_type)
        add_span_event("business_event", event_type=event_type)


def build_health_payload(service_name: str, started_at: float,
                         dependencies: Dict[str, str]) -> Dict[str, Any]:
    """Assemble the health check body."""
    return {
        "service": service_name,
        "status": "ok",
        "uptime_seconds": round(time.time() - started_at, 3),
        "dependencies": dependencies,
        "version": "1.0.0",
    }
