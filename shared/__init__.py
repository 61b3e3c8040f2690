"""
Shared utilities for the dashboard authentication broker.

This package aggregates common building blocks consumed by the broker and
its mocks:

- config: Service configuration via pydantic-settings
- logging: Structured logging with trace correlation
- metrics: Prometheus metrics helpers
- tracing: OpenTelemetry tracing config
- observability: Request context, business events, health payloads
- errors: Canonical error types and responses
- circuit_breaker: Resilient external call protection
- base_service: FastAPI service skeleton (middleware, health, metrics, error shape)
- test_helpers: Factories and upstream stubs for tests

Do not import from service packages into shared/.
"""
