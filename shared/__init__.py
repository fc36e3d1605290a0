"""
Shared utilities for the Cloaking Gateway.

This package aggregates common building blocks consumed by the service:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry loop with pluggable backoff
- base_service: FastAPI app scaffold with health, metrics and error handlers

Do not import from service_* packages into shared/.
"""
