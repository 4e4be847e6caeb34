"""
Shared utilities for the Readings Cache service.

This package holds the building blocks the service is assembled from:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- base_service: FastAPI application scaffold with health and metrics routes
- test_helpers: In-memory store fakes and reading factories for tests

Do not import from service_* packages into shared/.
"""
