"""
Shared utilities for the admission control service.

This package aggregates common building blocks:

- config: Service configuration via pydantic-settings
- logging: Structured logging with trace correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- base_service: FastAPI app factory with common middleware and handlers
- test_helpers: Fakes and factories shared by the test suites

Do not import from service packages into shared/.
"""
