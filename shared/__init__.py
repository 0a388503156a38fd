"""
Shared utilities for the PagerDuty directory cache.

This package aggregates common building blocks consumed by the cache
service and its command line:

- config: Settings via pydantic-settings, duration parsing
- logging: Structured logging with refresh correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry decorator for upstream calls
- circuit_breaker: Resilient external call protection

Do not import from service packages into shared/.
"""
