"""
Adapters package for the PagerDuty directory cache.

Contains the HTTP client for the PagerDuty REST API. The adapter
encapsulates base URL and headers, retry policy and circuit breaker, and
error mapping to shared errors.
"""

from .pagerduty_client import PagerDutyClient

__all__ = ["PagerDutyClient"]
