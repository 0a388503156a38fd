"""
Shared error handling for the PagerDuty directory cache.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response format."""

    code: str
    message: str
    details: Dict[str, Any] = {}


class CacheLayerException(Exception):
    """Base exception for the cache layer and its collaborators."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            code=self.code,
            message=self.message,
            details=self.details
        )


class CacheDisabledError(CacheLayerException):
    """The cache is switched off; callers go to the live API."""

    def __init__(self, message: str = "Cache is not enabled", details: Optional[Dict[str, Any]] = None):
        super().__init__("CACHE_DISABLED", message, details)


class CacheMissError(CacheLayerException):
    """No cached record for the requested key."""

    def __init__(self, collection: str, key: str, details: Optional[Dict[str, Any]] = None):
        self.collection = collection
        self.key = key
        super().__init__("CACHE_MISS", f"{collection}: {key} not cached", details)


class CacheBackendError(CacheLayerException):
    """Backing store errors."""

    def __init__(self, message: str = "Cache backend error", details: Optional[Dict[str, Any]] = None):
        super().__init__("CACHE_BACKEND_ERROR", message, details)


class RecordValidationError(CacheLayerException):
    """A record cannot be stored as given (missing identity)."""

    def __init__(self, message: str = "Invalid record", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class UpstreamError(CacheLayerException):
    """Errors returned by, or on the way to, the upstream REST API."""

    def __init__(
        self,
        message: str = "Upstream API error",
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.status_code = status_code
        super().__init__("UPSTREAM_ERROR", f"pagerduty: {message}", details)


class PaginationError(CacheLayerException):
    """A paged traversal could not be completed."""

    def __init__(self, message: str = "Pagination failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("PAGINATION_ERROR", message, details)


class RefreshError(CacheLayerException):
    """Bulk refresh failures."""

    def __init__(self, message: str = "Cache refresh failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("CACHE_REFRESH_ERROR", message, details)
