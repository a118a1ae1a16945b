"""Stateset Core - errors, cache, metrics, settings, logging and health models.

``settings`` is intentionally not re-exported here: it depends on
``stateset.execution.retry``, which itself imports from this package.
"""

from stateset.core.cache import CacheEntry, CacheKeyIndex, ResponseCache
from stateset.core.errors import (
    ApiError,
    AuthenticationError,
    ConnectionError,
    InvalidRequestError,
    NotFoundError,
    PermissionError,
    RateLimitError,
    ServerError,
    TimeoutError,
    error_from_status,
)
from stateset.core.metrics import RequestMetrics, RequestSample

__all__ = [
    "CacheEntry",
    "CacheKeyIndex",
    "ResponseCache",
    "ApiError",
    "AuthenticationError",
    "ConnectionError",
    "InvalidRequestError",
    "NotFoundError",
    "PermissionError",
    "RateLimitError",
    "ServerError",
    "TimeoutError",
    "error_from_status",
    "RequestMetrics",
    "RequestSample",
]
