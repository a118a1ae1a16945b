"""
Stateset - resilient request execution core for the Stateset commerce API.

Every resource wrapper (orders, shipments, invoices ...) calls
``StatesetHttpClient.request``, which decides whether a call is served from
cache, attempted, retried, short-circuited, or turned into a typed error.

- stateset.core: errors, cache, settings, logging, health models
- stateset.execution: retry/backoff engine and circuit breaker
- stateset.http: interceptors, transports and the request orchestrator
"""

__version__ = "1.0.0"

from stateset.core.errors import (  # noqa: F401
    ApiError,
    AuthenticationError,
    ConnectionError,
    InvalidRequestError,
    NotFoundError,
    PermissionError,
    RateLimitError,
    ServerError,
    TimeoutError,
)
from stateset.core.settings import ClientSettings  # noqa: F401
from stateset.execution.circuit_breaker import CircuitOpenError, CircuitState  # noqa: F401
from stateset.execution.retry import RetryExhaustedError, RetryPolicy  # noqa: F401
from stateset.http.client import StatesetHttpClient  # noqa: F401
from stateset.http.models import CacheOptions, RequestOptions  # noqa: F401

__all__ = [
    "ApiError",
    "AuthenticationError",
    "ConnectionError",
    "InvalidRequestError",
    "NotFoundError",
    "PermissionError",
    "RateLimitError",
    "ServerError",
    "TimeoutError",
    "ClientSettings",
    "CircuitOpenError",
    "CircuitState",
    "RetryExhaustedError",
    "RetryPolicy",
    "StatesetHttpClient",
    "CacheOptions",
    "RequestOptions",
]
