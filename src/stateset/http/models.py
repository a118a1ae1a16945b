"""Request, response and failure structures flowing through the pipeline.

Interceptors receive and return these dataclasses rather than free-form
dicts, so the mutation contract stays checkable:

- ``RequestConfig``     request interceptors, then the transport
- ``TransportResponse`` what the transport returns; response interceptors
- ``RequestFailure``    error interceptors (may rewrite ``response``)
- ``TransportError``    what a transport raises when no response arrived
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from stateset.execution.retry import RetryAttempt


@dataclass
class RequestConfig:
    """One outgoing request as seen by interceptors and the transport."""

    method: str
    path: str
    headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, Any] | None = None
    body: Any = None
    timeout: float | None = None
    signal: asyncio.Event | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def request_id(self) -> str | None:
        return self.headers.get("X-Request-ID")


@dataclass
class TransportResponse:
    """A response received from the transport, successful or not."""

    status_code: int
    headers: dict[str, str] = field(default_factory=dict)
    body: Any = None

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300


class TransportError(Exception):
    """Raised by a transport when no response was received.

    Attributes:
        code: Short machine code (``ETIMEDOUT``, ``ECONNREFUSED``, ``ABORTED`` ...)
        timed_out: The attempt hit its timeout
    """

    def __init__(self, message: str, *, code: str | None = None, timed_out: bool = False):
        super().__init__(message)
        self.message = message
        self.code = code
        self.timed_out = timed_out


@dataclass
class RequestFailure:
    """A failed attempt before it is mapped onto the error taxonomy.

    ``response`` is ``None`` when nothing was received (DNS failure, refused,
    timeout, abort). Error interceptors may replace ``response`` (for example
    to turn a 500 into a 404) and thereby change the resulting error type.
    """

    request: RequestConfig
    message: str
    response: TransportResponse | None = None
    code: str | None = None
    timed_out: bool = False
    cause: BaseException | None = None

    @property
    def status_code(self) -> int | None:
        return self.response.status_code if self.response is not None else None


@dataclass
class CacheOptions:
    """Per-call cache directive: explicit key, TTL and extra paths to invalidate."""

    key: str | None = None
    ttl: float | None = None
    invalidate: str | list[str] | None = None


@dataclass
class RequestOptions:
    """Per-call options recognised by ``StatesetHttpClient.request``.

    Attributes:
        cache: ``False`` disables caching for this call; ``CacheOptions``
            customises it; ``None``/``True`` follows the client default
        cache_key: Explicit cache key (wins over ``cache.key``)
        cache_ttl: Explicit TTL in seconds (wins over ``cache.ttl``)
        invalidate_cache_paths: Extra paths to invalidate on success
        retry_options: Partial ``RetryPolicy`` override, e.g.
            ``{"max_attempts": 5, "base_delay": 0.2}``
        on_retry_attempt: Called with each ``RetryAttempt`` of this call
        idempotency_key: Sent as the ``Idempotency-Key`` header
        headers: Extra headers for this call
        params: Query parameters (also part of the derived cache key)
        signal: Setting it aborts the in-flight transport attempt
        timeout: Per-attempt timeout in seconds
    """

    cache: bool | CacheOptions | None = None
    cache_key: str | None = None
    cache_ttl: float | None = None
    invalidate_cache_paths: str | list[str] | None = None
    retry_options: Mapping[str, Any] | None = None
    on_retry_attempt: Callable[[RetryAttempt], Any] | None = None
    idempotency_key: str | None = None
    headers: dict[str, str] | None = None
    params: dict[str, Any] | None = None
    signal: asyncio.Event | None = None
    timeout: float | None = None


@dataclass(frozen=True)
class CacheDirective:
    """Resolved ``{key, ttl}`` for one cacheable call."""

    key: str
    ttl: float | None = None


__all__ = [
    "RequestConfig",
    "TransportResponse",
    "TransportError",
    "RequestFailure",
    "CacheOptions",
    "RequestOptions",
    "CacheDirective",
]
