"""
Typed error taxonomy for the Stateset request core.

Every failure that leaves the request orchestrator is either one of the
``ApiError`` subtypes defined here, the breaker fast-fail
(:class:`~stateset.execution.circuit_breaker.CircuitOpenError`), or the retry
aggregate (:class:`~stateset.execution.retry.RetryExhaustedError`) wrapping an
``ApiError``. Raw transport exceptions never escape.

Manifesto:
    - **Closed hierarchy:** One subtype per failed attempt, picked by status code
    - **Explicit retry semantics:** ``retryable`` derives from the status code
    - **Rich context:** path, request id and timestamp travel with the error
    - **Error chaining:** The underlying transport error is kept as ``cause``

Architecture:
    ::

        ApiError (type, message, code, detail, status_code, path,
                  timestamp, request_id, retryable)
        ├── InvalidRequestError   400
        ├── AuthenticationError   401 / 403
        │   └── PermissionError   403
        ├── NotFoundError         404
        ├── RateLimitError        429   (retry_after)
        ├── ServerError           5xx
        └── ConnectionError       no response (DNS, refused, timeout)
            └── TimeoutError      attempt exceeded its timeout

Examples:
    >>> err = error_from_status(404, "Order not found", path="orders/1")
    >>> type(err).__name__
    'NotFoundError'
    >>> err.retryable
    False
    >>> error_from_status(503, "Unavailable").retryable
    True

Tags:
    error-handling, exception-hierarchy, http-status, retry-logic
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ApiError(Exception):
    """
    Base class for every typed failure produced by the request core.

    Also used directly for statuses that match no named subtype
    (e.g. 409, 422) and for failures with an unrecognised shape.

    Attributes:
        type: Stable machine-readable kind (``"not_found_error"`` ...)
        message: Human-readable message, preferring the server's own
        code: Transport or server error code, if any
        detail: Extra server-provided detail
        status_code: HTTP status of the final response, ``None`` when no
            response was received
        path: Request path the failure belongs to
        timestamp: ISO-8601 UTC time the error was created
        request_id: Correlation id of the attempt that failed
        cause: Underlying exception, also chained as ``__cause__``
    """

    error_type: str = "api_error"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        detail: Any = None,
        status_code: int | None = None,
        path: str | None = None,
        request_id: str | None = None,
        timestamp: str | None = None,
        retryable: bool | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.type = self.error_type
        self.message = message
        self.code = code
        self.detail = detail
        self.status_code = status_code
        self.path = path
        self.request_id = request_id
        self.timestamp = timestamp or _utcnow_iso()
        self.retryable = (
            retryable if retryable is not None else _status_is_retryable(status_code)
        )
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    @property
    def is_client_error(self) -> bool:
        """True for 4xx statuses other than 429."""
        return is_client_status(self.status_code)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "type": self.type,
            "message": self.message,
            "retryable": self.retryable,
            "timestamp": self.timestamp,
        }
        for key in ("code", "detail", "status_code", "path", "request_id"):
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}({self.message!r}, "
            f"status_code={self.status_code})"
        )


class InvalidRequestError(ApiError):
    """The request was rejected as malformed (400)."""

    error_type = "invalid_request_error"


class AuthenticationError(ApiError):
    """Credentials missing, invalid or insufficient (401/403)."""

    error_type = "authentication_error"


class PermissionError(AuthenticationError):
    """Authenticated but not allowed to perform the call (403)."""

    error_type = "permission_error"


class NotFoundError(ApiError):
    """The addressed resource does not exist (404)."""

    error_type = "not_found_error"


class RateLimitError(ApiError):
    """Too many requests (429). Retryable by default."""

    error_type = "rate_limit_error"

    def __init__(self, message: str, *, retry_after: float | None = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        return result


class ServerError(ApiError):
    """The server failed to handle a valid request (5xx)."""

    error_type = "api_error"


class ConnectionError(ApiError):
    """No response was received (DNS failure, refused, reset, aborted)."""

    error_type = "connection_error"

    def __init__(self, message: str, **kwargs: Any):
        kwargs.setdefault("retryable", True)
        super().__init__(message, **kwargs)


class TimeoutError(ConnectionError):
    """The attempt exceeded its per-attempt timeout."""


# =============================================================================
# MAPPING
# =============================================================================


def is_client_status(status_code: int | None) -> bool:
    """Check whether a status is a non-retryable client error (4xx except 429)."""
    return status_code is not None and 400 <= status_code < 500 and status_code != 429


def _status_is_retryable(status_code: int | None) -> bool:
    if status_code is None:
        return False
    return status_code == 429 or status_code >= 500


def _server_message(body: Any) -> str | None:
    if isinstance(body, dict):
        for key in ("message", "error_description"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
        error = body.get("error")
        if isinstance(error, str) and error:
            return error
        if isinstance(error, dict):
            return _server_message(error)
    return None


def _parse_retry_after(headers: dict[str, str] | None) -> float | None:
    if not headers:
        return None
    for name, value in headers.items():
        if name.lower() == "retry-after":
            try:
                return float(value)
            except (TypeError, ValueError):
                return None
    return None


def error_from_status(
    status_code: int,
    message: str,
    *,
    body: Any = None,
    headers: dict[str, str] | None = None,
    path: str | None = None,
    request_id: str | None = None,
    code: str | None = None,
    cause: BaseException | None = None,
) -> ApiError:
    """
    Map a final status code to exactly one taxonomy subtype.

    The message prefers a server-provided ``message`` field in ``body`` and
    falls back to ``message``.
    """
    kwargs: dict[str, Any] = {
        "code": code,
        "detail": body.get("detail") if isinstance(body, dict) else None,
        "status_code": status_code,
        "path": path,
        "request_id": request_id,
        "cause": cause,
    }
    text = _server_message(body) or message

    if status_code == 400:
        return InvalidRequestError(text, **kwargs)
    if status_code == 401:
        return AuthenticationError(text, **kwargs)
    if status_code == 403:
        return PermissionError(text, **kwargs)
    if status_code == 404:
        return NotFoundError(text, **kwargs)
    if status_code == 429:
        return RateLimitError(text, retry_after=_parse_retry_after(headers), **kwargs)
    if 500 <= status_code < 600:
        return ServerError(text, **kwargs)
    return ApiError(text, **kwargs)


def connection_error(
    message: str,
    *,
    code: str | None = None,
    timed_out: bool = False,
    path: str | None = None,
    request_id: str | None = None,
    cause: BaseException | None = None,
) -> ConnectionError:
    """Build the subtype used when no response was received at all."""
    cls = TimeoutError if timed_out else ConnectionError
    return cls(
        "Request timeout" if timed_out else message,
        code=code,
        path=path,
        request_id=request_id,
        cause=cause,
    )


__all__ = [
    "ApiError",
    "InvalidRequestError",
    "AuthenticationError",
    "PermissionError",
    "NotFoundError",
    "RateLimitError",
    "ServerError",
    "ConnectionError",
    "TimeoutError",
    "is_client_status",
    "error_from_status",
    "connection_error",
]
