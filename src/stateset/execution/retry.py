"""Retry with exponential backoff, jitter, and a pluggable retry condition.

``with_retry`` drives an async operation through a ``RetryPolicy``:

- up to ``max_attempts`` tries, 1-indexed
- the final failure is recorded with ``delay=0`` and never consults the
  retry condition
- a non-final failure rejected by ``retry_condition`` re-raises the original
  error immediately (no ``RetryExhaustedError`` wrapping)
- otherwise ``delay = min(base_delay * multiplier ** (attempt - 1), max_delay)``,
  scaled by a uniform factor in ``[0.5, 1.0]`` when jitter is on

Example:
    >>> from stateset.execution.retry import RetryPolicy, compute_delay
    >>>
    >>> policy = RetryPolicy(base_delay=0.1, backoff_multiplier=2, jitter=False)
    >>> [compute_delay(n, policy) for n in (1, 2, 3)]
    [0.1, 0.2, 0.4]
"""

from __future__ import annotations

import asyncio
import inspect
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from typing import Any, TypeVar

from stateset.core.errors import is_client_status
from stateset.core.logging import get_logger
from stateset.execution.circuit_breaker import CircuitOpenError

T = TypeVar("T")

logger = get_logger(__name__)


def default_retry_condition(error: BaseException) -> bool:
    """Retry everything except client errors (4xx other than 429) and breaker fast-fails."""
    if isinstance(error, CircuitOpenError):
        return False
    return not is_client_status(getattr(error, "status_code", None))


@dataclass(frozen=True)
class RetryAttempt:
    """One failed try. ``delay`` is 0 for the final, non-retried failure."""

    attempt_number: int
    delay: float
    error: BaseException


@dataclass(frozen=True)
class RetryPolicy:
    """Immutable retry configuration.

    Attributes:
        max_attempts: Total tries including the first (>= 1)
        base_delay: Delay in seconds before the first retry
        max_delay: Cap applied before jitter
        backoff_multiplier: Exponential growth factor
        jitter: Scale each delay by a random factor in [0.5, 1.0]
        retry_condition: Decides whether a non-final failure is retried
        on_attempt: Called with each ``RetryAttempt`` before sleeping
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    jitter: bool = True
    retry_condition: Callable[[BaseException], bool] = field(
        default=default_retry_condition, compare=False
    )
    on_attempt: Callable[[RetryAttempt], Any] | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("retry delays must be non-negative")

    def merged(self, **overrides: Any) -> RetryPolicy:
        """Return a copy with every non-``None`` override applied."""
        changes = {key: value for key, value in overrides.items() if value is not None}
        if not changes:
            return self
        return replace(self, **changes)

    def normalized(self) -> RetryPolicy:
        """Clamp ``max_delay`` so it is never below ``base_delay``."""
        if self.max_delay < self.base_delay:
            return replace(self, max_delay=self.base_delay)
        return self


class RetryExhaustedError(Exception):
    """Every allowed attempt failed.

    ``attempts`` holds one ``RetryAttempt`` per try (its length equals the
    policy's ``max_attempts``); ``last_error`` is the final raw error.
    """

    def __init__(self, message: str, attempts: list[RetryAttempt], last_error: BaseException):
        super().__init__(message)
        self.message = message
        self.attempts = attempts
        self.last_error = last_error
        self.__cause__ = last_error

    def __repr__(self) -> str:
        return f"RetryExhaustedError({self.message!r}, attempts={len(self.attempts)})"


def compute_delay(
    attempt: int,
    policy: RetryPolicy,
    rand: Callable[[], float] = random.random,
) -> float:
    """Backoff before retrying after failed ``attempt`` (1-indexed)."""
    delay = min(
        policy.base_delay * (policy.backoff_multiplier ** (attempt - 1)),
        policy.max_delay,
    )
    if policy.jitter:
        delay *= 0.5 + rand() * 0.5
    return delay


async def _notify(callback: Callable[[RetryAttempt], Any], record: RetryAttempt) -> None:
    result = callback(record)
    if inspect.isawaitable(result):
        await result


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
) -> T:
    """Run ``operation`` under ``policy``.

    Args:
        operation: Zero-argument callable returning an awaitable
        policy: Retry configuration (default: ``RetryPolicy()``)

    Returns:
        The first successful result

    Raises:
        RetryExhaustedError: All ``max_attempts`` tries failed
        Exception: The original error when ``retry_condition`` declined it
    """
    policy = policy or RetryPolicy()
    attempts: list[RetryAttempt] = []
    last_error: BaseException | None = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            result = await operation()
        except Exception as exc:
            last_error = exc

            if attempt >= policy.max_attempts:
                attempts.append(RetryAttempt(attempt, 0.0, exc))
                break

            if not policy.retry_condition(exc):
                logger.debug("retry_declined", attempt=attempt, error=str(exc))
                raise

            delay = compute_delay(attempt, policy)
            record = RetryAttempt(attempt, delay, exc)
            attempts.append(record)

            if policy.on_attempt is not None:
                await _notify(policy.on_attempt, record)

            logger.warning(
                "retry_scheduled",
                attempt=attempt,
                max_attempts=policy.max_attempts,
                delay=round(delay, 3),
                error=str(exc),
            )
            # Backoff is not shortened by caller cancellation of the transport.
            await asyncio.sleep(delay)
        else:
            if attempts:
                logger.info("retry_succeeded", attempt=attempt, total_attempts=len(attempts) + 1)
            return result

    assert last_error is not None
    raise RetryExhaustedError(
        f"Operation failed after {policy.max_attempts} attempts",
        attempts,
        last_error,
    )


__all__ = [
    "RetryPolicy",
    "RetryAttempt",
    "RetryExhaustedError",
    "compute_delay",
    "default_retry_condition",
    "with_retry",
]
