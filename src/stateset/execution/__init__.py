"""Stateset Execution - retry/backoff and circuit breaking around one attempt.

ARCHITECTURE
────────────
::

    with_retry(operation, RetryPolicy)      attempts 1..max_attempts
      └── CircuitBreaker.execute(attempt)   CLOSED / OPEN / HALF_OPEN
            └── transport attempt

MODULE MAP
──────────
 1. retry.py             ─ RetryPolicy, RetryAttempt, with_retry, RetryExhaustedError
 2. circuit_breaker.py   ─ CircuitBreaker, CircuitState, CircuitOpenError
"""

from .circuit_breaker import (
    CircuitBreaker,
    CircuitOpenError,
    CircuitState,
    CircuitStats,
)
from .retry import (
    RetryAttempt,
    RetryExhaustedError,
    RetryPolicy,
    compute_delay,
    default_retry_condition,
    with_retry,
)

__all__ = [
    "CircuitBreaker",
    "CircuitOpenError",
    "CircuitState",
    "CircuitStats",
    "RetryAttempt",
    "RetryExhaustedError",
    "RetryPolicy",
    "compute_delay",
    "default_retry_condition",
    "with_retry",
]
