"""Circuit breaker guarding every attempt a client makes.

Prevents hammering a downstream that is already failing by rejecting calls
outright for a cooldown period.

States:
    CLOSED: Normal operation, requests pass through
    OPEN: Failing fast, requests rejected without running the operation
    HALF_OPEN: One probe allowed to test recovery

Example:
    >>> from stateset.execution.circuit_breaker import CircuitBreaker
    >>>
    >>> breaker = CircuitBreaker(failure_threshold=5, reset_timeout=60.0)
    >>> result = await breaker.execute(lambda: transport(request))
"""

from __future__ import annotations

import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TypeVar

from stateset.core.logging import get_logger

T = TypeVar("T")

logger = get_logger(__name__)


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitOpenError(Exception):
    """Raised when the breaker rejects a call without attempting it.

    Deliberately not an ``ApiError``: it is never retried.
    """

    def __init__(self, message: str = "Circuit breaker is OPEN"):
        super().__init__(message)


@dataclass
class CircuitStats:
    """Statistics for circuit breaker monitoring."""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    rejected_requests: int = 0
    state_changes: int = 0
    last_failure_time: datetime | None = None
    last_success_time: datetime | None = None
    last_state_change: datetime | None = None

    @property
    def failure_rate(self) -> float:
        """Calculate failure rate as percentage."""
        total = self.successful_requests + self.failed_requests
        if total == 0:
            return 0.0
        return (self.failed_requests / total) * 100


@dataclass
class CircuitBreaker:
    """Three-state breaker owned by a single client.

    Attributes:
        name: Identifier used in log events
        failure_threshold: Consecutive failures before opening
        reset_timeout: Seconds to stay OPEN before allowing a probe
        clock: Monotonic time source in seconds
        is_failure: Decides whether an error counts against the breaker
            (default: every error counts)
    """

    name: str = "default"
    failure_threshold: int = 5
    reset_timeout: float = 60.0
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    is_failure: Callable[[BaseException], bool] | None = field(default=None, repr=False)

    # Internal state
    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _failure_count: int = field(default=0, init=False)
    _last_failure_time: float | None = field(default=None, init=False)
    _probe_in_flight: bool = field(default=False, init=False)
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False, repr=False)
    _stats: CircuitStats = field(default_factory=CircuitStats, init=False)

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError(f"failure_threshold must be >= 1, got {self.failure_threshold}")
        if self.reset_timeout < 0:
            raise ValueError("reset_timeout must be non-negative")

    @property
    def state(self) -> CircuitState:
        """Current state. Reading it never triggers a transition."""
        with self._lock:
            return self._state

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failure_count

    @property
    def last_failure_time(self) -> float | None:
        with self._lock:
            return self._last_failure_time

    @property
    def stats(self) -> CircuitStats:
        """Get circuit statistics."""
        return self._stats

    def _transition_to(self, new_state: CircuitState) -> None:
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state
        self._stats.state_changes += 1
        self._stats.last_state_change = utcnow()

        if new_state == CircuitState.CLOSED:
            self._failure_count = 0
        if new_state != CircuitState.HALF_OPEN:
            self._probe_in_flight = False

        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(
            "circuit_state_changed",
            breaker=self.name,
            old_state=old_state.value,
            new_state=new_state.value,
            failures=self._failure_count,
        )

    def _acquire(self) -> None:
        """Admit the caller or raise ``CircuitOpenError``."""
        with self._lock:
            self._stats.total_requests += 1

            if self._state == CircuitState.OPEN:
                elapsed = self.clock() - (self._last_failure_time or 0.0)
                if elapsed > self.reset_timeout:
                    self._transition_to(CircuitState.HALF_OPEN)
                else:
                    self._stats.rejected_requests += 1
                    raise CircuitOpenError()

            if self._state == CircuitState.HALF_OPEN:
                if self._probe_in_flight:
                    self._stats.rejected_requests += 1
                    raise CircuitOpenError("Circuit breaker is HALF_OPEN, probe in flight")
                self._probe_in_flight = True

    def _release(self) -> None:
        with self._lock:
            self._probe_in_flight = False

    def record_success(self) -> None:
        """Record a successful operation."""
        with self._lock:
            self._stats.successful_requests += 1
            self._stats.last_success_time = utcnow()
            self._failure_count = 0
            if self._state == CircuitState.HALF_OPEN:
                self._transition_to(CircuitState.CLOSED)

    def record_failure(self, error: BaseException | None = None) -> None:
        """Record a failed operation."""
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = self.clock()
            self._stats.failed_requests += 1
            self._stats.last_failure_time = utcnow()

            if self._state == CircuitState.HALF_OPEN:
                # A failed probe reopens immediately.
                self._transition_to(CircuitState.OPEN)
            elif self._failure_count >= self.failure_threshold:
                self._transition_to(CircuitState.OPEN)

    def reset(self) -> None:
        """Force CLOSED with zeroed counters, whatever the current state."""
        with self._lock:
            self._transition_to(CircuitState.CLOSED)
            self._failure_count = 0
            self._last_failure_time = None
            self._probe_in_flight = False

    def force_open(self) -> None:
        """Force circuit to open state (for testing/maintenance)."""
        with self._lock:
            self._transition_to(CircuitState.OPEN)
            self._last_failure_time = self.clock()

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        is_failure: Callable[[BaseException], bool] | None = None,
    ) -> T:
        """Run ``operation`` through the breaker.

        ``is_failure`` overrides the breaker's own predicate for this call only.

        Raises:
            CircuitOpenError: The breaker is OPEN (or a HALF_OPEN probe is
                already running); ``operation`` is not invoked
        """
        predicate = is_failure if is_failure is not None else self.is_failure
        self._acquire()
        try:
            result = await operation()
        except Exception as exc:
            if predicate is None or predicate(exc):
                self.record_failure(exc)
            else:
                self._release()
            raise
        except BaseException:
            # Cancellation leaves the counters untouched.
            self._release()
            raise
        self.record_success()
        return result


__all__ = [
    "CircuitState",
    "CircuitOpenError",
    "CircuitStats",
    "CircuitBreaker",
]
