"""Per-client request performance metrics.

Every orchestrated call is timed under an operation name of the form
``client.request.<METHOD>.<path>``. The recorder keeps:

- the most recent ``max_samples`` samples (for min/max/p95 and success rate)
- a cumulative latency histogram with Prometheus-style ``le`` buckets
- counters for total, failed and slow requests

A sample slower than ``slow_threshold`` seconds emits a
``slow_request_detected`` warning.

Example:
    >>> metrics = RequestMetrics(max_samples=100, slow_threshold=2.0)
    >>> with metrics.timer("client.request.GET.orders") as timer:
    ...     timer.success = True
    >>> metrics.stats()["total_requests"]
    1
"""

from __future__ import annotations

import math
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from stateset.core.logging import get_logger

logger = get_logger(__name__)


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RequestSample:
    """One timed call."""

    operation: str
    duration: float
    success: bool
    timestamp: datetime = field(default_factory=utcnow)
    error: str | None = None


class LatencyHistogram:
    """Cumulative distribution of durations in seconds."""

    DEFAULT_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, math.inf)

    def __init__(self, buckets: tuple[float, ...] | None = None):
        self._buckets = buckets or self.DEFAULT_BUCKETS
        self._counts = dict.fromkeys(self._buckets, 0)
        self.sum = 0.0
        self.count = 0

    def observe(self, value: float) -> None:
        self.sum += value
        self.count += 1
        for bucket in self._buckets:
            if value <= bucket:
                self._counts[bucket] += 1

    def snapshot(self) -> dict[str, Any]:
        return {"buckets": dict(self._counts), "sum": self.sum, "count": self.count}


class RequestTimer:
    """Context manager returned by :meth:`RequestMetrics.timer`.

    The call is recorded as failed unless ``success`` is set inside the block;
    an exception leaving the block is recorded as the error.
    """

    def __init__(self, metrics: RequestMetrics, operation: str):
        self._metrics = metrics
        self.operation = operation
        self.success = False
        self._start = 0.0

    def __enter__(self) -> RequestTimer:
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: Any, exc: BaseException | None, tb: Any) -> None:
        duration = time.perf_counter() - self._start
        success = self.success and exc is None
        error = None if exc is None else (str(exc) or type(exc).__name__)
        self._metrics.record(self.operation, duration, success=success, error=error)


class RequestMetrics:
    """Bounded recorder of request timings for one client.

    Attributes:
        max_samples: Number of recent samples kept for stats
        slow_threshold: Seconds above which a sample is logged as slow
        enabled: When false, timers record nothing
    """

    def __init__(self, *, max_samples: int = 1000, slow_threshold: float = 5.0, enabled: bool = True):
        if max_samples < 1:
            raise ValueError(f"max_samples must be >= 1, got {max_samples}")
        self.max_samples = max_samples
        self.slow_threshold = slow_threshold
        self.enabled = enabled
        self._samples: deque[RequestSample] = deque(maxlen=max_samples)
        self._histogram = LatencyHistogram()
        self._total = 0
        self._failed = 0
        self._slow = 0
        self._lock = threading.Lock()

    def timer(self, operation: str) -> RequestTimer:
        return RequestTimer(self, operation)

    def record(
        self,
        operation: str,
        duration: float,
        *,
        success: bool,
        error: str | None = None,
    ) -> None:
        """Store one sample. Ignored while disabled."""
        if not self.enabled:
            return

        slow = duration > self.slow_threshold
        with self._lock:
            self._samples.append(RequestSample(operation, duration, success, error=error))
            self._histogram.observe(duration)
            self._total += 1
            if not success:
                self._failed += 1
            if slow:
                self._slow += 1

        if slow:
            logger.warning(
                "slow_request_detected",
                operation=operation,
                duration_ms=round(duration * 1000, 1),
                threshold_ms=round(self.slow_threshold * 1000, 1),
                success=success,
            )

    def samples(self, operation: str | None = None) -> list[RequestSample]:
        with self._lock:
            samples = list(self._samples)
        if operation is None:
            return samples
        return [s for s in samples if s.operation == operation]

    def stats(self, operation: str | None = None) -> dict[str, Any]:
        """Summarise recent samples.

        Response times (seconds) are computed over successful samples only;
        ``success_rate`` over all recent samples. Without ``operation`` the
        lifetime counters and latency histogram are included too.
        """
        samples = self.samples(operation)
        durations = sorted(s.duration for s in samples if s.success)

        result: dict[str, Any] = {
            "total_requests": len(samples),
            "success_rate": (
                sum(1 for s in samples if s.success) / len(samples) if samples else 0.0
            ),
            "average_response_time": sum(durations) / len(durations) if durations else 0.0,
            "min_response_time": durations[0] if durations else 0.0,
            "max_response_time": durations[-1] if durations else 0.0,
            "p95_response_time": (
                durations[min(int(len(durations) * 0.95), len(durations) - 1)]
                if durations
                else 0.0
            ),
        }
        if operation is None:
            with self._lock:
                result["lifetime_requests"] = self._total
                result["lifetime_failures"] = self._failed
                result["slow_requests"] = self._slow
                result["latency_histogram"] = self._histogram.snapshot()
        return result

    def clear(self) -> None:
        with self._lock:
            self._samples.clear()
            self._histogram = LatencyHistogram()
            self._total = 0
            self._failed = 0
            self._slow = 0


__all__ = ["RequestSample", "LatencyHistogram", "RequestTimer", "RequestMetrics"]
