"""Tests for the circuit breaker state machine."""

import asyncio
import time
from unittest.mock import AsyncMock

import pytest

from stateset.execution.circuit_breaker import (
    CircuitBreaker,
    CircuitOpenError,
    CircuitState,
)


async def _fail(breaker: CircuitBreaker, times: int) -> None:
    for _ in range(times):
        with pytest.raises(RuntimeError):
            await breaker.execute(AsyncMock(side_effect=RuntimeError("down")))


class TestCircuitState:
    def test_state_values(self):
        assert CircuitState.CLOSED.value == "CLOSED"
        assert CircuitState.OPEN.value == "OPEN"
        assert CircuitState.HALF_OPEN.value == "HALF_OPEN"


class TestCircuitBreaker:
    """Tests for state transitions."""

    def test_default_configuration(self):
        breaker = CircuitBreaker()
        assert breaker.failure_threshold == 5
        assert breaker.reset_timeout == 60.0
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    def test_invalid_threshold(self):
        with pytest.raises(ValueError):
            CircuitBreaker(failure_threshold=0)

    @pytest.mark.asyncio
    async def test_stays_closed_below_threshold(self):
        breaker = CircuitBreaker(failure_threshold=3)
        await _fail(breaker, 2)
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 2

    @pytest.mark.asyncio
    async def test_opens_at_threshold(self):
        breaker = CircuitBreaker(failure_threshold=3)
        await _fail(breaker, 3)
        assert breaker.state == CircuitState.OPEN
        assert breaker.last_failure_time is not None

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self):
        breaker = CircuitBreaker(failure_threshold=3)
        await _fail(breaker, 2)
        await breaker.execute(AsyncMock(return_value="ok"))
        assert breaker.failure_count == 0
        await _fail(breaker, 2)
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_open_rejects_without_invoking(self):
        breaker = CircuitBreaker(failure_threshold=1, reset_timeout=60.0)
        await _fail(breaker, 1)

        operation = AsyncMock(return_value="ok")
        with pytest.raises(CircuitOpenError, match="Circuit breaker is OPEN"):
            await breaker.execute(operation)

        operation.assert_not_awaited()
        assert breaker.stats.rejected_requests == 1

    @pytest.mark.asyncio
    async def test_half_open_success_closes(self):
        breaker = CircuitBreaker(failure_threshold=2, reset_timeout=0.1)
        await _fail(breaker, 2)
        time.sleep(0.15)

        result = await breaker.execute(AsyncMock(return_value="ok"))

        assert result == "ok"
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self):
        breaker = CircuitBreaker(failure_threshold=2, reset_timeout=0.1)
        await _fail(breaker, 2)
        first_failure = breaker.last_failure_time
        time.sleep(0.15)

        await _fail(breaker, 1)

        assert breaker.state == CircuitState.OPEN
        assert breaker.last_failure_time > first_failure
        with pytest.raises(CircuitOpenError):
            await breaker.execute(AsyncMock(return_value="ok"))

    @pytest.mark.asyncio
    async def test_half_open_allows_single_probe(self):
        breaker = CircuitBreaker(failure_threshold=1, reset_timeout=0.05)
        await _fail(breaker, 1)
        await asyncio.sleep(0.1)

        release = asyncio.Event()

        async def slow_probe():
            await release.wait()
            return "probe"

        probe = asyncio.ensure_future(breaker.execute(slow_probe))
        await asyncio.sleep(0)
        assert breaker.state == CircuitState.HALF_OPEN

        second = AsyncMock(return_value="second")
        with pytest.raises(CircuitOpenError):
            await breaker.execute(second)
        second.assert_not_awaited()

        release.set()
        assert await probe == "probe"
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_cancelled_probe_does_not_count(self):
        breaker = CircuitBreaker(failure_threshold=1, reset_timeout=0.05)
        await _fail(breaker, 1)
        await asyncio.sleep(0.1)

        probe = asyncio.ensure_future(breaker.execute(lambda: asyncio.sleep(10)))
        await asyncio.sleep(0)
        probe.cancel()
        with pytest.raises(asyncio.CancelledError):
            await probe

        assert breaker.state == CircuitState.HALF_OPEN
        assert await breaker.execute(AsyncMock(return_value="ok")) == "ok"
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_is_failure_predicate_excludes_errors(self):
        breaker = CircuitBreaker(failure_threshold=1, is_failure=lambda e: not isinstance(e, KeyError))

        with pytest.raises(KeyError):
            await breaker.execute(AsyncMock(side_effect=KeyError("ignored")))

        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_per_call_predicate_overrides_own(self):
        breaker = CircuitBreaker(failure_threshold=1)

        with pytest.raises(KeyError):
            await breaker.execute(
                AsyncMock(side_effect=KeyError("ignored")), is_failure=lambda e: False
            )

        assert breaker.state == CircuitState.CLOSED
        assert breaker.is_failure is None

    @pytest.mark.asyncio
    async def test_reset_forces_closed(self):
        breaker = CircuitBreaker(failure_threshold=1)
        await _fail(breaker, 1)
        assert breaker.state == CircuitState.OPEN

        breaker.reset()

        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0
        assert breaker.last_failure_time is None
        assert await breaker.execute(AsyncMock(return_value=1)) == 1

    @pytest.mark.asyncio
    async def test_injected_clock_controls_reset_timeout(self):
        now = [1000.0]
        breaker = CircuitBreaker(failure_threshold=1, reset_timeout=30.0, clock=lambda: now[0])
        await _fail(breaker, 1)

        now[0] += 30.0
        with pytest.raises(CircuitOpenError):
            await breaker.execute(AsyncMock(return_value="ok"))

        now[0] += 0.5
        assert await breaker.execute(AsyncMock(return_value="ok")) == "ok"
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_stats_tracking(self):
        breaker = CircuitBreaker(failure_threshold=2)
        await breaker.execute(AsyncMock(return_value="ok"))
        await _fail(breaker, 2)
        with pytest.raises(CircuitOpenError):
            await breaker.execute(AsyncMock())

        stats = breaker.stats
        assert stats.total_requests == 4
        assert stats.successful_requests == 1
        assert stats.failed_requests == 2
        assert stats.rejected_requests == 1
        assert stats.state_changes == 1
        assert stats.failure_rate == pytest.approx(200 / 3)
