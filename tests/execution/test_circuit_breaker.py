"""Tests for circuit breaker state and registry."""

import pytest

from macrofx.core.errors import CircuitOpenError
from macrofx.core.meta import CircuitPolicy
from macrofx.execution.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
    CircuitStatus,
)
from macrofx.testing import FakeTime


def _breaker(clock: FakeTime, state: CircuitState | None = None, **kwargs) -> CircuitBreaker:
    return CircuitBreaker("api", state or CircuitState(), clock=clock.now, **kwargs)


class TestCircuitBreaker:
    """Tests for open/half-open/closed transitions."""

    def test_starts_closed(self):
        clock = FakeTime(100)
        breaker = _breaker(clock, half_open_after_ms=50)
        assert breaker.status == CircuitStatus.CLOSED
        breaker.check()

    def test_failure_opens_for_cooldown(self):
        """Test one failure opens the circuit until now + half_open_after_ms."""
        clock = FakeTime(100)
        breaker = _breaker(clock, half_open_after_ms=50)
        breaker.record_failure(RuntimeError("x"))
        assert breaker.state.open_until == 150
        assert breaker.status == CircuitStatus.OPEN
        with pytest.raises(CircuitOpenError) as exc_info:
            breaker.check()
        assert exc_info.value.remaining_ms == 50
        assert breaker.state.stats.rejected_requests == 1

    def test_half_open_after_cooldown(self):
        """Test calls are let through once the cooldown elapses."""
        clock = FakeTime(100)
        breaker = _breaker(clock, half_open_after_ms=50)
        breaker.record_failure()
        clock.advance(50)
        assert breaker.status == CircuitStatus.HALF_OPEN
        breaker.check()

    def test_success_closes(self):
        clock = FakeTime(0)
        breaker = _breaker(clock, half_open_after_ms=50)
        breaker.record_failure()
        clock.advance(60)
        breaker.record_success()
        assert breaker.state.open_until == 0
        assert breaker.status == CircuitStatus.CLOSED

    def test_failure_threshold(self):
        """Test the circuit trips only at the threshold."""
        clock = FakeTime(0)
        breaker = _breaker(clock, half_open_after_ms=50, failure_threshold=3)
        breaker.record_failure()
        breaker.record_failure()
        assert breaker.status == CircuitStatus.CLOSED
        breaker.record_failure()
        assert breaker.status == CircuitStatus.OPEN
        assert breaker.state.stats.trips == 1

    def test_shared_state_between_breakers(self):
        """Test breakers over the same state see each other's failures."""
        clock = FakeTime(0)
        state = CircuitState()
        _breaker(clock, state, half_open_after_ms=50).record_failure()
        with pytest.raises(CircuitOpenError):
            _breaker(clock, state, half_open_after_ms=50).check()

    @pytest.mark.asyncio
    async def test_call_async(self):
        """Test call_async records outcomes."""
        clock = FakeTime(0)
        breaker = _breaker(clock, half_open_after_ms=50)

        async def ok(x):
            return x * 2

        async def boom():
            raise ValueError("boom")

        assert await breaker.call_async(ok, 2) == 4
        with pytest.raises(ValueError):
            await breaker.call_async(boom)
        with pytest.raises(CircuitOpenError):
            await breaker.call_async(ok, 1)
        assert breaker.state.stats.failure_rate == 50.0

    def test_reset(self):
        clock = FakeTime(0)
        breaker = _breaker(clock, half_open_after_ms=50)
        breaker.record_failure()
        breaker.reset()
        assert breaker.status == CircuitStatus.CLOSED


class TestCircuitBreakerRegistry:
    """Tests for named state storage."""

    def test_get_or_create_shares_state(self):
        registry = CircuitBreakerRegistry()
        state = registry.get_or_create("api")
        assert registry("api", CircuitPolicy(name="api")) is state
        assert registry.get("api") is state
        assert registry.get("other") is None

    def test_empty_name_is_default(self):
        registry = CircuitBreakerRegistry()
        assert registry.get_or_create("") is registry.get_or_create("default")

    def test_list_clear_reset(self):
        registry = CircuitBreakerRegistry()
        registry.get_or_create("a").open_until = 500
        registry.get_or_create("b")
        assert registry.list_all() == ["a", "b"]
        registry.reset_all()
        assert registry.get("a").open_until == 0
        registry.clear()
        assert registry.list_all() == []
