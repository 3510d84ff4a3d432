"""Circuit breaker for fault tolerance.

Fails fast while a downstream dependency is known to be failing. State per
circuit name is a single ``open_until`` timestamp: a call issued before it
is rejected with :class:`CircuitOpenError` without touching the wrapped
function; a call issued after it is let through, and its outcome either
closes the circuit (success) or re-opens it for another cooldown (failure).

States (derived from ``open_until``, for monitoring):
    CLOSED: ``open_until`` is 0, calls pass through
    OPEN: now < ``open_until``, calls rejected immediately
    HALF_OPEN: cooldown elapsed after a trip, next call decides

State lives in a :class:`CircuitBreakerRegistry` that is constructed per
engine (or per test) and injected into the weaver, so no module-level
mutable state exists. A host can persist state elsewhere by supplying its
own ``CircuitProvider``.

Example:
    >>> from macrofx.execution.circuit_breaker import CircuitBreaker, CircuitState
    >>>
    >>> breaker = CircuitBreaker("payments", CircuitState(), half_open_after_ms=5000)
    >>> result = await breaker.call_async(charge_card, order)
"""

from __future__ import annotations

import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from macrofx.core.errors import CircuitOpenError
from macrofx.core.meta import CircuitPolicy

T = TypeVar("T")

DEFAULT_HALF_OPEN_AFTER_MS = 30_000.0

Clock = Callable[[], float]


def monotonic_ms() -> float:
    """Milliseconds from the monotonic clock."""
    return time.monotonic() * 1000.0


class CircuitStatus(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitStats:
    """Statistics for circuit breaker monitoring."""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    rejected_requests: int = 0
    trips: int = 0

    @property
    def failure_rate(self) -> float:
        """Calculate failure rate as percentage."""
        total = self.successful_requests + self.failed_requests
        if total == 0:
            return 0.0
        return (self.failed_requests / total) * 100


@dataclass
class CircuitState:
    """Mutable per-name state shared by every call through the same circuit."""

    open_until: float = 0.0
    failures: int = 0
    stats: CircuitStats = field(default_factory=CircuitStats)
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False, repr=False)

    def status(self, now: float) -> CircuitStatus:
        if self.open_until == 0:
            return CircuitStatus.CLOSED
        if now < self.open_until:
            return CircuitStatus.OPEN
        return CircuitStatus.HALF_OPEN


CircuitProvider = Callable[[str, CircuitPolicy], CircuitState]


class CircuitBreaker:
    """Guards calls with a shared :class:`CircuitState`.

    Attributes:
        name: Identifier for this circuit
        state: Shared state (from a registry or provider)
        half_open_after_ms: Cooldown after a trip
        failure_threshold: Consecutive failures needed to trip
    """

    def __init__(
        self,
        name: str,
        state: CircuitState,
        half_open_after_ms: float = DEFAULT_HALF_OPEN_AFTER_MS,
        failure_threshold: int = 1,
        clock: Clock = monotonic_ms,
    ):
        self.name = name
        self.state = state
        self.half_open_after_ms = half_open_after_ms
        self.failure_threshold = failure_threshold
        self._clock = clock

    @property
    def status(self) -> CircuitStatus:
        return self.state.status(self._clock())

    def remaining_ms(self) -> float:
        return max(0.0, self.state.open_until - self._clock())

    def check(self) -> None:
        """Raise :class:`CircuitOpenError` if the circuit is rejecting calls."""
        with self.state._lock:
            self.state.stats.total_requests += 1
            now = self._clock()
            if now < self.state.open_until:
                self.state.stats.rejected_requests += 1
                raise CircuitOpenError(self.name, self.state.open_until - now)

    def record_success(self) -> None:
        """Record a successful call; closes the circuit."""
        with self.state._lock:
            self.state.stats.successful_requests += 1
            self.state.failures = 0
            self.state.open_until = 0.0

    def record_failure(self, error: BaseException | None = None) -> None:
        """Record a failed call; trips the circuit at the threshold."""
        with self.state._lock:
            self.state.stats.failed_requests += 1
            self.state.failures += 1
            if self.state.failures >= self.failure_threshold:
                self.state.open_until = self._clock() + self.half_open_after_ms
                self.state.stats.trips += 1

    def reset(self) -> None:
        """Reset circuit to closed state."""
        with self.state._lock:
            self.state.failures = 0
            self.state.open_until = 0.0

    async def call_async(
        self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any
    ) -> T:
        """Execute an async function through the circuit breaker.

        Raises:
            CircuitOpenError: If circuit is open
        """
        self.check()
        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            self.record_failure(e)
            raise
        self.record_success()
        return result


class CircuitBreakerRegistry:
    """Registry of named circuit states.

    One registry per engine by default; pass the same registry to several
    engines to share circuits between them.
    """

    def __init__(self):
        self._states: dict[str, CircuitState] = {}
        self._lock = threading.RLock()

    def get(self, name: str) -> CircuitState | None:
        """Get a circuit state by name, returns None if not found."""
        with self._lock:
            return self._states.get(name)

    def get_or_create(self, name: str, policy: CircuitPolicy | None = None) -> CircuitState:
        """Get or create a circuit state by name. Usable as a ``CircuitProvider``."""
        key = name or "default"
        with self._lock:
            if key not in self._states:
                self._states[key] = CircuitState()
            return self._states[key]

    __call__ = get_or_create

    def list_all(self) -> list[str]:
        """List all registered circuit names."""
        with self._lock:
            return list(self._states.keys())

    def clear(self) -> None:
        """Remove all circuits."""
        with self._lock:
            self._states.clear()

    def reset_all(self) -> None:
        """Close all circuits."""
        with self._lock:
            for state in self._states.values():
                state.failures = 0
                state.open_until = 0.0


__all__ = [
    "DEFAULT_HALF_OPEN_AFTER_MS",
    "Clock",
    "monotonic_ms",
    "CircuitStatus",
    "CircuitStats",
    "CircuitState",
    "CircuitProvider",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
]
