"""Retry strategies for effect calls.

A retry policy ``{times, delay_ms, jitter}`` allows ``times + 1`` attempts.
The delay is applied between attempts only, never before the first or after
the last. With jitter each delay is scaled by a factor drawn uniformly from
``[0.5, 1.5)``. A rejection from an open circuit is never retried: waiting
``delay_ms`` would not change the answer.

Example:
    >>> from macrofx.execution.retry import ConstantBackoff, RetryContext
    >>>
    >>> ctx = RetryContext(ConstantBackoff(max_retries=2, delay_ms=50, jitter=True))
    >>> result = await ctx.run_async(call_api)
    >>> ctx.attempts
    1
"""

from __future__ import annotations

import asyncio
import functools
import random
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from macrofx.core.errors import is_circuit_open
from macrofx.core.meta import RetryPolicy

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]
Random = Callable[[], float]


async def sleep_ms(ms: float) -> None:
    await asyncio.sleep(ms / 1000.0)


class RetryStrategy(ABC):
    """Abstract base for retry strategies."""

    @abstractmethod
    def next_delay(self, attempt: int) -> float:
        """Calculate delay before the next attempt.

        Args:
            attempt: Zero-based retry number (0 = first retry)

        Returns:
            Delay in milliseconds
        """
        ...

    @abstractmethod
    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        """Determine if another attempt should be made.

        Args:
            attempt: Number of attempts made so far
            error: The exception that caused the failure
        """
        ...


@dataclass
class ConstantBackoff(RetryStrategy):
    """Constant delay between attempts, optionally jittered.

    Attributes:
        max_retries: Retries after the first attempt
        delay_ms: Base delay between attempts
        jitter: Scale each delay by ``0.5 + random()``
        rng: Source of uniform values in ``[0, 1)``
    """

    max_retries: int = 0
    delay_ms: float = 0.0
    jitter: bool = False
    rng: Random = field(default=random.random, repr=False)

    @classmethod
    def from_policy(cls, policy: RetryPolicy, rng: Random | None = None) -> ConstantBackoff:
        return cls(
            max_retries=policy.times,
            delay_ms=policy.delay_ms,
            jitter=policy.jitter,
            rng=rng or random.random,
        )

    def next_delay(self, attempt: int) -> float:
        if not self.jitter:
            return self.delay_ms
        return self.delay_ms * (0.5 + self.rng())

    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        if error is not None and is_circuit_open(error):
            return False
        return attempt <= self.max_retries


@dataclass
class NoRetry(RetryStrategy):
    """No retry - fail immediately."""

    def next_delay(self, attempt: int) -> float:
        return 0.0

    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        return False


@dataclass
class RetryContext:
    """Tracks retry state for one wrapped call.

    Attributes:
        strategy: Decides whether and how long to wait
        on_retry: Called before each wait with (attempt, error, delay_ms)
        sleep: Async sleep taking milliseconds
    """

    strategy: RetryStrategy
    on_retry: Callable[[int, Exception, float], None] | None = None
    sleep: Sleep = sleep_ms
    attempt: int = field(default=0, init=False)
    last_error: Exception | None = field(default=None, init=False)
    errors: list[tuple[int, Exception]] = field(default_factory=list, init=False)

    @property
    def attempts(self) -> int:
        """Number of attempts made."""
        return self.attempt

    async def run_async(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Execute an async function with retry logic.

        Raises:
            The last exception once attempts are exhausted
        """
        while True:
            self.attempt += 1
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                self.last_error = e
                self.errors.append((self.attempt, e))

                if not self.strategy.should_retry(self.attempt, e):
                    raise

                delay = self.strategy.next_delay(self.attempt - 1)

                if self.on_retry:
                    self.on_retry(self.attempt, e, delay)

                if delay > 0:
                    await self.sleep(delay)


def with_retry(
    strategy: RetryStrategy,
    *,
    sleep: Sleep = sleep_ms,
    on_retry: Callable[[int, Exception, float], None] | None = None,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Wrap an async callable so each invocation runs with a fresh RetryContext."""

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            ctx = RetryContext(strategy=strategy, on_retry=on_retry, sleep=sleep)
            return await ctx.run_async(func, *args, **kwargs)

        return wrapper

    return decorator


__all__ = [
    "Sleep",
    "Random",
    "sleep_ms",
    "RetryStrategy",
    "ConstantBackoff",
    "NoRetry",
    "RetryContext",
    "with_retry",
]
