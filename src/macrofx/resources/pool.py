"""ResourcePool: bounded, fair pool of reusable resources.

WHY
───
Lease openers such as ``lease.db`` must hand out at most N live
connections and make callers wait their turn when all are checked out.
Waiters are served strictly first-come first-served.

ARCHITECTURE
────────────
::

    ResourcePool(factory, destroy, max_size)
      ├── .acquire()   idle item → new item (below max_size) → wait (FIFO)
      ├── .release(x)  hand to the oldest waiter, else return to idle
      ├── .lease()     Releasable(value=Lease(x), release=pool.release(x))
      └── .drain()     destroy every idle item

BEST PRACTICES
──────────────
- Acquire through ``bracket`` (or ``lease()`` inside an opener) so the
  item always comes back.
- The pool is confined to one event loop; it is not thread-safe.

Example::

    pool = ResourcePool(open_connection, close_connection, max_size=4)
    rows = await bracket(pool.lease, lambda conn: conn.query("select 1"))
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Generic, TypeVar

from macrofx.core.ports import Lease, LeaseScope, Releasable

T = TypeVar("T")


class ResourcePool(Generic[T]):
    """Bounded pool with FIFO waiters."""

    def __init__(
        self,
        factory: Callable[[], Awaitable[T]],
        destroy: Callable[[T], Awaitable[None]],
        max_size: int = 8,
        label: str = "pool",
    ):
        if max_size < 1:
            raise ValueError(f"max_size must be at least 1, got {max_size}")
        self._factory = factory
        self._destroy = destroy
        self.max_size = max_size
        self.label = label
        self._idle: deque[T] = deque()
        self._waiters: deque[asyncio.Future[T]] = deque()
        self._total = 0

    @property
    def size(self) -> int:
        """Items created and not destroyed."""
        return self._total

    @property
    def idle(self) -> int:
        return len(self._idle)

    @property
    def waiting(self) -> int:
        return sum(1 for w in self._waiters if not w.done())

    async def acquire(self) -> T:
        if self._idle:
            return self._idle.popleft()
        if self._total < self.max_size:
            self._total += 1
            try:
                return await self._factory()
            except BaseException:
                self._total -= 1
                raise
        waiter: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            return await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Handed an item after cancellation was requested: pass it on.
                self.release(waiter.result())
            else:
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
            raise

    def release(self, item: T) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(item)
                return
        self._idle.append(item)

    async def lease(self) -> Releasable[Lease[T]]:
        """Acquire an item wrapped for ``bracket``."""
        item = await self.acquire()

        def release() -> None:
            self.release(item)

        return Releasable(value=Lease(item, LeaseScope(self.label)), release=release)

    async def drain(self) -> None:
        while self._idle:
            item = self._idle.popleft()
            self._total -= 1
            await self._destroy(item)


__all__ = ["ResourcePool"]
