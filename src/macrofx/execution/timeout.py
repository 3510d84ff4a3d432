"""Timeout races for effect calls and lease acquires.

Manifesto:
    A timeout here is a race, not a cancellation:
    - **The caller is released on time:** once the budget elapses the
      caller receives a typed timeout error
    - **The work is not cancelled:** the losing call keeps running to
      completion in its own task; its eventual outcome is observed and
      discarded so the loop never reports an unretrieved exception
    - **Late resources are compensated:** an acquire that loses the race,
      or whose caller is cancelled while waiting, but later succeeds has
      its Releasable released exactly once

Architecture:
    ::

        race_timeout(awaitable, ms, EffectTimeoutError)
        ┌────────────────────────────────────────────────────────────┐
        │ task = ensure_future(awaitable)                            │
        │ asyncio.wait({task}, timeout=ms)                           │
        │   done      ──► task.result()  (value or original error)   │
        │   pending   ──► task.add_done_callback(on_late)            │
        │                 raise EffectTimeoutError(ms, operation)    │
        └────────────────────────────────────────────────────────────┘

        race_acquire(awaitable, ms)
          same race; on_late releases a late Releasable

    A budget of ``None`` or 0 disables the race.

Examples:
    >>> rows = await race_timeout(db.query("select 1"), 250, EffectTimeoutError, "db.query")

    >>> lease = await race_acquire(open_lock("jobs"), 50, "lease.lock")

Tags:
    timeout, race, resilience, execution, macrofx

Doc-Types:
    api-reference
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import Any, TypeVar

from macrofx.core.errors import AcquireTimeoutError, EffectTimeoutError, TimeoutExpired
from macrofx.core.logging import get_logger
from macrofx.core.ports import Lease, Releasable
from macrofx.execution._async import maybe_await

T = TypeVar("T")

logger = get_logger(__name__)

# Strong references to in-flight late releases until they finish.
_late_releases: set[asyncio.Future[Any]] = set()


def _discard_outcome(task: asyncio.Future[Any]) -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.debug("timeout.late_failure", error=str(error))


async def race_timeout(
    awaitable: Awaitable[T],
    ms: float | None,
    error_cls: type[TimeoutExpired] = EffectTimeoutError,
    operation: str = "operation",
) -> T:
    """Await ``awaitable``, raising ``error_cls`` if it takes longer than ``ms``.

    The awaited work is not cancelled on timeout.
    """
    if not ms:
        return await awaitable
    task = asyncio.ensure_future(awaitable)
    try:
        done, _ = await asyncio.wait({task}, timeout=ms / 1000.0)
    except BaseException:
        task.add_done_callback(_discard_outcome)
        raise
    if task in done:
        return task.result()
    task.add_done_callback(_discard_outcome)
    raise error_cls(ms, operation)


def _release_late(task: asyncio.Future[Any]) -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.debug("timeout.late_acquire_failure", error=str(error))
        return
    releasable = task.result()
    if isinstance(releasable, Releasable):
        release_task = asyncio.ensure_future(_release_once(releasable))
        _late_releases.add(release_task)
        release_task.add_done_callback(_late_releases.discard)


async def _release_once(releasable: Releasable[Any]) -> None:
    try:
        await maybe_await(releasable.release())
    except Exception as e:
        logger.warning("timeout.late_release_failed", error=str(e))
    if isinstance(releasable.value, Lease):
        releasable.value.scope.revoke()


async def race_acquire(
    awaitable: Awaitable[Releasable[T]],
    ms: float | None,
    operation: str = "acquire",
) -> Releasable[T]:
    """Race an acquire against ``ms``; release the resource if it arrives late.

    Raises:
        AcquireTimeoutError: If the acquire did not complete within ``ms``
    """
    if not ms:
        return await awaitable
    task = asyncio.ensure_future(awaitable)
    try:
        done, _ = await asyncio.wait({task}, timeout=ms / 1000.0)
    except BaseException:
        # Caller cancelled: the acquire keeps running and is compensated.
        task.add_done_callback(_release_late)
        raise
    if task in done:
        return task.result()
    task.add_done_callback(_release_late)
    raise AcquireTimeoutError(ms, operation)


__all__ = ["race_timeout", "race_acquire"]
