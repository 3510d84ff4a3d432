"""Bracket: acquire → use → release with release guaranteed.

WHY
───
A leased resource (pooled connection, lock, temp dir, socket) must be
released on every exit path: normal return, exception, or task
cancellation. ``bracket`` is the only place that guarantee lives; openers
and steps never call ``release`` themselves.

ARCHITECTURE
────────────
::

    releasable = await acquire()          # failure: propagate, nothing to release
    try:
        return await use(releasable.value)
    finally:
        finalizer(value)   # errors logged, swallowed
        release()          # errors logged, swallowed
        scope.revoke()     # Lease handles stop working

The outcome of ``use`` always wins: a failing finalizer or release never
replaces ``use``'s return value or its exception. Release is attempted
exactly once even if the finalizer fails.

Example::

    rows = await bracket(
        lambda: ctx.lease.db("ro"),
        lambda conn: conn.query("select 1"),
    )
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from macrofx.core.logging import get_logger
from macrofx.core.ports import Lease, Releasable
from macrofx.execution._async import maybe_await

T = TypeVar("T")
R = TypeVar("R")

logger = get_logger(__name__)

Acquire = Callable[[], Awaitable[Releasable[T]]]
Use = Callable[[T], Awaitable[R] | R]
Finalizer = Callable[[T], Awaitable[None] | None]


async def bracket(
    acquire: Acquire[T],
    use: Use[T, R],
    finalizer: Finalizer[T] | None = None,
) -> R:
    """Acquire a resource, use it, and always release it.

    Args:
        acquire: Zero-argument async callable returning a Releasable
        use: Callback receiving the acquired value
        finalizer: Optional cleanup run before release

    Returns:
        Whatever ``use`` returns

    Raises:
        Whatever ``acquire`` or ``use`` raises; never finalizer/release errors
    """
    releasable = await maybe_await(acquire())
    value = releasable.value
    try:
        return await maybe_await(use(value))
    finally:
        await _cleanup(releasable, finalizer)


async def _cleanup(releasable: Releasable[Any], finalizer: Finalizer[Any] | None) -> None:
    value = releasable.value
    if finalizer is not None:
        try:
            await maybe_await(finalizer(value))
        except Exception as e:
            logger.warning("bracket.finalizer_failed", error=str(e), exc_info=True)
    try:
        await maybe_await(releasable.release())
    except Exception as e:
        logger.warning("bracket.release_failed", error=str(e), exc_info=True)
    if isinstance(value, Lease):
        value.scope.revoke()


__all__ = ["bracket"]
