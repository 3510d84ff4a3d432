"""
Ok/Err values for steps whose failure is an expected outcome.

The executor raises and propagates exceptions. ``with_result(step)`` in
the composition module turns a step's outcome into a value instead, and
the helpers here work on those values without re-raising:

Architecture:
    ::

        Ok(value) | Err(error)
          │
          ├── transform   map · map_err · flat_map
          ├── recover     recover (→ Ok) · recover_with (→ Result)
          ├── consume     unwrap · unwrap_or · unwrap_or_else · match
          └── many        sequence · traverse · traverse_async · partition

        capture:  try_sync(fn, map_error)  /  await try_async(fn, map_error)

Examples:
    >>> try_sync(lambda: int("42")).map(lambda n: n + 1)
    Ok(43)
    >>> try_sync(lambda: int("x")).recover(lambda e: 0)
    Ok(0)
    >>> sequence([Ok(1), Err(KeyError("k")), Ok(3)])
    Err(KeyError('k'))

Tags:
    result-pattern, error-handling, composition, macrofx

Doc-Types:
    - API Reference
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from macrofx.core.errors import MacrofxError

T = TypeVar("T")
U = TypeVar("U")
R = TypeVar("R")

MapError = Callable[[Exception], Exception]


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    """A successful outcome."""

    value: T

    @property
    def ok(self) -> bool:
        return True

    def unwrap(self) -> T:
        return self.value

    def unwrap_or(self, fallback: T) -> T:
        return self.value

    def unwrap_or_else(self, fn: Callable[[Exception], T]) -> T:
        return self.value

    def map(self, fn: Callable[[T], U]) -> Result[U]:
        return Ok(fn(self.value))

    def map_err(self, fn: MapError) -> Result[T]:
        return self

    def flat_map(self, fn: Callable[[T], Result[U]]) -> Result[U]:
        return fn(self.value)

    def recover(self, fn: Callable[[Exception], T]) -> Ok[T]:
        return self

    def recover_with(self, fn: Callable[[Exception], Result[T]]) -> Result[T]:
        return self

    def match(self, on_ok: Callable[[T], R], on_err: Callable[[Exception], R]) -> R:
        return on_ok(self.value)

    def to_dict(self) -> dict[str, Any]:
        return {"ok": True, "value": self.value}

    def __repr__(self) -> str:
        return f"Ok({self.value!r})"


@dataclass(frozen=True, slots=True)
class Err(Generic[T]):
    """A failed outcome holding the exception."""

    error: Exception

    @property
    def ok(self) -> bool:
        return False

    def unwrap(self) -> T:
        """Raise the held exception."""
        raise self.error

    def unwrap_or(self, fallback: T) -> T:
        return fallback

    def unwrap_or_else(self, fn: Callable[[Exception], T]) -> T:
        return fn(self.error)

    def map(self, fn: Callable[[T], U]) -> Result[U]:
        return Err(self.error)

    def map_err(self, fn: MapError) -> Result[T]:
        return Err(fn(self.error))

    def flat_map(self, fn: Callable[[T], Result[U]]) -> Result[U]:
        return Err(self.error)

    def recover(self, fn: Callable[[Exception], T]) -> Ok[T]:
        return Ok(fn(self.error))

    def recover_with(self, fn: Callable[[Exception], Result[T]]) -> Result[T]:
        return fn(self.error)

    def match(self, on_ok: Callable[[T], R], on_err: Callable[[Exception], R]) -> R:
        return on_err(self.error)

    def to_dict(self) -> dict[str, Any]:
        if isinstance(self.error, MacrofxError):
            return {"ok": False, "error": self.error.to_dict()}
        return {"ok": False, "error": {"error_type": type(self.error).__name__, "message": str(self.error)}}

    def __repr__(self) -> str:
        return f"Err({self.error!r})"


Result = Ok[T] | Err[T]


async def match_async(
    result: Result[T],
    on_ok: Callable[[T], Awaitable[R] | R],
    on_err: Callable[[Exception], Awaitable[R] | R],
) -> R:
    """Like ``result.match`` but either branch may be async."""
    value = on_ok(result.value) if isinstance(result, Ok) else on_err(result.error)
    if asyncio.iscoroutine(value) or isinstance(value, asyncio.Future):
        return await value
    return value


def try_sync(fn: Callable[[], T], map_error: MapError | None = None) -> Result[T]:
    """Call ``fn``; an exception becomes ``Err`` (through ``map_error`` if given)."""
    try:
        return Ok(fn())
    except Exception as e:
        return Err(map_error(e) if map_error else e)


async def try_async(fn: Callable[[], Awaitable[T]], map_error: MapError | None = None) -> Result[T]:
    try:
        return Ok(await fn())
    except Exception as e:
        return Err(map_error(e) if map_error else e)


def sequence(results: Iterable[Result[T]]) -> Result[list[T]]:
    """All values, or the first ``Err`` in order."""
    values: list[T] = []
    for result in results:
        if isinstance(result, Err):
            return Err(result.error)
        values.append(result.value)
    return Ok(values)


def traverse(items: Iterable[T], fn: Callable[[T], Result[U]]) -> Result[list[U]]:
    return sequence(fn(item) for item in items)


async def traverse_async(items: Iterable[T], fn: Callable[[T], Awaitable[Result[U]]]) -> Result[list[U]]:
    """Run ``fn`` over ``items`` concurrently, then :func:`sequence` in input order."""
    return sequence(await asyncio.gather(*(fn(item) for item in items)))


def partition(results: Iterable[Result[T]]) -> tuple[list[T], list[Exception]]:
    oks: list[T] = []
    errs: list[Exception] = []
    for result in results:
        match result:
            case Ok(value):
                oks.append(value)
            case Err(error):
                errs.append(error)
    return oks, errs


__all__ = [
    "Ok",
    "Err",
    "Result",
    "match_async",
    "try_sync",
    "try_async",
    "sequence",
    "traverse",
    "traverse_async",
    "partition",
]
