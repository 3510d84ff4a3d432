"""The execution context handed to ``step.run`` and macro hooks.

WHY
───
A step sees one object: the caller's base values, the woven capabilities
its metadata declared, and its own metadata. Bookkeeping the executor and
helpers need (the short-circuit control, memo store, spans, the owning
engine) lives on the context too, but outside its mapping, so
``dict(ctx)`` is exactly ``base ⊕ caps ⊕ {meta}``.

ARCHITECTURE
────────────
::

    ExecutionContext  (MutableMapping, attribute access)
      ├── mapping     base keys, capability keys, "meta"
      ├── control     MacroControl   short-circuit side channel
      ├── engine      owning Engine  (read-only)
      └── helpers     span(name, fn)  memo(key, fn)  child(meta, step)

BEST PRACTICES
──────────────
- One context per execution; never share it between concurrent runs.
- ``ctx.child`` runs through the same engine, so macros, environment and
  circuit state are shared with the parent.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable, Iterator, Mapping, MutableMapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from macrofx.core.errors import EngineRequiredError
from macrofx.core.meta import Meta, Step
from macrofx.execution._async import maybe_await
from macrofx.execution.macros import MacroControl

if TYPE_CHECKING:
    from macrofx.execution.executor import Engine


def _now_ms() -> float:
    return time.perf_counter() * 1000.0


@dataclass
class Span:
    """A timed region recorded by ``ctx.span``."""

    name: str
    start: float
    end: float | None = None
    error: BaseException | None = None
    attributes: dict[str, Any] = field(default_factory=dict)

    @property
    def duration_ms(self) -> float | None:
        if self.end is None:
            return None
        return self.end - self.start


class ExecutionContext(MutableMapping[str, Any]):
    """``base ⊕ caps ⊕ {meta}`` with attribute access and helper methods."""

    _RESERVED = frozenset({"_values", "control", "_engine", "_memo", "_spans"})

    def __init__(
        self,
        values: Mapping[str, Any],
        meta: Meta,
        engine: Engine | None = None,
        control: MacroControl | None = None,
    ):
        object.__setattr__(self, "_values", {**values, "meta": meta})
        object.__setattr__(self, "control", control or MacroControl())
        object.__setattr__(self, "_engine", engine)
        object.__setattr__(self, "_memo", {})
        object.__setattr__(self, "_spans", [])

    # ── mapping ─────────────────────────────────────────────────

    def __getitem__(self, key: str) -> Any:
        return self._values[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self._values[key] = value

    def __delitem__(self, key: str) -> None:
        del self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __getattr__(self, name: str) -> Any:
        values = self.__dict__.get("_values")
        if values is not None and name in values:
            return values[name]
        raise AttributeError(f"context has no capability or value named {name!r}")

    def __setattr__(self, name: str, value: Any) -> None:
        if name in self._RESERVED:
            raise AttributeError(f"{name!r} is read-only")
        self._values[name] = value

    def __repr__(self) -> str:
        return f"ExecutionContext({sorted(self._values)!r})"

    @property
    def meta(self) -> Meta:
        return self._values["meta"]

    @property
    def engine(self) -> Engine | None:
        return self._engine

    # ── helpers ─────────────────────────────────────────────────

    def _log(self) -> Any:
        return self._values.get("log")

    async def span(
        self,
        name: str,
        fn: Callable[[ExecutionContext], Awaitable[Any] | Any],
        attributes: Mapping[str, Any] | None = None,
    ) -> Any:
        """Run ``fn(ctx)`` as a named, timed span."""
        record = Span(name=name, start=_now_ms(), attributes=dict(attributes or {}))
        self._spans.append(record)
        log = self._log()
        if log is not None:
            log.debug("span.start", {"name": name, "attributes": record.attributes})
        try:
            result = await maybe_await(fn(self))
        except Exception as e:
            record.end = _now_ms()
            record.error = e
            if log is not None:
                log.error(
                    "span.error",
                    {"name": name, "duration_ms": round(record.duration_ms, 2), "error": str(e)},
                )
            raise
        record.end = _now_ms()
        if log is not None:
            log.debug("span.end", {"name": name, "duration_ms": round(record.duration_ms, 2)})
        return result

    async def memo(self, key: str, fn: Callable[[], Awaitable[Any] | Any]) -> Any:
        """Compute ``fn()`` once per execution for ``key``."""
        log = self._log()
        if key in self._memo:
            if log is not None:
                log.debug("memo.hit", {"key": key})
            return self._memo[key]
        if log is not None:
            log.debug("memo.miss", {"key": key})
        result = await maybe_await(fn())
        self._memo[key] = result
        return result

    async def child(
        self,
        additional_meta: Mapping[str, Any],
        step: Step,
        base: Mapping[str, Any] | None = None,
        validate: bool | None = None,
    ) -> Any:
        """Run ``step`` with extra metadata through the owning engine.

        The child's base defaults to this context's values.
        """
        if self._engine is None:
            raise EngineRequiredError("child")
        child_step = step.with_meta(additional_meta)
        return await self._engine.run(child_step, self if base is None else base, validate=validate)


def get_spans(ctx: ExecutionContext) -> list[Span]:
    return list(ctx._spans)


def clear_memo(ctx: ExecutionContext, key: str | None = None) -> None:
    if key is None:
        ctx._memo.clear()
    else:
        ctx._memo.pop(key, None)


def get_engine(ctx: Any) -> Engine | None:
    """The engine running ``ctx``, or None outside an engine."""
    return ctx.engine if isinstance(ctx, ExecutionContext) else None


__all__ = [
    "Span",
    "ExecutionContext",
    "get_spans",
    "clear_memo",
    "get_engine",
]
