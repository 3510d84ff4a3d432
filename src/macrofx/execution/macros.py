"""Macros: plugins that turn metadata into capabilities.

A :class:`Macro` pairs a ``match`` predicate over a step's metadata with a
``resolve`` function that builds part of the capability set from the host
environment, plus optional lifecycle hooks the executor calls around
``step.run``.

Resolution runs every matched ``resolve`` concurrently and merges the
partial results in macro registration order, so the outcome never depends
on which resolve finished first:

.. code-block:: text

    caps = {"bracket": bracket}
    for partial in results (registration order):
        partial["lease"]  → merged key-by-key into caps["lease"]  (later wins)
        other keys        → assigned onto caps                    (later wins)

A macro may declare ``provides``, the keys it is allowed to contribute
(``"http"``, ``"lease.temp_dir"``). Contributing anything else raises
:class:`UndeclaredCapabilityError`. Macros without ``provides`` are not
checked.

Hooks signal a final result through :class:`MacroControl`, an explicit
side channel owned by the execution context:

    ctx.control.set_result(cached)   # before: skip run and after
    ctx.control.skipped              # after: did someone short-circuit?
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from macrofx.core.errors import UndeclaredCapabilityError
from macrofx.core.meta import Meta
from macrofx.core.ports import LeaseSet
from macrofx.execution._async import maybe_await
from macrofx.execution.bracket import bracket

Resolve = Callable[[Meta, Any], Awaitable[Mapping[str, Any] | None] | Mapping[str, Any] | None]
BeforeHook = Callable[[Any], Awaitable[None] | None]
AfterHook = Callable[[Any, Any], Awaitable[Any] | Any]
ErrorHook = Callable[[BaseException, Any], Awaitable[Any] | Any]

_UNSET = object()


@dataclass(frozen=True)
class Macro:
    """A capability plugin.

    Attributes:
        key: Name used in logs and diagnostics; also the metadata key the
            validator treats as "handled"
        match: Pure predicate over the step's metadata
        resolve: Builds a partial capability dict from metadata and env
        before: Hook run before ``step.run``, in registration order
        after: Hook transforming the result, in registration order
        on_error: Hook that may recover from a failure
        provides: Keys this macro may contribute; ``None`` disables the check
    """

    key: str
    match: Callable[[Meta], bool]
    resolve: Resolve
    before: BeforeHook | None = None
    after: AfterHook | None = None
    on_error: ErrorHook | None = None
    provides: frozenset[str] | None = None

    def __post_init__(self) -> None:
        if self.provides is not None and not isinstance(self.provides, frozenset):
            object.__setattr__(self, "provides", frozenset(self.provides))


def when_key(key: str) -> Callable[[Meta], bool]:
    """Match predicate: the metadata declares ``key``."""

    def match(meta: Meta) -> bool:
        return key in meta

    return match


class MacroControl:
    """Short-circuit side channel for one execution."""

    __slots__ = ("_value",)

    def __init__(self) -> None:
        self._value: Any = _UNSET

    def set_result(self, value: Any) -> None:
        self._value = value

    @property
    def skipped(self) -> bool:
        return self._value is not _UNSET

    @property
    def value(self) -> Any:
        if self._value is _UNSET:
            raise LookupError("no macro result has been set")
        return self._value

    def clear(self) -> None:
        self._value = _UNSET

    def __repr__(self) -> str:
        return f"MacroControl(skipped={self.skipped})"


def set_macro_result(ctx: Any, value: Any) -> None:
    """Set the short-circuit result on ``ctx.control``."""
    ctx.control.set_result(value)


def env_factory(env: Any, name: str) -> Callable[..., Any] | None:
    """Look up factory ``name`` on an environment object or mapping."""
    if env is None:
        return None
    factory = env.get(name) if isinstance(env, Mapping) else getattr(env, name, None)
    return factory if callable(factory) else None


def match_macros(meta: Meta, macros: Iterable[Macro]) -> list[Macro]:
    return [macro for macro in macros if macro.match(meta)]


def _check_provides(macro: Macro, partial: Mapping[str, Any]) -> None:
    if macro.provides is None:
        return
    contributed = [key for key in partial if key != "lease"]
    lease = partial.get("lease")
    if lease:
        contributed.extend(f"lease.{name}" for name in lease)
    undeclared = [key for key in contributed if key not in macro.provides]
    if undeclared:
        raise UndeclaredCapabilityError(macro.key, undeclared)


def merge_partials(partials: Sequence[Mapping[str, Any] | None]) -> dict[str, Any]:
    """Merge resolved partials in order; ``lease`` merges per opener."""
    caps: dict[str, Any] = {"bracket": bracket}
    lease: dict[str, Any] | None = None
    for partial in partials:
        if not partial:
            continue
        for key, value in partial.items():
            if key == "lease":
                if value:
                    lease = {**(lease or {}), **value}
            else:
                caps[key] = value
    if lease is not None:
        caps["lease"] = LeaseSet(lease)
    return caps


async def _resolve_one(macro: Macro, meta: Meta, env: Any) -> Mapping[str, Any] | None:
    return await maybe_await(macro.resolve(meta, env))


async def resolve_capabilities(meta: Meta, macros: Sequence[Macro], env: Any) -> dict[str, Any]:
    """Resolve matched macros concurrently and merge deterministically.

    Raises:
        UndeclaredCapabilityError: A macro contributed a key outside ``provides``
        Whatever a macro's ``resolve`` raises, unchanged
    """
    partials = await asyncio.gather(*(_resolve_one(macro, meta, env) for macro in macros))
    for macro, partial in zip(macros, partials):
        if partial:
            _check_provides(macro, partial)
    return merge_partials(partials)


__all__ = [
    "Macro",
    "when_key",
    "MacroControl",
    "set_macro_result",
    "env_factory",
    "match_macros",
    "merge_partials",
    "resolve_capabilities",
]
