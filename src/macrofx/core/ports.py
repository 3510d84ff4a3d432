"""Port and lease contracts.

Ports are the effect interfaces a step may declare (HTTP, KV, DB, queue,
time, crypto, log). They are structural ``Protocol`` types: any host object
with the right async methods satisfies them, and the core never imports a
transport.

Leases are handles to stateful resources. An opener returns a
:class:`Releasable` wrapping a :class:`Lease`; ``bracket`` consumes it and
guarantees ``release`` runs. A :class:`Lease` is bound to a
:class:`LeaseScope` and refuses to be used after that scope is revoked,
so a handle that escapes its bracket fails loudly at its first use
instead of silently touching a released connection.

.. code-block:: text

    opener(...) ──► Releasable(value=Lease(obj, scope), release)
                          │
    bracket(acquire, use) │ use(lease)  ── lease.query(...) proxies to obj
                          │ finally: finalizer, release(), scope.revoke()
                          ▼
    lease.query(...) after bracket  ──► LeaseScopeError

Informal invariant for host code that bypasses ``Lease``: a leased value
must never be returned from, or stored beyond, the ``use`` callback of the
bracket that acquired it.
"""

from __future__ import annotations

import itertools
from collections.abc import Awaitable, Callable, Iterator, Mapping
from dataclasses import dataclass
from typing import Any, Generic, Literal, Protocol, TypeVar, runtime_checkable

from macrofx.core.errors import LeaseScopeError

T = TypeVar("T")

LogLevel = Literal["debug", "info", "warn", "error"]
LOG_LEVELS: tuple[LogLevel, ...] = ("debug", "info", "warn", "error")


# =============================================================================
# EFFECT PORTS
# =============================================================================


@runtime_checkable
class HttpPort(Protocol):
    async def get(self, path: str, **kwargs: Any) -> Any: ...

    async def post(self, path: str, body: Any = None, **kwargs: Any) -> Any: ...


@runtime_checkable
class KvPort(Protocol):
    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any, ttl_ms: float | None = None) -> None: ...

    async def delete(self, key: str) -> None: ...


@runtime_checkable
class DbPort(Protocol):
    async def query(self, sql: str, params: list[Any] | None = None) -> list[Any]: ...

    async def begin(self) -> None: ...

    async def commit(self) -> None: ...

    async def rollback(self) -> None: ...


@runtime_checkable
class QueuePort(Protocol):
    async def enqueue(self, message: Any) -> None: ...


@runtime_checkable
class TimePort(Protocol):
    def now(self) -> float: ...

    async def sleep(self, ms: float) -> None: ...


@runtime_checkable
class CryptoPort(Protocol):
    def uuid(self) -> str: ...

    async def hash(self, value: str, algo: Literal["sha256", "none"] = "sha256") -> str: ...


@runtime_checkable
class LogPort(Protocol):
    level: LogLevel

    def debug(self, message: str, data: Any = None) -> None: ...

    def info(self, message: str, data: Any = None) -> None: ...

    def warn(self, message: str, data: Any = None) -> None: ...

    def error(self, message: str, data: Any = None) -> None: ...


# =============================================================================
# LEASES
# =============================================================================

_scope_ids = itertools.count(1)


class LeaseScope:
    """Validity window for the leases issued under it."""

    __slots__ = ("id", "label", "_active")

    def __init__(self, label: str = "lease"):
        self.id = next(_scope_ids)
        self.label = label
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def revoke(self) -> None:
        self._active = False

    def check(self) -> None:
        if not self._active:
            raise LeaseScopeError(
                f"Lease '{self.label}' (scope {self.id}) used after its bracket released it"
            )

    def __repr__(self) -> str:
        state = "active" if self._active else "revoked"
        return f"LeaseScope({self.label!r}, id={self.id}, {state})"


class Lease(Generic[T]):
    """Opaque handle proxying attribute access to a leased resource.

    Attribute reads go to the wrapped object while the scope is active.
    ``unwrap()`` returns the raw object for host code that needs it, with
    the same scope check.
    """

    __slots__ = ("_lease_value", "_lease_scope")

    def __init__(self, value: T, scope: LeaseScope):
        object.__setattr__(self, "_lease_value", value)
        object.__setattr__(self, "_lease_scope", scope)

    @property
    def scope(self) -> LeaseScope:
        return self._lease_scope

    def unwrap(self) -> T:
        self._lease_scope.check()
        return self._lease_value

    def __getattr__(self, name: str) -> Any:
        scope = object.__getattribute__(self, "_lease_scope")
        scope.check()
        return getattr(object.__getattribute__(self, "_lease_value"), name)

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError("Lease handles are read-only")

    def __repr__(self) -> str:
        return f"Lease({self._lease_value!r}, {self._lease_scope!r})"


def brand_lease(value: T, scope: LeaseScope | None = None, label: str = "lease") -> Lease[T]:
    """Wrap ``value`` in a :class:`Lease`; an existing Lease is returned as-is."""
    if isinstance(value, Lease):
        return value
    return Lease(value, scope or LeaseScope(label))


@dataclass(frozen=True)
class Releasable(Generic[T]):
    """Transient pair returned by an acquire function and consumed by bracket."""

    value: T
    release: Callable[[], Awaitable[None] | None]


@dataclass(frozen=True)
class LockHandle:
    key: str
    mode: Literal["exclusive", "shared"] = "exclusive"


@dataclass(frozen=True)
class TempDir:
    path: str


class LeaseSet(Mapping[str, Any]):
    """Merged lease openers exposed as ``ctx.lease``.

    Attribute access mirrors mapping access: ``ctx.lease.temp_dir("job-")``.
    """

    __slots__ = ("_openers",)

    def __init__(self, openers: Mapping[str, Any] | None = None):
        object.__setattr__(self, "_openers", dict(openers or {}))

    def __getitem__(self, key: str) -> Any:
        return self._openers[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._openers)

    def __len__(self) -> int:
        return len(self._openers)

    def __getattr__(self, name: str) -> Any:
        try:
            return self._openers[name]
        except KeyError:
            raise AttributeError(f"No lease opener named {name!r}") from None

    def __repr__(self) -> str:
        return f"LeaseSet({sorted(self._openers)!r})"


__all__ = [
    "LogLevel",
    "LOG_LEVELS",
    "HttpPort",
    "KvPort",
    "DbPort",
    "QueuePort",
    "TimePort",
    "CryptoPort",
    "LogPort",
    "LeaseScope",
    "Lease",
    "brand_lease",
    "Releasable",
    "LockHandle",
    "TempDir",
    "LeaseSet",
]
