"""Step metadata: the single declarative source of capability and policy needs.

WHY
───
A step states what it needs (``http``, ``kv``, ``db``, a temp dir, a lock)
and how its effects should behave (``retry``, ``timeout``, ``circuit``,
``idempotency``) in one read-only mapping. The executor selects macros from
the capability keys and the weaver reads the policy keys; nothing else
decides what a step receives.

ARCHITECTURE
────────────
::

    Meta (read-only Mapping)
      ├── capability keys  http kv db queue time crypto log fs lock socket
      │     presence == "needed", value == capability config
      └── policy keys      retry timeout idempotency circuit
            parsed lazily into frozen pydantic models
              RetryPolicy(times, delay_ms, jitter)
              TimeoutPolicy(ms, acquire_ms)
              IdempotencyPolicy(key, ttl_ms)
              CircuitPolicy(name, half_open_after_ms, failure_threshold)

    MetaBuilder ── fluent construction ──► Meta
    Step(name, meta, run) ── what Engine.run executes

Policy fields accept snake_case (``delay_ms``) and camelCase (``delayMs``).

Example::

    from macrofx.core.meta import Meta, define_step

    @define_step("load_user", kv={"namespace": "users"}, retry={"times": 2, "delay_ms": 50})
    async def load_user(ctx):
        return await ctx.kv.get(ctx.user_id)

    load_user.meta.retry.times   # 2
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterator, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Literal

import pydantic
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from macrofx.core.errors import InvalidPolicyError

CAPABILITY_KEYS: frozenset[str] = frozenset(
    {"http", "kv", "db", "queue", "time", "crypto", "log", "fs", "lock", "socket"}
)
POLICY_KEYS: frozenset[str] = frozenset({"retry", "timeout", "idempotency", "circuit"})


class _Policy(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )


class RetryPolicy(_Policy):
    """Attempt a call up to ``times + 1`` times, waiting ``delay_ms`` between."""

    times: int = Field(ge=0)
    delay_ms: float = Field(default=0.0, ge=0)
    jitter: bool = False


class TimeoutPolicy(_Policy):
    """``ms`` bounds each port call; ``acquire_ms`` bounds each lease acquire."""

    ms: float | None = Field(default=None, ge=0)
    acquire_ms: float | None = Field(default=None, ge=0)


class IdempotencyPolicy(_Policy):
    key: str | None = None
    ttl_ms: float | None = Field(default=None, ge=0)


class CircuitPolicy(_Policy):
    """Fail fast for ``half_open_after_ms`` once ``failure_threshold`` calls fail."""

    name: str = "default"
    half_open_after_ms: float | None = Field(default=None, ge=0)
    failure_threshold: int = Field(default=1, ge=1)


_POLICY_MODELS: dict[str, type[_Policy]] = {
    "retry": RetryPolicy,
    "timeout": TimeoutPolicy,
    "idempotency": IdempotencyPolicy,
    "circuit": CircuitPolicy,
}


def parse_policy(name: str, value: Any) -> Any:
    """Parse one policy value into its model, raising InvalidPolicyError."""
    model = _POLICY_MODELS[name]
    if isinstance(value, model):
        return value
    try:
        return model.model_validate(value)
    except pydantic.ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first["loc"]) or name
        raise InvalidPolicyError(name, value, f"{location}: {first['msg']}") from e


class Meta(Mapping[str, Any]):
    """Read-only step metadata.

    Only the top level is frozen; capability config values are passed to
    macros as given.
    """

    __slots__ = ("_data", "_policies")

    def __init__(self, data: Mapping[str, Any] | None = None, /, **kwargs: Any):
        merged = dict(data or {})
        merged.update(kwargs)
        self._data = MappingProxyType(merged)
        self._policies: dict[str, Any] = {}

    @classmethod
    def of(cls, value: Mapping[str, Any] | Meta | None) -> Meta:
        if isinstance(value, Meta):
            return value
        return cls(value or {})

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"Meta({dict(self._data)!r})"

    __hash__ = None  # type: ignore[assignment]

    @property
    def capabilities(self) -> frozenset[str]:
        """Declared non-policy keys."""
        return frozenset(key for key in self._data if key not in POLICY_KEYS)

    def _policy(self, name: str) -> Any:
        if name not in self._data or self._data[name] is None:
            return None
        if name not in self._policies:
            self._policies[name] = parse_policy(name, self._data[name])
        return self._policies[name]

    @property
    def retry(self) -> RetryPolicy | None:
        return self._policy("retry")

    @property
    def timeout(self) -> TimeoutPolicy | None:
        return self._policy("timeout")

    @property
    def idempotency(self) -> IdempotencyPolicy | None:
        return self._policy("idempotency")

    @property
    def circuit(self) -> CircuitPolicy | None:
        return self._policy("circuit")

    def validate_policies(self) -> None:
        """Parse every declared policy, raising on the first invalid one."""
        for name in POLICY_KEYS:
            self._policy(name)

    def merge(self, other: Mapping[str, Any]) -> Meta:
        """Shallow merge; keys of ``other`` win."""
        return Meta({**self._data, **other})


def merge_meta(*metas: Mapping[str, Any]) -> Meta:
    """Shallow-merge several metadata mappings left to right."""
    merged: dict[str, Any] = {}
    for m in metas:
        merged.update(m)
    return Meta(merged)


def extend_meta(base: Mapping[str, Any], **extension: Any) -> Meta:
    return Meta({**base, **extension})


class MetaBuilder:
    """Fluent construction of :class:`Meta`.

    Example:
        >>> m = meta().with_db("ro").with_kv("users").with_retry(3, 100).build()
        >>> sorted(m)
        ['db', 'kv', 'retry']
    """

    def __init__(self, initial: Mapping[str, Any] | None = None):
        self._data: dict[str, Any] = dict(initial or {})

    def _with(self, key: str, value: dict[str, Any]) -> MetaBuilder:
        self._data[key] = {k: v for k, v in value.items() if v is not None}
        return self

    def with_http(self, base_url: str | None = None, auth: Literal["bearer", "none"] | None = None) -> MetaBuilder:
        return self._with("http", {"base_url": base_url, "auth": auth})

    def with_kv(self, namespace: str) -> MetaBuilder:
        return self._with("kv", {"namespace": namespace})

    def with_db(self, role: Literal["ro", "rw"], tx: Literal["required", "new", "none"] | None = None) -> MetaBuilder:
        return self._with("db", {"role": role, "tx": tx})

    def with_queue(self, name: str) -> MetaBuilder:
        return self._with("queue", {"name": name})

    def with_time(self) -> MetaBuilder:
        return self._with("time", {})

    def with_crypto(self, uuid: bool = True, hash: Literal["sha256", "none"] = "sha256") -> MetaBuilder:
        return self._with("crypto", {"uuid": uuid, "hash": hash})

    def with_log(self, level: Literal["debug", "info", "warn", "error"] = "info") -> MetaBuilder:
        return self._with("log", {"level": level})

    def with_temp_dir(self, work_dir_prefix: str | None = None) -> MetaBuilder:
        return self._with("fs", {"temp_dir": True, "work_dir_prefix": work_dir_prefix})

    def with_lock(
        self,
        key: str | None = None,
        mode: Literal["exclusive", "shared"] = "exclusive",
        ttl_ms: float | None = None,
    ) -> MetaBuilder:
        return self._with("lock", {"key": key, "mode": mode, "ttl_ms": ttl_ms})

    def with_socket(self, host: str | None = None, port: int | None = None) -> MetaBuilder:
        return self._with("socket", {"host": host, "port": port})

    def with_retry(self, times: int, delay_ms: float = 0, jitter: bool = False) -> MetaBuilder:
        return self._with("retry", {"times": times, "delay_ms": delay_ms, "jitter": jitter})

    def with_timeout(self, ms: float | None = None, acquire_ms: float | None = None) -> MetaBuilder:
        return self._with("timeout", {"ms": ms, "acquire_ms": acquire_ms})

    def with_idempotency(self, key: str, ttl_ms: float | None = None) -> MetaBuilder:
        return self._with("idempotency", {"key": key, "ttl_ms": ttl_ms})

    def with_circuit(
        self,
        name: str,
        half_open_after_ms: float | None = None,
        failure_threshold: int | None = None,
    ) -> MetaBuilder:
        return self._with(
            "circuit",
            {"name": name, "half_open_after_ms": half_open_after_ms, "failure_threshold": failure_threshold},
        )

    def merge(self, other: Mapping[str, Any]) -> MetaBuilder:
        self._data.update(other)
        return self

    def build(self) -> Meta:
        meta_ = Meta(self._data)
        meta_.validate_policies()
        return meta_


def meta(initial: Mapping[str, Any] | None = None) -> MetaBuilder:
    return MetaBuilder(initial)


# =============================================================================
# STEPS
# =============================================================================

RunFn = Callable[[Any], Awaitable[Any] | Any]


@dataclass(frozen=True)
class Step:
    """A named unit of work with its declared metadata.

    ``run`` receives the :class:`~macrofx.execution.context.ExecutionContext`
    and may be sync or async. It must only use capabilities its own ``meta``
    declares.
    """

    name: str
    meta: Meta
    run: RunFn

    def __post_init__(self) -> None:
        if isinstance(self.meta, Mapping) and not isinstance(self.meta, Meta):
            object.__setattr__(self, "meta", Meta(self.meta))

    def with_meta(self, extra: Mapping[str, Any]) -> Step:
        return Step(name=self.name, meta=self.meta.merge(extra), run=self.run)


def define_step(name: str, meta: Mapping[str, Any] | None = None, /, **meta_kwargs: Any) -> Callable[[RunFn], Step]:
    """Decorator turning a function into a :class:`Step`."""

    def decorator(fn: RunFn) -> Step:
        return Step(name=name, meta=Meta(meta or {}, **meta_kwargs), run=fn)

    return decorator


__all__ = [
    "CAPABILITY_KEYS",
    "POLICY_KEYS",
    "RetryPolicy",
    "TimeoutPolicy",
    "IdempotencyPolicy",
    "CircuitPolicy",
    "parse_policy",
    "Meta",
    "merge_meta",
    "extend_meta",
    "MetaBuilder",
    "meta",
    "Step",
    "define_step",
]
