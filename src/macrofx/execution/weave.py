"""Policy weaver: decorate ports and lease openers with the step's policies.

Manifesto:
    Steps never call retry, timeout or circuit helpers themselves. They
    declare ``retry``/``timeout``/``circuit`` in their metadata and receive
    ports whose methods already behave accordingly. Every port kind gets an
    explicit decorator class listing the methods it wraps; anything else on
    the port passes through untouched.

Architecture:
    ::

        Effect port method (http, kv, db, queue), innermost first:

            fn ─► circuit ─► log ─► retry ─► timeout ─► caller
                  │          │       │         │
                  │          │       │         └ race against timeout.ms,
                  │          │       │           EffectTimeoutError, no cancel
                  │          │       └ times + 1 attempts, delay between,
                  │          │         circuit-open never retried
                  │          └ "<family>.<method> ok|err" per attempt
                  └ fail fast while open, trip on failure, reset on success

        Lease opener (db, temp_dir, lock, socket), innermost first:

            opener ─► acquire-timeout ─► circuit ─► log ─► retry ─► caller
                      │
                      └ race against timeout.acquire_ms, AcquireTimeoutError,
                        a Releasable arriving late is released exactly once

        lease.tx passes through: it brackets its own transaction.

Examples:
    >>> woven = weave(step.meta, caps, WeaveOptions(get_circuit=registry))
    >>> await woven["http"].get("/users/1")

Tags:
    weave, policies, retry, timeout, circuit-breaker, logging, macrofx

Doc-Types:
    api-reference
"""

from __future__ import annotations

import random
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, ClassVar

from macrofx.core.errors import CircuitOpenError, EffectTimeoutError
from macrofx.core.logging import get_logger
from macrofx.core.meta import CircuitPolicy, Meta
from macrofx.core.ports import LeaseSet
from macrofx.execution._async import maybe_await
from macrofx.execution.circuit_breaker import (
    DEFAULT_HALF_OPEN_AFTER_MS,
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitProvider,
    CircuitState,
    Clock,
    monotonic_ms,
)
from macrofx.execution.retry import ConstantBackoff, Random, RetryContext, Sleep, sleep_ms
from macrofx.execution.timeout import race_acquire, race_timeout

logger = get_logger(__name__)

PORT_KEYS: tuple[str, ...] = ("http", "kv", "db", "queue")
ACQUIRE_OPENERS: tuple[str, ...] = ("db", "temp_dir", "lock", "socket")

AsyncFn = Callable[..., Any]


@dataclass
class WeaveOptions:
    """Injectable collaborators of the weaver.

    Attributes:
        get_circuit: Returns the shared state for a circuit name
        clock: Millisecond clock for circuit deadlines and log durations
        sleep: Async sleep (milliseconds) between retry attempts
        random: Uniform ``[0, 1)`` source for retry jitter
        half_open_after_ms: Cooldown when the circuit policy omits one
    """

    get_circuit: CircuitProvider | None = None
    clock: Clock = monotonic_ms
    sleep: Sleep = sleep_ms
    random: Random = random.random
    half_open_after_ms: float = DEFAULT_HALF_OPEN_AFTER_MS
    _registry: CircuitBreakerRegistry = field(default_factory=CircuitBreakerRegistry, init=False, repr=False)

    def circuit_state(self, policy: CircuitPolicy) -> CircuitState:
        provider = self.get_circuit or self._registry.get_or_create
        return provider(policy.name, policy)


class PolicyStack:
    """The policies of one step, ready to wrap callables."""

    def __init__(self, meta: Meta, log: Any = None, options: WeaveOptions | None = None):
        self.options = options or WeaveOptions()
        self.log = log
        self.retry = meta.retry
        timeout = meta.timeout
        self.timeout_ms = timeout.ms if timeout else None
        self.acquire_ms = timeout.acquire_ms if timeout else None
        self.breaker: CircuitBreaker | None = None
        circuit = meta.circuit
        if circuit is not None:
            half_open = circuit.half_open_after_ms
            if half_open is None:
                half_open = self.options.half_open_after_ms
            self.breaker = CircuitBreaker(
                circuit.name,
                self.options.circuit_state(circuit),
                half_open_after_ms=half_open,
                failure_threshold=circuit.failure_threshold,
                clock=self.options.clock,
            )

    @property
    def wraps_effects(self) -> bool:
        return self.breaker is not None or self.log is not None or self.retry is not None or bool(self.timeout_ms)

    @property
    def wraps_acquires(self) -> bool:
        return self.breaker is not None or self.log is not None or self.retry is not None or bool(self.acquire_ms)

    # ── layers ──────────────────────────────────────────────────

    def _with_circuit(self, call: AsyncFn) -> AsyncFn:
        breaker = self.breaker
        if breaker is None:
            return call

        async def guarded(*args: Any, **kwargs: Any) -> Any:
            try:
                breaker.check()
            except CircuitOpenError as e:
                self._warn_open(e)
                raise
            try:
                result = await maybe_await(call(*args, **kwargs))
            except Exception as e:
                breaker.record_failure(e)
                raise
            breaker.record_success()
            return result

        return guarded

    def _warn_open(self, error: CircuitOpenError) -> None:
        data = {"circuit": error.name, "remaining_ms": error.remaining_ms}
        if self.log is not None:
            self.log.warn("circuit.open", data)
        else:
            logger.warning("circuit.open", **data)

    def _with_log(self, call: AsyncFn, label: str) -> AsyncFn:
        log = self.log
        if log is None:
            return call
        clock = self.options.clock

        async def logged(*args: Any, **kwargs: Any) -> Any:
            start = clock()
            try:
                result = await maybe_await(call(*args, **kwargs))
            except Exception as e:
                log.error(f"{label} err", {"ms": clock() - start, "error": str(e)})
                raise
            log.debug(f"{label} ok", {"ms": clock() - start})
            return result

        return logged

    def _with_retry(self, call: AsyncFn) -> AsyncFn:
        policy = self.retry
        if policy is None:
            return call
        options = self.options

        async def attempt(*args: Any, **kwargs: Any) -> Any:
            return await maybe_await(call(*args, **kwargs))

        async def retried(*args: Any, **kwargs: Any) -> Any:
            ctx = RetryContext(
                ConstantBackoff.from_policy(policy, rng=options.random),
                sleep=options.sleep,
            )
            return await ctx.run_async(attempt, *args, **kwargs)

        return retried

    def _with_timeout(self, call: AsyncFn, label: str) -> AsyncFn:
        ms = self.timeout_ms
        if not ms:
            return call

        async def timed(*args: Any, **kwargs: Any) -> Any:
            return await race_timeout(maybe_await(call(*args, **kwargs)), ms, EffectTimeoutError, label)

        return timed

    def _with_acquire_timeout(self, opener: AsyncFn, label: str) -> AsyncFn:
        ms = self.acquire_ms

        async def acquire(*args: Any, **kwargs: Any) -> Any:
            return await race_acquire(maybe_await(opener(*args, **kwargs)), ms, label)

        return acquire

    # ── stacks ──────────────────────────────────────────────────

    def wrap_effect(self, fn: AsyncFn, label: str) -> AsyncFn:
        """circuit → log → retry → timeout, innermost first."""
        call = self._with_circuit(fn)
        call = self._with_log(call, label)
        call = self._with_retry(call)
        return self._with_timeout(call, label)

    def wrap_acquire(self, opener: AsyncFn, label: str) -> AsyncFn:
        """acquire-timeout → circuit → log → retry, innermost first."""
        call = self._with_acquire_timeout(opener, label)
        call = self._with_circuit(call)
        call = self._with_log(call, label)
        return self._with_retry(call)


# =============================================================================
# PORT DECORATORS
# =============================================================================


class WovenPort:
    """Base for per-kind port decorators.

    Subclasses name their family and the effect methods they wrap. Other
    attributes are read from the underlying port.
    """

    family: ClassVar[str] = "port"
    methods: ClassVar[tuple[str, ...]] = ()

    def __init__(self, port: Any, stack: PolicyStack):
        self._port = port
        for name in self.methods:
            fn = getattr(port, name, None)
            if callable(fn):
                setattr(self, name, stack.wrap_effect(fn, f"{self.family}.{name}"))

    @property
    def inner(self) -> Any:
        return self._port

    def __getattr__(self, name: str) -> Any:
        port = self.__dict__.get("_port")
        if port is None:
            raise AttributeError(name)
        return getattr(port, name)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self._port!r})"


class WovenHttp(WovenPort):
    family = "http"
    methods = ("get", "post", "put", "delete")


class WovenKv(WovenPort):
    family = "kv"
    methods = ("get", "set", "delete")


class WovenDb(WovenPort):
    family = "db"
    methods = ("query", "begin", "commit", "rollback")


class WovenQueue(WovenPort):
    family = "queue"
    methods = ("enqueue",)


def weave_http(port: Any, stack: PolicyStack) -> WovenHttp:
    return WovenHttp(port, stack)


def weave_kv(port: Any, stack: PolicyStack) -> WovenKv:
    return WovenKv(port, stack)


def weave_db(port: Any, stack: PolicyStack) -> WovenDb:
    return WovenDb(port, stack)


def weave_queue(port: Any, stack: PolicyStack) -> WovenQueue:
    return WovenQueue(port, stack)


PORT_WEAVERS: dict[str, Callable[[Any, PolicyStack], WovenPort]] = {
    "http": weave_http,
    "kv": weave_kv,
    "db": weave_db,
    "queue": weave_queue,
}


def weave_lease(openers: Mapping[str, Any], stack: PolicyStack) -> LeaseSet:
    """Wrap acquire openers; ``tx`` and unknown openers pass through."""
    woven = dict(openers)
    if stack.wraps_acquires:
        for name in ACQUIRE_OPENERS:
            opener = woven.get(name)
            if callable(opener):
                woven[name] = stack.wrap_acquire(opener, f"lease.{name}.acquire")
    return LeaseSet(woven)


def weave(meta: Mapping[str, Any], caps: Mapping[str, Any], options: WeaveOptions | None = None) -> dict[str, Any]:
    """Return a copy of ``caps`` with ports and lease openers decorated.

    Args:
        meta: Step metadata holding the policy keys
        caps: Merged capability set from resolution
        options: Injectable circuit provider, clock, sleep and random

    Returns:
        New capability dict; ``caps`` is not modified
    """
    stack = PolicyStack(Meta.of(meta), caps.get("log"), options)
    out = dict(caps)

    if stack.wraps_effects:
        for key, weave_port in PORT_WEAVERS.items():
            port = out.get(key)
            if port is not None:
                out[key] = weave_port(port, stack)

    lease = out.get("lease")
    if lease is not None:
        out["lease"] = weave_lease(lease, stack)

    return out


__all__ = [
    "PORT_KEYS",
    "ACQUIRE_OPENERS",
    "WeaveOptions",
    "PolicyStack",
    "WovenPort",
    "WovenHttp",
    "WovenKv",
    "WovenDb",
    "WovenQueue",
    "weave_http",
    "weave_kv",
    "weave_db",
    "weave_queue",
    "PORT_WEAVERS",
    "weave_lease",
    "weave",
]
