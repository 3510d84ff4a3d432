"""Standard capability macros and the idempotency macro.

Each capability macro matches one metadata key and asks the environment for
the matching port or lease opener:

    key      env factory            contributes
    ───────  ─────────────────────  ──────────────────────────
    http     make_http(base_url)    http
    kv       make_kv(namespace)     kv
    db       make_db(config)        db, lease.db, lease.tx
    queue    make_queue(name)       queue
    time     make_time()            time
    crypto   make_crypto()          crypto
    log      make_logger(level)     log
    fs       make_temp_dir() | fs   lease.temp_dir
    lock     make_lock()            lease.lock
    socket   make_socket()          lease.socket

The idempotency macro contributes nothing; it gates ``run`` with its
before/after hooks through ``ctx.control``. A ``None`` result is stored as
:data:`CACHED_NONE` so it still counts as a hit.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from macrofx.core.errors import ConfigError
from macrofx.core.logging import get_logger
from macrofx.core.meta import Meta
from macrofx.core.validation import wants_temp_dir
from macrofx.execution.macros import Macro, env_factory, when_key
from macrofx.resources.fs import temp_dir_opener

logger = get_logger(__name__)

DEFAULT_IDEMPOTENCY_TTL_MS = 300_000.0
IDEMPOTENCY_PREFIX = "idem:"
CACHED_NONE = "macrofx:idempotency:none"


def _config(meta: Meta, key: str) -> Mapping[str, Any]:
    value = meta.get(key)
    return value if isinstance(value, Mapping) else {}


def _option(config: Mapping[str, Any], name: str, camel: str, default: Any = None) -> Any:
    if name in config:
        return config[name]
    return config.get(camel, default)


def _factory(env: Any, name: str) -> Any:
    factory = env_factory(env, name)
    if factory is None:
        raise ConfigError(f"Environment does not provide '{name}'")
    return factory


# =============================================================================
# CAPABILITY MACROS
# =============================================================================


def _resolve_http(meta: Meta, env: Any) -> dict[str, Any]:
    config = _config(meta, "http")
    base_url = _option(config, "base_url", "baseUrl", "")
    return {"http": _factory(env, "make_http")(base_url, config)}


def _resolve_kv(meta: Meta, env: Any) -> dict[str, Any]:
    namespace = _config(meta, "kv").get("namespace", "default")
    return {"kv": _factory(env, "make_kv")(namespace)}


def _resolve_db(meta: Meta, env: Any) -> Any:
    return _factory(env, "make_db")(_config(meta, "db"))


def _resolve_queue(meta: Meta, env: Any) -> dict[str, Any]:
    name = _config(meta, "queue").get("name", "default")
    return {"queue": _factory(env, "make_queue")(name)}


def _resolve_time(meta: Meta, env: Any) -> dict[str, Any]:
    return {"time": _factory(env, "make_time")()}


def _resolve_crypto(meta: Meta, env: Any) -> dict[str, Any]:
    return {"crypto": _factory(env, "make_crypto")()}


def _resolve_log(meta: Meta, env: Any) -> dict[str, Any]:
    level = _config(meta, "log").get("level", "info")
    return {"log": _factory(env, "make_logger")(level)}


def _wants_temp_dir(meta: Meta) -> bool:
    return wants_temp_dir(meta.get("fs"))


def _resolve_fs(meta: Meta, env: Any) -> dict[str, Any]:
    make_temp_dir = env_factory(env, "make_temp_dir")
    if make_temp_dir is not None:
        return {"lease": {"temp_dir": make_temp_dir()}}
    host = env.get("fs") if isinstance(env, Mapping) else getattr(env, "fs", None)
    if host is None:
        raise ConfigError("Environment does not provide 'fs'")
    return {"lease": {"temp_dir": temp_dir_opener(host)}}


def _resolve_lock(meta: Meta, env: Any) -> dict[str, Any]:
    return {"lease": {"lock": _factory(env, "make_lock")()}}


def _resolve_socket(meta: Meta, env: Any) -> dict[str, Any]:
    return {"lease": {"socket": _factory(env, "make_socket")()}}


http_macro = Macro("http", when_key("http"), _resolve_http, provides=frozenset({"http"}))
kv_macro = Macro("kv", when_key("kv"), _resolve_kv, provides=frozenset({"kv"}))
db_macro = Macro("db", when_key("db"), _resolve_db, provides=frozenset({"db", "lease.db", "lease.tx"}))
queue_macro = Macro("queue", when_key("queue"), _resolve_queue, provides=frozenset({"queue"}))
time_macro = Macro("time", when_key("time"), _resolve_time, provides=frozenset({"time"}))
crypto_macro = Macro("crypto", when_key("crypto"), _resolve_crypto, provides=frozenset({"crypto"}))
log_macro = Macro("log", when_key("log"), _resolve_log, provides=frozenset({"log"}))
fs_macro = Macro("fs", _wants_temp_dir, _resolve_fs, provides=frozenset({"lease.temp_dir"}))
lock_macro = Macro("lock", when_key("lock"), _resolve_lock, provides=frozenset({"lease.lock"}))
socket_macro = Macro("socket", when_key("socket"), _resolve_socket, provides=frozenset({"lease.socket"}))


# =============================================================================
# IDEMPOTENCY
# =============================================================================


def idempotency_key(ctx: Any) -> str | None:
    """Policy key, else the caller-supplied ``idempotency_key`` base value."""
    policy = ctx.meta.idempotency
    if policy is not None and policy.key:
        return policy.key
    return ctx.get("idempotency_key")


def _ttl_ms(ctx: Any) -> float:
    policy = ctx.meta.idempotency
    if policy is not None and policy.ttl_ms is not None:
        return policy.ttl_ms
    engine = getattr(ctx, "engine", None)
    if engine is not None:
        return engine.settings.idempotency_ttl_ms
    return DEFAULT_IDEMPOTENCY_TTL_MS


async def _idempotency_before(ctx: Any) -> None:
    key = idempotency_key(ctx)
    kv = ctx.get("kv")
    if not key or kv is None:
        return
    cached = await kv.get(f"{IDEMPOTENCY_PREFIX}{key}")
    if cached is None:
        return
    if cached == CACHED_NONE:
        cached = None
    log = ctx.get("log")
    if log is not None:
        log.info("idempotency.hit", {"key": key})
    else:
        logger.info("idempotency.hit", key=key)
    ctx.control.set_result(cached)


async def _idempotency_after(value: Any, ctx: Any) -> Any:
    key = idempotency_key(ctx)
    kv = ctx.get("kv")
    if not key or kv is None:
        return value
    if ctx.control.skipped:
        return ctx.control.value
    stored = CACHED_NONE if value is None else value
    await kv.set(f"{IDEMPOTENCY_PREFIX}{key}", stored, _ttl_ms(ctx))
    return value


def _wants_idempotency(meta: Meta) -> bool:
    return meta.get("idempotency") is not None


idempotency_macro = Macro(
    "idempotency",
    _wants_idempotency,
    lambda meta, env: {},
    before=_idempotency_before,
    after=_idempotency_after,
    provides=frozenset(),
)


STD_MACROS: tuple[Macro, ...] = (
    http_macro,
    kv_macro,
    db_macro,
    queue_macro,
    time_macro,
    crypto_macro,
    log_macro,
    fs_macro,
    lock_macro,
    socket_macro,
    idempotency_macro,
)


def std_macros() -> list[Macro]:
    """A fresh list of the standard macros, in hook order."""
    return list(STD_MACROS)


__all__ = [
    "DEFAULT_IDEMPOTENCY_TTL_MS",
    "IDEMPOTENCY_PREFIX",
    "CACHED_NONE",
    "http_macro",
    "kv_macro",
    "db_macro",
    "queue_macro",
    "time_macro",
    "crypto_macro",
    "log_macro",
    "fs_macro",
    "lock_macro",
    "socket_macro",
    "idempotency_key",
    "idempotency_macro",
    "STD_MACROS",
    "std_macros",
]
