"""StdEnv: reference host bindings for the standard macros.

WHY
───
The core never imports a transport. Macros ask an *environment* for ports
and lease openers through factory methods (``make_http``, ``make_kv``, ...).
``StdEnv`` is a complete, dependency-light environment that is good enough
for local development, examples and tests: real HTTP through httpx, real
temp directories, real sockets, and in-process stand-ins for KV, DB, queue
and locks.

ARCHITECTURE
────────────
::

    StdEnv(settings)
      ├── make_http(base_url, config)  → HttpxPort          (httpx.AsyncClient)
      ├── make_kv(namespace)           → MemoryKv           (TTL, shared store)
      ├── make_db(config)              → {"db": ..., "lease": {"db", "tx"}}
      │                                   ResourcePool of MemoryConnection
      ├── make_queue(name)             → MemoryQueue
      ├── make_time()                  → SystemTime          (ms)
      ├── make_crypto()                → HashlibCrypto       (uuid4, sha256)
      ├── make_logger(level)           → StructlogPort       (LogPort)
      ├── fs                           → LocalFs             (tempfile, shutil)
      ├── make_lock()                  → lock opener         (keyed asyncio.Lock)
      ├── make_socket()                → socket opener       (asyncio streams)
      └── make_circuit(name, policy)   → CircuitState        (engine-independent)

BEST PRACTICES
──────────────
- One ``StdEnv`` per process (or per test): KV contents, pools, locks and
  circuit states live on the instance.
- Pass ``http_transport=httpx.MockTransport(handler)`` in tests.
"""

from __future__ import annotations

import asyncio
import hashlib
import itertools
import os
import shutil
import tempfile
import time
import uuid
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import httpx

from macrofx.core.logging import get_logger
from macrofx.core.meta import CircuitPolicy
from macrofx.core.ports import LOG_LEVELS, Lease, LeaseScope, LockHandle, LogLevel, Releasable
from macrofx.core.settings import MacrofxSettings, get_settings
from macrofx.execution.bracket import bracket
from macrofx.execution.circuit_breaker import CircuitBreakerRegistry, CircuitState
from macrofx.resources.fs import temp_dir_opener
from macrofx.resources.pool import ResourcePool

logger = get_logger(__name__)


# =============================================================================
# EFFECT PORTS
# =============================================================================


class HttpxPort:
    """HTTP port over ``httpx.AsyncClient``; methods return ``httpx.Response``."""

    def __init__(
        self,
        base_url: str = "",
        auth: str | None = None,
        token: str | None = None,
        timeout_s: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url or "http://localhost"
        self.auth = auth
        self._token = token
        self._timeout = timeout_s
        self._transport = transport

    def _headers(self, extra: Mapping[str, str] | None) -> dict[str, str]:
        headers = dict(extra or {})
        if self.auth == "bearer" and self._token:
            headers.setdefault("authorization", f"Bearer {self._token}")
        return headers

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        headers = self._headers(kwargs.pop("headers", None))
        async with httpx.AsyncClient(
            base_url=self.base_url, timeout=self._timeout, transport=self._transport
        ) as client:
            return await client.request(method, path, headers=headers, **kwargs)

    async def get(self, path: str, **kwargs: Any) -> httpx.Response:
        return await self._request("GET", path, **kwargs)

    async def post(self, path: str, body: Any = None, **kwargs: Any) -> httpx.Response:
        if body is not None:
            kwargs["json"] = body
        return await self._request("POST", path, **kwargs)

    async def put(self, path: str, body: Any = None, **kwargs: Any) -> httpx.Response:
        if body is not None:
            kwargs["json"] = body
        return await self._request("PUT", path, **kwargs)

    async def delete(self, path: str, **kwargs: Any) -> httpx.Response:
        return await self._request("DELETE", path, **kwargs)


@dataclass
class _KvRecord:
    value: Any
    expires_at: float | None = None


class MemoryKv:
    """Namespaced view over a shared in-memory store with per-key TTL."""

    def __init__(
        self,
        namespace: str,
        store: dict[str, _KvRecord] | None = None,
        clock: Callable[[], float] = lambda: time.monotonic() * 1000.0,
    ):
        self.namespace = namespace
        self._store = store if store is not None else {}
        self._clock = clock

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def get(self, key: str) -> Any | None:
        record = self._store.get(self._key(key))
        if record is None:
            return None
        if record.expires_at is not None and record.expires_at <= self._clock():
            del self._store[self._key(key)]
            return None
        return record.value

    async def set(self, key: str, value: Any, ttl_ms: float | None = None) -> None:
        expires_at = self._clock() + ttl_ms if ttl_ms else None
        self._store[self._key(key)] = _KvRecord(value, expires_at)

    async def delete(self, key: str) -> None:
        self._store.pop(self._key(key), None)


class MemoryConnection:
    """In-memory DB connection answering canned queries."""

    def __init__(self, rows: Mapping[str, list[Any]], role: str = "rw", number: int = 0):
        self._rows = rows
        self.role = role
        self.number = number
        self.in_transaction = False
        self.statements: list[tuple[str, list[Any] | None]] = []
        self.committed = 0
        self.rolled_back = 0

    async def query(self, sql: str, params: list[Any] | None = None) -> list[Any]:
        self.statements.append((sql, params))
        return list(self._rows.get(sql, []))

    async def begin(self) -> None:
        self.in_transaction = True

    async def commit(self) -> None:
        self.in_transaction = False
        self.committed += 1

    async def rollback(self) -> None:
        self.in_transaction = False
        self.rolled_back += 1


class MemoryQueue:
    def __init__(self, name: str):
        self.name = name
        self.messages: list[Any] = []

    async def enqueue(self, message: Any) -> None:
        self.messages.append(message)
        logger.debug("queue.enqueue", queue=self.name)


class SystemTime:
    def now(self) -> float:
        return time.time() * 1000.0

    async def sleep(self, ms: float) -> None:
        await asyncio.sleep(ms / 1000.0)


class HashlibCrypto:
    def uuid(self) -> str:
        return str(uuid.uuid4())

    async def hash(self, value: str, algo: str = "sha256") -> str:
        if algo == "none":
            return value
        return hashlib.sha256(value.encode("utf-8")).hexdigest()


class StructlogPort:
    """``LogPort`` that forwards to structlog, filtered by a level threshold."""

    def __init__(self, level: LogLevel = "info", name: str = "macrofx.step"):
        if level not in LOG_LEVELS:
            raise ValueError(f"Unknown log level {level!r}; expected one of {LOG_LEVELS}")
        self.level = level
        self._threshold = LOG_LEVELS.index(level)
        self._logger = get_logger(name)

    def _emit(self, level: LogLevel, message: str, data: Any) -> None:
        if LOG_LEVELS.index(level) < self._threshold:
            return
        method = "warning" if level == "warn" else level
        fields = dict(data) if isinstance(data, Mapping) else ({"data": data} if data is not None else {})
        getattr(self._logger, method)(message, **fields)

    def debug(self, message: str, data: Any = None) -> None:
        self._emit("debug", message, data)

    def info(self, message: str, data: Any = None) -> None:
        self._emit("info", message, data)

    def warn(self, message: str, data: Any = None) -> None:
        self._emit("warn", message, data)

    def error(self, message: str, data: Any = None) -> None:
        self._emit("error", message, data)


class LocalFs:
    """``FsHost`` over the local filesystem; blocking calls run in threads."""

    def __init__(self, base_dir: str | None = None):
        self.base_dir = base_dir

    async def mkdtemp(self, prefix: str = "tmp-") -> str:
        return await asyncio.to_thread(tempfile.mkdtemp, prefix=prefix, dir=self.base_dir)

    async def rm(self, path: str, recursive: bool = False) -> None:
        if recursive:
            await asyncio.to_thread(shutil.rmtree, path)
        else:
            await asyncio.to_thread(os.rmdir, path)


@dataclass
class SocketHandle:
    """Leased TCP connection."""

    host: str
    port: int
    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter

    async def write(self, data: bytes) -> None:
        self.writer.write(data)
        await self.writer.drain()

    async def read(self, n: int = -1) -> bytes:
        return await self.reader.read(n)

    async def close(self) -> None:
        if not self.writer.is_closing():
            self.writer.close()
        await self.writer.wait_closed()


# =============================================================================
# ENVIRONMENT
# =============================================================================


@dataclass
class StdEnv:
    """Standard environment.

    Attributes:
        settings: Pool sizes and HTTP timeout
        rows: Canned ``sql → rows`` answers for the in-memory DB
        http_transport: Optional httpx transport (``MockTransport`` in tests)
        http_token: Bearer token used when ``http.auth == "bearer"``
        temp_base_dir: Parent directory for leased temp dirs
    """

    settings: MacrofxSettings = field(default_factory=get_settings)
    rows: dict[str, list[Any]] = field(default_factory=dict)
    http_transport: httpx.AsyncBaseTransport | None = None
    http_token: str | None = None
    temp_base_dir: str | None = None
    circuits: CircuitBreakerRegistry = field(default_factory=CircuitBreakerRegistry)
    queues: dict[str, MemoryQueue] = field(default_factory=dict, init=False)
    _kv_store: dict[str, _KvRecord] = field(default_factory=dict, init=False, repr=False)
    _pools: dict[str, ResourcePool[MemoryConnection]] = field(default_factory=dict, init=False, repr=False)
    _locks: dict[str, asyncio.Lock] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self) -> None:
        self.fs = LocalFs(self.temp_base_dir)

    def make_http(self, base_url: str = "", config: Mapping[str, Any] | None = None) -> HttpxPort:
        config = config or {}
        return HttpxPort(
            base_url,
            auth=config.get("auth"),
            token=self.http_token,
            timeout_s=self.settings.http_timeout_s,
            transport=self.http_transport,
        )

    def make_kv(self, namespace: str) -> MemoryKv:
        return MemoryKv(namespace, self._kv_store)

    def _pool(self, role: str) -> ResourcePool[MemoryConnection]:
        if role not in self._pools:
            counter = itertools.count(1)

            async def connect() -> MemoryConnection:
                return MemoryConnection(self.rows, role, next(counter))

            async def close(conn: MemoryConnection) -> None:
                logger.debug("db.connection_closed", role=role, number=conn.number)

            self._pools[role] = ResourcePool(connect, close, self.settings.db_pool_size, label=f"db.{role}")
        return self._pools[role]

    def make_db(self, config: Mapping[str, Any] | None = None) -> dict[str, Any]:
        """DB port plus ``lease.db`` (pooled) and ``lease.tx`` openers."""
        role = (config or {}).get("role", "rw")
        port = MemoryConnection(self.rows, role)

        async def lease_db(lease_role: str | None = None) -> Releasable[Lease[MemoryConnection]]:
            return await self._pool(lease_role or role).lease()

        async def tx(fn: Callable[[Lease[MemoryConnection]], Awaitable[Any]]) -> Any:
            async def use(conn: Lease[MemoryConnection]) -> Any:
                await conn.begin()
                try:
                    result = await fn(conn)
                except BaseException:
                    await conn.rollback()
                    raise
                await conn.commit()
                return result

            return await bracket(lambda: self._pool("rw").lease(), use)

        return {"db": port, "lease": {"db": lease_db, "tx": tx}}

    def make_queue(self, name: str) -> MemoryQueue:
        if name not in self.queues:
            self.queues[name] = MemoryQueue(name)
        return self.queues[name]

    def make_time(self) -> SystemTime:
        return SystemTime()

    def make_crypto(self) -> HashlibCrypto:
        return HashlibCrypto()

    def make_logger(self, level: LogLevel = "info") -> StructlogPort:
        return StructlogPort(level)

    def make_temp_dir(self) -> Callable[..., Awaitable[Releasable[Any]]]:
        return temp_dir_opener(self.fs)

    def make_lock(self) -> Callable[..., Awaitable[Releasable[Lease[LockHandle]]]]:
        """Keyed in-process locks. ``shared`` mode is served exclusively."""

        async def acquire(key: str, mode: str = "exclusive") -> Releasable[Lease[LockHandle]]:
            lock = self._locks.setdefault(key, asyncio.Lock())
            await lock.acquire()
            return Releasable(
                value=Lease(LockHandle(key, mode), LeaseScope(f"lock:{key}")),
                release=lock.release,
            )

        return acquire

    def make_socket(self) -> Callable[..., Awaitable[Releasable[Lease[SocketHandle]]]]:
        async def acquire(host: str, port: int) -> Releasable[Lease[SocketHandle]]:
            reader, writer = await asyncio.open_connection(host, port)
            handle = SocketHandle(host, port, reader, writer)
            return Releasable(value=Lease(handle, LeaseScope(f"socket:{host}:{port}")), release=handle.close)

        return acquire

    def make_circuit(self, name: str, policy: CircuitPolicy | None = None) -> CircuitState:
        return self.circuits.get_or_create(name, policy)

    async def aclose(self) -> None:
        """Destroy idle pooled connections."""
        for pool in self._pools.values():
            await pool.drain()


__all__ = [
    "HttpxPort",
    "MemoryKv",
    "MemoryConnection",
    "MemoryQueue",
    "SystemTime",
    "HashlibCrypto",
    "StructlogPort",
    "LocalFs",
    "SocketHandle",
    "StdEnv",
]
