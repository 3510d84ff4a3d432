"""Test doubles for ports.

Fakes record what steps did so tests can assert on it without a network,
a clock or a database:

    FakeLogger   LogPort recording (level, message, data)
    FakeKv       KvPort over a dict, TTL on an injectable clock
    FakeHttp     HttpPort answering from handlers keyed "METHOD path"
    FakeTime     TimePort whose sleep advances a virtual clock
    chaos(port)  wrapper adding latency and random failures

Example:
    >>> log = FakeLogger()
    >>> env = {"make_logger": lambda level: log}
    >>> await Engine([log_macro], env=env).run(step)
    >>> log.messages("debug")
    ['http.get ok']
"""

from __future__ import annotations

import asyncio
import random as _random
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import httpx

from macrofx.core.ports import LogLevel

LogEntry = tuple[LogLevel, str, Any]


class FakeLogger:
    """Recording ``LogPort``."""

    def __init__(self, level: LogLevel = "debug"):
        self.level = level
        self.logs: list[LogEntry] = []

    def debug(self, message: str, data: Any = None) -> None:
        self.logs.append(("debug", message, data))

    def info(self, message: str, data: Any = None) -> None:
        self.logs.append(("info", message, data))

    def warn(self, message: str, data: Any = None) -> None:
        self.logs.append(("warn", message, data))

    def error(self, message: str, data: Any = None) -> None:
        self.logs.append(("error", message, data))

    def messages(self, level: LogLevel | None = None) -> list[str]:
        return [message for lvl, message, _ in self.logs if level is None or lvl == level]

    def clear(self) -> None:
        self.logs.clear()


class FakeKv:
    """``KvPort`` over a plain dict. ``store`` maps key → (value, expires_at)."""

    def __init__(self, initial: Mapping[str, Any] | None = None, clock: Callable[[], float] | None = None):
        self._clock = clock or (lambda: 0.0)
        self.store: dict[str, tuple[Any, float | None]] = {
            key: (value, None) for key, value in (initial or {}).items()
        }
        self.sets: list[tuple[str, Any, float | None]] = []

    async def get(self, key: str) -> Any | None:
        record = self.store.get(key)
        if record is None:
            return None
        value, expires_at = record
        if expires_at is not None and expires_at <= self._clock():
            del self.store[key]
            return None
        return value

    async def set(self, key: str, value: Any, ttl_ms: float | None = None) -> None:
        self.sets.append((key, value, ttl_ms))
        expires_at = self._clock() + ttl_ms if ttl_ms else None
        self.store[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        self.store.pop(key, None)


@dataclass
class HttpCall:
    method: str
    path: str
    body: Any = None


Handler = Any


class FakeHttp:
    """``HttpPort`` returning ``httpx.Response`` objects from handlers.

    A handler is an ``httpx.Response``, a JSON-able value (200), ``None``
    (204), or a callable receiving the :class:`HttpCall` and returning one
    of those. Unknown routes answer 404.
    """

    def __init__(self, handlers: Mapping[str, Handler] | None = None):
        self._handlers: dict[str, Handler] = dict(handlers or {})
        self.calls: list[HttpCall] = []

    @staticmethod
    def _key(method: str, path: str) -> str:
        return f"{method.upper()} {path}"

    def route(self, method: str, path: str, handler: Handler) -> None:
        self._handlers[self._key(method, path)] = handler

    def unroute(self, method: str, path: str) -> None:
        self._handlers.pop(self._key(method, path), None)

    async def _respond(self, call: HttpCall) -> httpx.Response:
        self.calls.append(call)
        key = self._key(call.method, call.path)
        if key in self._handlers:
            handler = self._handlers[key]
        elif call.path in self._handlers:
            handler = self._handlers[call.path]
        else:
            return httpx.Response(404, text="not found")
        value = handler(call) if callable(handler) else handler
        if asyncio.iscoroutine(value):
            value = await value
        if isinstance(value, httpx.Response):
            return value
        if value is None:
            return httpx.Response(204)
        return httpx.Response(200, json=value)

    async def get(self, path: str, **kwargs: Any) -> httpx.Response:
        return await self._respond(HttpCall("GET", path))

    async def post(self, path: str, body: Any = None, **kwargs: Any) -> httpx.Response:
        return await self._respond(HttpCall("POST", path, body))


class FakeTime:
    """``TimePort`` on a virtual millisecond clock."""

    def __init__(self, start: float = 0.0):
        self.current = start
        self.sleeps: list[float] = []

    def now(self) -> float:
        return self.current

    async def sleep(self, ms: float) -> None:
        self.sleeps.append(ms)
        self.current += ms

    def advance(self, ms: float) -> None:
        self.current += ms

    def set(self, value: float) -> None:
        self.current = value


@dataclass
class ChaosOptions:
    fail_rate: float = 0.0
    latency_ms: float | Callable[[str], float] = 0.0
    random: Callable[[], float] = _random.random
    error_factory: Callable[[str], Exception] = field(default=lambda method: RuntimeError(f"chaos:{method}"))


class _Chaos:
    def __init__(self, port: Any, options: ChaosOptions):
        self._port = port
        self._options = options

    def __getattr__(self, name: str) -> Any:
        value = getattr(self._port, name)
        if not callable(value):
            return value
        options = self._options

        async def chaotic(*args: Any, **kwargs: Any) -> Any:
            latency = options.latency_ms(name) if callable(options.latency_ms) else options.latency_ms
            if latency and latency > 0:
                await asyncio.sleep(latency / 1000.0)
            if options.fail_rate > 0 and options.random() < options.fail_rate:
                raise options.error_factory(name)
            result = value(*args, **kwargs)
            if isinstance(result, Awaitable):
                result = await result
            return result

        return chaotic


def chaos(
    port: Any,
    fail_rate: float = 0.0,
    latency_ms: float | Callable[[str], float] = 0.0,
    random: Callable[[], float] = _random.random,
    error_factory: Callable[[str], Exception] | None = None,
) -> Any:
    """Wrap every method of ``port`` with latency and random failures."""
    options = ChaosOptions(fail_rate, latency_ms, random)
    if error_factory is not None:
        options.error_factory = error_factory
    return _Chaos(port, options)


__all__ = [
    "LogEntry",
    "FakeLogger",
    "FakeKv",
    "HttpCall",
    "FakeHttp",
    "FakeTime",
    "ChaosOptions",
    "chaos",
]
