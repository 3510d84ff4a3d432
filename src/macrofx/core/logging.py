"""
Structured logging for macrofx.

Internal diagnostics (phase transitions, swallowed release failures,
late-release compensation) go through structlog so they carry the step
name and phase as structured fields. The same configuration backs the
``LogPort`` handed to steps by the standard environment.

macrofx is a library: nothing here runs at import time. Hosts that want
macrofx output rendered call :func:`configure_logging` once, usually
with no arguments so ``MACROFX_LOG_LEVEL`` and ``MACROFX_JSON_LOGS``
decide.

Architecture:
    ::

        configure_logging(settings)        level / format from MacrofxSettings
              │                             (explicit args override)
              ▼
        processors:
          TimeStamper(iso) ─► merge_contextvars ─► add_log_level
            ─► _tag_library ─► JSONRenderer | ConsoleRenderer

        Engine.run
          └── with LogContext(step=name):   step bound for every event below
                logger.debug("executor.phase", phase="resolve")

Examples:
    >>> configure_logging(level="DEBUG", json_format=False)
    >>> logger = get_logger(__name__)
    >>> with LogContext(step="load_user"):
    ...     logger.debug("executor.phase", phase="resolve")

Tags:
    logging, structlog, observability, contextvars, macrofx

Doc-Types:
    - API Reference
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING, Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

if TYPE_CHECKING:
    from macrofx.core.settings import MacrofxSettings

LIBRARY = "macrofx"


def _tag_library(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("library", LIBRARY)
    return event_dict


def configure_logging(
    settings: MacrofxSettings | None = None,
    *,
    level: str | None = None,
    json_format: bool | None = None,
) -> None:
    """Configure structlog for macrofx output.

    Args:
        settings: Source of ``log_level`` and ``json_logs`` (``get_settings()``
            when omitted)
        level: Overrides ``settings.log_level``
        json_format: Overrides ``settings.json_logs``; when both are None,
            JSON is used unless stdout is a terminal
    """
    if settings is None:
        from macrofx.core.settings import get_settings

        settings = get_settings()

    level = (level or settings.log_level).upper()
    if json_format is None:
        json_format = settings.json_logs
    if json_format is None:
        json_format = not sys.stdout.isatty()

    renderer: Processor
    if json_format:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.dev.set_exc_info,
            _tag_library,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(level)),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


def get_logger(name: str | None = None) -> Any:
    """Get a structured logger (usually ``get_logger(__name__)``)."""
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


class LogContext:
    """Binds fields for the duration of a ``with`` block.

    Restores whatever was bound before on exit, so nested step executions
    (``ctx.child``) put the parent's ``step`` back when they finish.
    """

    def __init__(self, **fields: Any):
        self._fields = fields
        self._tokens: Any = None

    def __enter__(self) -> LogContext:
        self._tokens = structlog.contextvars.bind_contextvars(**self._fields)
        return self

    def __exit__(self, *exc_info: Any) -> None:
        structlog.contextvars.reset_contextvars(**self._tokens)


__all__ = [
    "LIBRARY",
    "configure_logging",
    "get_logger",
    "bind_context",
    "clear_context",
    "LogContext",
]
