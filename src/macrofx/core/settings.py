"""Process-wide settings for macrofx.

Defaults that are not part of a step's metadata (whether engines validate
steps by default, the circuit cooldown used when a policy omits one, the
idempotency TTL, std-environment pool sizes) come from environment
variables with the ``MACROFX_`` prefix or a ``.env`` file.

Manifesto:
    Configuration should be explicit, validated, and environment-driven.
    Step metadata says what a step needs; settings say how this process
    behaves when metadata is silent.

    - **Pydantic validation:** Type-checked at startup, not at first use
    - **Environment-driven:** ``MACROFX_VALIDATE_STEPS=false`` etc.
    - **Sensible defaults:** Works out of the box for development and tests

Examples:
    >>> from macrofx.core.settings import MacrofxSettings
    >>> settings = MacrofxSettings(validate_steps=False)
    >>> settings.circuit_half_open_after_ms
    30000.0

Tags:
    settings, configuration, pydantic, environment, macrofx

Doc-Types:
    - API Reference
    - Configuration Guide
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class MacrofxSettings(BaseSettings):
    """Settings shared by every engine in the process.

    Fields
    ──────
    log_level                  : structlog level for internal diagnostics
    json_logs                  : JSON rendering (None = auto-detect tty)
    validate_steps             : default for ``Engine(validate=...)``
    circuit_half_open_after_ms : cooldown when a circuit policy omits one
    idempotency_ttl_ms         : TTL when an idempotency policy omits one
    db_pool_size               : capacity of the std environment's DB pool
    http_timeout_s             : transport timeout of the std HTTP port
    """

    model_config = SettingsConfigDict(
        env_prefix="MACROFX_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    json_logs: bool | None = None

    # ── Executor ─────────────────────────────────────────────────
    validate_steps: bool = True

    # ── Policies ─────────────────────────────────────────────────
    circuit_half_open_after_ms: float = Field(default=30_000.0, ge=0)
    idempotency_ttl_ms: float = Field(default=300_000.0, ge=0)

    # ── Std environment ──────────────────────────────────────────
    db_pool_size: int = Field(default=4, ge=1)
    http_timeout_s: float = Field(default=30.0, gt=0)


@lru_cache(maxsize=1)
def get_settings() -> MacrofxSettings:
    """Return the cached process settings."""
    return MacrofxSettings()


__all__ = ["MacrofxSettings", "get_settings"]
