"""Engines preloaded with the standard macros and environment."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from macrofx.core.meta import Step
from macrofx.core.settings import MacrofxSettings
from macrofx.execution.executor import Engine
from macrofx.std.env import StdEnv
from macrofx.std.macros import std_macros


def create_std_engine(
    env: Any = None,
    validate: bool | None = None,
    settings: MacrofxSettings | None = None,
) -> Engine:
    """Engine with :data:`STD_MACROS` over ``env`` (a fresh ``StdEnv`` by default)."""
    if env is None:
        env = StdEnv(settings) if settings is not None else StdEnv()
    return Engine(std_macros(), env=env, validate=validate, settings=settings)


async def run_with_std_engine(
    step: Step,
    base: Mapping[str, Any] | None = None,
    env: Any = None,
    validate: bool | None = None,
) -> Any:
    engine = create_std_engine(env=env, validate=validate)
    return await engine.run(step, base)


__all__ = ["create_std_engine", "run_with_std_engine"]
