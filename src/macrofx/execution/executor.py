"""Engine: the six-phase step executor.

WHY
───
A step declares what it needs; the engine is the only code that decides
what it gets. Every execution walks the same fixed phases, so retries,
timeouts, circuits, idempotency and resource release behave identically
for every step in the process.

ARCHITECTURE
────────────
::

    Engine.run(step, base)
      │
      ├── validate   structure always; full check when enabled
      │                (unknown capability keys, invalid policies)
      ├── resolve    matched macros' resolve() concurrently,
      │                merged in registration order
      ├── weave      circuit → log → retry → timeout on ports,
      │                acquire policies on lease openers
      ├── before     hooks in order; ctx.control.set_result() returns now
      ├── run        step.run(ctx)
      └── after      hooks transform the value in order
          | on_error  first non-None return recovers, else re-raise

    ctx = ExecutionContext(base ⊕ caps ⊕ {meta}, engine=self)

Circuit state comes from ``env.make_circuit(name, policy)`` when the
environment provides it, otherwise from the engine's own
:class:`CircuitBreakerRegistry`.

Usage::

    engine = Engine([http_macro, kv_macro, idempotency_macro], env=StdEnv())
    user = await engine.run(load_user, {"user_id": "u-1"})
"""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping, Sequence
from typing import Any

from macrofx.core.errors import MacrofxError
from macrofx.core.logging import LogContext, get_logger
from macrofx.core.meta import Meta, Step
from macrofx.core.settings import MacrofxSettings, get_settings
from macrofx.core.validation import assert_valid_step, check_structure
from macrofx.execution._async import maybe_await
from macrofx.execution.circuit_breaker import CircuitBreakerRegistry
from macrofx.execution.context import ExecutionContext
from macrofx.execution.macros import Macro, env_factory, match_macros, resolve_capabilities
from macrofx.execution.weave import WeaveOptions, weave

logger = get_logger(__name__)


class Engine:
    """Runs steps against a fixed macro list and environment.

    Args:
        macros: Registered macros, in hook order
        env: Host environment of port and opener factories
        validate: Full validation default (falls back to settings)
        settings: Process settings (``get_settings()`` when omitted)
        circuits: Circuit state store shared by this engine's runs
        weave_options: Clock, sleep and random overrides for the weaver
    """

    def __init__(
        self,
        macros: Sequence[Macro],
        env: Any = None,
        validate: bool | None = None,
        settings: MacrofxSettings | None = None,
        circuits: CircuitBreakerRegistry | None = None,
        weave_options: WeaveOptions | None = None,
    ):
        self.macros: tuple[Macro, ...] = tuple(macros)
        self.env = env
        self.settings = settings or get_settings()
        self.validate = self.settings.validate_steps if validate is None else validate
        self.circuits = circuits or CircuitBreakerRegistry()
        self.weave_options = self._build_weave_options(weave_options)

    def _build_weave_options(self, options: WeaveOptions | None) -> WeaveOptions:
        if options is None:
            options = WeaveOptions(half_open_after_ms=self.settings.circuit_half_open_after_ms)
        if options.get_circuit is not None:
            return options
        make_circuit = env_factory(self.env, "make_circuit")
        return dataclasses.replace(options, get_circuit=make_circuit or self.circuits.get_or_create)

    @property
    def macro_keys(self) -> list[str]:
        return [macro.key for macro in self.macros]

    async def run(
        self,
        step: Step,
        base: Mapping[str, Any] | None = None,
        validate: bool | None = None,
    ) -> Any:
        """Execute ``step`` through all six phases.

        Raises:
            InvalidStepError: ``step.run`` not callable or meta not a mapping
            StepValidationError: Full validation found problems
            Whatever resolve, run or the hooks raise when not recovered
        """
        check_structure(step)
        name = getattr(step, "name", None) or "<anonymous>"

        with LogContext(step=name):
            if self.validate if validate is None else validate:
                logger.debug("executor.phase", phase="validate")
                assert_valid_step(step, self.macro_keys)

            meta = Meta.of(step.meta)
            matched = match_macros(meta, self.macros)

            logger.debug("executor.phase", phase="resolve", macros=[m.key for m in matched])
            try:
                caps = await resolve_capabilities(meta, matched, self.env)
            except Exception as e:
                e.add_note(f"while resolving capabilities for step {name!r}")
                if isinstance(e, MacrofxError):
                    e.with_context(step=name, phase="resolve")
                raise

            logger.debug("executor.phase", phase="weave")
            woven = weave(meta, caps, self.weave_options)
            ctx = ExecutionContext({**(base or {}), **woven}, meta, engine=self)

            logger.debug("executor.phase", phase="before")
            for macro in matched:
                if macro.before is None:
                    continue
                await maybe_await(macro.before(ctx))
                if ctx.control.skipped:
                    logger.debug("executor.short_circuit", macro=macro.key)
                    return ctx.control.value

            try:
                logger.debug("executor.phase", phase="run")
                result = await maybe_await(step.run(ctx))

                logger.debug("executor.phase", phase="after")
                for macro in matched:
                    if macro.after is not None:
                        result = await maybe_await(macro.after(result, ctx))
            except Exception as error:
                logger.debug("executor.phase", phase="on_error", error=str(error))
                for macro in matched:
                    if macro.on_error is None:
                        continue
                    recovered = await maybe_await(macro.on_error(error, ctx))
                    if recovered is not None:
                        logger.info("executor.recovered", macro=macro.key, error=str(error))
                        return recovered
                if ctx.control.skipped:
                    return ctx.control.value
                raise

            if ctx.control.skipped:
                return ctx.control.value
            return result


async def execute(
    step: Step,
    base: Mapping[str, Any] | None = None,
    *,
    macros: Sequence[Macro],
    env: Any = None,
    validate: bool | None = None,
) -> Any:
    """Run one step on a throwaway :class:`Engine`."""
    engine = Engine(macros, env=env, validate=validate)
    return await engine.run(step, base)


__all__ = ["Engine", "execute"]
