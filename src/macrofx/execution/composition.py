"""Step composition operators.

Each operator returns an ordinary :class:`Step` whose ``run`` re-enters the
engine that is executing it, so every inner step still gets its own
validate → resolve → weave → hooks cycle. The composite's metadata is the
shallow merge of its parts' metadata, which lets the outer run resolve the
union of their capabilities.

    pipe(a, b, c)                  sequential; a mapping result feeds the next base
    all_steps(a, b)                concurrent; list of results in order
    race(a, b)                     concurrent; first to finish wins
    branch(v).when(p, a).otherwise(b)
    conditional(pred, a, b)
    retry_step(a, times, delay_ms)
    timeout_step(a, ms)
    with_result(a)                 Ok(value) | Err(error) instead of raising

Running a composite outside an engine raises :class:`EngineRequiredError`.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from typing import Any

from macrofx.core.errors import EngineRequiredError, TimeoutExpired
from macrofx.core.meta import Step, merge_meta
from macrofx.core.result import Err, Ok
from macrofx.execution._async import maybe_await
from macrofx.execution.context import get_engine
from macrofx.execution.retry import Sleep, sleep_ms
from macrofx.execution.timeout import race_timeout


def _engine_for(ctx: Any, operator: str) -> Any:
    engine = get_engine(ctx)
    if engine is None:
        raise EngineRequiredError(operator)
    return engine


def pipe(*steps: Step) -> Step:
    async def run(ctx: Any) -> Any:
        engine = _engine_for(ctx, "pipe")
        result: Any = None
        for i, step in enumerate(steps):
            if i > 0 and isinstance(result, Mapping):
                base = {**result, **ctx}
            else:
                base = ctx
            result = await engine.run(step, base)
        return result

    return Step(
        name=f"pipe({' → '.join(s.name for s in steps)})",
        meta=merge_meta(*(s.meta for s in steps)),
        run=run,
    )


def all_steps(*steps: Step) -> Step:
    async def run(ctx: Any) -> list[Any]:
        engine = _engine_for(ctx, "all_steps")
        return list(await asyncio.gather(*(engine.run(step, ctx) for step in steps)))

    return Step(
        name=f"all({', '.join(s.name for s in steps)})",
        meta=merge_meta(*(s.meta for s in steps)),
        run=run,
    )


def race(*steps: Step) -> Step:
    """First step to settle wins, whether it returns or raises.

    The losers keep running; their outcomes are discarded.
    """

    async def run(ctx: Any) -> Any:
        engine = _engine_for(ctx, "race")
        tasks = [asyncio.ensure_future(engine.run(step, ctx)) for step in steps]
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.add_done_callback(_discard)
        winner = next(task for task in tasks if task in done)
        for task in done:
            if task is not winner:
                _discard(task)
        return winner.result()

    return Step(
        name=f"race({', '.join(s.name for s in steps)})",
        meta=merge_meta(*(s.meta for s in steps)),
        run=run,
    )


def _discard(task: asyncio.Future[Any]) -> None:
    if not task.cancelled():
        task.exception()


def _matches(pattern: Any, value: Any) -> bool:
    if isinstance(pattern, type):
        return isinstance(value, pattern)
    if callable(pattern):
        return bool(pattern(value))
    return pattern == value


class Branch:
    """Select one step by matching a value against patterns.

    A pattern is a type (``isinstance``), a predicate, or a value compared
    with ``==``. Cases are tried in order.
    """

    def __init__(self, value: Any):
        self.value = value
        self._cases: list[tuple[Any, Step]] = []

    def when(self, pattern: Any, step: Step) -> Branch:
        self._cases.append((pattern, step))
        return self

    def otherwise(self, step: Step) -> Step:
        return self._to_step(step)

    def exhaustive(self) -> Step:
        return self._to_step(None)

    def _to_step(self, default: Step | None) -> Step:
        cases = list(self._cases)
        value = self.value
        steps = [step for _, step in cases] + ([default] if default else [])

        async def run(ctx: Any) -> Any:
            engine = _engine_for(ctx, "branch")
            for pattern, step in cases:
                if _matches(pattern, value):
                    return await engine.run(step, ctx)
            if default is None:
                raise LookupError(f"No matching branch for value: {value!r}")
            return await engine.run(default, ctx)

        return Step(
            name=f"branch({' | '.join(s.name for s in steps)})",
            meta=merge_meta(*(s.meta for s in steps)),
            run=run,
        )


def branch(value: Any) -> Branch:
    return Branch(value)


def conditional(predicate: Callable[[Any], Any], if_true: Step, if_false: Step) -> Step:
    async def run(ctx: Any) -> Any:
        engine = _engine_for(ctx, "conditional")
        chosen = if_true if await maybe_await(predicate(ctx)) else if_false
        return await engine.run(chosen, ctx)

    return Step(
        name=f"if({if_true.name}, {if_false.name})",
        meta=merge_meta(if_true.meta, if_false.meta),
        run=run,
    )


def retry_step(step: Step, times: int, delay_ms: float = 0, sleep: Sleep = sleep_ms) -> Step:
    """Re-run the whole step (all six phases) up to ``times`` more times."""

    async def run(ctx: Any) -> Any:
        engine = _engine_for(ctx, "retry_step")
        for attempt in range(times + 1):
            try:
                return await engine.run(step, ctx)
            except Exception:
                if attempt == times:
                    raise
                if delay_ms > 0:
                    await sleep(delay_ms)

    return Step(name=f"retry({step.name}, {times})", meta=step.meta, run=run)


def timeout_step(step: Step, ms: float) -> Step:
    async def run(ctx: Any) -> Any:
        engine = _engine_for(ctx, "timeout_step")
        return await race_timeout(engine.run(step, ctx), ms, TimeoutExpired, step.name)

    return Step(name=f"timeout({step.name}, {ms}ms)", meta=step.meta, run=run)


def with_result(step: Step) -> Step:
    async def run(ctx: Any) -> Ok[Any] | Err[Any]:
        engine = _engine_for(ctx, "with_result")
        try:
            return Ok(await engine.run(step, ctx))
        except Exception as e:
            return Err(e)

    return Step(name=f"with_result({step.name})", meta=step.meta, run=run)


__all__ = [
    "pipe",
    "all_steps",
    "race",
    "Branch",
    "branch",
    "conditional",
    "retry_step",
    "timeout_step",
    "with_result",
]
