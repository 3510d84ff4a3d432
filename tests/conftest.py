"""
Shared pytest fixtures and configuration for macrofx tests.

This module provides:
- Auto-marking of unit and integration tests by location
- Recording fakes for the log and kv ports
- A fresh circuit registry and virtual clock per test
- A StdEnv with isolated settings

Usage:
    Fixtures are auto-discovered by pytest. Use them as function arguments:

    async def test_something(fake_log, fake_kv):
        ...
"""

import sys
from pathlib import Path
from typing import Any

import pytest

# Ensure macrofx package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from macrofx.core.meta import Step
from macrofx.core.settings import MacrofxSettings
from macrofx.execution.circuit_breaker import CircuitBreakerRegistry
from macrofx.execution.weave import WeaveOptions
from macrofx.std.env import StdEnv
from macrofx.testing import FakeKv, FakeLogger, FakeTime


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-mark tests based on their location."""
    for item in items:
        test_path = Path(item.fspath).relative_to(Path(__file__).parent)

        if "integration" in str(test_path):
            item.add_marker(pytest.mark.integration)

        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "integration", "slow"}):
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Port Fakes
# =============================================================================


@pytest.fixture
def fake_log() -> FakeLogger:
    return FakeLogger()


@pytest.fixture
def fake_kv() -> FakeKv:
    return FakeKv()


@pytest.fixture
def fake_time() -> FakeTime:
    """Virtual millisecond clock; ``sleep`` advances it instantly."""
    return FakeTime(start=1_000.0)


# =============================================================================
# Execution Fixtures
# =============================================================================


@pytest.fixture
def settings() -> MacrofxSettings:
    """Settings independent of the process environment."""
    return MacrofxSettings(_env_file=None, validate_steps=True)


@pytest.fixture
def registry() -> CircuitBreakerRegistry:
    return CircuitBreakerRegistry()


@pytest.fixture
def weave_options(registry: CircuitBreakerRegistry, fake_time: FakeTime) -> WeaveOptions:
    """Weaver collaborators driven by the virtual clock, without jitter."""
    return WeaveOptions(
        get_circuit=registry,
        clock=fake_time.now,
        sleep=fake_time.sleep,
        random=lambda: 0.5,
    )


@pytest.fixture
def std_env(settings: MacrofxSettings, tmp_path: Path) -> StdEnv:
    return StdEnv(settings=settings, temp_base_dir=str(tmp_path))


@pytest.fixture
def make_step():
    """Build a Step from a meta mapping and a run callable."""

    def _make(run: Any, name: str = "test_step", **meta: Any) -> Step:
        return Step(name=name, meta=meta, run=run)

    return _make
