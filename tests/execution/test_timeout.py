"""Tests for timeout races and late-acquire compensation."""

import asyncio

import pytest

from macrofx.core.errors import AcquireTimeoutError, EffectTimeoutError, LeaseScopeError
from macrofx.core.meta import Meta
from macrofx.core.ports import Lease, LeaseScope, Releasable
from macrofx.execution.bracket import bracket
from macrofx.execution.timeout import race_acquire, race_timeout
from macrofx.execution.weave import WeaveOptions, weave


class TestRaceTimeout:
    """Tests for effect timeouts."""

    @pytest.mark.asyncio
    async def test_fast_call_wins(self):
        async def fast():
            return "done"

        assert await race_timeout(fast(), 100) == "done"

    @pytest.mark.asyncio
    async def test_slow_call_loses(self):
        """Test the caller gets EffectTimeoutError on time."""

        async def slow():
            await asyncio.sleep(0.2)
            return "late"

        with pytest.raises(EffectTimeoutError) as exc_info:
            await race_timeout(slow(), 10, operation="http.get")
        assert exc_info.value.code == "effect-timeout"
        assert exc_info.value.operation == "http.get"

    @pytest.mark.asyncio
    async def test_losing_call_is_not_cancelled(self):
        """Test the work keeps running after the caller has moved on."""
        finished = asyncio.Event()

        async def slow():
            await asyncio.sleep(0.03)
            finished.set()

        with pytest.raises(EffectTimeoutError):
            await race_timeout(slow(), 5)
        await asyncio.wait_for(finished.wait(), timeout=1)

    @pytest.mark.asyncio
    async def test_original_error_propagates(self):
        async def fail():
            raise KeyError("missing")

        with pytest.raises(KeyError):
            await race_timeout(fail(), 100)

    @pytest.mark.asyncio
    async def test_cancelled_caller_leaves_work_running(self):
        finished = asyncio.Event()

        async def slow():
            await asyncio.sleep(0.02)
            finished.set()
            raise RuntimeError("late failure")

        task = asyncio.ensure_future(race_timeout(slow(), 1000))
        await asyncio.sleep(0.005)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await asyncio.wait_for(finished.wait(), timeout=1)

    @pytest.mark.asyncio
    async def test_disabled_budget(self):
        """Test None and 0 skip the race."""

        async def value():
            return 1

        assert await race_timeout(value(), None) == 1
        assert await race_timeout(value(), 0) == 1


class TestRaceAcquire:
    """Tests for acquire timeouts."""

    @pytest.mark.asyncio
    async def test_late_resource_released_exactly_once(self):
        """Test a Releasable arriving after the deadline is released once."""
        releases = []
        scope = LeaseScope("lock")

        async def slow_acquire():
            await asyncio.sleep(0.01)
            return Releasable(value=Lease(object(), scope), release=lambda: releases.append(1))

        with pytest.raises(AcquireTimeoutError) as exc_info:
            await race_acquire(slow_acquire(), 1, "lease.lock.acquire")
        assert exc_info.value.code == "acquire-timeout"
        assert releases == []

        await asyncio.sleep(0.05)
        assert releases == [1]
        assert not scope.active

    @pytest.mark.asyncio
    async def test_late_acquire_failure_is_swallowed(self):
        async def slow_fail():
            await asyncio.sleep(0.01)
            raise ConnectionError("refused")

        with pytest.raises(AcquireTimeoutError):
            await race_acquire(slow_fail(), 1)
        await asyncio.sleep(0.03)

    @pytest.mark.asyncio
    async def test_in_time_acquire_is_returned(self):
        releasable = Releasable(value=Lease("conn", LeaseScope()), release=lambda: None)

        async def fast():
            return releasable

        assert await race_acquire(fast(), 100) is releasable

    @pytest.mark.asyncio
    async def test_late_lease_cannot_be_used(self):
        """Test the compensated lease is revoked."""
        holder = {}

        async def slow_acquire():
            await asyncio.sleep(0.01)
            lease = Lease({"k": 1}, LeaseScope())
            holder["lease"] = lease
            return Releasable(value=lease, release=lambda: None)

        with pytest.raises(AcquireTimeoutError):
            await race_acquire(slow_acquire(), 1)
        await asyncio.sleep(0.05)
        with pytest.raises(LeaseScopeError):
            holder["lease"].get("k")

    @pytest.mark.asyncio
    async def test_cancelled_caller_releases_late_resource(self):
        """Test an acquire finishing after its caller was cancelled is released once."""
        releases = []
        scope = LeaseScope("temp_dir")

        async def slow_acquire():
            await asyncio.sleep(0.02)
            return Releasable(value=Lease("job-", scope), release=lambda: releases.append("job-"))

        task = asyncio.ensure_future(race_acquire(slow_acquire(), 1000, "lease.temp_dir.acquire"))
        await asyncio.sleep(0.005)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        await asyncio.sleep(0.05)
        assert releases == ["job-"]
        assert not scope.active

    @pytest.mark.asyncio
    async def test_cancelled_woven_bracket_releases_temp_dir(self):
        """Test cancelling a bracket mid-acquire still releases the directory."""
        releases = []

        async def open_dir(prefix="tmp-"):
            await asyncio.sleep(0.02)
            return Releasable(value=Lease(prefix, LeaseScope()), release=lambda: releases.append(prefix))

        woven = weave(Meta({"timeout": {"acquire_ms": 1000}}), {"lease": {"temp_dir": open_dir}}, WeaveOptions())
        task = asyncio.ensure_future(bracket(lambda: woven["lease"].temp_dir("job-"), lambda tmp: None))
        await asyncio.sleep(0.005)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        await asyncio.sleep(0.05)
        assert releases == ["job-"]
