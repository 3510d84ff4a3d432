"""Tests for the port fakes in macrofx.testing."""

import httpx
import pytest

from macrofx.testing import FakeHttp, FakeKv, FakeLogger, FakeTime, chaos


class TestFakeHttp:
    @pytest.mark.asyncio
    async def test_handlers(self):
        http = FakeHttp({"GET /users/1": {"id": 1}, "/health": None})
        http.route("post", "/orders", lambda call: httpx.Response(201, json=call.body))

        assert (await http.get("/users/1")).json() == {"id": 1}
        assert (await http.get("/health")).status_code == 204
        created = await http.post("/orders", {"sku": "a"})
        assert created.status_code == 201
        assert created.json() == {"sku": "a"}
        assert (await http.get("/missing")).status_code == 404
        assert [c.method for c in http.calls] == ["GET", "GET", "POST", "GET"]

    @pytest.mark.asyncio
    async def test_async_handler_and_unroute(self):
        async def handler(call):
            return {"path": call.path}

        http = FakeHttp()
        http.route("GET", "/a", handler)
        assert (await http.get("/a")).json() == {"path": "/a"}
        http.unroute("GET", "/a")
        assert (await http.get("/a")).status_code == 404


class TestFakeKvAndTime:
    @pytest.mark.asyncio
    async def test_kv_ttl_on_fake_clock(self):
        clock = FakeTime()
        kv = FakeKv(clock=clock.now)
        await kv.set("k", "v", ttl_ms=10)
        assert await kv.get("k") == "v"
        clock.advance(10)
        assert await kv.get("k") is None

    @pytest.mark.asyncio
    async def test_time_sleep_advances(self):
        clock = FakeTime(5)
        await clock.sleep(20)
        assert clock.now() == 25
        assert clock.sleeps == [20]
        clock.set(0)
        assert clock.now() == 0


class TestFakeLogger:
    def test_records_levels(self):
        log = FakeLogger()
        log.info("a", {"x": 1})
        log.warn("b")
        assert log.messages() == ["a", "b"]
        assert log.messages("warn") == ["b"]
        log.clear()
        assert log.logs == []


class TestChaos:
    @pytest.mark.asyncio
    async def test_failures_by_rate(self):
        kv = chaos(FakeKv({"k": "v"}), fail_rate=0.5, random=iter([0.1, 0.9]).__next__)
        with pytest.raises(RuntimeError, match="chaos:get"):
            await kv.get("k")
        assert await kv.get("k") == "v"

    @pytest.mark.asyncio
    async def test_custom_error_and_passthrough(self):
        kv = chaos(FakeKv(), fail_rate=1.0, random=lambda: 0.0, error_factory=lambda m: TimeoutError(m))
        with pytest.raises(TimeoutError):
            await kv.set("k", 1)
        assert kv.store == {}
