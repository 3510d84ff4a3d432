"""End-to-end runs through the std engine with real sockets and directories."""

import asyncio
import os

import httpx
import pytest
import pytest_asyncio

from macrofx.core.errors import AcquireTimeoutError, CircuitOpenError, LeaseScopeError
from macrofx.core.meta import Step, define_step, meta
from macrofx.execution.composition import pipe
from macrofx.std.engine import create_std_engine
from macrofx.testing import FakeLogger


@pytest_asyncio.fixture
async def echo_server():
    async def handle(reader, writer):
        data = await reader.read(100)
        writer.write(data.upper())
        await writer.drain()
        writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    host, port = server.sockets[0].getsockname()[:2]
    yield host, port
    server.close()
    await server.wait_closed()


class TestSocketLease:
    @pytest.mark.asyncio
    async def test_socket_round_trip(self, std_env, settings, echo_server):
        host, port = echo_server
        engine = create_std_engine(env=std_env, settings=settings)

        async def use(sock):
            await sock.write(b"ping")
            return await sock.read()

        async def run(ctx):
            return await ctx.bracket(lambda: ctx.lease.socket(host, port), use)

        assert await engine.run(Step("echo", {"socket": {}}, run)) == b"PING"


class TestWorkflow:
    @pytest.mark.asyncio
    async def test_pipeline_with_policies(self, std_env, settings, tmp_path):
        """Test http → tx → temp dir across a pipe with retry and timeout."""
        calls = []

        def handler(request):
            calls.append(request.url.path)
            if len(calls) == 1:
                raise httpx.ConnectError("connection reset", request=request)
            return httpx.Response(200, json={"sku": "a", "qty": 2})

        std_env.http_transport = httpx.MockTransport(handler)
        engine = create_std_engine(env=std_env, settings=settings)

        @define_step("fetch", http={"base_url": "https://shop.test"}, retry={"times": 2}, timeout={"ms": 1000})
        async def fetch(ctx):
            response = await ctx.http.get("/items/a")
            response.raise_for_status()
            return {"item": response.json()}

        @define_step("store", db={"role": "rw"})
        async def store(ctx):
            async def write(conn):
                await conn.query("insert into items values ($1, $2)", [ctx.item["sku"], ctx.item["qty"]])
                return conn.unwrap()

            return {"conn": await ctx.lease.tx(write)}

        @define_step("export", fs={"temp_dir": True})
        async def export(ctx):
            async def use(tmp):
                path = os.path.join(tmp.path, "items.csv")
                with open(path, "w") as f:
                    f.write("sku,qty\n")
                return tmp.path, ctx.conn.committed

            return await ctx.bracket(lambda: ctx.lease.temp_dir("export-"), use)

        path, committed = await engine.run(pipe(fetch, store, export))
        assert calls == ["/items/a", "/items/a"]
        assert committed == 1
        assert not os.path.exists(path)

    @pytest.mark.asyncio
    async def test_lock_acquire_timeout(self, std_env, settings):
        engine = create_std_engine(env=std_env, settings=settings)
        release_holder = asyncio.Event()
        held = asyncio.Event()

        async def holder(ctx):
            async def use(handle):
                held.set()
                await release_holder.wait()

            await ctx.bracket(lambda: ctx.lease.lock("jobs"), use)

        async def contender(ctx):
            return await ctx.bracket(lambda: ctx.lease.lock("jobs"), lambda h: "got it")

        holding = asyncio.ensure_future(engine.run(Step("holder", {"lock": {}}, holder)))
        await held.wait()
        step = Step("contender", meta().with_lock("jobs").with_timeout(acquire_ms=10).build(), contender)
        with pytest.raises(AcquireTimeoutError):
            await engine.run(step)

        release_holder.set()
        await holding
        await asyncio.sleep(0.02)
        # The late acquire was released, so the lock is free again.
        assert await engine.run(Step("contender", {"lock": {}}, contender)) == "got it"

    @pytest.mark.asyncio
    async def test_circuit_shared_between_runs(self, std_env, settings):
        """Test a transport failure in one run fails the next run fast."""
        requests = []

        def handler(request):
            requests.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        std_env.http_transport = httpx.MockTransport(handler)
        log = FakeLogger()
        std_env.make_logger = lambda level: log
        engine = create_std_engine(env=std_env, settings=settings)

        async def run(ctx):
            return await ctx.http.get("/")

        step = Step(
            "call",
            {"http": {}, "log": {}, "circuit": {"name": "upstream", "half_open_after_ms": 60_000}},
            run,
        )
        with pytest.raises(httpx.ConnectError):
            await engine.run(step)
        with pytest.raises(CircuitOpenError):
            await engine.run(step)
        assert len(requests) == 1
        assert "circuit.open" in log.messages("warn")
        assert std_env.circuits.get("upstream").open_until > 0


class TestEscapedLease:
    @pytest.mark.asyncio
    async def test_lease_escaping_step_is_unusable(self, std_env, settings):
        engine = create_std_engine(env=std_env, settings=settings)

        async def run(ctx):
            return await ctx.bracket(ctx.lease.db, lambda conn: conn)

        escaped = await engine.run(Step("leaky", {"db": {"role": "ro"}}, run))
        with pytest.raises(LeaseScopeError):
            await escaped.query("select 1")
