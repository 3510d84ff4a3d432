"""Tests for Ok/Err values and their helpers."""

import pytest

from macrofx.core.errors import CircuitOpenError
from macrofx.core.result import (
    Err,
    Ok,
    match_async,
    partition,
    sequence,
    traverse,
    traverse_async,
    try_async,
    try_sync,
)


class TestOk:
    def test_map_and_unwrap(self):
        assert Ok(10).map(lambda x: x * 2).unwrap() == 20

    def test_flat_map(self):
        assert Ok(2).flat_map(lambda x: Ok(x + 1)) == Ok(3)
        assert Ok(2).flat_map(lambda x: Err(ValueError(x))).ok is False

    def test_error_side_is_noop(self):
        ok = Ok(1)
        assert ok.map_err(lambda e: RuntimeError()) is ok
        assert ok.recover(lambda e: 2) is ok
        assert ok.recover_with(lambda e: Ok(2)) is ok
        assert ok.unwrap_or(5) == 1
        assert ok.to_dict() == {"ok": True, "value": 1}


class TestErr:
    def test_unwrap_raises_held_error(self):
        with pytest.raises(ValueError, match="oops"):
            Err(ValueError("oops")).unwrap()

    def test_unwrap_or(self):
        assert Err(ValueError("oops")).map(lambda x: x * 2).unwrap_or(0) == 0
        assert Err(ValueError("oops")).unwrap_or_else(str) == "oops"

    def test_map_err(self):
        result = Err(KeyError("k")).map_err(lambda e: LookupError(f"missing {e}"))
        assert isinstance(result.error, LookupError)

    def test_recover(self):
        assert Err(ValueError("x")).recover(str) == Ok("x")
        assert Err(ValueError("x")).recover_with(lambda e: Ok(len(str(e)))) == Ok(1)

    def test_match(self):
        assert Err(ValueError("x")).match(lambda v: "ok", lambda e: f"err:{e}") == "err:x"
        assert Ok(3).match(lambda v: v * 2, lambda e: 0) == 6

    def test_to_dict_for_macrofx_error(self):
        """Test structured serialization of library errors."""
        data = Err(CircuitOpenError("api")).to_dict()
        assert data["ok"] is False
        assert data["error"]["error_type"] == "CircuitOpenError"
        assert data["error"]["category"] == "CIRCUIT"

    def test_to_dict_for_plain_error(self):
        data = Err(KeyError("k")).to_dict()
        assert data["error"]["error_type"] == "KeyError"


class TestCapture:
    def test_try_sync(self):
        assert try_sync(lambda: 1) == Ok(1)
        assert try_sync(lambda: 1 / 0).ok is False

    def test_try_sync_maps_error(self):
        result = try_sync(lambda: int("x"), map_error=lambda e: RuntimeError("bad input"))
        assert str(result.error) == "bad input"

    @pytest.mark.asyncio
    async def test_try_async(self):
        async def fail():
            raise RuntimeError("no")

        result = await try_async(fail)
        assert isinstance(result, Err)
        assert str(result.error) == "no"

    @pytest.mark.asyncio
    async def test_match_async_awaits_either_branch(self):
        async def on_ok(value):
            return value + 1

        assert await match_async(Ok(1), on_ok, lambda e: 0) == 2
        assert await match_async(Err(ValueError()), on_ok, lambda e: 0) == 0


class TestMany:
    def test_sequence_stops_at_first_err(self):
        error = ValueError("bad")
        assert sequence([Ok(1), Ok(2)]) == Ok([1, 2])
        assert sequence([Ok(1), Err(error), Err(KeyError())]) == Err(error)

    def test_traverse(self):
        parse = lambda s: try_sync(lambda: int(s))  # noqa: E731
        assert traverse(["1", "2"], parse) == Ok([1, 2])
        assert traverse(["1", "x"], parse).ok is False

    @pytest.mark.asyncio
    async def test_traverse_async_keeps_input_order(self):
        async def double(n):
            return Ok(n * 2)

        assert await traverse_async([3, 1, 2], double) == Ok([6, 2, 4])

    def test_partition(self):
        error = ValueError("bad")
        values, errors = partition([Ok(1), Err(error), Ok(3)])
        assert values == [1, 3]
        assert errors == [error]

    def test_pattern_matching(self):
        match Ok(5):
            case Ok(value):
                matched = value
            case Err():
                matched = None
        assert matched == 5
