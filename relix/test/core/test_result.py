"""Tests for relix.core.result module."""

from __future__ import annotations

import pytest

from relix.core.result import Err, Ok, Result, is_err, is_ok


def parse_port(text: str) -> Result[int, str]:
    if not text.isdigit():
        return Err(f"not a number: {text}")
    return Ok(int(text))


class TestOk:
    """Tests for Ok."""

    def test_accessors(self) -> None:
        result = Ok(8080)
        assert result.is_ok() and not result.is_err()
        assert result.unwrap() == 8080
        assert result.unwrap_or(0) == 8080

    def test_unwrap_err_raises(self) -> None:
        with pytest.raises(ValueError, match="called unwrap_err on Ok: 8080"):
            Ok(8080).unwrap_err()

    def test_map_and_flat_map(self) -> None:
        assert Ok("80").flat_map(parse_port).map(lambda p: p + 1) == Ok(81)
        assert Ok("x").flat_map(parse_port) == Err("not a number: x")
        assert Ok(1).map_err(str.upper) == Ok(1)

    def test_repr(self) -> None:
        assert repr(Ok("v")) == "Ok('v')"


class TestErr:
    """Tests for Err."""

    def test_accessors(self) -> None:
        result: Result[int, str] = Err("boom")
        assert result.is_err() and not result.is_ok()
        assert result.unwrap_or(3) == 3
        assert result.unwrap_err() == "boom"

    def test_unwrap_raises_with_error(self) -> None:
        with pytest.raises(ValueError, match="called unwrap on Err: boom"):
            Err("boom").unwrap()

    def test_map_keeps_error(self) -> None:
        result: Result[int, str] = Err("boom")
        assert result.map(lambda v: v + 1) == Err("boom")
        assert result.flat_map(lambda v: Ok(v)) == Err("boom")
        assert result.map_err(str.upper) == Err("BOOM")


class TestPatternMatching:
    """Results destructure in match statements."""

    @pytest.mark.parametrize(("text", "expected"), [("22", "port 22"), ("ssh", "error")])
    def test_match(self, text: str, expected: str) -> None:
        match parse_port(text):
            case Ok(port):
                seen = f"port {port}"
            case Err(_):
                seen = "error"
        assert seen == expected

    def test_type_guards(self) -> None:
        assert is_ok(parse_port("1"))
        assert is_err(parse_port("one"))
        assert not is_ok(parse_port("one"))
