"""Tests for the Ok/Err result values."""

import pytest

from dcu_api.core.result import Err, Ok, UnwrapError


class TestResult:
    """Tests for Ok and Err."""

    def test_ok(self):
        """Test the success side."""
        result = Ok(2)

        assert result.is_ok() and not result.is_err()
        assert result.unwrap() == 2
        assert result.map(lambda v: v * 10) == Ok(20)
        assert result.map_err(str) is result
        with pytest.raises(UnwrapError):
            result.unwrap_err()

    def test_err(self):
        """Test the failure side."""
        result = Err("boom")

        assert result.is_err() and not result.is_ok()
        assert result.unwrap_err() == "boom"
        assert result.map(lambda v: v * 10) is result
        assert result.map_err(str.upper) == Err("BOOM")
        with pytest.raises(UnwrapError):
            result.unwrap()

    def test_match(self):
        """Test branching with match statements and the match helper."""

        def describe(result):
            match result:
                case Ok(value):
                    return f"ok:{value}"
                case Err(error):
                    return f"err:{error}"

        assert describe(Ok(1)) == "ok:1"
        assert describe(Err("x")) == "err:x"
        assert Ok(1).match(lambda v: v + 1, lambda e: -1) == 2
        assert Err("x").match(lambda v: v, lambda e: e * 2) == "xx"
