"""Tests for relix.core.errors module."""

import pytest

from relix.core.errors import ErrorCode


class TestErrorCode:
    """Exit codes are stable integers."""

    @pytest.mark.parametrize(
        ("code", "value"),
        [
            (ErrorCode.OK, 0),
            (ErrorCode.USER_ERROR, 1),
            (ErrorCode.ENV_ERROR, 2),
            (ErrorCode.RELEASE_ERROR, 3),
            (ErrorCode.NETWORK_ERROR, 4),
            (ErrorCode.IO_ERROR, 5),
        ],
    )
    def test_values(self, code: ErrorCode, value: int) -> None:
        assert int(code) == value

    def test_str(self) -> None:
        assert str(ErrorCode.RELEASE_ERROR) == "release error"

    def test_success_flags(self) -> None:
        assert ErrorCode.OK.is_success
        assert not ErrorCode.OK.is_error
        assert all(code.is_error for code in ErrorCode if code != ErrorCode.OK)
