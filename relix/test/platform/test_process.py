"""Tests for relix.platform.process module."""

from __future__ import annotations

import subprocess
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

from relix.core.result import Err, Ok
from relix.platform.process import ProcessError, run, spawn_detached


class TestProcessError:
    """Test ProcessError dataclass."""

    def test_str_short_command(self) -> None:
        error = ProcessError(("git", "fetch"), 128, "", "fatal: unable to access")
        assert str(error) == "git fetch failed (exit 128)"

    def test_str_long_command_truncated(self) -> None:
        error = ProcessError(("git", "-C", "/repo", "status", "--porcelain"), 1, "", "")
        assert str(error) == "git -C /repo ... failed (exit 1)"


class TestRun:
    """Test run function."""

    def test_success_returns_stdout(self, tmp_path: Path) -> None:
        result = run([sys.executable, "-c", "print('hello')"], cwd=tmp_path)
        assert isinstance(result, Ok)
        assert result.value.strip() == "hello"

    def test_failure_keeps_streams(self, tmp_path: Path) -> None:
        script = "import sys; print('out'); print('err', file=sys.stderr); sys.exit(42)"
        result = run([sys.executable, "-c", script], cwd=tmp_path)

        assert isinstance(result, Err)
        assert result.error.returncode == 42
        assert result.error.stdout.strip() == "out"
        assert result.error.stderr.strip() == "err"

    def test_command_not_found(self, tmp_path: Path) -> None:
        result = run(["relix_missing_command_12345"], cwd=tmp_path)
        assert isinstance(result, Err)
        assert result.error.returncode == -1

    def test_timeout(self, tmp_path: Path) -> None:
        expired = subprocess.TimeoutExpired(cmd=["git"], timeout=1.0)
        with patch("relix.platform.process.subprocess.run", side_effect=expired):
            result = run(["git", "ls-remote"], cwd=tmp_path, timeout=1.0)

        assert isinstance(result, Err)
        assert result.error.stderr == "Command timed out after 1.0s"


class TestSpawnDetached:
    def test_missing_binary(self) -> None:
        result = spawn_detached(["relix_missing_command_12345"])
        assert isinstance(result, Err)

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX sessions")
    def test_starts_in_new_session(self) -> None:
        with patch("relix.platform.process.subprocess.Popen") as popen:
            assert spawn_detached(["notify-send", "hi"]) == Ok(None)
        assert popen.call_args.kwargs["start_new_session"] is True
