"""Advisory lock held by the process driving a release.

Only one relix process may run git commands in a working tree at a time.
The holder writes its pid into the lock file so that a refused process can
say who holds it.
"""

from __future__ import annotations

import fcntl
import os
from dataclasses import dataclass
from pathlib import Path
from types import TracebackType

from relix.core.result import Err, Ok, Result

__all__ = ["LockHeld", "ProcessLock"]


@dataclass(frozen=True, slots=True)
class LockHeld:
    """Another process holds the lock (pid None when it could not be read)."""

    path: Path
    pid: int | None = None

    def __str__(self) -> str:
        if self.pid is None:
            return f"{self.path} is locked by another process"
        return f"{self.path} is locked by process {self.pid}"


class ProcessLock:
    """Non-blocking `flock` on `path`; released on `release` or process exit."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._fd: int | None = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def holder_pid(self) -> int | None:
        try:
            text = self.path.read_text(encoding="utf-8").strip()
        except OSError:
            return None
        return int(text) if text.isdigit() else None

    def acquire(self) -> Result[None, LockHeld]:
        if self._fd is not None:
            return Ok(None)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            return Err(LockHeld(path=self.path, pid=self.holder_pid()))
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        self._fd = fd
        return Ok(None)

    def release(self) -> None:
        fd, self._fd = self._fd, None
        if fd is None:
            return
        # The file stays: unlinking it would let a waiter lock a stale inode.
        os.ftruncate(fd, 0)
        fcntl.flock(fd, fcntl.LOCK_UN)
        os.close(fd)

    def __enter__(self) -> ProcessLock:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()
