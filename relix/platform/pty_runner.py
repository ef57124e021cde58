"""Run shell commands attached to a pseudo-terminal.

Git, hooks and build tools only print colors and progress meters when they
see a terminal. `PtyRunner` gives them one, then captures the stream twice:

- live: a reader thread feeds bytes into a `TerminalScreen`, and a render
  thread hands the current screen to `on_screen` at a fixed cadence
- final: the raw stream is reduced to a plain transcript returned to the
  caller

Both threads finish before `run_command` returns. The reader sets a
completion event once it sees end-of-stream; the render thread exits on that
event and performs one last render, so the final screen always includes the
last bytes the command wrote.
"""

from __future__ import annotations

import codecs
import fcntl
import os
import pty
import select
import signal
import struct
import subprocess
import termios
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Protocol

from relix.core.result import Err, Ok, Result
from relix.platform.terminal import TerminalScreen, plain_transcript

__all__ = [
    "CommandError",
    "CommandFailed",
    "CommandRunner",
    "PtyRunner",
    "PtyUnavailable",
    "RENDER_INTERVAL_SECONDS",
]

RENDER_INTERVAL_SECONDS = 0.05
_READ_CHUNK = 4096
_READ_POLL_SECONDS = 0.1


@dataclass(frozen=True, slots=True)
class CommandFailed:
    """The command ran and exited non-zero (negative: killed by that signal)."""

    command: str
    returncode: int
    output: str

    def __str__(self) -> str:
        return f"{self.command} failed (exit {self.returncode})"


@dataclass(frozen=True, slots=True)
class PtyUnavailable:
    """The command could not be started: no PTY or no shell."""

    command: str
    message: str
    output: str = ""

    def __str__(self) -> str:
        return f"{self.command}: {self.message}"


CommandError = CommandFailed | PtyUnavailable


class CommandRunner(Protocol):
    """What the release machine needs from a command runner."""

    def run_command(self, command: str) -> Result[str, CommandError]: ...

    def run_commands(self, commands: Sequence[str]) -> Result[str, CommandError]: ...

    def resize(self, rows: int, cols: int) -> None: ...

    @property
    def cancelled(self) -> bool: ...

    def kill(self) -> None: ...

    def reset(self) -> None: ...

    def close(self) -> None: ...


def _set_winsize(fd: int, rows: int, cols: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def _terminate(proc: subprocess.Popen[bytes]) -> None:
    if proc.poll() is not None:
        return
    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except (ProcessLookupError, PermissionError):
        pass


class PtyRunner:
    """Runs one command at a time in `cwd` under a fresh PTY.

    Args:
        cwd: Working directory for every command.
        rows, cols: Initial terminal size.
        on_screen: Called with the rendered (colored) screen, throttled.
        on_command: Called with each command line before it starts.
        render_interval: Seconds between live renders.
    """

    def __init__(
        self,
        cwd: Path,
        *,
        rows: int = 24,
        cols: int = 120,
        on_screen: Callable[[str], None] | None = None,
        on_command: Callable[[str], None] | None = None,
        render_interval: float = RENDER_INTERVAL_SECONDS,
        shell: str = "/bin/sh",
    ) -> None:
        self._cwd = cwd
        self._rows = rows
        self._cols = cols
        self._on_screen = on_screen
        self._on_command = on_command
        self._render_interval = render_interval
        self._shell = shell

        self._lock = threading.Lock()
        self._proc: subprocess.Popen[bytes] | None = None
        self._master_fd: int | None = None
        self._screen: TerminalScreen | None = None
        self._dirty = False
        self._closed = False
        self._cancelled = False

    def _env(self) -> dict[str, str]:
        env = dict(os.environ)
        env["TERM"] = "xterm-256color"
        env["LINES"] = str(self._rows)
        env["COLUMNS"] = str(self._cols)
        # Nobody types into this terminal: never block on a prompt or editor.
        env["GIT_TERMINAL_PROMPT"] = "0"
        env.setdefault("GIT_EDITOR", "true")
        return env

    def run_command(self, command: str) -> Result[str, CommandError]:
        """Run `command` via the shell and block until it exits."""
        if self._closed:
            return Err(PtyUnavailable(command=command, message="runner is closed"))
        if self._cancelled:
            return Err(CommandFailed(command=command, returncode=-int(signal.SIGTERM), output=""))

        if self._on_command is not None:
            self._on_command(command)

        try:
            master_fd, slave_fd = pty.openpty()
        except OSError as e:
            return Err(PtyUnavailable(command=command, message=f"cannot allocate pty: {e}"))

        with self._lock:
            rows, cols = self._rows, self._cols
        try:
            _set_winsize(master_fd, rows, cols)
            proc = subprocess.Popen(
                [self._shell, "-c", command],
                cwd=str(self._cwd),
                env=self._env(),
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                start_new_session=True,
                close_fds=True,
            )
        except OSError as e:
            os.close(master_fd)
            return Err(PtyUnavailable(command=command, message=f"cannot start shell: {e}"))
        finally:
            os.close(slave_fd)

        screen = TerminalScreen(rows=rows, cols=cols)
        with self._lock:
            self._proc = proc
            self._master_fd = master_fd
            self._screen = screen
            self._dirty = False
            cancelled = self._cancelled
        if cancelled:
            # kill() ran while the shell was starting.
            _terminate(proc)

        chunks: list[str] = []
        done = threading.Event()
        reader = threading.Thread(
            target=self._read_loop,
            args=(proc, master_fd, screen, chunks, done),
            name="relix-pty-reader",
            daemon=True,
        )
        renderer = threading.Thread(
            target=self._render_loop,
            args=(screen, done),
            name="relix-pty-render",
            daemon=True,
        )
        reader.start()
        renderer.start()
        reader.join()
        renderer.join()
        returncode = proc.wait()

        with self._lock:
            self._proc = None
            self._master_fd = None
            self._screen = None
        os.close(master_fd)

        output = plain_transcript("".join(chunks))
        if returncode != 0:
            return Err(CommandFailed(command=command, returncode=returncode, output=output))
        return Ok(output)

    def run_commands(self, commands: Sequence[str]) -> Result[str, CommandError]:
        """Run commands in order, stopping at the first failure.

        On failure the error's `output` holds everything captured so far.
        """
        outputs: list[str] = []
        for command in commands:
            result = self.run_command(command)
            if isinstance(result, Err):
                error = result.error
                captured = "\n".join(o for o in (*outputs, error.output) if o)
                return Err(replace(error, output=captured))
            if result.value:
                outputs.append(result.value)
        return Ok("\n".join(outputs))

    def _read_loop(
        self,
        proc: subprocess.Popen[bytes],
        fd: int,
        screen: TerminalScreen,
        chunks: list[str],
        done: threading.Event,
    ) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                ready, _, _ = select.select([fd], [], [], _READ_POLL_SECONDS)
                if not ready:
                    # Exited, but a detached grandchild may still hold the slave open.
                    if proc.poll() is not None:
                        break
                    continue
                try:
                    data = os.read(fd, _READ_CHUNK)
                except OSError:
                    # EIO: every slave descriptor is closed.
                    break
                if not data:
                    break
                self._consume(decoder.decode(data), screen, chunks)
            self._consume(decoder.decode(b"", final=True), screen, chunks)
        finally:
            done.set()

    def _consume(self, text: str, screen: TerminalScreen, chunks: list[str]) -> None:
        if not text:
            return
        chunks.append(text)
        with self._lock:
            screen.feed(text)
            self._dirty = True

    def _render_loop(self, screen: TerminalScreen, done: threading.Event) -> None:
        while not done.wait(self._render_interval):
            self._emit(screen, force=False)
        self._emit(screen, force=True)

    def _emit(self, screen: TerminalScreen, *, force: bool) -> None:
        if self._on_screen is None:
            return
        with self._lock:
            if not (self._dirty or force):
                return
            self._dirty = False
            rendered = screen.render()
        self._on_screen(rendered)

    def resize(self, rows: int, cols: int) -> None:
        """Resize the PTY and the emulator; applies to the running command too."""
        rows = max(1, rows)
        cols = max(1, cols)
        with self._lock:
            self._rows, self._cols = rows, cols
            if self._master_fd is not None:
                try:
                    _set_winsize(self._master_fd, rows, cols)
                except OSError:
                    pass
            if self._screen is not None:
                self._screen.resize(rows, cols)
                self._dirty = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def kill(self) -> None:
        """Terminate the running command and fail every later one until `reset`.

        A step made of several commands therefore stops at the next one even
        when the kill lands between two of them.
        """
        with self._lock:
            self._cancelled = True
            proc = self._proc
        if proc is not None:
            _terminate(proc)

    def reset(self) -> None:
        """Accept commands again after `kill`."""
        with self._lock:
            self._cancelled = False

    def close(self) -> None:
        """Kill any running command and refuse new ones."""
        self.kill()
        self._closed = True
