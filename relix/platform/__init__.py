"""Platform abstraction layer: processes, PTYs, files, notifications."""

from .files import atomic_write_json, atomic_write_text
from .process import ProcessError, run
from .pty_runner import CommandError, CommandFailed, CommandRunner, PtyRunner, PtyUnavailable
from .terminal import TerminalScreen, plain_transcript

__all__ = [
    "CommandError",
    "CommandFailed",
    "CommandRunner",
    "ProcessError",
    "PtyRunner",
    "PtyUnavailable",
    "TerminalScreen",
    "atomic_write_json",
    "atomic_write_text",
    "plain_transcript",
    "run",
]
