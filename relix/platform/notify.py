"""Desktop notifications (fire-and-forget).

Notification failures are never reported: a missing `notify-send` must not
disturb a release.
"""

from __future__ import annotations

import shutil
import sys
from dataclasses import dataclass, field
from typing import Protocol

from relix.platform.process import spawn_detached

__all__ = ["DesktopNotifier", "MockNotifier", "Notification", "NotificationSink"]


class NotificationSink(Protocol):
    def notify(self, title: str, message: str) -> None: ...


def _applescript_quote(text: str) -> str:
    return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'


class DesktopNotifier:
    """Shows a notification via `osascript` (macOS) or `notify-send` (Linux)."""

    def __init__(self, app_name: str = "relix") -> None:
        self._app_name = app_name

    def _command(self, title: str, message: str) -> list[str] | None:
        if sys.platform == "darwin":
            script = (
                f"display notification {_applescript_quote(message)} "
                f"with title {_applescript_quote(title)}"
            )
            return ["osascript", "-e", script]
        if sys.platform.startswith("linux") and shutil.which("notify-send"):
            return ["notify-send", "--app-name", self._app_name, title, message]
        return None

    def notify(self, title: str, message: str) -> None:
        cmd = self._command(title, message)
        if cmd is not None:
            spawn_detached(cmd)


@dataclass(frozen=True, slots=True)
class Notification:
    title: str
    message: str


@dataclass
class MockNotifier:
    """Records notifications for tests."""

    sent: list[Notification] = field(default_factory=list)

    def notify(self, title: str, message: str) -> None:
        self.sent.append(Notification(title=title, message=message))
