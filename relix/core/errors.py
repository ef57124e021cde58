"""Error codes for CLI exit status.

Every `relix` command exits with one of these codes so scripts wrapping the
tool can tell a bad invocation apart from a failed release step.
"""

from enum import IntEnum

__all__ = ["ErrorCode"]


class ErrorCode(IntEnum):
    """Exit codes for CLI commands.

    These values are used as process exit codes and should remain stable:
    - 0: Success
    - 1: User error (bad input, nothing to retry, wrong release step)
    - 2: Environment error (dirty tree, no project root, invalid config)
    - 3: Release error (a release step failed and awaits retry or abort)
    - 4: Network error (code host unreachable or rejected credentials)
    - 5: I/O error (state or history file unreadable/unwritable)
    """

    OK = 0
    USER_ERROR = 1
    ENV_ERROR = 2
    RELEASE_ERROR = 3
    NETWORK_ERROR = 4
    IO_ERROR = 5

    def __str__(self) -> str:
        return self.name.lower().replace("_", " ")

    @property
    def is_success(self) -> bool:
        return self == ErrorCode.OK

    @property
    def is_error(self) -> bool:
        return self != ErrorCode.OK
