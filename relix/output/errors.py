"""Error presentation: one message per error plus a consistent exit code."""

from __future__ import annotations

from typing import TYPE_CHECKING

from relix.core.config import ConfigError
from relix.core.errors import ErrorCode
from relix.core.project import ProjectError
from relix.output.console import Style
from relix.services.release.errors import (
    CommitRejectedError,
    ExternalServiceError,
    InterruptedStepError,
    MergeConflictError,
    PreconditionError,
    ReleaseError,
    StepExecutionError,
    StepFailure,
)
from relix.services.release.gitlab import ApiError
from relix.services.release.state import LastError

if TYPE_CHECKING:
    from relix.output.console import ConsoleProtocol

__all__ = ["AnyError", "print_error", "error_exit_code", "print_last_error"]

AnyError = PreconditionError | ReleaseError | StepFailure | ApiError | ConfigError | ProjectError


def _hint(console: ConsoleProtocol, hint: str | None) -> None:
    if hint:
        console.print(f"hint: {hint}", Style.DIM)


def print_error(error: AnyError, console: ConsoleProtocol) -> None:
    match error:
        case PreconditionError(message=message, hint=hint):
            console.error(message)
            _hint(console, hint)
        case ReleaseError(message=message, hint=hint):
            console.error(message)
            _hint(console, hint)
        case MergeConflictError(branch=branch, message=message):
            console.error(message)
            _hint(console, f"git status shows the conflicted files; branch: {branch}")
        case CommitRejectedError(message=message) | InterruptedStepError(message=message):
            console.error(message)
        case StepExecutionError(step=step, message=message) | ExternalServiceError(
            step=step, message=message
        ):
            console.error(f"{step.label}: {message}")
        case ApiError(kind="auth") as e:
            console.error(f"code host: {e}")
            _hint(console, "check the token variable named by gitlab.token_env")
        case ApiError() as e:
            console.error(f"code host: {e}")
        case ConfigError(message=message, path=path):
            console.error(message)
            if path is not None:
                console.print(f"config: {path}", Style.DIM)
        case ProjectError(message=message):
            console.error(message)


def print_last_error(error: LastError, output: str, console: ConsoleProtocol) -> None:
    """Show the failure recorded on a release and the tail of its output."""
    console.error(f"{error.step.label} failed [{error.code}]: {error.message}")
    if output:
        console.print("\n".join(output.splitlines()[-20:]), Style.DIM)
    console.print("hint: relix retry, or relix abort", Style.DIM)


def error_exit_code(error: AnyError) -> int:
    match error:
        case PreconditionError(reason="dirty_tree" | "invalid_input"):
            return int(ErrorCode.USER_ERROR)
        case PreconditionError(reason="state_io"):
            return int(ErrorCode.IO_ERROR)
        case PreconditionError():
            return int(ErrorCode.ENV_ERROR)
        case ReleaseError(kind="state_io" | "history_io"):
            return int(ErrorCode.IO_ERROR)
        case ReleaseError():
            return int(ErrorCode.USER_ERROR)
        case ExternalServiceError() | ApiError():
            return int(ErrorCode.NETWORK_ERROR)
        case ConfigError() | ProjectError():
            return int(ErrorCode.ENV_ERROR)
        case _:
            return int(ErrorCode.RELEASE_ERROR)
