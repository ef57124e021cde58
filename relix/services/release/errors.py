"""Release error types.

Two families:

- `ReleaseError` / `PreconditionError`: returned by machine operations that
  cannot proceed at all (dirty tree, nothing to retry, state file unwritable).
- `StepFailure`: a step ran and failed. It is recorded on the release state as
  `LastError` and the release waits for Retry or Abort. The concrete type
  decides how Retry recovers.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar, Literal

from relix.services.release.steps import ReleaseStep

__all__ = [
    "CODE_COMMIT_REJECTED",
    "CODE_EXTERNAL_SERVICE",
    "CODE_INTERRUPTED",
    "CODE_MERGE_CONFLICT",
    "CODE_STEP_FAILED",
    "CommitRejectedError",
    "ExternalServiceError",
    "InterruptedStepError",
    "MergeConflictError",
    "PreconditionError",
    "ReleaseError",
    "StepExecutionError",
    "StepFailure",
]

CODE_STEP_FAILED = "STEP_FAILED"
CODE_MERGE_CONFLICT = "MERGE_CONFLICT"
CODE_COMMIT_REJECTED = "COMMIT_REJECTED"
CODE_INTERRUPTED = "RELEASE_INTERRUPTED"
CODE_EXTERNAL_SERVICE = "EXTERNAL_SERVICE"


@dataclass(frozen=True, slots=True)
class ReleaseError:
    kind: Literal[
        "invalid_state",
        "nothing_to_retry",
        "no_release",
        "state_io",
        "history_io",
        "invalid_input",
    ]
    message: str
    hint: str | None = None


@dataclass(frozen=True, slots=True)
class PreconditionError:
    """Start refused before any state exists."""

    reason: Literal[
        "dirty_tree",
        "no_project",
        "invalid_input",
        "invalid_config",
        "release_in_progress",
        "git_failed",
        "state_io",
    ]
    message: str
    hint: str | None = None


@dataclass(frozen=True, slots=True)
class StepExecutionError:
    """A step command exited non-zero; Retry re-runs the step."""

    code: ClassVar[str] = CODE_STEP_FAILED

    step: ReleaseStep
    message: str
    output: str = ""


@dataclass(frozen=True, slots=True)
class MergeConflictError:
    """A merge stopped with conflicts; Retry continues the merge."""

    code: ClassVar[str] = CODE_MERGE_CONFLICT

    step: ReleaseStep
    branch: str
    message: str
    output: str = ""


@dataclass(frozen=True, slots=True)
class CommitRejectedError:
    """The commit failed (typically a hook); the tree was moved back to the source branch."""

    code: ClassVar[str] = CODE_COMMIT_REJECTED

    step: ReleaseStep
    message: str
    output: str = ""


@dataclass(frozen=True, slots=True)
class InterruptedStepError:
    """The process stopped mid-step; only produced when resuming."""

    code: ClassVar[str] = CODE_INTERRUPTED

    step: ReleaseStep
    message: str = "release was interrupted; retry to run the step again"
    output: str = ""


@dataclass(frozen=True, slots=True)
class ExternalServiceError:
    """The code host rejected or could not answer a request."""

    code: ClassVar[str] = CODE_EXTERNAL_SERVICE

    step: ReleaseStep
    message: str
    output: str = ""


StepFailure = (
    StepExecutionError
    | MergeConflictError
    | CommitRejectedError
    | InterruptedStepError
    | ExternalServiceError
)
