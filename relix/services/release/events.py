"""Messages between release workers and the release loop.

Workers never touch the release state. They post these events and the
single consumer (`ReleaseLoop`) applies them in order.
"""

from __future__ import annotations

from dataclasses import dataclass

from relix.services.release.errors import StepFailure
from relix.services.release.pipeline import PipelineStatus
from relix.services.release.steps import ReleaseStep

__all__ = [
    "CommandStarted",
    "MRCreated",
    "PipelineStatusUpdated",
    "ReleaseEvent",
    "ScreenUpdated",
    "SourceBranchChecked",
    "StepCompleted",
    "StepOutcome",
    "StepStarted",
    "SubStepDone",
]


@dataclass(frozen=True, slots=True)
class StepStarted:
    step: ReleaseStep


@dataclass(frozen=True, slots=True)
class CommandStarted:
    step: ReleaseStep
    command: str


@dataclass(frozen=True, slots=True)
class ScreenUpdated:
    screen: str


@dataclass(frozen=True, slots=True)
class SubStepDone:
    """`done` units of `step` have finished (cumulative within the step)."""

    step: ReleaseStep
    done: int


@dataclass(frozen=True, slots=True)
class StepCompleted:
    step: ReleaseStep
    output: str = ""
    failure: StepFailure | None = None
    release_number: int = 0
    merged_branch: str = ""


@dataclass(frozen=True, slots=True)
class MRCreated:
    step: ReleaseStep
    output: str
    url: str
    iid: int


@dataclass(frozen=True, slots=True)
class PipelineStatusUpdated:
    status: PipelineStatus


@dataclass(frozen=True, slots=True)
class SourceBranchChecked:
    branch: str
    exists: bool
    same_as_base: bool = False
    contains_version: bool = False
    error: str = ""


StepOutcome = StepCompleted | MRCreated

ReleaseEvent = (
    StepStarted
    | CommandStarted
    | ScreenUpdated
    | SubStepDone
    | StepCompleted
    | MRCreated
    | PipelineStatusUpdated
    | SourceBranchChecked
)
