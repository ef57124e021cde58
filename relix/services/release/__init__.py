"""Release orchestration: steps, state, machine and the threaded loop."""

from relix.services.release.errors import PreconditionError, ReleaseError, StepFailure
from relix.services.release.history import HistoryEntry, HistoryStore
from relix.services.release.loop import ReleaseLoop
from relix.services.release.machine import (
    ReleaseContext,
    ReleaseStateMachine,
    StartRequest,
    check_source_branch,
)
from relix.services.release.state import ReleaseState, ReleaseStateStore
from relix.services.release.steps import ReleaseStep

__all__ = [
    "HistoryEntry",
    "HistoryStore",
    "PreconditionError",
    "ReleaseContext",
    "ReleaseError",
    "ReleaseLoop",
    "ReleaseState",
    "ReleaseStateMachine",
    "ReleaseStateStore",
    "ReleaseStep",
    "StartRequest",
    "StepFailure",
    "check_source_branch",
]
