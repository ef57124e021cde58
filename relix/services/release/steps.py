"""Release steps, their order and their progress weight."""

from __future__ import annotations

from enum import IntEnum

__all__ = [
    "ReleaseStep",
    "SUSPEND_STEPS",
    "credit_sub_steps",
    "next_step",
    "sub_steps_before",
    "sub_steps_in",
    "total_sub_steps",
]


class ReleaseStep(IntEnum):
    """Steps in execution order; comparisons follow that order."""

    IDLE = 0
    GIT_FETCH = 1
    CHECKOUT_ROOT = 2
    MERGE_BRANCHES = 3
    CHECKOUT_ENV = 4
    COPY_CONTENT = 5
    COMMIT = 6
    WAIT_FOR_MR = 7
    PUSH_AND_CREATE_MR = 8
    WAIT_FOR_ROOT_PUSH = 9
    PUSH_ROOT_BRANCHES = 10
    SWITCH_TO_ROOT = 11
    COMPLETE = 12

    @property
    def slug(self) -> str:
        """Stable name used in persisted files."""
        return self.name.lower()

    @property
    def label(self) -> str:
        return _LABELS[self]

    @classmethod
    def from_slug(cls, slug: str) -> ReleaseStep | None:
        try:
            return cls[slug.strip().upper()]
        except KeyError:
            return None

    @property
    def is_suspended(self) -> bool:
        return self in SUSPEND_STEPS

    @property
    def is_executable(self) -> bool:
        """Steps that run commands (everything but idle, waits and complete)."""
        return self not in SUSPEND_STEPS and self not in (ReleaseStep.IDLE, ReleaseStep.COMPLETE)


_LABELS = {
    ReleaseStep.IDLE: "Idle",
    ReleaseStep.GIT_FETCH: "Fetch",
    ReleaseStep.CHECKOUT_ROOT: "Checkout source branch",
    ReleaseStep.MERGE_BRANCHES: "Merge branches",
    ReleaseStep.CHECKOUT_ENV: "Checkout environment branch",
    ReleaseStep.COPY_CONTENT: "Copy content",
    ReleaseStep.COMMIT: "Commit",
    ReleaseStep.WAIT_FOR_MR: "Waiting to create merge request",
    ReleaseStep.PUSH_AND_CREATE_MR: "Push and create merge request",
    ReleaseStep.WAIT_FOR_ROOT_PUSH: "Waiting to push source branch",
    ReleaseStep.PUSH_ROOT_BRANCHES: "Push source branch and tag",
    ReleaseStep.SWITCH_TO_ROOT: "Switch to base branch",
    ReleaseStep.COMPLETE: "Complete",
}

SUSPEND_STEPS = frozenset({ReleaseStep.WAIT_FOR_MR, ReleaseStep.WAIT_FOR_ROOT_PUSH})

_NEXT = {
    ReleaseStep.IDLE: ReleaseStep.GIT_FETCH,
    ReleaseStep.GIT_FETCH: ReleaseStep.CHECKOUT_ROOT,
    ReleaseStep.CHECKOUT_ROOT: ReleaseStep.MERGE_BRANCHES,
    ReleaseStep.MERGE_BRANCHES: ReleaseStep.CHECKOUT_ENV,
    ReleaseStep.CHECKOUT_ENV: ReleaseStep.COPY_CONTENT,
    ReleaseStep.COPY_CONTENT: ReleaseStep.COMMIT,
    ReleaseStep.COMMIT: ReleaseStep.WAIT_FOR_MR,
    ReleaseStep.WAIT_FOR_MR: ReleaseStep.PUSH_AND_CREATE_MR,
    ReleaseStep.PUSH_AND_CREATE_MR: ReleaseStep.WAIT_FOR_ROOT_PUSH,
    ReleaseStep.WAIT_FOR_ROOT_PUSH: ReleaseStep.PUSH_ROOT_BRANCHES,
    ReleaseStep.PUSH_ROOT_BRANCHES: ReleaseStep.SWITCH_TO_ROOT,
    ReleaseStep.SWITCH_TO_ROOT: ReleaseStep.COMPLETE,
    ReleaseStep.COMPLETE: ReleaseStep.COMPLETE,
}


def next_step(step: ReleaseStep, *, mr_count: int) -> ReleaseStep:
    """Step that follows a successful `step` (MergeBranches is skipped with no MRs)."""
    following = _NEXT[step]
    if following == ReleaseStep.MERGE_BRANCHES and mr_count == 0:
        return ReleaseStep.CHECKOUT_ENV
    return following


def sub_steps_in(step: ReleaseStep, *, mr_count: int, root_merge: bool) -> int:
    """Progress units one step contributes."""
    match step:
        case ReleaseStep.MERGE_BRANCHES:
            return mr_count
        case ReleaseStep.COPY_CONTENT:
            return 3
        case ReleaseStep.PUSH_AND_CREATE_MR:
            return 2
        case ReleaseStep.PUSH_ROOT_BRANCHES:
            return 5 if root_merge else 2
        case (
            ReleaseStep.GIT_FETCH
            | ReleaseStep.CHECKOUT_ROOT
            | ReleaseStep.CHECKOUT_ENV
            | ReleaseStep.COMMIT
            | ReleaseStep.SWITCH_TO_ROOT
        ):
            return 1
        case _:
            return 0


def sub_steps_before(step: ReleaseStep, *, mr_count: int, root_merge: bool) -> int:
    return sum(
        sub_steps_in(s, mr_count=mr_count, root_merge=root_merge) for s in ReleaseStep if s < step
    )


def total_sub_steps(*, mr_count: int, root_merge: bool) -> int:
    return sub_steps_before(ReleaseStep.COMPLETE, mr_count=mr_count, root_merge=root_merge)


def credit_sub_steps(
    completed: int,
    step: ReleaseStep,
    done_in_step: int,
    *,
    mr_count: int,
    root_merge: bool,
) -> int:
    """New completed count after `done_in_step` units of `step` finished.

    Never lowers `completed` and never exceeds the total, so re-running a
    step on retry does not count its units twice.
    """
    within = min(done_in_step, sub_steps_in(step, mr_count=mr_count, root_merge=root_merge))
    reached = sub_steps_before(step, mr_count=mr_count, root_merge=root_merge) + within
    total = total_sub_steps(mr_count=mr_count, root_merge=root_merge)
    return max(completed, min(total, reached))
