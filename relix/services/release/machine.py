"""Release state machine.

The machine owns the single `ReleaseState` of a working tree and is split in
two halves:

- `perform(state, step, post)`: worker side. Runs the git commands of one
  step against a snapshot and returns its outcome. It never mutates the
  machine; progress is reported through `post`.
- `apply(event)`: consumer side. Folds an outcome into the state, persists
  it, and returns the step to run next (None when the release waits for the
  user, failed, or is done).

`execute_step` and `run` glue both halves together synchronously; the
threaded driver is `relix.services.release.loop.ReleaseLoop`.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from pathlib import Path

from relix.core.config import Config, EnvironmentConfig
from relix.core.project import is_project_root
from relix.core.result import Err, Ok, Result
from relix.git.repository import RepositoryProtocol
from relix.platform.pty_runner import CommandError, CommandRunner
from relix.services.release.commands import ReleaseCommands
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
from relix.services.release.events import (
    CommandStarted,
    MRCreated,
    ReleaseEvent,
    SourceBranchChecked,
    StepCompleted,
    StepOutcome,
    StepStarted,
    SubStepDone,
)
from relix.services.release.excludes import ExcludeMatcher
from relix.services.release.gitlab import CodeHostClient
from relix.services.release.history import HistoryEntry, HistoryStatus, HistoryStore
from relix.services.release.state import (
    ERROR_OUTPUT_MAX_LINES,
    LastError,
    ReleaseState,
    ReleaseStateStore,
    append_lines,
    new_release_state,
    tail_lines,
)
from relix.services.release.steps import (
    ReleaseStep,
    credit_sub_steps,
    next_step,
    sub_steps_in,
    total_sub_steps,
)
from relix.services.release.versioning import next_release_number, validate_version, versions_match

__all__ = [
    "EventSink",
    "ReleaseContext",
    "ReleaseStateMachine",
    "StartRequest",
    "check_source_branch",
]

EventSink = Callable[[ReleaseEvent], None]


@dataclass(frozen=True, slots=True)
class ReleaseContext:
    """Collaborators of a release; everything but the state itself."""

    config: Config
    store: ReleaseStateStore
    repo: RepositoryProtocol
    runner: CommandRunner
    history: HistoryStore | None = None
    client: CodeHostClient | None = None


@dataclass(frozen=True, slots=True)
class StartRequest:
    """What the user picked for a new release."""

    project_id: int
    environment: EnvironmentConfig
    version: str
    mr_branches: tuple[str, ...]
    selected_mr_ids: tuple[int, ...] = ()
    mr_urls: tuple[str, ...] = ()
    mr_commit_shas: tuple[str, ...] = ()
    source_branch: str = ""
    root_merge: bool = False


def check_source_branch(
    repo: RepositoryProtocol, branch: str, base_branch: str, version: str
) -> SourceBranchChecked:
    """Inspect a user-named source branch on the remote."""
    parts = branch.replace("/", "-").split("-")
    contains_version = any(versions_match(p, version) for p in parts if p[:1].isdigit())
    head = repo.remote_head(branch)
    if isinstance(head, Err):
        return SourceBranchChecked(
            branch=branch, exists=False, contains_version=contains_version, error=head.error.message
        )
    if head.value is None:
        return SourceBranchChecked(branch=branch, exists=False, contains_version=contains_version)

    base_head = repo.remote_head(base_branch)
    same_as_base = isinstance(base_head, Ok) and base_head.value == head.value
    return SourceBranchChecked(
        branch=branch, exists=True, same_as_base=same_as_base, contains_version=contains_version
    )


def _recovery_metadata(repo: RepositoryProtocol, state: ReleaseState, base_branch: str) -> str:
    """Commit ids at start, enough to put every branch back by hand."""
    refs = [base_branch, f"origin/{base_branch}", f"origin/{state.environment.branch}"]
    if state.source_branch_is_remote:
        refs.append(f"origin/{state.source}")
    lines = ["# recovery metadata"]
    lines.extend(f"#   {ref}: {repo.commit_id(ref) or 'unknown'}" for ref in refs)
    return "\n".join(lines)


class ReleaseStateMachine:
    def __init__(
        self,
        state: ReleaseState,
        context: ReleaseContext,
        *,
        on_event: EventSink | None = None,
    ) -> None:
        self._state = state
        self._ctx = context
        self._on_event = on_event
        self._finalized = False
        self._history_entry: HistoryEntry | None = None

    @property
    def state(self) -> ReleaseState:
        return self._state

    @property
    def context(self) -> ReleaseContext:
        return self._ctx

    @property
    def is_finished(self) -> bool:
        return self._finalized

    # -- construction -------------------------------------------------------

    @classmethod
    def start(
        cls,
        request: StartRequest,
        context: ReleaseContext,
        *,
        work_dir: Path,
        on_event: EventSink | None = None,
    ) -> Result[ReleaseStateMachine, PreconditionError]:
        """Check preconditions and persist a fresh state at GitFetch."""
        if not is_project_root(work_dir):
            return Err(PreconditionError("no_project", f"not a git working tree: {work_dir}"))
        if context.store.exists():
            return Err(
                PreconditionError(
                    "release_in_progress",
                    "a release is already in progress",
                    hint="Run: relix resume, or relix abort",
                )
            )

        version_error = validate_version(request.version)
        if version_error is not None:
            return Err(PreconditionError("invalid_input", version_error))
        if not request.environment.name or not request.environment.branch:
            return Err(PreconditionError("invalid_input", "environment needs a name and a branch"))
        if not request.mr_branches:
            return Err(PreconditionError("invalid_input", "select at least one merge request"))
        repeated = sorted({b for b in request.mr_branches if request.mr_branches.count(b) > 1})
        if repeated:
            return Err(
                PreconditionError(
                    "invalid_input", f"branches selected more than once: {', '.join(repeated)}"
                )
            )
        for name, values in (
            ("merge request ids", request.selected_mr_ids),
            ("merge request urls", request.mr_urls),
            ("commit shas", request.mr_commit_shas),
        ):
            if values and len(values) != len(request.mr_branches):
                return Err(
                    PreconditionError(
                        "invalid_input", f"{name} do not line up with the selected branches"
                    )
                )

        status = context.repo.status()
        if isinstance(status, Err):
            return Err(PreconditionError("git_failed", status.error.message))
        if not status.value.is_clean:
            listed = ", ".join(f"{e.pretty_xy()} {e.path}" for e in status.value.entries[:10])
            return Err(
                PreconditionError(
                    "dirty_tree",
                    "working tree has uncommitted changes",
                    hint=f"Commit or stash first: {listed}",
                )
            )

        source_is_remote = False
        if request.source_branch:
            exists = context.repo.remote_branch_exists(request.source_branch)
            if isinstance(exists, Err):
                return Err(PreconditionError("git_failed", exists.error.message))
            source_is_remote = exists.value

        state = new_release_state(
            project_id=request.project_id,
            environment=request.environment,
            version=request.version.strip(),
            work_dir=work_dir,
            mr_branches=request.mr_branches,
            selected_mr_ids=request.selected_mr_ids,
            mr_urls=request.mr_urls,
            mr_commit_shas=request.mr_commit_shas,
            source_branch=request.source_branch,
            source_branch_is_remote=source_is_remote,
            root_merge=request.root_merge,
        )
        metadata = _recovery_metadata(context.repo, state, context.config.release.base_branch)
        state = replace(state, terminal_output=append_lines(state.terminal_output, metadata))

        saved = context.store.save(state)
        if isinstance(saved, Err):
            return Err(PreconditionError("state_io", saved.error.message, hint=saved.error.hint))
        return Ok(cls(state, context, on_event=on_event))

    @classmethod
    def resume(
        cls,
        saved: ReleaseState,
        context: ReleaseContext,
        *,
        on_event: EventSink | None = None,
    ) -> Result[ReleaseStateMachine, ReleaseError]:
        """Rebuild a machine from a persisted state.

        A state caught mid-step (no error, executable step) is marked as
        interrupted so that the user decides between Retry and Abort.
        """
        state = replace(
            saved,
            total_sub_steps=total_sub_steps(mr_count=saved.mr_count, root_merge=saved.root_merge),
        )
        step = state.current_step
        if state.last_error is None and (step.is_executable or step == ReleaseStep.IDLE):
            if step == ReleaseStep.IDLE:
                step = ReleaseStep.GIT_FETCH
            failure = InterruptedStepError(step=step)
            state = replace(
                state,
                current_step=step,
                last_error=LastError(step=step, code=failure.code, message=failure.message),
            )
        machine = cls(state, context, on_event=on_event)
        saved_result = context.store.save(state)
        if isinstance(saved_result, Err):
            return saved_result
        return Ok(machine)

    @classmethod
    def load(
        cls, context: ReleaseContext, *, on_event: EventSink | None = None
    ) -> Result[ReleaseStateMachine, ReleaseError]:
        loaded = context.store.load()
        if isinstance(loaded, Err):
            return loaded
        if loaded.value is None:
            return Err(
                ReleaseError(kind="no_release", message="no release in progress", hint="Run: relix start")
            )
        return cls.resume(loaded.value, context, on_event=on_event)

    # -- worker side --------------------------------------------------------

    def commands_for(self, state: ReleaseState) -> ReleaseCommands:
        release = self._ctx.config.release
        return ReleaseCommands(
            version=state.version,
            environment=state.environment,
            mr_branches=state.mr_branches,
            base_branch=release.base_branch,
            develop_branch=release.develop_branch,
            source_branch=state.source,
            source_branch_is_remote=state.source_branch_is_remote,
        )

    def perform(self, state: ReleaseState, step: ReleaseStep, post: EventSink) -> StepOutcome:
        """Run `step` against the `state` snapshot."""
        post(StepStarted(step))
        work = _StepWork(self._ctx, state, step, self.commands_for(state), post)
        match step:
            case ReleaseStep.GIT_FETCH:
                return work.simple(work.cmds.fetch())
            case ReleaseStep.CHECKOUT_ROOT:
                return work.simple(work.cmds.checkout_source())
            case ReleaseStep.MERGE_BRANCHES:
                return work.merge_next_branch()
            case ReleaseStep.CHECKOUT_ENV:
                return work.checkout_env()
            case ReleaseStep.COPY_CONTENT:
                return work.copy_content()
            case ReleaseStep.COMMIT:
                return work.commit()
            case ReleaseStep.PUSH_AND_CREATE_MR:
                return work.push_and_create_mr()
            case ReleaseStep.PUSH_ROOT_BRANCHES:
                return work.push_root_branches()
            case ReleaseStep.SWITCH_TO_ROOT:
                return work.simple([work.cmds.switch_to_base()])
            case _:
                return StepCompleted(
                    step,
                    failure=StepExecutionError(step, f"{step.label} is not an executable step"),
                )

    # -- consumer side ------------------------------------------------------

    def apply(self, event: ReleaseEvent) -> Result[ReleaseStep | None, ReleaseError]:
        """Fold `event` into the state; Ok(step) names the step to run next."""
        if self._finalized:
            return Ok(None)
        match event:
            case SubStepDone(step=step, done=done):
                s = self._state
                credited = credit_sub_steps(
                    s.completed_sub_steps, step, done, mr_count=s.mr_count, root_merge=s.root_merge
                )
                self._state = replace(s, completed_sub_steps=credited)
                return Ok(None)
            case StepCompleted(failure=failure) if failure is not None:
                return self._apply_failure(event.step, event.output, failure)
            case StepCompleted():
                return self._apply_success(event)
            case MRCreated():
                return self._apply_mr_created(event)
            case _:
                return Ok(None)

    def _persist(self, state: ReleaseState) -> Result[None, ReleaseError]:
        self._state = state
        return self._ctx.store.save(state)

    def _apply_failure(
        self, step: ReleaseStep, output: str, failure: StepFailure
    ) -> Result[ReleaseStep | None, ReleaseError]:
        s = self._state
        # A rejected commit is redone from the copy.
        retry_step = ReleaseStep.COPY_CONTENT if isinstance(failure, CommitRejectedError) else step
        state = replace(
            s,
            current_step=retry_step,
            last_error=LastError(step=step, code=failure.code, message=failure.message),
            error_output=tail_lines(failure.output or output, ERROR_OUTPUT_MAX_LINES),
            terminal_output=append_lines(s.terminal_output, output),
        )
        saved = self._persist(state)
        if isinstance(saved, Err):
            return saved
        return Ok(None)

    def _apply_success(self, event: StepCompleted) -> Result[ReleaseStep | None, ReleaseError]:
        s = self._state
        step = event.step
        state = replace(s, terminal_output=append_lines(s.terminal_output, event.output))
        following = next_step(step, mr_count=s.mr_count)
        done_in_step = sub_steps_in(step, mr_count=s.mr_count, root_merge=s.root_merge)

        if step == ReleaseStep.MERGE_BRANCHES:
            merged = s.merged_branches
            index = s.current_mr_index
            if event.merged_branch:
                index += 1
                if event.merged_branch not in merged:
                    merged = (*merged, event.merged_branch)
            state = replace(state, merged_branches=merged, current_mr_index=index)
            done_in_step = index
            if index < s.mr_count:
                following = ReleaseStep.MERGE_BRANCHES
        elif step == ReleaseStep.COMMIT:
            state = replace(state, release_number=event.release_number)

        state = replace(
            state,
            current_step=following,
            last_success_step=step,
            last_error=None,
            error_output="",
            completed_sub_steps=credit_sub_steps(
                state.completed_sub_steps,
                step,
                done_in_step,
                mr_count=s.mr_count,
                root_merge=s.root_merge,
            ),
        )
        saved = self._persist(state)
        if isinstance(saved, Err):
            return saved

        if following == ReleaseStep.COMPLETE:
            finished = self._finalize("completed")
            if isinstance(finished, Err):
                return finished
            return Ok(None)
        return Ok(following if following.is_executable else None)

    def _apply_mr_created(self, event: MRCreated) -> Result[ReleaseStep | None, ReleaseError]:
        s = self._state
        number = s.release_number or 1
        state = replace(
            s,
            terminal_output=append_lines(s.terminal_output, event.output),
            created_mr_url=event.url,
            created_mr_iid=event.iid,
            tag_name=self.commands_for(s).tag_name(number),
            current_step=ReleaseStep.WAIT_FOR_ROOT_PUSH,
            last_success_step=ReleaseStep.PUSH_AND_CREATE_MR,
            last_error=None,
            error_output="",
            completed_sub_steps=credit_sub_steps(
                s.completed_sub_steps,
                ReleaseStep.PUSH_AND_CREATE_MR,
                2,
                mr_count=s.mr_count,
                root_merge=s.root_merge,
            ),
        )
        saved = self._persist(state)
        if isinstance(saved, Err):
            return saved
        return Ok(None)

    # -- synchronous driving ------------------------------------------------

    def _post_sync(self, event: ReleaseEvent) -> None:
        if isinstance(event, SubStepDone):
            self.apply(event)
        if self._on_event is not None:
            self._on_event(event)

    def execute_step(self, step: ReleaseStep | None = None) -> Result[ReleaseStep | None, ReleaseError]:
        """Run one step to completion and apply its outcome."""
        target = step or self._state.current_step
        if self._finalized:
            return Err(ReleaseError(kind="invalid_state", message="release is already finished"))
        if not target.is_executable:
            return Err(ReleaseError(kind="invalid_state", message=f"{target.label} cannot be executed"))
        if self._state.last_error is not None:
            return Err(
                ReleaseError(
                    kind="invalid_state",
                    message=f"step {self._state.last_error.step.label} failed",
                    hint="Run: relix retry, or relix abort",
                )
            )
        outcome = self.perform(self._state, target, self._post_sync)
        applied = self.apply(outcome)
        if self._on_event is not None:
            self._on_event(outcome)
        return applied

    def run(self, step: ReleaseStep | None = None) -> Result[ReleaseState, ReleaseError]:
        """Execute steps until the release suspends, fails or completes."""
        upcoming: ReleaseStep | None = step or self._state.current_step
        while upcoming is not None and upcoming.is_executable and not self._finalized:
            result = self.execute_step(upcoming)
            if isinstance(result, Err):
                return result
            upcoming = result.value
        return Ok(self._state)

    # -- user actions -------------------------------------------------------

    def begin_retry(self) -> Result[ReleaseStep, ReleaseError]:
        """Clear the error and return the step to re-run."""
        s = self._state
        if s.last_error is None:
            return Err(ReleaseError(kind="nothing_to_retry", message="the last step did not fail"))
        saved = self._persist(replace(s, last_error=None, error_output=""))
        if isinstance(saved, Err):
            return saved
        return Ok(self._state.current_step)

    def retry(self) -> Result[ReleaseState, ReleaseError]:
        begun = self.begin_retry()
        if isinstance(begun, Err):
            return begun
        return self.run(begun.value)

    def _leave_suspend(
        self, expected: ReleaseStep, action: str
    ) -> Result[ReleaseStep, ReleaseError]:
        s = self._state
        if s.current_step != expected or s.last_error is not None:
            return Err(
                ReleaseError(
                    kind="invalid_state",
                    message=f"cannot {action} now (release is at: {s.current_step.label})",
                )
            )
        following = next_step(expected, mr_count=s.mr_count)
        saved = self._persist(replace(s, current_step=following))
        if isinstance(saved, Err):
            return saved
        return Ok(following)

    def begin_create_mr(self) -> Result[ReleaseStep, ReleaseError]:
        return self._leave_suspend(ReleaseStep.WAIT_FOR_MR, "create the merge request")

    def create_mr(self) -> Result[ReleaseState, ReleaseError]:
        begun = self.begin_create_mr()
        if isinstance(begun, Err):
            return begun
        return self.run(begun.value)

    def begin_push_root(self) -> Result[ReleaseStep, ReleaseError]:
        return self._leave_suspend(ReleaseStep.WAIT_FOR_ROOT_PUSH, "push the source branch")

    def push_root(self) -> Result[ReleaseState, ReleaseError]:
        begun = self.begin_push_root()
        if isinstance(begun, Err):
            return begun
        return self.run(begun.value)

    def begin_proceed(self) -> Result[ReleaseStep, ReleaseError]:
        """Leave whichever suspend step the release waits at."""
        match self._state.current_step:
            case ReleaseStep.WAIT_FOR_MR:
                return self.begin_create_mr()
            case ReleaseStep.WAIT_FOR_ROOT_PUSH:
                return self.begin_push_root()
            case step:
                return Err(
                    ReleaseError(kind="invalid_state", message=f"release is not waiting ({step.label})")
                )

    def kill(self) -> None:
        self._ctx.runner.kill()

    def abort(self, *, delete_remote: bool = False) -> Result[HistoryEntry | None, ReleaseError]:
        """Record the release as aborted and put the tree back on the base branch.

        Cleanup commands are best-effort; the state file is always removed.
        With `delete_remote`, branches this release pushed are deleted too.
        """
        if self._finalized:
            return Ok(self._history_entry)
        self.kill()
        # The killed step is over; cleanup commands need a working runner.
        self._ctx.runner.reset()
        s = self._state
        cmds = self.commands_for(s)

        lines: list[str] = []
        if delete_remote and s.current_step >= ReleaseStep.PUSH_AND_CREATE_MR:
            lines.append(self._best_effort(cmds.delete_remote_branch(cmds.env_release_branch)))
            if not s.source_branch_is_remote:
                lines.append(self._best_effort(cmds.delete_remote_branch(cmds.source)))
        lines.extend(self._best_effort(command) for command in cmds.abort_cleanup())
        self._state = replace(s, terminal_output=append_lines(s.terminal_output, "\n".join(lines)))
        return self._finalize("aborted")

    def complete(self) -> Result[HistoryEntry | None, ReleaseError]:
        """Finish a release that reached Complete; safe to call twice."""
        if self._finalized:
            return Ok(self._history_entry)
        if self._state.current_step != ReleaseStep.COMPLETE:
            return Err(
                ReleaseError(
                    kind="invalid_state",
                    message=f"release is not complete (at: {self._state.current_step.label})",
                )
            )
        return self._finalize("completed")

    def _best_effort(self, command: str) -> str:
        result = self._ctx.runner.run_command(command)
        match result:
            case Ok(value=output):
                return "\n".join(filter(None, (f"$ {command}", output)))
            case Err(error=error):
                return "\n".join(filter(None, (f"$ {command}", error.output, f"# ignored: {error}")))

    def _finalize(self, status: HistoryStatus) -> Result[HistoryEntry | None, ReleaseError]:
        s = self._state
        if status == "completed":
            base = self._ctx.config.release.base_branch
            if self._ctx.repo.current_branch() != base:
                output = self._best_effort(self.commands_for(s).switch_to_base())
                s = replace(s, terminal_output=append_lines(s.terminal_output, output))
                self._state = s

        entry: HistoryEntry | None = None
        history_error: ReleaseError | None = None
        if self._ctx.history is not None:
            recorded = self._ctx.history.record(s, status)
            if isinstance(recorded, Err):
                history_error = recorded.error
            else:
                entry = recorded.value

        cleared = self._ctx.store.clear()
        self._finalized = True
        self._history_entry = entry
        if isinstance(cleared, Err):
            return cleared
        if history_error is not None:
            return Err(history_error)
        return Ok(entry)


class _StepWork:
    """One step execution against a state snapshot."""

    def __init__(
        self,
        ctx: ReleaseContext,
        state: ReleaseState,
        step: ReleaseStep,
        cmds: ReleaseCommands,
        post: EventSink,
    ) -> None:
        self.ctx = ctx
        self.state = state
        self.step = step
        self.cmds = cmds
        self.post = post
        self.transcript: list[str] = []

    @property
    def output(self) -> str:
        return "\n".join(self.transcript)

    def sequence(self, commands: Sequence[str]) -> Result[str, CommandError]:
        """Run commands as one unit; the transcript gets a header and the output."""
        header = " && ".join(commands)
        self.transcript.append(f"$ {header}")
        self.post(CommandStarted(self.step, header))
        result = self.ctx.runner.run_commands(commands)
        match result:
            case Ok(value=output):
                if output:
                    self.transcript.append(output)
            case Err(error=error):
                if error.output:
                    self.transcript.append(error.output)
                self.transcript.append(f"# {error}")
        return result

    def done(self, units: int) -> None:
        self.post(SubStepDone(self.step, units))

    def failed(self, message: str) -> StepCompleted:
        output = self.output
        return StepCompleted(
            self.step, output=output, failure=StepExecutionError(self.step, message, output)
        )

    def succeeded(self, *, release_number: int = 0, merged_branch: str = "") -> StepCompleted:
        return StepCompleted(
            self.step,
            output=self.output,
            release_number=release_number,
            merged_branch=merged_branch,
        )

    def simple(self, commands: Sequence[str]) -> StepCompleted:
        result = self.sequence(commands)
        if isinstance(result, Err):
            return self.failed(f"{self.step.label} failed: {result.error}")
        self.done(1)
        return self.succeeded()

    def merge_next_branch(self) -> StepCompleted:
        repo = self.ctx.repo
        index = self.state.current_mr_index
        if index >= self.state.mr_count:
            return self.succeeded()
        branch = self.state.mr_branches[index]

        if repo.merge_in_progress():
            result = self.sequence([self.cmds.continue_merge()])
        elif repo.is_branch_merged(branch):
            self.transcript.append(f"# {branch} is already merged")
            result = Ok("")
        else:
            result = self.sequence([self.cmds.merge_branch(index)])

        if isinstance(result, Err):
            if repo.merge_in_progress():
                output = self.output
                return StepCompleted(
                    self.step,
                    output=output,
                    failure=MergeConflictError(
                        self.step,
                        branch,
                        f"merge conflict in {branch}; resolve and stage the files, then retry",
                        output,
                    ),
                )
            return self.failed(f"merging {branch} failed: {result.error}")

        self.done(index + 1)
        return self.succeeded(merged_branch=branch)

    def checkout_env(self) -> StepCompleted:
        env = self.state.environment.branch
        exists = self.ctx.repo.remote_branch_exists(env)
        if isinstance(exists, Err):
            return self.failed(f"cannot query origin/{env}: {exists.error.message}")
        if not exists.value:
            return self.failed(f"remote branch origin/{env} does not exist")
        return self.simple(self.cmds.checkout_env())

    def copy_content(self) -> StepCompleted:
        if isinstance(self.sequence([self.cmds.checkout_env_release()]), Err):
            return self.failed(f"cannot check out {self.cmds.env_release_branch}")
        self.done(1)

        if isinstance(self.sequence(self.cmds.copy_from_source()), Err):
            return self.failed(f"cannot copy the contents of {self.cmds.source}")
        self.done(2)

        matcher = ExcludeMatcher(self.ctx.config.release.exclude_patterns)
        if matcher:
            env_ref = f"origin/{self.cmds.env_branch}"
            tracked = self.ctx.repo.tracked_files()
            if isinstance(tracked, Err):
                return self.failed(f"cannot list files: {tracked.error.message}")
            env_files = self.ctx.repo.tree_files(env_ref)
            if isinstance(env_files, Err):
                return self.failed(f"cannot list files of {env_ref}: {env_files.error.message}")
            in_env = set(env_files.value)
            for path in matcher.filter([*tracked.value, *env_files.value]):
                if path in in_env:
                    if isinstance(self.sequence([self.cmds.restore_excluded(path)]), Err):
                        return self.failed(f"cannot restore excluded file {path}")
                elif isinstance(self.sequence(self.cmds.remove_excluded(path)), Err):
                    return self.failed(f"cannot remove excluded file {path}")
        self.done(3)
        return self.succeeded()

    def commit(self) -> StepCompleted:
        env_ref = f"origin/{self.cmds.env_branch}"
        titles = self.ctx.repo.recent_titles(env_ref, self.ctx.config.release.version_lookback)
        if isinstance(titles, Err):
            return self.failed(f"cannot read the history of {env_ref}: {titles.error.message}")
        number = next_release_number(titles.value, self.state.version)

        if isinstance(self.sequence([self.cmds.commit(number)]), Err):
            # Hooks that change or veto the commit land here; fixes are made on the source branch.
            self.sequence([self.cmds.discard_changes(), self.cmds.checkout_source_for_fix()])
            output = self.output
            return StepCompleted(
                self.step,
                output=output,
                failure=CommitRejectedError(
                    self.step,
                    f"commit was rejected; fix it on {self.cmds.source}, then retry",
                    output,
                ),
            )
        self.sequence([self.cmds.clean()])
        self.done(1)
        return self.succeeded(release_number=number)

    def push_and_create_mr(self) -> StepOutcome:
        if isinstance(self.sequence([self.cmds.push_env_release()]), Err):
            return self.failed(f"cannot push {self.cmds.env_release_branch}")
        self.done(1)
        if self.ctx.runner.cancelled:
            return self.failed("cancelled before the merge request was created")

        client = self.ctx.client
        project_id = self.state.project_id
        if client is None or not project_id:
            return self._external("no code host configured (set gitlab.project_id and the token)")

        title, body = self.cmds.commit_message(self.state.release_number or 1)
        created = client.create_merge_request(
            project_id, self.cmds.env_release_branch, self.cmds.env_branch, title, body
        )
        if isinstance(created, Err):
            return self._external(f"merge request creation failed: {created.error}")

        self.transcript.append(f"# merge request: {created.value.web_url}")
        self.done(2)
        return MRCreated(self.step, self.output, created.value.web_url, created.value.iid)

    def _external(self, message: str) -> StepCompleted:
        output = self.output
        return StepCompleted(
            self.step, output=output, failure=ExternalServiceError(self.step, message, output)
        )

    def push_root_branches(self) -> StepCompleted:
        cmds = self.cmds
        tag = self.state.tag_name or cmds.tag_name(self.state.release_number or 1)
        if self.state.root_merge:
            stages: list[list[str]] = [
                [cmds.push_source()],
                cmds.merge_to_root(),
                [cmds.tag(tag)],
                [cmds.push_with_tags(cmds.base_branch)],
                cmds.merge_to_develop(),
            ]
        else:
            stages = [[cmds.tag(tag, ref=cmds.source)], [cmds.push_with_tags(cmds.source)]]

        # A conflicted merge left over from a previous attempt is finished first.
        if self.ctx.repo.merge_in_progress():
            if isinstance(self.sequence([cmds.continue_merge()]), Err):
                return self._conflict(cmds.source)

        for done, commands in enumerate(stages, start=1):
            result = self.sequence(commands)
            if isinstance(result, Err):
                if self.ctx.repo.merge_in_progress():
                    return self._conflict(cmds.source)
                return self.failed(f"{self.step.label} failed: {result.error}")
            self.done(done)
        return self.succeeded()

    def _conflict(self, branch: str) -> StepCompleted:
        output = self.output
        return StepCompleted(
            self.step,
            output=output,
            failure=MergeConflictError(
                self.step, branch, "merge conflict; resolve and stage the files, then retry", output
            ),
        )
