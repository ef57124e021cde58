"""Tests for the threaded release loop."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from relix.core.config import Config, EnvironmentConfig
from relix.core.result import Err, Ok, Result
from relix.git.repository import GitError, GitStatus
from relix.platform.notify import MockNotifier
from relix.platform.pty_runner import CommandError, CommandFailed
from relix.services.release.events import (
    MRCreated,
    PipelineStatusUpdated,
    ReleaseEvent,
    StepCompleted,
    StepStarted,
    SubStepDone,
)
from relix.services.release.gitlab import (
    ApiError,
    CreatedMergeRequest,
    MergeRequest,
    MergeRequestStatus,
    Pipeline,
    PipelineJob,
)
from relix.services.release.history import HistoryStore
from relix.services.release.loop import ReleaseLoop
from relix.services.release.machine import ReleaseContext, ReleaseStateMachine, StartRequest
from relix.services.release.pipeline import JobFilter, PipelineObserver, PipelineStage, PipelineStatus
from relix.services.release.state import ReleaseState, ReleaseStateStore
from relix.services.release.steps import ReleaseStep

DEVELOP = EnvironmentConfig(name="DEVELOP", branch="develop", job_suffix="dev01")


@dataclass
class QuietRepo:
    path: Path

    def status(self) -> Result[GitStatus, GitError]:
        return Ok(GitStatus(branch="root"))

    def is_clean(self) -> bool:
        return True

    def current_branch(self) -> str | None:
        return "root"

    def merge_in_progress(self) -> bool:
        return False

    def is_branch_merged(self, branch: str) -> bool:
        return False

    def remote_branch_exists(self, branch: str) -> Result[bool, GitError]:
        return Ok(True)

    def remote_head(self, branch: str) -> Result[str | None, GitError]:
        return Ok("c0ffee")

    def commit_id(self, ref: str) -> str | None:
        return None

    def recent_titles(self, ref: str, count: int) -> Result[list[str], GitError]:
        return Ok([])

    def tracked_files(self) -> Result[list[str], GitError]:
        return Ok([])

    def tree_files(self, ref: str) -> Result[list[str], GitError]:
        return Ok([])


class ScriptRunner:
    def __init__(self, action: Callable[[str], None] | None = None) -> None:
        self.commands: list[str] = []
        self.cancelled = False
        self.killed = threading.Event()
        self._action = action

    def run_command(self, command: str) -> Result[str, CommandError]:
        if self.cancelled:
            return Err(CommandFailed(command=command, returncode=-15, output=""))
        self.commands.append(command)
        if self._action is not None:
            self._action(command)
        return Ok("")

    def run_commands(self, commands: Sequence[str]) -> Result[str, CommandError]:
        for command in commands:
            result = self.run_command(command)
            if isinstance(result, Err):
                return result
        return Ok("")

    def resize(self, rows: int, cols: int) -> None:
        pass

    def kill(self) -> None:
        self.cancelled = True
        self.killed.set()

    def reset(self) -> None:
        self.cancelled = False

    def close(self) -> None:
        pass


@dataclass
class DeployedClient:
    """Code host where the merge request is merged and deployed."""

    created: list[str] = field(default_factory=list)

    def create_merge_request(
        self,
        project_id: int,
        source_branch: str,
        target_branch: str,
        title: str,
        description: str,
    ) -> Result[CreatedMergeRequest, ApiError]:
        self.created.append(title)
        return Ok(CreatedMergeRequest(iid=17, web_url="https://gitlab.test/mr/17"))

    def list_merge_requests(self, project_id: int) -> Result[list[MergeRequest], ApiError]:
        raise AssertionError("not used")

    def get_merge_request(self, project_id: int, mr_iid: int) -> Result[MergeRequest, ApiError]:
        raise AssertionError("not used")

    def get_merge_request_status(
        self, project_id: int, mr_iid: int
    ) -> Result[MergeRequestStatus, ApiError]:
        return Ok(MergeRequestStatus(iid=mr_iid, state="merged", merge_commit_sha="abc"))

    def get_pipelines_by_commit(self, project_id: int, sha: str) -> Result[list[Pipeline], ApiError]:
        return Ok([Pipeline(id=5, status="success")])

    def get_merge_request_pipelines(
        self, project_id: int, mr_iid: int
    ) -> Result[list[Pipeline], ApiError]:
        return Ok([])

    def get_pipeline_jobs(
        self, project_id: int, pipeline_id: int
    ) -> Result[list[PipelineJob], ApiError]:
        return Ok([PipelineJob(id=1, name="Deploy Application Main to dev01", status="success")])


def make_loop(
    tmp_path: Path,
    *,
    action: Callable[[str], None] | None = None,
    events: list[ReleaseEvent] | None = None,
) -> tuple[ReleaseLoop, ScriptRunner, ReleaseContext]:
    (tmp_path / ".git").mkdir(exist_ok=True)
    runner = ScriptRunner(action)
    client = DeployedClient()
    context = ReleaseContext(
        config=Config(environments=(DEVELOP,)),
        store=ReleaseStateStore(tmp_path / ".git" / "relix" / "release.json"),
        repo=QuietRepo(path=tmp_path),
        runner=runner,
        history=HistoryStore(tmp_path / "history", clock=lambda: datetime(2025, 1, 2, 15, 30, 0)),
        client=client,
    )
    started = ReleaseStateMachine.start(
        StartRequest(project_id=42, environment=DEVELOP, version="2.0.0", mr_branches=("feat/a",)),
        context,
        work_dir=tmp_path,
    )
    assert isinstance(started, Ok)

    def factory(
        state: ReleaseState, on_status: Callable[[PipelineStatus], None]
    ) -> PipelineObserver | None:
        return PipelineObserver(
            client,
            project_id=state.project_id,
            mr_iid=state.created_mr_iid,
            job_filter=JobFilter.for_environment(context.config.pipeline.jobs_regex, DEVELOP),
            notifier=MockNotifier(),
            on_status=on_status,
            interval=0.01,
        )

    loop = ReleaseLoop(
        started.value,
        on_event=events.append if events is not None else None,
        observer_factory=factory,
    )
    return loop, runner, context


def pump_until(loop: ReleaseLoop, done: Callable[[], bool], timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not done() and time.monotonic() < deadline:
        loop.pump(timeout=0.01)


class TestReleaseLoop:
    def test_runs_until_the_merge_request_review(self, tmp_path: Path) -> None:
        events: list[ReleaseEvent] = []
        loop, _, _ = make_loop(tmp_path, events=events)

        assert isinstance(loop.run(), Ok)
        state = loop.run_until_idle()

        assert state.current_step == ReleaseStep.WAIT_FOR_MR
        assert not loop.busy
        started = [e.step for e in events if isinstance(e, StepStarted)]
        assert started == [
            ReleaseStep.GIT_FETCH,
            ReleaseStep.CHECKOUT_ROOT,
            ReleaseStep.MERGE_BRANCHES,
            ReleaseStep.CHECKOUT_ENV,
            ReleaseStep.COPY_CONTENT,
            ReleaseStep.COMMIT,
        ]
        assert sum(1 for e in events if isinstance(e, StepCompleted)) == 6
        assert any(isinstance(e, SubStepDone) for e in events)

    def test_only_one_step_at_a_time(self, tmp_path: Path) -> None:
        loop, _, _ = make_loop(tmp_path)
        assert isinstance(loop.run(), Ok)
        assert loop.dispatch(ReleaseStep.GIT_FETCH) is False
        second = loop.retry()
        assert isinstance(second, Err)
        loop.run_until_idle()

    def test_observer_runs_after_merge_request(self, tmp_path: Path) -> None:
        events: list[ReleaseEvent] = []
        loop, _, _ = make_loop(tmp_path, events=events)
        loop.run()
        loop.run_until_idle()

        assert isinstance(loop.create_mr(), Ok)
        loop.run_until_idle()
        assert loop.machine.state.current_step == ReleaseStep.WAIT_FOR_ROOT_PUSH
        assert any(isinstance(e, MRCreated) for e in events)

        pump_until(
            loop,
            lambda: loop.pipeline_status is not None
            and loop.pipeline_status.stage == PipelineStage.COMPLETED,
        )
        assert loop.pipeline_status is not None
        assert loop.pipeline_status.stage == PipelineStage.COMPLETED
        assert any(isinstance(e, PipelineStatusUpdated) for e in events)

        assert isinstance(loop.push_root(), Ok)
        loop.run_until_idle()
        assert loop.machine.is_finished
        assert not loop.observing

    def test_crashing_step_is_reported_as_failure(self, tmp_path: Path) -> None:
        def explode(command: str) -> None:
            if command.startswith("git fetch"):
                raise RuntimeError("disk on fire")

        loop, _, _ = make_loop(tmp_path, action=explode)
        loop.run()
        state = loop.run_until_idle()

        assert state.last_error is not None
        assert state.last_error.step == ReleaseStep.GIT_FETCH
        assert "crashed" in state.last_error.message

    def test_abort_finalizes_and_drops_stale_events(self, tmp_path: Path) -> None:
        loop, _, context = make_loop(tmp_path)
        loop.run()
        loop.run_until_idle()
        loop.post(SubStepDone(ReleaseStep.COMMIT, 1))

        result = loop.abort()

        assert isinstance(result, Ok)
        assert result.value is not None and result.value.status == "aborted"
        assert loop.pump(timeout=0.01) is True
        assert not context.store.exists()
        assert loop.machine.is_finished

    def test_abort_stops_the_rest_of_a_running_step(self, tmp_path: Path) -> None:
        entered = threading.Event()
        runners: list[ScriptRunner] = []

        def block_first_checkout(command: str) -> None:
            if command == "git checkout root" and not entered.is_set():
                entered.set()
                runners[0].killed.wait(timeout=5)

        loop, runner, context = make_loop(tmp_path, action=block_first_checkout)
        runners.append(runner)
        loop.run()
        pump_until(loop, entered.is_set)

        result = loop.abort()

        assert isinstance(result, Ok)
        assert "git pull --ff-only origin root" not in runner.commands
        assert runner.commands[-4:] == [
            "git reset --hard",
            "git checkout root",
            "git branch -D release/rpb-2.0.0-root",
            "git branch -D release/rpb-2.0.0-develop",
        ]
        assert not context.store.exists()
