"""Release commands driven end to end with a fake repository and runner."""

from __future__ import annotations

import os
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

import pytest
import typer

from relix.cli.context import CLIContext
from relix.cli.release_view import EventRelay
from relix.core.config import Config
from relix.core.errors import ErrorCode
from relix.core.project import Project
from relix.core.result import Err, Ok, Result
from relix.git.repository import GitError, GitStatus
from relix.output.console import MockConsole
from relix.platform.lock import ProcessLock
from relix.platform.pty_runner import CommandError, CommandFailed
from relix.services.release.gitlab import ApiError, MergeRequest
from relix.services.release.history import HistoryStore
from relix.services.release.machine import ReleaseContext
from relix.services.release.state import ReleaseStateStore
from relix.services.release.steps import ReleaseStep


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
        return Ok(False)

    def remote_head(self, branch: str) -> Result[str | None, GitError]:
        return Ok(None)

    def commit_id(self, ref: str) -> str | None:
        return None

    def recent_titles(self, ref: str, count: int) -> Result[list[str], GitError]:
        return Ok([])

    def tracked_files(self) -> Result[list[str], GitError]:
        return Ok(["app.py"])

    def tree_files(self, ref: str) -> Result[list[str], GitError]:
        return Ok(["app.py"])


class FailingRunner:
    """Fails every command containing `fail_on`."""

    def __init__(self, fail_on: str = "") -> None:
        self.fail_on = fail_on
        self.commands: list[str] = []
        self.cancelled = False

    def run_command(self, command: str) -> Result[str, CommandError]:
        self.commands.append(command)
        if self.fail_on and self.fail_on in command:
            return Err(CommandFailed(command=command, returncode=128, output="fatal: unable to access"))
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

    def reset(self) -> None:
        self.cancelled = False

    def close(self) -> None:
        pass


class OpenMergeRequests:
    """Answers merge request lookups from a fixed list."""

    def __init__(self, *mrs: MergeRequest) -> None:
        self.mrs = {mr.iid: mr for mr in mrs}

    def list_merge_requests(self, project_id: int) -> Result[list[MergeRequest], ApiError]:
        return Ok([mr for mr in self.mrs.values() if mr.state == "opened"])

    def get_merge_request(self, project_id: int, mr_iid: int) -> Result[MergeRequest, ApiError]:
        return Ok(self.mrs[mr_iid])


def _ctx(tmp_path: Path) -> CLIContext:
    (tmp_path / ".git").mkdir(exist_ok=True)
    project = Project(root=tmp_path)
    return CLIContext(
        project=project,
        config=Config(history_dir=tmp_path / "history"),
        config_path=tmp_path / "config.toml",
        console=MockConsole(),
        store=ReleaseStateStore(project.state_path),
        history=HistoryStore(tmp_path / "history"),
    )


def _console(ctx: CLIContext) -> MockConsole:
    assert isinstance(ctx.console, MockConsole)
    return ctx.console


def _patch(
    monkeypatch: pytest.MonkeyPatch,
    ctx: CLIContext,
    runner: FailingRunner,
    client: OpenMergeRequests | None = None,
) -> None:
    import relix.cli.commands.release_cmd as release_cmd

    def release_context(c: CLIContext, relay: EventRelay) -> ReleaseContext:
        return ReleaseContext(
            config=c.config,
            store=c.store,
            repo=QuietRepo(c.project.root),
            runner=runner,
            history=c.history,
            client=client,
        )

    monkeypatch.setattr(release_cmd, "build_context", lambda: ctx)
    monkeypatch.setattr(release_cmd, "_release_context", release_context)


def _start(env: str = "TEST", branches: Sequence[str] = ("feat/a",), mr_ids: Sequence[int] = ()) -> None:
    import relix.cli.commands.release_cmd as release_cmd

    release_cmd.start(
        version="2.0.0",
        env=env,
        branches=list(branches),
        mr_ids=list(mr_ids),
        mr_urls=[],
        source="",
        root_merge=False,
        project_id=42,
    )


def test_start_runs_until_review(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    ctx = _ctx(tmp_path)
    runner = FailingRunner()
    _patch(monkeypatch, ctx, runner)

    _start()

    state = ctx.store.load().unwrap()
    assert state is not None
    assert state.current_step == ReleaseStep.WAIT_FOR_MR
    assert "git merge --no-edit origin/feat/a" in runner.commands
    console = _console(ctx)
    assert console.messages[-1] == "next: review the release branch, then: relix create-mr"
    assert not console.has_error()


def test_start_unknown_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    ctx = _ctx(tmp_path)
    _patch(monkeypatch, ctx, FailingRunner())

    with pytest.raises(typer.Exit) as exc:
        _start(env="qa")

    assert exc.value.exit_code == int(ErrorCode.USER_ERROR)
    assert not ctx.store.exists()


def test_failed_step_exits_and_status_reports_it(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    import relix.cli.commands.release_cmd as release_cmd

    ctx = _ctx(tmp_path)
    _patch(monkeypatch, ctx, FailingRunner(fail_on="git fetch"))

    with pytest.raises(typer.Exit) as exc:
        _start()
    assert exc.value.exit_code == int(ErrorCode.RELEASE_ERROR)

    console = _console(ctx)
    console.outputs.clear()
    release_cmd.status(pipeline=False)

    assert console.find("error: Fetch failed [STEP_FAILED]")
    assert console.find("hint: relix retry, or relix abort")


def test_second_start_is_refused(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    ctx = _ctx(tmp_path)
    _patch(monkeypatch, ctx, FailingRunner())
    _start()

    with pytest.raises(typer.Exit) as exc:
        _start()

    assert exc.value.exit_code == int(ErrorCode.ENV_ERROR)
    assert _console(ctx).find("a release is already in progress")


def test_retry_without_release(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    import relix.cli.commands.release_cmd as release_cmd

    ctx = _ctx(tmp_path)
    _patch(monkeypatch, ctx, FailingRunner())

    with pytest.raises(typer.Exit) as exc:
        release_cmd.retry()

    assert exc.value.exit_code == int(ErrorCode.USER_ERROR)
    assert _console(ctx).find("no release in progress")


def test_status_without_release(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    import relix.cli.commands.release_cmd as release_cmd

    ctx = _ctx(tmp_path)
    _patch(monkeypatch, ctx, FailingRunner())

    release_cmd.status(pipeline=False)

    assert _console(ctx).messages == ["no release in progress"]


def test_abort_records_history(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    import relix.cli.commands.release_cmd as release_cmd

    ctx = _ctx(tmp_path)
    _patch(monkeypatch, ctx, FailingRunner())
    _start()

    release_cmd.abort(delete_remote=False, yes=True)

    assert not ctx.store.exists()
    entries = ctx.history.list_entries().unwrap()
    assert [e.status for e in entries] == ["aborted"]
    assert _console(ctx).messages[-1].startswith("OK release aborted (history ")


def test_abort_can_be_declined(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    import relix.cli.commands.release_cmd as release_cmd

    ctx = _ctx(tmp_path)
    _patch(monkeypatch, ctx, FailingRunner())
    _start()
    monkeypatch.setattr(release_cmd.typer, "confirm", lambda *_a, **_k: False)

    with pytest.raises(typer.Exit) as exc:
        release_cmd.abort(delete_remote=False, yes=False)

    assert exc.value.exit_code == int(ErrorCode.USER_ERROR)
    assert ctx.store.exists()


def test_duplicate_branches_are_refused(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    ctx = _ctx(tmp_path)
    runner = FailingRunner()
    _patch(monkeypatch, ctx, runner)

    with pytest.raises(typer.Exit) as exc:
        _start(branches=("feat/a", "feat/a"))

    assert exc.value.exit_code == int(ErrorCode.USER_ERROR)
    assert _console(ctx).find("branches selected more than once: feat/a")
    assert not ctx.store.exists()
    assert runner.commands == []


def test_abort_is_refused_while_another_process_drives(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    import relix.cli.commands.release_cmd as release_cmd

    ctx = _ctx(tmp_path)
    runner = FailingRunner()
    _patch(monkeypatch, ctx, runner)
    _start()
    sent = len(runner.commands)

    with ProcessLock(ctx.project.lock_path) as driver:
        assert driver.acquire() == Ok(None)
        with pytest.raises(typer.Exit) as exc:
            release_cmd.abort(delete_remote=False, yes=True)

    assert exc.value.exit_code == int(ErrorCode.ENV_ERROR)
    assert ctx.store.exists()
    assert len(runner.commands) == sent
    assert _console(ctx).find(f"the release is being driven by process {os.getpid()}")

    release_cmd.abort(delete_remote=False, yes=True)
    assert not ctx.store.exists()


def test_start_from_merge_request_ids(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    ctx = _ctx(tmp_path)
    runner = FailingRunner()
    client = OpenMergeRequests(
        MergeRequest(iid=7, title="B", source_branch="feat/b", target_branch="master",
                     web_url="https://gitlab.test/mr/7", sha="bbb", state="opened"),
        MergeRequest(iid=3, title="A", source_branch="feat/a", target_branch="master",
                     web_url="https://gitlab.test/mr/3", sha="aaa", state="opened"),
    )
    _patch(monkeypatch, ctx, runner, client)

    _start(branches=(), mr_ids=(7, 3))

    state = ctx.store.load().unwrap()
    assert state is not None
    assert state.mr_branches == ("feat/b", "feat/a")
    assert state.selected_mr_ids == (7, 3)
    assert state.mr_urls == ("https://gitlab.test/mr/7", "https://gitlab.test/mr/3")
    merges = [c for c in runner.commands if c.startswith("git merge --no-edit")]
    assert merges == ["git merge --no-edit origin/feat/b", "git merge --no-edit origin/feat/a"]


def test_closed_merge_request_is_refused(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    ctx = _ctx(tmp_path)
    client = OpenMergeRequests(
        MergeRequest(iid=3, title="A", source_branch="feat/a", target_branch="master", state="merged"),
    )
    _patch(monkeypatch, ctx, FailingRunner(), client)

    with pytest.raises(typer.Exit) as exc:
        _start(branches=(), mr_ids=(3,))

    assert exc.value.exit_code == int(ErrorCode.USER_ERROR)
    assert not ctx.store.exists()


def test_merge_request_ids_need_a_token(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    ctx = _ctx(tmp_path)
    _patch(monkeypatch, ctx, FailingRunner())

    with pytest.raises(typer.Exit) as exc:
        _start(branches=(), mr_ids=(3,))

    assert exc.value.exit_code == int(ErrorCode.ENV_ERROR)


def test_branch_and_merge_request_ids_are_exclusive(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    ctx = _ctx(tmp_path)
    _patch(monkeypatch, ctx, FailingRunner(), OpenMergeRequests())

    with pytest.raises(typer.Exit) as exc:
        _start(branches=("feat/a",), mr_ids=(3,))

    assert exc.value.exit_code == int(ErrorCode.USER_ERROR)


def test_merge_requests_lists_open_ones(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    import relix.cli.commands.release_cmd as release_cmd

    ctx = _ctx(tmp_path)
    client = OpenMergeRequests(
        MergeRequest(iid=3, title="Add login", source_branch="feat/a", target_branch="master",
                     author="ana", state="opened"),
        MergeRequest(iid=4, title="Old", source_branch="feat/old", target_branch="master", state="closed"),
    )
    monkeypatch.setattr(release_cmd, "build_context", lambda: ctx)
    monkeypatch.setattr(CLIContext, "client", lambda self: client)

    release_cmd.merge_requests(project_id=42)

    assert _console(ctx).messages == ["!3  feat/a -> master  Add login  @ana"]
