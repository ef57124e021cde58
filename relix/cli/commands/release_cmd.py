"""Release commands: start, drive, inspect and finish a release."""

from __future__ import annotations

import shutil
from collections.abc import Callable
from dataclasses import replace
from typing import NoReturn

import typer

from relix.cli.context import CLIContext, build_context
from relix.cli.release_view import (
    EventRelay,
    ReleaseView,
    format_pipeline,
    next_action_hint,
    print_state,
)
from relix.core.errors import ErrorCode
from relix.core.result import Err, Result
from relix.output.console import Style
from relix.output.errors import AnyError, error_exit_code, print_error, print_last_error
from relix.platform.lock import ProcessLock
from relix.platform.notify import DesktopNotifier
from relix.platform.pty_runner import PtyRunner
from relix.services.release.events import ScreenUpdated
from relix.services.release.gitlab import CodeHostClient, MergeRequest
from relix.services.release.loop import ObserverFactory, ReleaseLoop
from relix.services.release.machine import ReleaseContext, ReleaseStateMachine, StartRequest
from relix.services.release.pipeline import (
    JobFilter,
    PipelineObserver,
    PipelineStage,
    PipelineStatus,
    fetch_pipeline_status,
)
from relix.services.release.state import ReleaseState
from relix.services.release.steps import ReleaseStep
from relix.services.release.validation import validate_config


def _exit(err: str, *, code: ErrorCode) -> NoReturn:
    typer.echo(f"error: {err}", err=True)
    raise typer.Exit(code=int(code))


def _fail(ctx: CLIContext, error: AnyError) -> NoReturn:
    print_error(error, ctx.console)
    raise typer.Exit(code=error_exit_code(error))


def _check[T, E: AnyError](ctx: CLIContext, result: Result[T, E]) -> T:
    if isinstance(result, Err):
        _fail(ctx, result.error)
    return result.value


def _lock(ctx: CLIContext) -> ProcessLock:
    """Take the per-tree driver lock, or exit when another relix process holds it."""
    lock = ProcessLock(ctx.project.lock_path)
    acquired = lock.acquire()
    if isinstance(acquired, Err):
        holder = acquired.error.pid
        who = f"process {holder}" if holder is not None else "another relix process"
        ctx.console.error(f"the release is being driven by {who}")
        ctx.console.print("hint: wait for it to stop, or interrupt it (Ctrl-C) first", Style.DIM)
        raise typer.Exit(code=int(ErrorCode.ENV_ERROR))
    return lock


def _release_context(ctx: CLIContext, relay: EventRelay) -> ReleaseContext:
    cols = shutil.get_terminal_size((120, 24)).columns
    runner = PtyRunner(
        ctx.project.root,
        cols=cols,
        on_screen=lambda screen: relay.post(ScreenUpdated(screen)),
    )
    return ReleaseContext(
        config=ctx.config,
        store=ctx.store,
        repo=ctx.repo,
        runner=runner,
        history=ctx.history,
        client=ctx.client(),
    )


def _observer_factory(ctx: CLIContext, rctx: ReleaseContext) -> ObserverFactory:
    def make(
        state: ReleaseState, on_status: Callable[[PipelineStatus], None]
    ) -> PipelineObserver | None:
        if rctx.client is None or not state.project_id:
            return None
        return PipelineObserver.for_release(
            rctx.client,
            ctx.config,
            project_id=state.project_id,
            mr_iid=state.created_mr_iid,
            environment=state.environment,
            version=state.version,
            notifier=DesktopNotifier(),
            on_status=on_status,
        )

    return make


def _loop(ctx: CLIContext, machine: ReleaseStateMachine, relay: EventRelay) -> ReleaseLoop:
    loop = ReleaseLoop(
        machine,
        on_event=ReleaseView(ctx.console),
        observer_factory=_observer_factory(ctx, machine.context),
    )
    relay.loop = loop
    return loop


def _load(ctx: CLIContext) -> tuple[ReleaseLoop, ReleaseStateMachine]:
    relay = EventRelay()
    rctx = _release_context(ctx, relay)
    machine = _check(ctx, ReleaseStateMachine.load(rctx))
    return _loop(ctx, machine, relay), machine


def _drive(ctx: CLIContext, loop: ReleaseLoop, *, watch: bool = False) -> None:
    """Pump events until the release stops moving, then report where it is."""
    try:
        loop.run_until_idle()
        if watch and loop.observing:
            ctx.console.info("watching the deployment (Ctrl-C to stop)")
            while loop.observing:
                loop.pump(timeout=0.5)
    except KeyboardInterrupt:
        loop.close()
        ctx.console.warning("interrupted; run relix resume to continue")
        raise typer.Exit(code=int(ErrorCode.RELEASE_ERROR))
    finally:
        loop.stop_observer()

    if loop.error is not None:
        _fail(ctx, loop.error)

    machine = loop.machine
    state = machine.state
    if machine.is_finished:
        ctx.console.success(f"release {state.version} to {state.environment.name} complete")
        return
    if state.last_error is not None:
        print_last_error(state.last_error, state.error_output, ctx.console)
        raise typer.Exit(code=int(ErrorCode.RELEASE_ERROR))
    hint = next_action_hint(state)
    if hint:
        ctx.console.print(f"next: {hint}", Style.DIM)


def _resolve_merge_requests(
    ctx: CLIContext, client: CodeHostClient | None, project_id: int, iids: list[int]
) -> list[MergeRequest]:
    if client is None:
        _exit(f"--mr needs a token in ${ctx.config.gitlab.token_env}", code=ErrorCode.ENV_ERROR)
    if not project_id:
        _exit("--mr needs a project id (gitlab.project_id or --project-id)", code=ErrorCode.USER_ERROR)
    resolved: list[MergeRequest] = []
    for iid in iids:
        mr = _check(ctx, client.get_merge_request(project_id, iid))
        if mr.state != "opened":
            _exit(f"merge request !{iid} is {mr.state or 'not open'}", code=ErrorCode.USER_ERROR)
        resolved.append(mr)
    return resolved


def start(
    version: str = typer.Argument(..., help="Release version, e.g. 2.0.0"),
    env: str = typer.Option(..., "--env", "-e", help="Target environment (name or branch)"),
    branches: list[str] = typer.Option(
        [], "--branch", "-b", help="Merge request source branch, in merge order (repeatable)"
    ),
    mr_ids: list[int] = typer.Option(
        [], "--mr", help="Merge request iid, in merge order (repeatable; see relix mrs)"
    ),
    mr_urls: list[str] = typer.Option([], "--mr-url", help="Merge request URL per --branch"),
    source: str = typer.Option("", "--source", help="Use this source branch instead of a fresh one"),
    root_merge: bool = typer.Option(
        False, "--root-merge", help="Also merge the source branch into the base and develop branches"
    ),
    project_id: int | None = typer.Option(None, "--project-id", help="Code host project id"),
) -> None:
    """Start a release and run it up to the merge request review."""
    ctx = build_context()
    _check(ctx, validate_config(ctx.config))

    environment = ctx.config.environment(env)
    if environment is None:
        names = ", ".join(e.name for e in ctx.config.environments)
        _exit(f"unknown environment: {env} (available: {names})", code=ErrorCode.USER_ERROR)
    if mr_ids and branches:
        _exit("use either --branch or --mr, not both", code=ErrorCode.USER_ERROR)

    with _lock(ctx):
        relay = EventRelay()
        rctx = _release_context(ctx, relay)
        project = project_id or ctx.config.gitlab.project_id or 0
        request = StartRequest(
            project_id=project,
            environment=environment,
            version=version,
            mr_branches=tuple(b.strip() for b in branches if b.strip()),
            mr_urls=tuple(mr_urls),
            source_branch=source.strip(),
            root_merge=root_merge,
        )
        if mr_ids:
            mrs = _resolve_merge_requests(ctx, rctx.client, project, mr_ids)
            request = replace(
                request,
                mr_branches=tuple(mr.source_branch for mr in mrs),
                selected_mr_ids=tuple(mr.iid for mr in mrs),
                mr_urls=tuple(mr.web_url for mr in mrs),
                mr_commit_shas=tuple(mr.sha for mr in mrs),
            )
        machine = _check(ctx, ReleaseStateMachine.start(request, rctx, work_dir=ctx.project.root))
        loop = _loop(ctx, machine, relay)
        _check(ctx, loop.run())
        _drive(ctx, loop)


def merge_requests(
    project_id: int | None = typer.Option(None, "--project-id", help="Code host project id"),
) -> None:
    """List open merge requests to pick from with relix start --mr."""
    ctx = build_context()
    client = ctx.client()
    if client is None:
        _exit(f"no token in ${ctx.config.gitlab.token_env}", code=ErrorCode.ENV_ERROR)
    project = project_id or ctx.config.gitlab.project_id
    if not project:
        _exit("no project id (set gitlab.project_id or pass --project-id)", code=ErrorCode.USER_ERROR)

    mrs = _check(ctx, client.list_merge_requests(project))
    if not mrs:
        ctx.console.print("no open merge requests", Style.DIM)
        return
    for mr in mrs:
        author = f"  @{mr.author}" if mr.author else ""
        ctx.console.print(f"!{mr.iid}  {mr.source_branch} -> {mr.target_branch}  {mr.title}{author}")


def status(
    pipeline: bool = typer.Option(False, "--pipeline", help="Poll the deployment pipeline once"),
) -> None:
    """Show the release in progress."""
    ctx = build_context()
    state = _check(ctx, ctx.store.load())
    if state is None:
        ctx.console.print("no release in progress", Style.DIM)
        return

    print_state(state, ctx.console)
    if state.last_error is not None:
        print_last_error(state.last_error, state.error_output, ctx.console)
    elif state.current_step.is_executable:
        ctx.console.warning("the release stopped mid-step; run relix resume")
    else:
        hint = next_action_hint(state)
        if hint:
            ctx.console.print(f"next: {hint}", Style.DIM)

    if pipeline and state.current_step == ReleaseStep.WAIT_FOR_ROOT_PUSH:
        client = ctx.client()
        if client is None:
            _exit(f"no token in ${ctx.config.gitlab.token_env}", code=ErrorCode.ENV_ERROR)
        job_filter = JobFilter.for_environment(ctx.config.pipeline.jobs_regex, state.environment)
        polled: PipelineStatus = fetch_pipeline_status(
            client, state.project_id, state.created_mr_iid, job_filter
        )
        ctx.console.print(format_pipeline(polled), Style.INFO)


def resume(
    watch: bool = typer.Option(False, "--watch", help="Watch the deployment while waiting"),
) -> None:
    """Reload a saved release after the process stopped."""
    ctx = build_context()
    with _lock(ctx):
        loop, machine = _load(ctx)
        state = machine.state
        print_state(state, ctx.console)
        if state.last_error is not None:
            print_last_error(state.last_error, state.error_output, ctx.console)
            return
        if state.current_step == ReleaseStep.WAIT_FOR_ROOT_PUSH and watch:
            loop.start_observer()
            _drive(ctx, loop, watch=True)
            return
        hint = next_action_hint(state)
        if hint:
            ctx.console.print(f"next: {hint}", Style.DIM)


def retry() -> None:
    """Re-run the failed step (continues an interrupted merge)."""
    ctx = build_context()
    with _lock(ctx):
        loop, _ = _load(ctx)
        _check(ctx, loop.retry())
        _drive(ctx, loop)


def create_mr(
    watch: bool = typer.Option(False, "--watch", help="Watch the deployment after creating the MR"),
) -> None:
    """Push the release branch and open its merge request."""
    ctx = build_context()
    with _lock(ctx):
        loop, _ = _load(ctx)
        _check(ctx, loop.create_mr())
        _drive(ctx, loop, watch=watch)


def push_root() -> None:
    """Push the source branch and tag once the merge request is merged."""
    ctx = build_context()
    with _lock(ctx):
        loop, machine = _load(ctx)
        state = machine.state
        client = machine.context.client
        if state.current_step == ReleaseStep.WAIT_FOR_ROOT_PUSH and client is not None:
            job_filter = JobFilter.for_environment(ctx.config.pipeline.jobs_regex, state.environment)
            polled = fetch_pipeline_status(client, state.project_id, state.created_mr_iid, job_filter)
            if polled.stage != PipelineStage.COMPLETED:
                ctx.console.warning(format_pipeline(polled))
        _check(ctx, loop.push_root())
        _drive(ctx, loop)


def complete() -> None:
    """Finish a release that reached the last step."""
    ctx = build_context()
    with _lock(ctx):
        loop, _ = _load(ctx)
        entry = _check(ctx, loop.complete())
    ctx.console.success("release recorded" + (f" as {entry.id}" if entry else ""))


def abort(
    delete_remote: bool = typer.Option(
        False, "--delete-remote", help="Also delete the branches this release pushed"
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Abandon the release and return to the base branch.

    Refused while another relix process drives the release: its running git
    command must be stopped by that process before the tree is reset.
    """
    ctx = build_context()
    with _lock(ctx):
        loop, machine = _load(ctx)
        state = machine.state
        if not yes and not typer.confirm(f"Abort release {state.version} to {state.environment.name}?"):
            raise typer.Exit(code=int(ErrorCode.USER_ERROR))
        entry = _check(ctx, loop.abort(delete_remote=delete_remote))
    ctx.console.success("release aborted" + (f" (history {entry.id})" if entry else ""))
