"""Checks that never change the repository."""

from __future__ import annotations

import typer

from relix.cli.context import build_context
from relix.core.errors import ErrorCode
from relix.core.result import Err
from relix.output.console import Style
from relix.output.errors import error_exit_code, print_error
from relix.services.release.machine import check_source_branch
from relix.services.release.validation import validate_config
from relix.services.release.versioning import validate_version


def validate() -> None:
    """Validate the configuration and exclude patterns."""
    ctx = build_context()
    ctx.console.print(f"config: {ctx.config_path}", Style.DIM)
    checked = validate_config(ctx.config)
    if isinstance(checked, Err):
        print_error(checked.error, ctx.console)
        raise typer.Exit(code=error_exit_code(checked.error))

    for env in ctx.config.environments:
        suffix = env.effective_job_suffix or "-"
        ctx.console.print(f"  {env.name}: {env.branch} (jobs *{suffix}*)")
    if ctx.config.gitlab.token() is None:
        ctx.console.warning(f"${ctx.config.gitlab.token_env} is not set; merge requests cannot be created")
    ctx.console.success("configuration is valid")


def check_source(
    branch: str = typer.Argument(..., help="Source branch to inspect"),
    version: str = typer.Option(..., "--release", "-r", help="Release version the branch is for"),
) -> None:
    """Inspect a source branch on the remote before starting a release."""
    ctx = build_context()
    version_error = validate_version(version)
    if version_error is not None:
        ctx.console.error(version_error)
        raise typer.Exit(code=int(ErrorCode.USER_ERROR))

    checked = check_source_branch(ctx.repo, branch, ctx.config.release.base_branch, version)
    if checked.error:
        ctx.console.error(f"cannot query origin: {checked.error}")
        raise typer.Exit(code=int(ErrorCode.NETWORK_ERROR))
    if not checked.exists:
        ctx.console.info(f"{branch} does not exist on origin; it will be created from the base branch")
    else:
        ctx.console.success(f"{branch} exists on origin and will be used as is")
        if checked.same_as_base:
            ctx.console.warning(f"{branch} points at the same commit as {ctx.config.release.base_branch}")
    if not checked.contains_version:
        ctx.console.warning(f"branch name does not mention version {version}")
