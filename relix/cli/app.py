from __future__ import annotations

import os
from pathlib import Path

import typer

from relix import __version__
from relix.cli.commands.check import check_source, validate
from relix.cli.commands.history import history_app
from relix.cli.commands.release_cmd import (
    abort,
    complete,
    create_mr,
    merge_requests,
    push_root,
    resume,
    retry,
    start,
    status,
)
from relix.cli.context import DIR_ENV
from relix.core.errors import ErrorCode
from relix.core.project import is_project_root


app = typer.Typer(
    add_completion=False,
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# Commands
app.command()(start)
app.command()(status)
app.command()(resume)
app.command()(retry)
app.command("create-mr")(create_mr)
app.command("mrs")(merge_requests)
app.command("push-root")(push_root)
app.command()(complete)
app.command()(abort)
app.command()(validate)
app.command("check-source")(check_source)

# Sub-apps
app.add_typer(history_app, name="history")


@app.callback()
def _main(  # pyright: ignore[reportUnusedFunction]
    version: bool = typer.Option(False, "--version", help="Show version and exit."),
    directory: Path | None = typer.Option(
        None,
        "--dir",
        help="Project root (overrides auto detection)",
    ),
) -> None:
    if version:
        typer.echo(__version__)
        raise typer.Exit(code=0)

    if directory is not None:
        try:
            root = directory.expanduser().resolve()
        except OSError as e:
            typer.echo(f"error: invalid --dir: {e}", err=True)
            raise typer.Exit(code=int(ErrorCode.USER_ERROR))

        if not root.is_dir() or not is_project_root(root):
            typer.echo(f"error: --dir '{root}' is not a git working tree", err=True)
            raise typer.Exit(code=int(ErrorCode.ENV_ERROR))

        os.environ[DIR_ENV] = str(root)


def main() -> None:
    app()
