from __future__ import annotations

import typer

from relix.cli.context import build_context
from relix.core.result import Err
from relix.output.console import Style
from relix.output.errors import error_exit_code, print_error

history_app = typer.Typer(add_completion=False, no_args_is_help=True, help="Finished releases.")


@history_app.command("list")
def list_history(
    limit: int = typer.Option(20, "--limit", "-n", help="Show at most this many entries"),
) -> None:
    """List finished releases, newest first."""
    ctx = build_context()
    entries = ctx.history.list_entries()
    if isinstance(entries, Err):
        print_error(entries.error, ctx.console)
        raise typer.Exit(code=error_exit_code(entries.error))
    if not entries.value:
        ctx.console.print("no releases recorded", Style.DIM)
        return
    for e in entries.value[:limit]:
        style = Style.DEFAULT if e.status == "completed" else Style.WARNING
        ctx.console.print(
            f"{e.id}  {e.datetime}  {e.environment:<8} {e.tag:<16} {e.mr_count} MR(s)  {e.status}",
            style,
        )


@history_app.command("show")
def show(
    entry_id: str = typer.Argument(..., help="History entry id"),
    output: bool = typer.Option(False, "--output", help="Print the recorded command output"),
) -> None:
    """Show one finished release."""
    ctx = build_context()
    loaded = ctx.history.load_detail(entry_id)
    if isinstance(loaded, Err):
        print_error(loaded.error, ctx.console)
        raise typer.Exit(code=error_exit_code(loaded.error))
    detail = loaded.value
    entry = detail.entry

    ctx.console.header(f"{entry.environment} {entry.tag} ({entry.status})")
    ctx.console.print(f"date: {entry.datetime}")
    ctx.console.print(f"version: {entry.version}")
    ctx.console.print(f"source branch: {detail.source_branch}")
    ctx.console.print(f"environment branch: {detail.env_branch}")
    ctx.console.print(f"root merge: {'yes' if detail.root_merge else 'no'}")
    if detail.created_mr_url:
        ctx.console.print(f"merge request: {detail.created_mr_url}")
    for i, branch in enumerate(detail.mr_branches):
        url = detail.mr_urls[i] if i < len(detail.mr_urls) else ""
        ctx.console.print(f"  {branch} {url}".rstrip())
    if output and detail.terminal_output:
        ctx.console.newline()
        ctx.console.print("\n".join(detail.terminal_output), Style.DIM)


@history_app.command("delete")
def delete(
    entry_ids: list[str] = typer.Argument(..., help="History entry ids"),
) -> None:
    """Delete history entries."""
    ctx = build_context()
    deleted = ctx.history.delete(entry_ids)
    if isinstance(deleted, Err):
        print_error(deleted.error, ctx.console)
        raise typer.Exit(code=error_exit_code(deleted.error))
    ctx.console.success(f"deleted {deleted.value} entr{'y' if deleted.value == 1 else 'ies'}")
