from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from pathlib import Path

import pytest
import typer

from relix.cli.context import CLIContext
from relix.core.config import Config, EnvironmentConfig
from relix.core.errors import ErrorCode
from relix.core.project import Project
from relix.output.console import MockConsole
from relix.services.release.history import HistoryStore
from relix.services.release.state import ReleaseStateStore, new_release_state

TEST = EnvironmentConfig(name="TEST", branch="testing", job_suffix="test01")


def _ctx(tmp_path: Path) -> CLIContext:
    project = Project(root=tmp_path)
    history = HistoryStore(tmp_path / "history", clock=lambda: datetime(2025, 3, 4, 9, 0, 0))
    return CLIContext(
        project=project,
        config=Config(history_dir=tmp_path / "history"),
        config_path=tmp_path / "config.toml",
        console=MockConsole(),
        store=ReleaseStateStore(project.state_path),
        history=history,
    )


def _record(ctx: CLIContext) -> str:
    state = replace(
        new_release_state(
            project_id=1,
            environment=TEST,
            version="2.0.0",
            work_dir=ctx.project.root,
            mr_branches=("feat/a",),
            mr_urls=("https://gitlab.test/mr/3",),
        ),
        tag_name="test-2.0.0-v1",
        terminal_output=("$ git fetch origin --prune",),
    )
    recorded = ctx.history.record(state, "completed")
    return recorded.unwrap().id


def _console(ctx: CLIContext) -> MockConsole:
    assert isinstance(ctx.console, MockConsole)
    return ctx.console


def test_list_empty(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    import relix.cli.commands.history as history_cmd

    ctx = _ctx(tmp_path)
    monkeypatch.setattr(history_cmd, "build_context", lambda: ctx)

    history_cmd.list_history(limit=20)

    assert _console(ctx).messages == ["no releases recorded"]


def test_list_and_show(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    import relix.cli.commands.history as history_cmd

    ctx = _ctx(tmp_path)
    entry_id = _record(ctx)
    monkeypatch.setattr(history_cmd, "build_context", lambda: ctx)

    history_cmd.list_history(limit=20)
    history_cmd.show(entry_id=entry_id, output=True)

    console = _console(ctx)
    assert console.messages[0].startswith("20250304-090000  2025-03-04 09:00:00  TEST")
    assert console.find("TEST 2.0.0-v1 (completed)")
    assert console.find("feat/a https://gitlab.test/mr/3")
    assert console.messages[-1] == "$ git fetch origin --prune"


def test_show_unknown_entry(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    import relix.cli.commands.history as history_cmd

    monkeypatch.setattr(history_cmd, "build_context", lambda: _ctx(tmp_path))

    with pytest.raises(typer.Exit) as exc:
        history_cmd.show(entry_id="20250304-090000", output=False)

    assert exc.value.exit_code == int(ErrorCode.USER_ERROR)


def test_delete(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    import relix.cli.commands.history as history_cmd

    ctx = _ctx(tmp_path)
    entry_id = _record(ctx)
    monkeypatch.setattr(history_cmd, "build_context", lambda: ctx)

    history_cmd.delete(entry_ids=[entry_id])

    assert _console(ctx).messages == ["OK deleted 1 entry"]
    assert ctx.history.list_entries().unwrap() == []
