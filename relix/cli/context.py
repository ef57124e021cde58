from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

import typer

from relix.core.config import Config, default_config_path, load_config_or_default
from relix.core.errors import ErrorCode
from relix.core.project import Project, detect_project
from relix.core.result import Err
from relix.git.repository import Repository
from relix.output.console import ConsoleProtocol, RichConsole
from relix.output.errors import print_error
from relix.services.release.gitlab import CodeHostClient, GitLabClient
from relix.services.release.history import HistoryStore
from relix.services.release.state import ReleaseStateStore

DIR_ENV = "RELIX_DIR"


@dataclass(frozen=True, slots=True)
class CLIContext:
    project: Project
    config: Config
    config_path: Path
    console: ConsoleProtocol
    store: ReleaseStateStore
    history: HistoryStore

    @property
    def repo(self) -> Repository:
        return Repository(self.project.root)

    def client(self) -> CodeHostClient | None:
        """GitLab client, or None when no token is available."""
        token = self.config.gitlab.token()
        if token is None:
            return None
        return GitLabClient(self.config.gitlab.url, token)


def build_context(*, console: ConsoleProtocol | None = None) -> CLIContext:
    console = console or RichConsole()

    override = os.environ.get(DIR_ENV, "").strip()
    project_result = detect_project(override=Path(override) if override else None)
    if isinstance(project_result, Err):
        print_error(project_result.error, console)
        raise typer.Exit(code=int(ErrorCode.ENV_ERROR))
    project = project_result.value

    config_path = default_config_path()
    config_result = load_config_or_default(config_path)
    if isinstance(config_result, Err):
        print_error(config_result.error, console)
        raise typer.Exit(code=int(ErrorCode.ENV_ERROR))
    config = config_result.value

    return CLIContext(
        project=project,
        config=config,
        config_path=config_path,
        console=console,
        store=ReleaseStateStore(project.state_path),
        history=HistoryStore(config.history_dir),
    )
