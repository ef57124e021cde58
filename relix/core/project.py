"""Project root detection and per-project paths.

A project is the git working tree a release is orchestrated in. It is found
either from an explicit `--dir` override or by searching upward from the
current directory for a `.git` entry.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from pathlib import Path

from .result import Err, Ok, Result

__all__ = [
    "Project",
    "ProjectError",
    "detect_project",
    "find_project_upward",
    "is_project_root",
]


@dataclass(frozen=True, slots=True)
class ProjectError:
    """Error when no project root can be resolved."""

    message: str
    searched_from: Path | None = None


@dataclass(frozen=True, slots=True)
class Project:
    """A git working tree relix can release from."""

    root: Path

    @property
    def git_path(self) -> Path:
        return self.root / ".git"

    @property
    def state_dir(self) -> Path:
        """Where the in-progress release state lives.

        Inside `.git/` so that `git rm -rf .` and `git clean` never touch it.
        Linked worktrees (where `.git` is a file) fall back to a per-path
        directory under the user's home.
        """
        if self.git_path.is_dir():
            return self.git_path / "relix"
        digest = hashlib.sha1(str(self.root).encode("utf-8")).hexdigest()[:16]
        return Path.home() / ".local" / "state" / "relix" / digest

    @property
    def state_path(self) -> Path:
        return self.state_dir / "release.json"

    @property
    def lock_path(self) -> Path:
        return self.state_dir / "release.lock"

    def __str__(self) -> str:
        return str(self.root)


def is_project_root(path: Path) -> bool:
    return (path / ".git").exists()


def find_project_upward(start: Path) -> Path | None:
    """Search upward from start for the nearest directory containing `.git`."""
    for parent in (start, *start.parents):
        if is_project_root(parent):
            return parent
    return None


def detect_project(
    *,
    override: Path | None = None,
    start_dir: Path | None = None,
) -> Result[Project, ProjectError]:
    """Resolve the project root.

    Detection order:
    1. Explicit override (must itself be a git working tree)
    2. Search upward from start_dir (or cwd)
    """
    if override is not None:
        try:
            root = override.expanduser().resolve()
        except OSError as e:
            return Err(ProjectError(f"invalid project directory: {e}", searched_from=override))
        if not root.is_dir():
            return Err(ProjectError(f"not a directory: {root}", searched_from=root))
        if not is_project_root(root):
            return Err(ProjectError(f"not a git working tree: {root}", searched_from=root))
        return Ok(Project(root=root))

    start = (start_dir or Path.cwd()).resolve()
    found = find_project_upward(start)
    if found is None:
        return Err(
            ProjectError(
                "no git working tree found (run inside a repository or pass --dir)",
                searched_from=start,
            )
        )
    return Ok(Project(root=found))
