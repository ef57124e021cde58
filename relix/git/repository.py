"""Git repository queries.

Release steps that change the tree run through the PTY runner so the
operator sees them. The questions the release machine asks between those
steps (is the tree clean, is a merge in progress, which titles are on the
environment branch) are answered here with plain, captured subprocess calls.

Usage:
    repo = Repository(Path("/path/to/repo"))

    match repo.status():
        case Ok(status):
            print(f"Branch: {status.branch}")
        case Err(e):
            print(f"Error: {e.message}")

    if repo.merge_in_progress():
        print("finish or abort the merge first")
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from relix.core.result import Err, Ok, Result
from relix.platform.process import ProcessError
from relix.platform.process import run as run_process

_GIT_TIMEOUT_SECONDS = 30.0
_GIT_NETWORK_TIMEOUT_SECONDS = 3 * 60.0
_NETWORK_COMMANDS = frozenset({"fetch", "pull", "push", "clone", "ls-remote"})

__all__ = [
    "GitError",
    "GitStatus",
    "Repository",
    "RepositoryProtocol",
    "StatusEntry",
]


@dataclass(frozen=True, slots=True)
class GitError:
    """Error from a git operation.

    Attributes:
        command: The git subcommand that failed
        message: Error message
        returncode: Process return code
    """

    command: str
    message: str
    returncode: int = 1


@dataclass(frozen=True, slots=True)
class StatusEntry:
    """A single entry in git status.

    Attributes:
        xy: Two-character status code (e.g., "M ", " M", "??")
        path: File path
    """

    xy: str
    path: str

    @property
    def is_staged(self) -> bool:
        return self.xy != "??" and self.xy[0] != " "

    @property
    def is_unstaged(self) -> bool:
        return self.xy != "??" and self.xy[1] != " "

    @property
    def is_untracked(self) -> bool:
        return self.xy == "??"

    @property
    def is_conflicted(self) -> bool:
        """Unmerged path (both sides modified, added or deleted)."""
        return "U" in self.xy or self.xy in {"AA", "DD"}

    def pretty_xy(self) -> str:
        """Format XY with dots for spaces (".M" instead of " M")."""
        return self.xy.replace(" ", ".")


@dataclass(frozen=True, slots=True)
class GitStatus:
    """Parsed `git status --porcelain=v1 -b`.

    Attributes:
        branch: Current branch name
        upstream: Upstream branch (e.g., "origin/root"), None if not set
        ahead: Number of commits ahead of upstream
        behind: Number of commits behind upstream
        entries: All status entries (staged, unstaged, untracked)
    """

    branch: str
    upstream: str | None = None
    ahead: int = 0
    behind: int = 0
    entries: tuple[StatusEntry, ...] = field(default_factory=tuple)

    @property
    def is_clean(self) -> bool:
        return len(self.entries) == 0

    @property
    def conflicted(self) -> list[StatusEntry]:
        return [e for e in self.entries if e.is_conflicted]

    @property
    def untracked(self) -> list[StatusEntry]:
        return [e for e in self.entries if e.is_untracked]


class RepositoryProtocol(Protocol):
    """The repository queries the release machine depends on."""

    path: Path

    def status(self) -> Result[GitStatus, GitError]: ...

    def is_clean(self) -> bool: ...

    def current_branch(self) -> str | None: ...

    def merge_in_progress(self) -> bool: ...

    def is_branch_merged(self, branch: str) -> bool: ...

    def remote_branch_exists(self, branch: str) -> Result[bool, GitError]: ...

    def remote_head(self, branch: str) -> Result[str | None, GitError]: ...

    def commit_id(self, ref: str) -> str | None: ...

    def recent_titles(self, ref: str, count: int) -> Result[list[str], GitError]: ...

    def tracked_files(self) -> Result[list[str], GitError]: ...

    def tree_files(self, ref: str) -> Result[list[str], GitError]: ...


class Repository:
    """Git repository queries for a single working tree.

    All methods that can fail return Result types; boolean queries return
    False when git cannot answer.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def exists(self) -> bool:
        return (self.path / ".git").exists()

    def status(self) -> Result[GitStatus, GitError]:
        """Get repository status (`git status --porcelain=v1 -b`)."""
        result = self._run(["status", "--porcelain=v1", "-b"])
        match result:
            case Err(e):
                return Err(self._error("status", e))
            case Ok(stdout):
                return Ok(self._parse_status(stdout))

    def is_clean(self) -> bool:
        """Check if working tree is clean (no changes, no untracked files).

        Returns False if status cannot be determined.
        """
        result = self._run(["status", "--porcelain"])
        match result:
            case Ok(stdout):
                return stdout.strip() == ""
            case Err(_):
                return False

    def current_branch(self) -> str | None:
        """Current branch name; None if detached HEAD or error."""
        result = self._run(["rev-parse", "--abbrev-ref", "HEAD"])
        match result:
            case Ok(stdout):
                branch = stdout.strip()
                return None if branch == "HEAD" else branch
            case Err(_):
                return None

    def git_path(self, name: str) -> Path:
        """Resolve a path inside the git directory (works for linked worktrees)."""
        git_dir = self.path / ".git"
        if git_dir.is_dir():
            return git_dir / name
        result = self._run(["rev-parse", "--git-path", name])
        if isinstance(result, Ok) and result.value.strip():
            resolved = Path(result.value.strip())
            return resolved if resolved.is_absolute() else self.path / resolved
        return git_dir / name

    def merge_in_progress(self) -> bool:
        """True while a merge awaits conflict resolution (MERGE_HEAD exists)."""
        return self.git_path("MERGE_HEAD").exists()

    def is_branch_merged(self, branch: str) -> bool:
        """True if `origin/<branch>` is already reachable from HEAD."""
        result = self._run(["branch", "-r", "--merged", "HEAD"])
        if isinstance(result, Err):
            return False
        wanted = f"origin/{branch}"
        for line in result.value.splitlines():
            name = line.strip().lstrip("* ").split(" -> ", 1)[0].strip()
            if name == wanted:
                return True
        return False

    def remote_head(self, branch: str) -> Result[str | None, GitError]:
        """Commit id of `refs/heads/<branch>` on origin, None if absent."""
        result = self._run(["ls-remote", "--heads", "origin", branch])
        match result:
            case Err(e):
                return Err(self._error("ls-remote", e))
            case Ok(stdout):
                for line in stdout.splitlines():
                    parts = line.split()
                    if len(parts) == 2 and parts[1] == f"refs/heads/{branch}":
                        return Ok(parts[0])
                return Ok(None)

    def remote_branch_exists(self, branch: str) -> Result[bool, GitError]:
        return self.remote_head(branch).map(lambda sha: sha is not None)

    def commit_id(self, ref: str) -> str | None:
        result = self._run(["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"])
        match result:
            case Ok(stdout):
                return stdout.strip() or None
            case Err(_):
                return None

    def recent_titles(self, ref: str, count: int) -> Result[list[str], GitError]:
        """Subjects of the last `count` commits on `ref`, newest first."""
        result = self._run(["log", ref, "-n", str(count), "--pretty=%s"])
        match result:
            case Err(e):
                return Err(self._error("log", e))
            case Ok(stdout):
                return Ok([line for line in stdout.splitlines() if line.strip()])

    def tracked_files(self) -> Result[list[str], GitError]:
        """Paths in the index."""
        result = self._run(["ls-files", "-z"])
        match result:
            case Err(e):
                return Err(self._error("ls-files", e))
            case Ok(stdout):
                return Ok([p for p in stdout.split("\0") if p])

    def tree_files(self, ref: str) -> Result[list[str], GitError]:
        """Paths in the tree of `ref`."""
        result = self._run(["ls-tree", "-r", "-z", "--name-only", ref])
        match result:
            case Err(e):
                return Err(self._error("ls-tree", e))
            case Ok(stdout):
                return Ok([p for p in stdout.split("\0") if p])

    def _error(self, command: str, e: ProcessError) -> GitError:
        return GitError(
            command=command,
            message=e.stderr.strip() or e.stdout.strip() or f"git {command} failed",
            returncode=e.returncode,
        )

    def _run(self, args: list[str]) -> Result[str, ProcessError]:
        """Run a git command in this repository."""
        command = args[0] if args else ""
        timeout = (
            _GIT_NETWORK_TIMEOUT_SECONDS if command in _NETWORK_COMMANDS else _GIT_TIMEOUT_SECONDS
        )
        return run_process(["git", "-C", str(self.path), *args], cwd=self.path, timeout=timeout)

    def _parse_status(self, output: str) -> GitStatus:
        lines = [ln for ln in output.splitlines() if ln.strip()]
        if not lines:
            return GitStatus(branch="")

        # First line is branch info: ## branch...upstream [ahead N, behind M]
        branch_line = lines[0]
        branch, upstream = self._parse_branch_line(branch_line)
        ahead, behind = self._parse_ahead_behind(branch_line)

        entries: list[StatusEntry] = []
        for line in lines[1:]:
            if len(line) < 4:
                continue
            entries.append(StatusEntry(xy=line[:2], path=line[3:]))

        return GitStatus(
            branch=branch,
            upstream=upstream,
            ahead=ahead,
            behind=behind,
            entries=tuple(entries),
        )

    def _parse_branch_line(self, line: str) -> tuple[str, str | None]:
        s = line.strip()
        if s.startswith("##"):
            s = s[2:].lstrip()
        s = s.split(" [", 1)[0].strip()
        if "..." in s:
            left, right = s.split("...", 1)
            return (left.strip(), right.strip())
        return (s, None)

    def _parse_ahead_behind(self, line: str) -> tuple[int, int]:
        match = re.search(r"\[([^\]]+)\]", line)
        if not match:
            return (0, 0)
        inside = match.group(1)
        ahead_match = re.search(r"ahead\s+(\d+)", inside)
        behind_match = re.search(r"behind\s+(\d+)", inside)
        return (
            int(ahead_match.group(1)) if ahead_match else 0,
            int(behind_match.group(1)) if behind_match else 0,
        )
