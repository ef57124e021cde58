"""Git command lines for every release step.

Pure: nothing here touches the repository. The release machine runs these
strings through the PTY runner, so they are shell command lines, with every
variable part passed through `shlex.quote`.
"""

from __future__ import annotations

import shlex
from dataclasses import dataclass

from relix.core.config import EnvironmentConfig
from relix.services.release.versioning import release_title

__all__ = [
    "CONTINUE_MERGE",
    "ReleaseCommands",
    "env_release_branch_name",
    "source_branch_name",
    "tag_name",
]

CONTINUE_MERGE = "GIT_EDITOR=true git merge --continue"


def _q(value: str) -> str:
    return shlex.quote(value)


def source_branch_name(version: str) -> str:
    return f"release/rpb-{version}-root"


def env_release_branch_name(version: str, env_branch: str) -> str:
    return f"release/rpb-{version}-{env_branch}"


def tag_name(env_name: str, version: str, number: int) -> str:
    return f"{env_name.lower()}-{version}-v{number}"


@dataclass(frozen=True, slots=True)
class ReleaseCommands:
    """Release parameters plus the command lines derived from them."""

    version: str
    environment: EnvironmentConfig
    mr_branches: tuple[str, ...]
    base_branch: str = "root"
    develop_branch: str = "develop"
    source_branch: str = ""
    source_branch_is_remote: bool = False

    @property
    def source(self) -> str:
        return self.source_branch or source_branch_name(self.version)

    @property
    def env_branch(self) -> str:
        return self.environment.branch

    @property
    def env_release_branch(self) -> str:
        return env_release_branch_name(self.version, self.environment.branch)

    # -- GitFetch / CheckoutRoot --------------------------------------------

    def fetch(self) -> list[str]:
        return ["git fetch origin --prune"]

    def checkout_source(self) -> list[str]:
        """Create the source branch from the base branch, or track the remote one."""
        source = _q(self.source)
        if self.source_branch_is_remote:
            return [f"git checkout -B {source} {_q('origin/' + self.source)}"]
        base = _q(self.base_branch)
        return [
            f"git checkout {base}",
            f"git pull --ff-only origin {base}",
            f"git checkout -B {source}",
        ]

    # -- MergeBranches ------------------------------------------------------

    def merge_branch(self, index: int) -> str:
        return f"git merge --no-edit {_q('origin/' + self.mr_branches[index])}"

    def continue_merge(self) -> str:
        return CONTINUE_MERGE

    # -- CheckoutEnv --------------------------------------------------------

    def checkout_env(self) -> list[str]:
        env = _q(self.env_branch)
        return [
            f"git checkout {env} 2>/dev/null || git checkout -b {env} {_q('origin/' + self.env_branch)}",
            f"git pull --ff-only origin {env}",
            f"git checkout -B {_q(self.env_release_branch)}",
        ]

    # -- CopyContent --------------------------------------------------------

    def checkout_env_release(self) -> str:
        return f"git checkout {_q(self.env_release_branch)}"

    def copy_from_source(self) -> list[str]:
        """Replace the whole tree and index with the source branch contents."""
        return [
            "git rm -r -f -q --ignore-unmatch .",
            f"git checkout {_q(self.source)} -- .",
        ]

    def restore_excluded(self, path: str) -> str:
        return f"git checkout {_q('origin/' + self.env_branch)} -- {_q(path)}"

    def remove_excluded(self, path: str) -> list[str]:
        quoted = _q(path)
        return [
            f"rm -rf -- {quoted}",
            f"git rm -r -f -q --cached --ignore-unmatch -- {quoted}",
        ]

    # -- Commit -------------------------------------------------------------

    def commit_message(self, number: int) -> tuple[str, str]:
        """(title, body) for the environment release commit."""
        title = release_title(self.version, self.env_branch, number)
        return (title, "\n".join(self.mr_branches))

    def commit(self, number: int) -> str:
        title, body = self.commit_message(number)
        if body:
            return f"git commit -m {_q(title)} -m {_q(body)}"
        return f"git commit -m {_q(title)}"

    def clean(self) -> str:
        return "git clean -fd"

    def discard_changes(self) -> str:
        """Drop the staged copy so the source branch can be checked out cleanly."""
        return "git reset --hard"

    def checkout_source_for_fix(self) -> str:
        return f"git checkout {_q(self.source)}"

    # -- PushAndCreateMR ----------------------------------------------------

    def push_env_release(self) -> str:
        return f"git push -u origin {_q(self.env_release_branch)}"

    # -- PushRootBranches ---------------------------------------------------

    def push_source(self) -> str:
        return f"git push -u origin {_q(self.source)}"

    def merge_to_root(self) -> list[str]:
        base = _q(self.base_branch)
        return [
            f"git checkout {base}",
            f"git pull --ff-only origin {base}",
            f"git merge --no-edit {_q(self.source)}",
        ]

    def tag_name(self, number: int) -> str:
        return tag_name(self.environment.name, self.version, number)

    def tag(self, tag: str, ref: str = "") -> str:
        """Create `tag` unless it already exists (safe to retry)."""
        target = f" {_q(ref)}" if ref else ""
        return (
            f"git rev-parse -q --verify {_q('refs/tags/' + tag)} >/dev/null "
            f"|| git tag {_q(tag)}{target}"
        )

    def push_with_tags(self, branch: str) -> str:
        return f"git push origin {_q(branch)} --tags"

    def merge_to_develop(self) -> list[str]:
        develop = _q(self.develop_branch)
        return [
            f"git checkout {develop}",
            f"git pull --ff-only origin {develop}",
            f"git merge --no-edit {_q(self.base_branch)}",
            f"git push origin {develop}",
        ]

    # -- SwitchToRoot / Abort -----------------------------------------------

    def switch_to_base(self) -> str:
        return f"git checkout {_q(self.base_branch)}"

    def delete_remote_branch(self, branch: str) -> str:
        return f"git push origin --delete {_q(branch)}"

    def abort_cleanup(self) -> list[str]:
        """Local cleanup after an abort; each command is run best-effort."""
        return [
            "git reset --hard",
            self.switch_to_base(),
            f"git branch -D {_q(self.source)}",
            f"git branch -D {_q(self.env_release_branch)}",
        ]
