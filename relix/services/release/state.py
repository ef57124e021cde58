"""The persisted release state.

One `ReleaseState` exists per working tree while a release is in progress.
It is rewritten atomically after every step outcome and removed when the
release completes or is aborted, so the file's presence alone means
"resume me".
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from relix.core.config import EnvironmentConfig
from relix.core.result import Err, Ok, Result
from relix.core.structured import (
    as_str_dict,
    get_bool,
    get_int,
    get_int_list,
    get_raw_str,
    get_str,
    get_str_list,
    get_table,
)
from relix.platform.files import atomic_write_json, unlink_if_exists
from relix.services.release.commands import env_release_branch_name, source_branch_name
from relix.services.release.errors import ReleaseError
from relix.services.release.steps import ReleaseStep, total_sub_steps

__all__ = [
    "ERROR_OUTPUT_MAX_LINES",
    "LastError",
    "ReleaseState",
    "ReleaseStateStore",
    "STATE_SCHEMA",
    "TERMINAL_OUTPUT_MAX_LINES",
    "append_lines",
    "new_release_state",
    "state_from_dict",
    "state_to_dict",
    "tail_lines",
]

STATE_SCHEMA = 1
ERROR_OUTPUT_MAX_LINES = 5000
TERMINAL_OUTPUT_MAX_LINES = 10000


def tail_lines(text: str, limit: int) -> str:
    lines = text.splitlines()
    if len(lines) <= limit:
        return text
    return "\n".join(lines[-limit:])


def append_lines(
    existing: tuple[str, ...], text: str, limit: int = TERMINAL_OUTPUT_MAX_LINES
) -> tuple[str, ...]:
    """Append the lines of `text`, keeping only the newest `limit` lines."""
    if not text:
        return existing
    combined = (*existing, *text.splitlines())
    return combined[-limit:] if len(combined) > limit else combined


@dataclass(frozen=True, slots=True)
class LastError:
    """Failure recorded on the state.

    `step` is the step that failed; the state's `current_step` is the step
    Retry will run, which differs after a rejected commit.
    """

    step: ReleaseStep
    code: str
    message: str


@dataclass(frozen=True, slots=True)
class ReleaseState:
    project_id: int
    environment: EnvironmentConfig
    version: str
    work_dir: str
    source_branch: str = ""
    source_branch_is_remote: bool = False
    root_merge: bool = False

    selected_mr_ids: tuple[int, ...] = ()
    mr_branches: tuple[str, ...] = ()
    mr_urls: tuple[str, ...] = ()
    mr_commit_shas: tuple[str, ...] = ()

    current_step: ReleaseStep = ReleaseStep.GIT_FETCH
    last_success_step: ReleaseStep = ReleaseStep.IDLE
    current_mr_index: int = 0
    merged_branches: tuple[str, ...] = ()
    completed_sub_steps: int = 0
    total_sub_steps: int = 0

    last_error: LastError | None = None
    error_output: str = ""
    terminal_output: tuple[str, ...] = ()

    release_number: int = 0
    created_mr_url: str = ""
    created_mr_iid: int = 0
    tag_name: str = ""

    started_at: str = ""

    @property
    def source(self) -> str:
        return self.source_branch or source_branch_name(self.version)

    @property
    def env_release_branch(self) -> str:
        return env_release_branch_name(self.version, self.environment.branch)

    @property
    def mr_count(self) -> int:
        return len(self.mr_branches)

    @property
    def progress_percent(self) -> int:
        if self.total_sub_steps <= 0:
            return 0
        return self.completed_sub_steps * 100 // self.total_sub_steps

    @property
    def is_failed(self) -> bool:
        return self.last_error is not None


def new_release_state(
    *,
    project_id: int,
    environment: EnvironmentConfig,
    version: str,
    work_dir: Path,
    mr_branches: tuple[str, ...],
    selected_mr_ids: tuple[int, ...] = (),
    mr_urls: tuple[str, ...] = (),
    mr_commit_shas: tuple[str, ...] = (),
    source_branch: str = "",
    source_branch_is_remote: bool = False,
    root_merge: bool = False,
) -> ReleaseState:
    return ReleaseState(
        project_id=project_id,
        environment=environment,
        version=version,
        work_dir=str(work_dir),
        source_branch=source_branch or source_branch_name(version),
        source_branch_is_remote=source_branch_is_remote,
        root_merge=root_merge,
        selected_mr_ids=selected_mr_ids,
        mr_branches=mr_branches,
        mr_urls=mr_urls,
        mr_commit_shas=mr_commit_shas,
        current_step=ReleaseStep.GIT_FETCH,
        total_sub_steps=total_sub_steps(mr_count=len(mr_branches), root_merge=root_merge),
        started_at=datetime.now(tz=UTC).isoformat(),
    )


def state_to_dict(state: ReleaseState) -> dict[str, object]:
    error: dict[str, object] | None = None
    if state.last_error is not None:
        error = {
            "step": state.last_error.step.slug,
            "code": state.last_error.code,
            "message": state.last_error.message,
        }
    return {
        "schema": STATE_SCHEMA,
        "project_id": state.project_id,
        "environment": {
            "name": state.environment.name,
            "branch_name": state.environment.branch,
            "job_suffix": state.environment.job_suffix,
        },
        "version": state.version,
        "work_dir": state.work_dir,
        "source_branch": state.source_branch,
        "source_branch_is_remote": state.source_branch_is_remote,
        "root_merge": state.root_merge,
        "selected_mr_ids": list(state.selected_mr_ids),
        "mr_branches": list(state.mr_branches),
        "mr_urls": list(state.mr_urls),
        "mr_commit_shas": list(state.mr_commit_shas),
        "current_step": state.current_step.slug,
        "last_success_step": state.last_success_step.slug,
        "current_mr_index": state.current_mr_index,
        "merged_branches": list(state.merged_branches),
        "completed_sub_steps": state.completed_sub_steps,
        "total_sub_steps": state.total_sub_steps,
        "last_error": error,
        "error_output": state.error_output,
        "terminal_output": list(state.terminal_output),
        "release_number": state.release_number,
        "created_mr_url": state.created_mr_url,
        "created_mr_iid": state.created_mr_iid,
        "tag_name": state.tag_name,
        "started_at": state.started_at,
    }


def state_from_dict(d: dict[str, object]) -> Result[ReleaseState, str]:
    """Rebuild a state from its JSON form; Err carries the reason."""
    schema = d.get("schema")
    if schema != STATE_SCHEMA:
        return Err(f"unsupported release state schema: {schema}")

    env = get_table(d, "environment")
    version = get_str(d, "version")
    work_dir = get_str(d, "work_dir")
    project_id = get_int(d, "project_id")
    current_step = ReleaseStep.from_slug(get_raw_str(d, "current_step"))
    last_success = ReleaseStep.from_slug(get_raw_str(d, "last_success_step", "idle"))

    if env is None or version is None or work_dir is None or project_id is None:
        return Err("release state missing required fields")
    if current_step is None or last_success is None:
        return Err("release state has an unknown step")

    environment = EnvironmentConfig(
        name=get_raw_str(env, "name"),
        branch=get_raw_str(env, "branch_name"),
        job_suffix=get_raw_str(env, "job_suffix"),
    )
    if not environment.name or not environment.branch:
        return Err("release state has an incomplete environment")

    last_error: LastError | None = None
    error_table = get_table(d, "last_error")
    if error_table is not None:
        error_step = ReleaseStep.from_slug(get_raw_str(error_table, "step"))
        if error_step is None:
            return Err("release state error has an unknown step")
        last_error = LastError(
            step=error_step,
            code=get_raw_str(error_table, "code"),
            message=get_raw_str(error_table, "message"),
        )

    return Ok(
        ReleaseState(
            project_id=project_id,
            environment=environment,
            version=version,
            work_dir=work_dir,
            source_branch=get_raw_str(d, "source_branch"),
            source_branch_is_remote=get_bool(d, "source_branch_is_remote"),
            root_merge=get_bool(d, "root_merge"),
            selected_mr_ids=tuple(get_int_list(d, "selected_mr_ids")),
            mr_branches=tuple(get_str_list(d, "mr_branches")),
            mr_urls=tuple(get_str_list(d, "mr_urls")),
            mr_commit_shas=tuple(get_str_list(d, "mr_commit_shas")),
            current_step=current_step,
            last_success_step=last_success,
            current_mr_index=get_int(d, "current_mr_index") or 0,
            merged_branches=tuple(get_str_list(d, "merged_branches")),
            completed_sub_steps=get_int(d, "completed_sub_steps") or 0,
            total_sub_steps=get_int(d, "total_sub_steps") or 0,
            last_error=last_error,
            error_output=get_raw_str(d, "error_output"),
            terminal_output=tuple(get_str_list(d, "terminal_output")),
            release_number=get_int(d, "release_number") or 0,
            created_mr_url=get_raw_str(d, "created_mr_url"),
            created_mr_iid=get_int(d, "created_mr_iid") or 0,
            tag_name=get_raw_str(d, "tag_name"),
            started_at=get_raw_str(d, "started_at"),
        )
    )


@dataclass(frozen=True, slots=True)
class ReleaseStateStore:
    """Reads and writes the state file of one working tree."""

    path: Path

    def exists(self) -> bool:
        return self.path.exists()

    def save(self, state: ReleaseState) -> Result[None, ReleaseError]:
        try:
            atomic_write_json(self.path, state_to_dict(state))
        except OSError as e:
            return Err(
                ReleaseError(
                    kind="state_io",
                    message=f"failed to write release state: {e}",
                    hint=str(self.path),
                )
            )
        return Ok(None)

    def load(self) -> Result[ReleaseState | None, ReleaseError]:
        """Load the saved state; Ok(None) when no release is in progress."""
        if not self.path.exists():
            return Ok(None)

        try:
            obj: object = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            return Err(
                ReleaseError(
                    kind="state_io",
                    message=f"failed to load release state: {e}",
                    hint=str(self.path),
                )
            )

        d = as_str_dict(obj)
        if d is None:
            return Err(
                ReleaseError(kind="state_io", message="invalid release state format", hint=str(self.path))
            )

        parsed = state_from_dict(d)
        if isinstance(parsed, Err):
            return Err(ReleaseError(kind="state_io", message=parsed.error, hint=str(self.path)))
        return Ok(parsed.value)

    def clear(self) -> Result[None, ReleaseError]:
        try:
            unlink_if_exists(self.path)
        except OSError as e:
            return Err(
                ReleaseError(
                    kind="state_io",
                    message=f"failed to delete release state: {e}",
                    hint=str(self.path),
                )
            )
        return Ok(None)
