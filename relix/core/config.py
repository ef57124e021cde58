"""Typed configuration loading and access.

This module provides dataclasses for the config.toml structure:

    [gitlab]
    url = "https://gitlab.example.com"
    project_id = 42
    token_env = "GITLAB_TOKEN"

    [release]
    base_branch = "root"
    develop_branch = "develop"
    exclude_patterns = [".gitlab-ci.yml", "sprite.gen.ts"]

    [[environments]]
    name = "DEVELOP"
    branch = "develop"
    job_suffix = "dev01"

    [pipeline]
    jobs_regex = "(?i)Deploy Application"
    poll_interval = 7.0

Validation of the values (branch names, exclude patterns, regex) lives with
the release service, which owns those rules.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from .result import Err, Ok, Result
from .structured import (
    StrDict,
    as_str_dict,
    get_float,
    get_int,
    get_list,
    get_str,
    get_str_list,
    get_table,
)

__all__ = [
    "Config",
    "ConfigError",
    "EnvironmentConfig",
    "GitLabConfig",
    "PipelineConfig",
    "ReleaseConfig",
    "default_config_path",
    "load_config",
    "load_config_or_default",
    "DEFAULT_BASE_BRANCH",
    "DEFAULT_DEVELOP_BRANCH",
    "DEFAULT_EXCLUDE_PATTERNS",
    "DEFAULT_JOBS_REGEX",
]

DEFAULT_BASE_BRANCH = "root"
DEFAULT_DEVELOP_BRANCH = "develop"
DEFAULT_EXCLUDE_PATTERNS = (".gitlab-ci.yml", "sprite.gen.ts")
DEFAULT_JOBS_REGEX = (
    r"(?i)(Package|Deploy) Application (Main|Admin|JudgePersonal|Touch) "
    r"(for |to )?(dev|test|stage|prod)01"
)
DEFAULT_POLL_INTERVAL_SECONDS = 7.0
DEFAULT_VERSION_LOOKBACK = 10

# Job-name suffix deployed by each well-known environment branch.
_JOB_SUFFIXES = {
    "develop": "dev01",
    "testing": "test01",
    "stable": "stage01",
    "master": "prod01",
    "main": "prod01",
}


def job_suffix_for_branch(branch: str) -> str:
    return _JOB_SUFFIXES.get(branch, "")


@dataclass(frozen=True, slots=True)
class ConfigError:
    """Error when config cannot be loaded, parsed or validated."""

    message: str
    path: Path | None = None


@dataclass(frozen=True, slots=True)
class EnvironmentConfig:
    """A deployment environment: display name plus its long-lived branch."""

    name: str
    branch: str
    job_suffix: str = ""

    @property
    def effective_job_suffix(self) -> str:
        return self.job_suffix or job_suffix_for_branch(self.branch)


def _default_environments() -> tuple[EnvironmentConfig, ...]:
    return (
        EnvironmentConfig(name="DEVELOP", branch="develop", job_suffix="dev01"),
        EnvironmentConfig(name="TEST", branch="testing", job_suffix="test01"),
        EnvironmentConfig(name="STAGE", branch="stable", job_suffix="stage01"),
        EnvironmentConfig(name="PROD", branch="master", job_suffix="prod01"),
    )


@dataclass(frozen=True, slots=True)
class GitLabConfig:
    url: str = "https://gitlab.com"
    project_id: int | None = None
    token_env: str = "GITLAB_TOKEN"

    def token(self) -> str | None:
        value = os.environ.get(self.token_env, "").strip()
        return value or None


@dataclass(frozen=True, slots=True)
class ReleaseConfig:
    base_branch: str = DEFAULT_BASE_BRANCH
    develop_branch: str = DEFAULT_DEVELOP_BRANCH
    exclude_patterns: tuple[str, ...] = DEFAULT_EXCLUDE_PATTERNS
    version_lookback: int = DEFAULT_VERSION_LOOKBACK

    @property
    def exclude_text(self) -> str:
        """Patterns as the newline-separated text the matcher compiles."""
        return "\n".join(self.exclude_patterns)


@dataclass(frozen=True, slots=True)
class PipelineConfig:
    jobs_regex: str = DEFAULT_JOBS_REGEX
    poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS


@dataclass(frozen=True, slots=True)
class Config:
    """Main configuration container."""

    gitlab: GitLabConfig = field(default_factory=GitLabConfig)
    release: ReleaseConfig = field(default_factory=ReleaseConfig)
    environments: tuple[EnvironmentConfig, ...] = field(default_factory=_default_environments)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    history_dir: Path = field(default_factory=lambda: default_history_dir())

    def environment(self, name: str) -> EnvironmentConfig | None:
        """Find an environment by name (case-insensitive) or branch."""
        wanted = name.strip().lower()
        for env in self.environments:
            if env.name.lower() == wanted or env.branch.lower() == wanted:
                return env
        return None

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Config:
        """Create Config from a mapping (parsed TOML)."""
        gitlab: StrDict = get_table(data, "gitlab") or {}
        release: StrDict = get_table(data, "release") or {}
        pipeline: StrDict = get_table(data, "pipeline") or {}
        history: StrDict = get_table(data, "history") or {}

        environments: list[EnvironmentConfig] = []
        for item in get_list(data, "environments") or []:
            table = as_str_dict(item)
            if table is None:
                raise ValueError("environments entries must be tables")
            environments.append(
                EnvironmentConfig(
                    name=get_str(table, "name") or "",
                    branch=get_str(table, "branch") or "",
                    job_suffix=get_str(table, "job_suffix") or "",
                )
            )

        patterns = get_str_list(release, "exclude_patterns")
        history_dir = get_str(history, "dir")

        return cls(
            gitlab=GitLabConfig(
                url=(get_str(gitlab, "url") or "https://gitlab.com").rstrip("/"),
                project_id=get_int(gitlab, "project_id"),
                token_env=get_str(gitlab, "token_env") or "GITLAB_TOKEN",
            ),
            release=ReleaseConfig(
                base_branch=get_str(release, "base_branch") or DEFAULT_BASE_BRANCH,
                develop_branch=get_str(release, "develop_branch") or DEFAULT_DEVELOP_BRANCH,
                exclude_patterns=(
                    tuple(patterns) if "exclude_patterns" in release else DEFAULT_EXCLUDE_PATTERNS
                ),
                version_lookback=get_int(release, "version_lookback") or DEFAULT_VERSION_LOOKBACK,
            ),
            environments=tuple(environments) if environments else _default_environments(),
            pipeline=PipelineConfig(
                jobs_regex=get_str(pipeline, "jobs_regex") or DEFAULT_JOBS_REGEX,
                poll_interval=get_float(pipeline, "poll_interval") or DEFAULT_POLL_INTERVAL_SECONDS,
            ),
            history_dir=(
                Path(history_dir).expanduser() if history_dir is not None else default_history_dir()
            ),
        )


def default_config_path() -> Path:
    """Config location: $RELIX_CONFIG, else ~/.config/relix/config.toml."""
    override = os.environ.get("RELIX_CONFIG", "").strip()
    if override:
        return Path(override).expanduser()
    return Path.home() / ".config" / "relix" / "config.toml"


def default_history_dir() -> Path:
    return Path.home() / ".local" / "share" / "relix" / "releases"


def _parse_toml(path: Path) -> Result[StrDict, ConfigError]:
    """Parse a TOML file, handling import and parse errors."""
    import tomllib

    try:
        content = path.read_bytes()
        data_obj: object = tomllib.loads(content.decode("utf-8"))
        data = as_str_dict(data_obj)
        if data is None:
            return Err(ConfigError("Config root must be a TOML table", path=path))
        return Ok(data)
    except FileNotFoundError:
        return Err(ConfigError(f"Config file not found: {path}", path=path))
    except PermissionError:
        return Err(ConfigError(f"Permission denied reading: {path}", path=path))
    except tomllib.TOMLDecodeError as e:
        return Err(ConfigError(f"Invalid TOML syntax: {e}", path=path))
    except UnicodeDecodeError as e:
        return Err(ConfigError(f"Error reading config: {e}", path=path))


def load_config(path: Path) -> Result[Config, ConfigError]:
    """Load and parse configuration from a TOML file.

    Returns:
        Ok(Config) on success, Err(ConfigError) on failure
    """
    result = _parse_toml(path)
    if isinstance(result, Err):
        return result

    try:
        return Ok(Config.from_dict(result.value))
    except (KeyError, TypeError, ValueError) as e:
        return Err(ConfigError(f"Invalid config structure: {e}", path=path))


def load_config_or_default(path: Path) -> Result[Config, ConfigError]:
    """Load config from file, or return the default config if it doesn't exist.

    A file that exists but is broken is still an error.
    """
    if not path.exists():
        return Ok(Config())
    return load_config(path)
