"""Configuration checks run before a release may start."""

from __future__ import annotations

import re

from relix.core.config import Config, ConfigError
from relix.core.result import Err, Ok, Result
from relix.services.release.excludes import validate_patterns

__all__ = ["validate_config"]


def _bad_name(value: str) -> bool:
    return not value or any(ch.isspace() for ch in value)


def validate_config(config: Config) -> Result[None, ConfigError]:
    """Check branches, environments, the job regex and exclude patterns.

    All problems are reported together, one per line.
    """
    problems: list[str] = []
    release = config.release

    if _bad_name(release.base_branch):
        problems.append(f"release.base_branch is invalid: {release.base_branch!r}")
    if _bad_name(release.develop_branch):
        problems.append(f"release.develop_branch is invalid: {release.develop_branch!r}")
    if release.version_lookback < 1:
        problems.append("release.version_lookback must be at least 1")

    if not config.environments:
        problems.append("no environments configured")
    seen: set[str] = set()
    for i, env in enumerate(config.environments, start=1):
        if _bad_name(env.name) or _bad_name(env.branch):
            problems.append(f"environments[{i}]: name and branch must be non-empty without spaces")
            continue
        key = env.name.lower()
        if key in seen:
            problems.append(f"environments[{i}]: duplicate name {env.name}")
        seen.add(key)
        if env.branch == release.base_branch:
            problems.append(f"environments[{i}]: branch {env.branch} is the base branch")

    try:
        re.compile(config.pipeline.jobs_regex)
    except re.error as e:
        problems.append(f"pipeline.jobs_regex does not compile: {e}")
    if config.pipeline.poll_interval <= 0:
        problems.append("pipeline.poll_interval must be positive")

    if release.exclude_patterns:
        checked = validate_patterns(release.exclude_text)
        if isinstance(checked, Err):
            problems.extend(f"release.exclude_patterns: {e}" for e in checked.error)

    if problems:
        return Err(ConfigError("\n".join(problems)))
    return Ok(None)
