"""Release version strings and the per-environment v-number.

Every release commit on an environment branch is titled
`release:{version} {env branch} v{N}`. N counts the builds of one version on
one environment: it continues from the newest release title when that title
carries the same version and restarts at 1 otherwise.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass

__all__ = [
    "ReleaseTitle",
    "next_release_number",
    "normalize_version",
    "parse_release_title",
    "release_title",
    "validate_version",
    "versions_match",
]

_TITLE_RE = re.compile(r"^\s*release\s*:\s*([-0-9.]+)\s+\S.*?\s+v?(\d+)\s*$", re.IGNORECASE)
# Titles written before v-numbers existed: `release:1.2.0 ...`, counted as v1.
_LEGACY_TITLE_RE = re.compile(r"^\s*release\s*:\s*([-0-9.]*[0-9])", re.IGNORECASE)
_VERSION_RE = re.compile(r"^\d+(\.\d+){1,3}$")


@dataclass(frozen=True, slots=True)
class ReleaseTitle:
    version: str
    number: int


def release_title(version: str, env_branch: str, number: int) -> str:
    return f"release:{version} {env_branch} v{number}"


def parse_release_title(title: str) -> ReleaseTitle | None:
    """Parse a release commit title; None if it is not one."""
    match = _TITLE_RE.match(title)
    if match:
        return ReleaseTitle(version=match.group(1), number=int(match.group(2)))
    legacy = _LEGACY_TITLE_RE.match(title)
    if legacy:
        return ReleaseTitle(version=legacy.group(1), number=1)
    return None


def normalize_version(version: str) -> str:
    """Strip leading zeros from every numeric group: "4.05.01" -> "4.5.1"."""
    groups: list[str] = []
    for group in version.strip().split("."):
        stripped = group.lstrip("0")
        groups.append(stripped if stripped else ("0" if group else ""))
    return ".".join(groups)


def versions_match(a: str, b: str) -> bool:
    """Compare versions ignoring leading zeros; a shorter version matches its extensions.

    "4.05.01" matches "4.5.1", "4.5" matches "4.5.1", "4.1" does not match "4.10".
    """
    left = normalize_version(a).split(".")
    right = normalize_version(b).split(".")
    size = min(len(left), len(right))
    return left[:size] == right[:size]


def next_release_number(titles: Iterable[str], version: str) -> int:
    """Next v-number for `version` given recent titles, newest first.

    Only the newest release title decides; no release title at all means 1.
    """
    for title in titles:
        parsed = parse_release_title(title)
        if parsed is None:
            continue
        if versions_match(parsed.version, version):
            return parsed.number + 1
        return 1
    return 1


def validate_version(version: str) -> str | None:
    """Return an error message, or None when `version` is 2 to 4 dotted numbers."""
    if not version.strip():
        return "version is required"
    if not _VERSION_RE.match(version.strip()):
        return f"invalid version {version!r} (expected e.g. 1.2 or 4.5.1)"
    return None
