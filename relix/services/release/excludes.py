"""Exclude patterns for the environment content copy.

CopyContent replaces the whole environment release tree with the source
branch. Paths matched by an exclude pattern keep their environment-branch
version instead (or are removed when the environment branch lacks them).

Pattern syntax, one per line:
- `*` any run of characters within one path segment
- `**` any number of segments (`a/**/b`, `dir/**`)
- a leading `/` anchors the pattern at the project root; otherwise it
  matches at any depth
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass

from relix.core.result import Err, Ok, Result

__all__ = [
    "ExcludeMatcher",
    "PatternError",
    "compile_pattern",
    "validate_patterns",
]

MAX_PATTERN_LENGTH = 80

_TOO_WIDE_RE = re.compile(r"^(/?\*\*?/?|/)$")
_INVALID_CHARS_RE = re.compile(r'[<>:"|?\\]')
# `**` must be a whole segment, and never next to a bare `*` segment at an end.
_INVALID_ORDER_RE = re.compile(
    r"(^/?\*/\*\*)"
    r"|(^/?\*\*/\*(/|$))"
    r"|(\*/\*\*/?$)"
    r"|(\*\*/\*/?$)"
    r"|(\*\*/\*\*)"
    r"|([^/]\*\*)"
    r"|(\*\*[^/])"
)


@dataclass(frozen=True, slots=True)
class PatternError:
    """An invalid exclude pattern; `line` is 1-based."""

    line: int
    pattern: str
    reason: str

    def __str__(self) -> str:
        return f"line {self.line}: {self.reason}: {self.pattern!r}"


def _glob_to_regex(glob: str) -> str:
    out: list[str] = []
    i = 0
    while i < len(glob):
        if glob.startswith("**/", i):
            out.append("(?:.*/)?")
            i += 3
        elif glob.startswith("**", i):
            out.append(".*")
            i += 2
        elif glob[i] == "*":
            out.append("[^/]*")
            i += 1
        else:
            out.append(re.escape(glob[i]))
            i += 1
    return "^" + "".join(out) + "$"


@dataclass(frozen=True, slots=True)
class _CompiledPattern:
    source: str
    regex: re.Pattern[str]
    anchored: bool

    def matches(self, path: str) -> bool:
        if self.anchored:
            return bool(self.regex.match(path))
        # Unanchored: the pattern may start at any segment boundary.
        segments = path.split("/")
        return any(self.regex.match("/".join(segments[i:])) for i in range(len(segments)))


def compile_pattern(pattern: str) -> _CompiledPattern:
    stripped = pattern.strip()
    anchored = stripped.startswith("/")
    body = stripped.lstrip("/")
    return _CompiledPattern(source=stripped, regex=re.compile(_glob_to_regex(body)), anchored=anchored)


class ExcludeMatcher:
    """Decides whether a repository path is excluded from the content copy."""

    def __init__(self, patterns: Iterable[str]) -> None:
        self._patterns = tuple(compile_pattern(p) for p in patterns if p.strip())

    @classmethod
    def from_text(cls, text: str) -> ExcludeMatcher:
        """Compile newline-separated patterns; blank lines are skipped."""
        return cls(text.splitlines())

    @property
    def patterns(self) -> tuple[str, ...]:
        return tuple(p.source for p in self._patterns)

    def __bool__(self) -> bool:
        return bool(self._patterns)

    def matches(self, path: str) -> bool:
        normalized = path.strip().lstrip("/")
        if not normalized:
            return False
        return any(p.matches(normalized) for p in self._patterns)

    def filter(self, paths: Iterable[str]) -> list[str]:
        """Matched paths, de-duplicated and sorted."""
        return sorted({p for p in paths if self.matches(p)})


def _check_line(pattern: str) -> str | None:
    if not pattern.strip():
        return "empty pattern"
    if len(pattern) > MAX_PATTERN_LENGTH:
        return f"longer than {MAX_PATTERN_LENGTH} characters"
    if not pattern.isprintable():
        return "contains non-printable characters"
    if _TOO_WIDE_RE.match(pattern.strip()):
        return "pattern is too broad"
    if "//" in pattern:
        return "contains '//'"
    if _INVALID_CHARS_RE.search(pattern):
        return "contains an invalid character"
    if _INVALID_ORDER_RE.search(pattern.strip()):
        return "invalid wildcard order"
    return None


def validate_patterns(text: str) -> Result[None, list[PatternError]]:
    """Validate newline-separated exclude patterns.

    A single trailing newline is tolerated; any other blank line is an error.
    """
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines = lines[:-1]

    errors: list[PatternError] = []
    for number, line in enumerate(lines, start=1):
        reason = _check_line(line)
        if reason is not None:
            errors.append(PatternError(line=number, pattern=line, reason=reason))
    if errors:
        return Err(errors)
    return Ok(None)
