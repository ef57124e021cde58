"""Release history: one JSON detail file per finished release plus an index.

Layout under the history directory:

    index.json            newest first, summary entries only
    20250102-153000.json  full detail of one release

A corrupt index is set aside as `index.json.bak` and history starts over
rather than blocking the release that is being recorded.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable, Iterable
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Literal

from relix.core.result import Err, Ok, Result
from relix.core.structured import (
    StrDict,
    as_obj_list,
    as_str_dict,
    get_bool,
    get_int,
    get_int_list,
    get_raw_str,
    get_str_list,
)
from relix.platform.files import atomic_write_json, unlink_if_exists
from relix.services.release.errors import ReleaseError
from relix.services.release.state import ReleaseState

__all__ = [
    "HistoryDetail",
    "HistoryEntry",
    "HistoryStatus",
    "HistoryStore",
]

HistoryStatus = Literal["completed", "aborted"]

INDEX_FILE = "index.json"
_ID_RE = re.compile(r"^\d{8}-\d{6}(-\d+)?$")


@dataclass(frozen=True, slots=True)
class HistoryEntry:
    id: str
    tag: str
    environment: str
    datetime: str
    mr_count: int
    status: str
    version: str


@dataclass(frozen=True, slots=True)
class HistoryDetail:
    entry: HistoryEntry
    mr_branches: tuple[str, ...] = ()
    mr_urls: tuple[str, ...] = ()
    mr_ids: tuple[int, ...] = ()
    mr_commit_shas: tuple[str, ...] = ()
    source_branch: str = ""
    env_branch: str = ""
    root_merge: bool = False
    created_mr_url: str = ""
    terminal_output: tuple[str, ...] = ()


def _display_tag(state: ReleaseState) -> str:
    """Tag without its environment prefix, or the version when untagged."""
    prefix = f"{state.environment.name.lower()}-"
    if state.tag_name.startswith(prefix):
        return state.tag_name[len(prefix) :]
    return state.tag_name or state.version


def _entry_from_dict(d: StrDict) -> HistoryEntry:
    return HistoryEntry(
        id=get_raw_str(d, "id"),
        tag=get_raw_str(d, "tag"),
        environment=get_raw_str(d, "environment"),
        datetime=get_raw_str(d, "datetime"),
        mr_count=get_int(d, "mr_count") or 0,
        status=get_raw_str(d, "status"),
        version=get_raw_str(d, "version"),
    )


class HistoryStore:
    def __init__(self, root: Path, *, clock: Callable[[], datetime] = datetime.now) -> None:
        self.root = root
        self._clock = clock

    @property
    def index_path(self) -> Path:
        return self.root / INDEX_FILE

    def _detail_path(self, entry_id: str) -> Path:
        return self.root / f"{entry_id}.json"

    def _io_error(self, action: str, e: OSError) -> ReleaseError:
        return ReleaseError(kind="history_io", message=f"failed to {action}: {e}", hint=str(self.root))

    def _read_index(self) -> list[StrDict]:
        path = self.index_path
        if not path.exists():
            return []
        try:
            items = as_obj_list(json.loads(path.read_text(encoding="utf-8")))
        except (UnicodeDecodeError, json.JSONDecodeError):
            items = None
        entries = [d for d in (as_str_dict(item) for item in items or []) if d is not None]
        # One non-object entry means the file was not written by us.
        if items is None or len(entries) != len(items):
            path.replace(path.with_name(INDEX_FILE + ".bak"))
            return []
        return entries

    def _new_id(self, now: datetime) -> str:
        base = now.strftime("%Y%m%d-%H%M%S")
        candidate = base
        n = 2
        while self._detail_path(candidate).exists():
            candidate = f"{base}-{n}"
            n += 1
        return candidate

    def record(self, state: ReleaseState, status: HistoryStatus) -> Result[HistoryEntry, ReleaseError]:
        """Write the detail file and prepend its summary to the index."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            now = self._clock()
            entry = HistoryEntry(
                id=self._new_id(now),
                tag=_display_tag(state),
                environment=state.environment.name,
                datetime=now.strftime("%Y-%m-%d %H:%M:%S"),
                mr_count=state.mr_count,
                status=status,
                version=state.version,
            )
            detail = {
                **asdict(entry),
                "mr_branches": list(state.mr_branches),
                "mr_urls": list(state.mr_urls),
                "mr_ids": list(state.selected_mr_ids),
                "mr_commit_shas": list(state.mr_commit_shas),
                "source_branch": state.source,
                "env_branch": state.environment.branch,
                "root_merge": state.root_merge,
                "created_mr_url": state.created_mr_url,
                "terminal_output": list(state.terminal_output),
            }
            atomic_write_json(self._detail_path(entry.id), detail)
            atomic_write_json(self.index_path, [asdict(entry), *self._read_index()])
        except OSError as e:
            return Err(self._io_error("record release history", e))
        return Ok(entry)

    def list_entries(self) -> Result[list[HistoryEntry], ReleaseError]:
        """Index entries, newest first."""
        try:
            return Ok([_entry_from_dict(d) for d in self._read_index()])
        except OSError as e:
            return Err(self._io_error("read release history", e))

    def load_detail(self, entry_id: str) -> Result[HistoryDetail, ReleaseError]:
        if not _ID_RE.match(entry_id):
            return Err(ReleaseError(kind="invalid_input", message=f"invalid history id: {entry_id}"))
        path = self._detail_path(entry_id)
        if not path.exists():
            return Err(ReleaseError(kind="invalid_input", message=f"no history entry {entry_id}"))
        try:
            d = as_str_dict(json.loads(path.read_text(encoding="utf-8")))
        except OSError as e:
            return Err(self._io_error(f"read history entry {entry_id}", e))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            return Err(ReleaseError(kind="history_io", message=f"corrupt history entry {entry_id}: {e}"))
        if d is None:
            return Err(ReleaseError(kind="history_io", message=f"corrupt history entry {entry_id}"))

        return Ok(
            HistoryDetail(
                entry=_entry_from_dict(d),
                mr_branches=tuple(get_str_list(d, "mr_branches")),
                mr_urls=tuple(get_str_list(d, "mr_urls")),
                mr_ids=tuple(get_int_list(d, "mr_ids")),
                mr_commit_shas=tuple(get_str_list(d, "mr_commit_shas")),
                source_branch=get_raw_str(d, "source_branch"),
                env_branch=get_raw_str(d, "env_branch"),
                root_merge=get_bool(d, "root_merge"),
                created_mr_url=get_raw_str(d, "created_mr_url"),
                terminal_output=tuple(get_str_list(d, "terminal_output")),
            )
        )

    def delete(self, entry_ids: Iterable[str]) -> Result[int, ReleaseError]:
        """Remove entries from the index and disk; returns how many were found."""
        wanted = {i for i in entry_ids if _ID_RE.match(i)}
        if not wanted:
            return Ok(0)
        try:
            index = self._read_index()
            kept = [d for d in index if get_raw_str(d, "id") not in wanted]
            removed = 0
            for entry_id in wanted:
                if unlink_if_exists(self._detail_path(entry_id)):
                    removed += 1
            if len(kept) != len(index):
                atomic_write_json(self.index_path, kept)
            return Ok(max(removed, len(index) - len(kept)))
        except OSError as e:
            return Err(self._io_error("delete history entries", e))
