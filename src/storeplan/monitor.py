"""Persisted records of the inputs a cached phase result was computed from.

A record holds the phase's key value, the state of every file and glob the
phase read, and the phase output. The output may be reused as long as the key
is equal and no monitored file or glob has changed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Iterable, Union

from pydantic import BaseModel

from .canonical import to_canonical_json
from .hashing import hash_file
from .state_store import read_model, write_model

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MonitorFile:
    """A file whose content (or absence) the phase depends on."""

    path: Path


@dataclass(frozen=True)
class MonitorGlob:
    """A glob whose set of matches, and their content, the phase depends on."""

    root: Path
    pattern: str


MonitorPath = Union[MonitorFile, MonitorGlob]


class FileState(BaseModel):
    path: str
    exists: bool
    mtime_ns: int | None = None
    digest: str | None = None


class GlobState(BaseModel):
    root: str
    pattern: str
    matches: list[FileState]


def capture_file(path: Path) -> FileState:
    if not path.is_file():
        return FileState(path=str(path), exists=False)
    return FileState(path=str(path), exists=True, mtime_ns=path.stat().st_mtime_ns, digest=hash_file(path))


def expand_glob(root: Path, pattern: str) -> list[Path]:
    if not root.is_dir():
        return []
    return sorted(path for path in root.glob(pattern) if path.is_file())


def capture_glob(root: Path, pattern: str) -> GlobState:
    return GlobState(
        root=str(root),
        pattern=pattern,
        matches=[capture_file(path) for path in expand_glob(root, pattern)],
    )


def file_change(recorded: FileState) -> str | None:
    """Why ``recorded`` no longer describes the file, or ``None`` if it still does.

    Only content counts: touching a file without changing it is not a change.
    """
    path = Path(recorded.path)
    exists = path.is_file()
    if exists != recorded.exists:
        return f"{path} was {'created' if exists else 'removed'}"
    if not exists:
        return None
    if hash_file(path) != recorded.digest:
        return f"{path} changed"
    return None


def glob_change(recorded: GlobState) -> str | None:
    current = [str(path) for path in expand_glob(Path(recorded.root), recorded.pattern)]
    previous = [state.path for state in recorded.matches]
    if current != previous:
        return f"matches of {recorded.pattern} in {recorded.root} changed"
    for state in recorded.matches:
        reason = file_change(state)
        if reason is not None:
            return reason
    return None


class MonitorRecord(BaseModel):
    key: str
    files: list[FileState]
    globs: list[GlobState]
    output: Any
    written_at: datetime

    def monitors(self) -> list[MonitorPath]:
        paths: list[MonitorPath] = [MonitorFile(Path(state.path)) for state in self.files]
        paths.extend(MonitorGlob(Path(state.root), state.pattern) for state in self.globs)
        return paths

    def change_reason(self) -> str | None:
        for state in self.files:
            reason = file_change(state)
            if reason is not None:
                return reason
        for glob_state in self.globs:
            reason = glob_change(glob_state)
            if reason is not None:
                return reason
        return None


@dataclass(frozen=True)
class MonitorCheck:
    hit: bool
    reason: str
    record: MonitorRecord | None = None


class FileMonitor:
    """One cache record on disk, for one phase."""

    def __init__(self, cache_file: Path, name: str) -> None:
        self.cache_file = cache_file
        self.name = name

    def check(self, key: Any) -> MonitorCheck:
        if not self.cache_file.is_file():
            return MonitorCheck(hit=False, reason="no cached result")
        try:
            record = read_model(self.cache_file, MonitorRecord, f"{self.name} cache")
        except ValueError as exc:
            logger.warning("Discarding unreadable %s cache: %s", self.name, exc)
            return MonitorCheck(hit=False, reason="cached result unreadable")
        if record.key != to_canonical_json(key):
            return MonitorCheck(hit=False, reason="settings changed", record=record)
        reason = record.change_reason()
        if reason is not None:
            return MonitorCheck(hit=False, reason=reason, record=record)
        return MonitorCheck(hit=True, reason="unchanged", record=record)

    def update(self, key: Any, monitors: Iterable[MonitorPath], output: Any) -> MonitorRecord:
        files: dict[Path, FileState] = {}
        globs: dict[tuple[Path, str], GlobState] = {}
        for monitor in monitors:
            if isinstance(monitor, MonitorFile):
                if monitor.path not in files:
                    files[monitor.path] = capture_file(monitor.path)
            elif (monitor.root, monitor.pattern) not in globs:
                globs[(monitor.root, monitor.pattern)] = capture_glob(monitor.root, monitor.pattern)
        record = MonitorRecord(
            key=to_canonical_json(key),
            files=list(files.values()),
            globs=list(globs.values()),
            output=output,
            written_at=datetime.now(UTC),
        )
        write_model(self.cache_file, record)
        logger.debug(
            "Updated %s cache with %d files and %d globs monitored", self.name, len(files), len(globs)
        )
        return record
