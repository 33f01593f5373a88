"""Durable JSON state on disk: cache records and store entries.

Writers take an exclusive lock on a ``.lock`` sidecar and replace the data
file atomically, so readers only ever see a complete previous or complete new
version.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import tempfile
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Iterator, TypeVar

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_LOCK_SUFFIX = ".lock"


@contextmanager
def locked_file(path: Path) -> Iterator[None]:
    """Hold an exclusive lock associated with *path* for the duration of the context.

    The lock lives on a separate sidecar file so that the data file itself can
    be swapped with ``os.replace`` while the lock is held.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to a temp file beside *path*, fsync it, then rename it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def safe_read_text(path: Path, label: str) -> str:
    """Read a UTF-8 file, raising a labelled error if it is missing, undecodable or empty.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is empty or contains non-UTF-8 data.
    """
    if not path.is_file():
        raise FileNotFoundError(f"{label} not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{label} at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise ValueError(f"{label} at {path} is empty")
    return text


def read_model(path: Path, model: type[ModelT], label: str) -> ModelT:
    """Load and validate a JSON model file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the content is unreadable or fails validation.
    """
    text = safe_read_text(path, label)
    try:
        return model.model_validate_json(text)
    except ValidationError as exc:
        raise ValueError(f"{label} at {path} failed validation: {exc}") from exc


def write_model(path: Path, value: BaseModel) -> None:
    with locked_file(path):
        atomic_write_text(path, value.model_dump_json(indent=2) + "\n")


def append_event(path: Path, event: dict[str, object]) -> None:
    """Append one JSON line to an event log, stamped with the current UTC time."""
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {"at": datetime.now(UTC).isoformat(), **event}
    with locked_file(path):
        with path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, sort_keys=True) + "\n")
