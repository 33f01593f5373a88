from __future__ import annotations

import logging
from pathlib import Path

from .layout import StoreDirLayout
from .models import InstalledPackage
from .state_store import append_event, atomic_write_text, locked_file, read_model

logger = logging.getLogger(__name__)

_ENTRY_SUFFIX = ".json"


class PackageStore:
    """Append-only store of built packages, one package DB per compiler.

    Entries are registered by whatever executes the plan; planning only reads
    them. An installed id, once registered, is never overwritten.
    """

    def __init__(self, layout: StoreDirLayout) -> None:
        self.layout = layout

    def ensure_package_db(self, compiler_id: str) -> Path:
        db_dir = self.layout.package_db(compiler_id)
        if not db_dir.is_dir():
            db_dir.mkdir(parents=True, exist_ok=True)
            self._log_event(compiler_id, {"event": "package_db_created", "path": str(db_dir)})
            logger.info("Created store package db %s", db_dir)
        return db_dir

    def entry_path(self, compiler_id: str, installed_id: str) -> Path:
        return self.layout.package_db(compiler_id) / f"{installed_id}{_ENTRY_SUFFIX}"

    def _log_event(self, compiler_id: str, event: dict[str, object]) -> None:
        append_event(self.layout.events_path(compiler_id), event)

    def register(self, compiler_id: str, package: InstalledPackage) -> Path:
        db_dir = self.ensure_package_db(compiler_id)
        path = self.entry_path(compiler_id, package.installed_id)
        with locked_file(db_dir / "registry"):
            if path.exists():
                raise ValueError(f"Store entry already exists: {package.installed_id}")
            atomic_write_text(path, package.model_dump_json(indent=2) + "\n")
        self._log_event(
            compiler_id,
            {"event": "registered", "installed_id": package.installed_id, "package_id": str(package.package_id)},
        )
        return path

    def get(self, compiler_id: str, installed_id: str) -> InstalledPackage | None:
        path = self.entry_path(compiler_id, installed_id)
        if not path.is_file():
            return None
        return read_model(path, InstalledPackage, "Store entry")

    def read_index(self, compiler_id: str) -> dict[str, InstalledPackage]:
        """Every registered package for a compiler, keyed by installed id."""
        db_dir = self.layout.package_db(compiler_id)
        index: dict[str, InstalledPackage] = {}
        if not db_dir.is_dir():
            return index
        for path in sorted(db_dir.glob(f"*{_ENTRY_SUFFIX}")):
            entry = read_model(path, InstalledPackage, "Store entry")
            if entry.installed_id != path.name[: -len(_ENTRY_SUFFIX)]:
                raise ValueError(f"Store entry {path} is registered under the wrong id {entry.installed_id}")
            index[entry.installed_id] = entry
        logger.debug("Read %d store entries for %s", len(index), compiler_id)
        return index
