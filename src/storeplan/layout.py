from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from .models import InstallDirs, PackageId, Platform

PROJECT_FILE_NAME = "storeplan.project.json"


@dataclass(frozen=True)
class DistDirLayout:
    """Per-project build output layout under ``<project>/<dist-dir>``."""

    project_root: Path
    dist_dir: Path

    @classmethod
    def for_project(cls, project_root: Path, dist_dir_name: str) -> DistDirLayout:
        dist_dir = Path(dist_dir_name)
        return cls(
            project_root=project_root,
            dist_dir=dist_dir if dist_dir.is_absolute() else project_root / dist_dir,
        )

    @property
    def project_file(self) -> Path:
        return self.project_root / PROJECT_FILE_NAME

    @property
    def cache_dir(self) -> Path:
        return self.dist_dir / "cache"

    def cache_file(self, name: str) -> Path:
        return self.cache_dir / f"{name}.json"

    def package_db(self, compiler_id: str) -> Path:
        return self.dist_dir / "packagedb" / compiler_id


@dataclass(frozen=True)
class StoreDirLayout:
    """Shared store layout, one subtree per compiler id."""

    store_root: Path

    def store_directory(self, compiler_id: str) -> Path:
        return self.store_root / compiler_id

    def package_db(self, compiler_id: str) -> Path:
        return self.store_directory(compiler_id) / "package.db"

    def package_directory(self, compiler_id: str, installed_id: str) -> Path:
        return self.store_directory(compiler_id) / installed_id

    def events_path(self, compiler_id: str) -> Path:
        return self.store_directory(compiler_id) / "events.jsonl"


def store_install_dirs(layout: StoreDirLayout, compiler_id: str, installed_id: str) -> InstallDirs:
    """Install layout for a package whose prefix is its own store directory."""
    prefix = layout.package_directory(compiler_id, installed_id)
    libdir = prefix / "lib"
    datadir = prefix / "share"
    docdir = datadir / "doc"
    htmldir = docdir / "html"
    return InstallDirs(
        prefix=str(prefix),
        bindir=str(prefix / "bin"),
        libdir=str(libdir),
        libsubdir="",
        dynlibdir=str(libdir),
        libexecdir=str(prefix / "libexec"),
        includedir=str(libdir / "include"),
        datadir=str(datadir),
        datasubdir="",
        docdir=str(docdir),
        mandir=str(datadir / "man"),
        htmldir=str(htmldir),
        haddockdir=str(htmldir),
        sysconfdir=str(prefix / "etc"),
    )


def user_install_dirs(prefix: Path, platform: Platform, compiler_id: str, package_id: PackageId) -> InstallDirs:
    """Install layout for in-place packages, shared by every package under the user prefix.

    The sub-directory parts are folded into the absolute paths and left empty,
    since they are passed on to the setup script as-is.
    """
    abi_dir = f"{platform}-{compiler_id}"
    libdir = prefix / "lib" / abi_dir / str(package_id)
    datadir = prefix / "share" / abi_dir / str(package_id)
    docdir = prefix / "share" / "doc" / abi_dir / str(package_id)
    htmldir = docdir / "html"
    return InstallDirs(
        prefix=str(prefix),
        bindir=str(prefix / "bin"),
        libdir=str(libdir),
        libsubdir="",
        dynlibdir=str(libdir),
        libexecdir=str(prefix / "libexec" / abi_dir / str(package_id)),
        includedir=str(libdir / "include"),
        datadir=str(datadir),
        datasubdir="",
        docdir=str(docdir),
        mandir=str(prefix / "share" / "man"),
        htmldir=str(htmldir),
        haddockdir=str(htmldir),
        sysconfdir=str(prefix / "etc"),
    )
