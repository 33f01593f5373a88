"""Reading the project file, local package descriptions and package indexes.

Every file read here is registered with the ``Rebuild`` so that the cached
phases depending on it are invalidated when it changes.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TypeVar

from pydantic import BaseModel, Field

from .errors import ConfigurationError
from .layout import PROJECT_FILE_NAME
from .models import (
    InstalledPackage,
    LocalDirectory,
    PackageDescription,
    ProjectConfig,
    ProjectConfigFile,
    Repository,
    RepositoryArchive,
    SourceLocator,
    SourcePackage,
)
from .monitor import MonitorFile, expand_glob
from .rebuild import Rebuild
from .state_store import read_model

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

PACKAGE_FILE_SUFFIX = ".pkg.json"
ENV_FILE_NAME = ".env"


class RepositoryIndexEntry(BaseModel):
    description: PackageDescription
    source: SourceLocator | None = None


class RepositoryIndex(BaseModel):
    packages: list[RepositoryIndexEntry] = Field(default_factory=list)


class InstalledPackageDb(BaseModel):
    packages: list[InstalledPackage] = Field(default_factory=list)


def _load(path: Path, model: type[ModelT], label: str) -> ModelT:
    try:
        return read_model(path, model, label)
    except (OSError, ValueError) as exc:
        raise ConfigurationError(str(exc), path=str(path)) from exc


def read_project_config(rebuild: Rebuild, project_root: Path, cli_config: ProjectConfigFile) -> ProjectConfig:
    """The project file combined with command-line overrides, which win.

    A project without a project file uses the default package globs.
    The project ``.env``, which runtime settings are read from, is monitored as well.
    """
    path = project_root / PROJECT_FILE_NAME
    rebuild.monitor(MonitorFile(path))
    rebuild.monitor(MonitorFile(project_root / ENV_FILE_NAME))
    file_config = _load(path, ProjectConfigFile, "Project file") if path.is_file() else ProjectConfigFile()
    return ProjectConfig.from_file_config(str(project_root), file_config.combine(cli_config))


def find_project_package_files(rebuild: Rebuild, config: ProjectConfig) -> list[Path]:
    root = Path(config.root_dir)
    found: dict[Path, None] = {}
    for pattern in config.package_globs:
        rebuild.monitor_glob(root, pattern)
        found.update(dict.fromkeys(expand_glob(root, pattern)))
    return list(found)


def read_source_package(path: Path) -> SourcePackage:
    description = _load(path, PackageDescription, "Package description")
    expected = path.name[: -len(PACKAGE_FILE_SUFFIX)] if path.name.endswith(PACKAGE_FILE_SUFFIX) else path.stem
    if description.name != expected:
        raise ConfigurationError(f"describes package {description.name!r}, expected {expected!r}", path=str(path))
    return SourcePackage(description=description, source=LocalDirectory(path=str(path.parent)))


def read_local_packages(rebuild: Rebuild, config: ProjectConfig) -> list[SourcePackage]:
    """Every package description matched by the project's package globs.

    Raises:
        ConfigurationError: if no package is found, a description is invalid,
            or two descriptions name the same package.
    """
    files = find_project_package_files(rebuild, config)
    if not files:
        raise ConfigurationError(
            f"no package descriptions match {', '.join(config.package_globs)}", path=config.root_dir
        )
    packages: dict[str, SourcePackage] = {}
    for path in files:
        package = read_source_package(path)
        name = package.package_id.name
        if name in packages:
            raise ConfigurationError(f"package {name!r} is described more than once", path=str(path))
        packages[name] = package
    logger.info("Found %d local packages", len(packages))
    return [packages[name] for name in sorted(packages)]


def read_repository_packages(
    rebuild: Rebuild,
    package_cache: Path,
    repositories: list[Repository] | tuple[Repository, ...],
) -> list[SourcePackage]:
    """Source packages listed in each repository's downloaded ``index.json``."""
    packages: list[SourcePackage] = []
    for repo in repositories:
        index_path = package_cache / repo.name / "index.json"
        rebuild.monitor(MonitorFile(index_path))
        if not index_path.is_file():
            logger.warning("No package index for repository %s at %s", repo.name, index_path)
            continue
        index = _load(index_path, RepositoryIndex, f"Index of repository {repo.name}")
        for entry in index.packages:
            source = entry.source
            if source is None:
                source = RepositoryArchive(repo=repo.name, package=entry.description.package_id)
            packages.append(SourcePackage(description=entry.description, source=source))
    return packages


def read_installed_packages(rebuild: Rebuild, global_db: Path | None) -> dict[str, InstalledPackage]:
    if global_db is None:
        return {}
    rebuild.monitor(MonitorFile(global_db))
    if not global_db.is_file():
        raise ConfigurationError("global package db does not exist", path=str(global_db))
    db = _load(global_db, InstalledPackageDb, "Global package db")
    return {entry.installed_id: entry for entry in db.packages}
