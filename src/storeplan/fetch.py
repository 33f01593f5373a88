from __future__ import annotations

import hashlib
import logging
import os
import tempfile
import urllib.error
import urllib.parse
import urllib.request
from pathlib import Path
from typing import Iterable, Protocol

from .errors import FetchError
from .graph import NodeState, PlanGraph
from .hashing import hash_file
from .models import (
    AbstractPackageNode,
    LocalArchive,
    LocalDirectory,
    RemoteArchive,
    Repository,
    RepositoryArchive,
    SourceLocator,
    locator_has_content_hash,
)
from .monitor import MonitorFile
from .rebuild import Rebuild

logger = logging.getLogger(__name__)

_DOWNLOAD_CHUNK_BYTES = 1 << 16


class PackageFetcher(Protocol):
    def check_fetched(self, locator: SourceLocator) -> Path | None: ...

    def fetch(self, locator: SourceLocator) -> Path: ...


class ArchiveFetcher:
    """Fetches package tarballs into a local package cache.

    Local archives are used where they are. Remote and repository archives are
    downloaded once into ``cache_dir`` and reused afterwards.
    """

    def __init__(self, cache_dir: Path, repositories: Iterable[Repository], *, timeout_seconds: int = 60) -> None:
        self.cache_dir = cache_dir
        self.repositories = {repo.name: repo for repo in repositories}
        self.timeout_seconds = timeout_seconds

    def archive_path(self, locator: SourceLocator) -> Path:
        if isinstance(locator, LocalArchive):
            return Path(locator.path)
        if isinstance(locator, RemoteArchive):
            url_key = hashlib.sha256(locator.url.encode("utf-8")).hexdigest()[:16]
            name = Path(urllib.parse.urlparse(locator.url).path).name or "package.tar.gz"
            return self.cache_dir / "remote" / url_key / name
        if isinstance(locator, RepositoryArchive):
            package = locator.package
            return self.cache_dir / locator.repo / package.name / package.version / f"{package}.tar.gz"
        raise ValueError(f"Local directories have no archive: {locator.path}")

    def download_url(self, locator: RemoteArchive | RepositoryArchive) -> str:
        if isinstance(locator, RemoteArchive):
            return locator.url
        repo = self.repositories.get(locator.repo)
        if repo is None:
            raise FetchError(str(locator.package), f"unknown repository {locator.repo!r}")
        return f"{repo.url.rstrip('/')}/package/{locator.package}.tar.gz"

    def check_fetched(self, locator: SourceLocator) -> Path | None:
        if isinstance(locator, LocalDirectory):
            return None
        path = self.archive_path(locator)
        return path if path.is_file() else None

    def fetch(self, locator: SourceLocator) -> Path:
        path = self.archive_path(locator)
        if isinstance(locator, LocalArchive):
            if not path.is_file():
                raise FetchError(locator.path, "local archive does not exist")
            return path
        assert isinstance(locator, (RemoteArchive, RepositoryArchive))
        url = self.download_url(locator)
        label = locator.url if isinstance(locator, RemoteArchive) else str(locator.package)
        logger.info("Downloading %s", url)
        try:
            self._download(url, path)
        except urllib.error.HTTPError as exc:
            raise FetchError(label, f"HTTP {exc.code} from {url}: {exc.reason}") from exc
        except urllib.error.URLError as exc:
            raise FetchError(label, f"failed to reach {url}: {exc.reason}") from exc
        except OSError as exc:
            raise FetchError(label, f"failed to write {path}: {exc}") from exc
        return path

    def _download(self, url: str, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".part")
        try:
            with os.fdopen(fd, "wb") as handle:
                with urllib.request.urlopen(url, timeout=self.timeout_seconds) as response:
                    for chunk in iter(lambda: response.read(_DOWNLOAD_CHUNK_BYTES), b""):
                        handle.write(chunk)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, str(path))
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise


def packages_needing_source_hashes(solver_plan: PlanGraph[AbstractPackageNode]) -> list[AbstractPackageNode]:
    return [
        node.package
        for node in solver_plan
        if node.state == NodeState.CONFIGURED
        and node.package is not None
        and locator_has_content_hash(node.package.source)
    ]


def get_package_source_hashes(
    rebuild: Rebuild,
    fetcher: PackageFetcher,
    packages: Iterable[AbstractPackageNode],
) -> dict[str, str]:
    """Fetch any archives not yet fetched and hash them all, keyed by rendered package id.

    Raises:
        FetchError: if any archive cannot be fetched; no partial result is returned.
    """
    archives: dict[str, Path] = {}
    missing: list[AbstractPackageNode] = []
    for package in packages:
        path = fetcher.check_fetched(package.source)
        if path is None:
            missing.append(package)
        else:
            archives[str(package.package_id)] = path

    if missing:
        logger.info("Fetching %d package archives", len(missing))
    for package in missing:
        archives[str(package.package_id)] = fetcher.fetch(package.source)

    rebuild.monitor(*(MonitorFile(path) for path in archives.values()))
    return {package_id: hash_file(path) for package_id, path in sorted(archives.items())}
