from __future__ import annotations

import hashlib
from pathlib import Path

import pytest

from storeplan.errors import FetchError
from storeplan.fetch import ArchiveFetcher, get_package_source_hashes
from storeplan.models import (
    AbstractPackageNode,
    BuildType,
    PackageDescription,
    PackageId,
    RemoteArchive,
    Repository,
    RepositoryArchive,
    SourceLocator,
)
from storeplan.rebuild import Rebuild

from conftest import ExampleProject

LIB = PackageId(name="lib", version="1.0")
PAYLOAD = b"lib-1.0 sources"


def _node(source: SourceLocator) -> AbstractPackageNode:
    return AbstractPackageNode(
        description=PackageDescription(name=LIB.name, version=LIB.version, build_type=BuildType.SIMPLE),
        source=source,
    )


def _published(tmp_path: Path) -> Path:
    archive = tmp_path / "mirror" / "package" / "lib-1.0.tar.gz"
    archive.parent.mkdir(parents=True)
    archive.write_bytes(PAYLOAD)
    return archive


def test_remote_archive_is_downloaded_into_the_cache_and_hashed(tmp_path: Path) -> None:
    locator = RemoteArchive(url=_published(tmp_path).as_uri())
    fetcher = ArchiveFetcher(tmp_path / "packages", [])
    assert fetcher.check_fetched(locator) is None

    hashes = get_package_source_hashes(Rebuild(), fetcher, [_node(locator)])

    assert hashes == {"lib-1.0": hashlib.sha256(PAYLOAD).hexdigest()}
    downloaded = fetcher.check_fetched(locator)
    assert downloaded is not None
    assert downloaded.is_relative_to(tmp_path / "packages" / "remote")
    assert downloaded.read_bytes() == PAYLOAD


def test_repository_archive_is_downloaded_from_the_repository_url(tmp_path: Path) -> None:
    _published(tmp_path)
    repo = Repository(name="main", url=(tmp_path / "mirror").as_uri())
    fetcher = ArchiveFetcher(tmp_path / "packages", [repo])
    locator = RepositoryArchive(repo="main", package=LIB)

    path = fetcher.fetch(locator)

    assert path == tmp_path / "packages" / "main" / "lib" / "1.0" / "lib-1.0.tar.gz"
    assert path.read_bytes() == PAYLOAD


def test_unknown_repository_is_a_fetch_error(tmp_path: Path) -> None:
    fetcher = ArchiveFetcher(tmp_path / "packages", [])
    with pytest.raises(FetchError, match="unknown repository 'main'") as excinfo:
        fetcher.fetch(RepositoryArchive(repo="main", package=LIB))
    assert excinfo.value.package_id == "lib-1.0"


def test_unreachable_archive_leaves_nothing_in_the_cache(tmp_path: Path) -> None:
    locator = RemoteArchive(url=(tmp_path / "mirror" / "missing.tar.gz").as_uri())
    fetcher = ArchiveFetcher(tmp_path / "packages", [])

    with pytest.raises(FetchError, match="failed to reach"):
        get_package_source_hashes(Rebuild(), fetcher, [_node(locator)])

    assert fetcher.check_fetched(locator) is None
    assert not any(path.is_file() for path in (tmp_path / "packages").rglob("*"))


def test_missing_local_archive_aborts_planning_without_caching_a_plan(example_project: ExampleProject) -> None:
    example_project.archive.unlink()
    pipeline = example_project.pipeline()

    with pytest.raises(FetchError, match="local archive does not exist"):
        pipeline.rebuild_install_plan()

    assert not pipeline.source_hash_cache.cache_file.exists()
    assert not pipeline.elaborated_cache.cache_file.exists()
    assert not pipeline.improved_cache.cache_file.exists()
