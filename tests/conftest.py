from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping

import pytest

from storeplan.elaboration import PackageOptions, elaborate_install_plan
from storeplan.graph import PlanGraph
from storeplan.layout import PROJECT_FILE_NAME, DistDirLayout, StoreDirLayout
from storeplan.models import (
    AbstractPackageNode,
    BuildType,
    CompilerInfo,
    ComponentDeps,
    ConfiguredProgram,
    ElaboratedPackage,
    ElaboratedSharedConfig,
    InstalledPackage,
    LocalArchive,
    LocalDirectory,
    PackageConfig,
    PackageDescription,
    PackageId,
    Platform,
    ProgramDb,
)
from storeplan.pipeline import PlanningPipeline
from storeplan.settings import RuntimeSettings
from storeplan.solver import GreedySolver, Progress
from storeplan.toolchain import CompilerSetup

LINUX = Platform(arch="x86_64", os="linux")
GHC = CompilerInfo(flavor="ghc", version="9.4.8")
LIB_SOURCE_HASH = "a" * 64
SEARCH_PATH = "/opt/toolchain/bin"


def example_solver_plan(tmp_path: Path) -> PlanGraph[AbstractPackageNode]:
    """``app-0.1`` (an executable) depends on ``lib-1.0``, which depends on the installed ``base-4.18``."""
    base = InstalledPackage(installed_id="base-4.18", package_id="base-4.18")
    lib = AbstractPackageNode(
        description=PackageDescription(name="lib", version="1.0", build_type=BuildType.SIMPLE),
        source=LocalArchive(path=str(tmp_path / "lib-1.0.tar.gz")),
        depends_on=ComponentDeps(components={"lib": ("base-4.18",)}),
    )
    app = AbstractPackageNode(
        description=PackageDescription(
            name="app",
            version="0.1",
            build_type=BuildType.SIMPLE,
            has_library=False,
            executables=("app",),
        ),
        source=LocalDirectory(path=str(tmp_path / "app")),
        depends_on=ComponentDeps(components={"exe:app": ("lib-1.0", "base-4.18")}),
    )
    return PlanGraph.from_packages([base], [lib, app])


ElaborateFn = Callable[..., tuple[PlanGraph[ElaboratedPackage], ElaboratedSharedConfig]]


@pytest.fixture
def elaborate(tmp_path: Path) -> ElaborateFn:
    def run(
        solver_plan: PlanGraph[AbstractPackageNode],
        *,
        local_packages: Iterable[str] = ("app-0.1",),
        shared: PackageConfig | None = None,
        local: PackageConfig | None = None,
        per_package: Mapping[str, PackageConfig] | None = None,
        source_hashes: Mapping[str, str] | None = None,
        compiler: CompilerInfo = GHC,
    ) -> tuple[PlanGraph[ElaboratedPackage], ElaboratedSharedConfig]:
        local_ids = [PackageId.model_validate(item) for item in local_packages]
        return elaborate_install_plan(
            platform=LINUX,
            compiler=compiler,
            program_db=ProgramDb(programs=(ConfiguredProgram(name="ghc", path="/usr/bin/ghc", version="9.4.8"),)),
            dist_layout=DistDirLayout.for_project(tmp_path / "project", "dist-newstyle"),
            store_layout=StoreDirLayout(tmp_path / "store"),
            user_prefix=tmp_path / "prefix",
            solver_plan=solver_plan,
            local_packages=local_ids,
            source_hashes=source_hashes if source_hashes is not None else {"lib-1.0": LIB_SOURCE_HASH},
            options=PackageOptions(
                shared=shared or PackageConfig(),
                local=local or PackageConfig(),
                per_package=per_package or {},
                local_packages=local_ids,
            ),
            supported_spec_version="1.24",
        )

    return run


class FakeToolchainProbe:
    """Reports a fixed compiler whose executable is a file under the test directory."""

    def __init__(self, compiler_path: Path) -> None:
        self.compiler_path = compiler_path
        self.calls = 0

    def configure(
        self,
        flavor: str,
        compiler_path: str | None,
        pkg_path: str | None,
        search_path: str,
    ) -> CompilerSetup:
        self.calls += 1
        program = ConfiguredProgram(name=flavor, path=str(self.compiler_path), version=GHC.version)
        return CompilerSetup(compiler=GHC, platform=LINUX, program_db=ProgramDb(programs=(program,)))


class CountingSolver:
    def __init__(self) -> None:
        self.inner = GreedySolver()
        self.calls = 0

    def solve(self, *args: Any) -> Progress:
        self.calls += 1
        return self.inner.solve(*args)


@dataclass
class ExampleProject:
    root: Path
    settings: RuntimeSettings
    compiler: Path
    archive: Path
    probe: FakeToolchainProbe
    solver: CountingSolver

    def write_json(self, path: Path, payload: dict[str, Any]) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        return path

    def write_package(self, description: dict[str, Any]) -> Path:
        name = description["name"]
        return self.write_json(self.root / name / f"{name}.pkg.json", description)

    def pipeline(self, settings: RuntimeSettings | None = None) -> PlanningPipeline:
        return PlanningPipeline(
            self.root,
            settings=settings if settings is not None else self.settings,
            solver=self.solver,
            toolchain=self.probe,
            search_path=SEARCH_PATH,
        )


@pytest.fixture
def example_project(tmp_path: Path) -> ExampleProject:
    """A project with a local ``app`` that needs ``lib`` from the ``main`` repository.

    ``lib``'s tarball is a local archive, so no network is involved.
    """
    root = tmp_path / "project"
    compiler = tmp_path / "toolchain" / "ghc"
    compiler.parent.mkdir(parents=True)
    compiler.write_text("#!/bin/sh\necho 9.4.8\n", encoding="utf-8")
    archive = tmp_path / "archives" / "lib-1.0.tar.gz"
    archive.parent.mkdir(parents=True)
    archive.write_bytes(b"lib-1.0 sources")

    settings = RuntimeSettings(
        store_root=str(tmp_path / "store"),
        user_prefix=str(tmp_path / "prefix"),
        package_cache=str(tmp_path / "packages"),
    )
    project = ExampleProject(
        root=root,
        settings=settings,
        compiler=compiler,
        archive=archive,
        probe=FakeToolchainProbe(compiler),
        solver=CountingSolver(),
    )
    project.write_json(
        root / PROJECT_FILE_NAME,
        {"repositories": [{"name": "main", "url": "https://packages.invalid"}]},
    )
    project.write_package(
        {
            "name": "app",
            "version": "0.1",
            "build_type": "simple",
            "has_library": False,
            "executables": ["app"],
            "build_depends": ["lib >=1.0"],
        }
    )
    project.write_json(
        tmp_path / "packages" / "main" / "index.json",
        {
            "packages": [
                {
                    "description": {"name": "lib", "version": "1.0", "build_type": "simple"},
                    "source": {"kind": "local_archive", "path": str(archive)},
                }
            ]
        },
    )
    return project


@pytest.fixture
def solver_plan(tmp_path: Path) -> PlanGraph[AbstractPackageNode]:
    return example_solver_plan(tmp_path)
