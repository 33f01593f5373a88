from __future__ import annotations

from pathlib import Path

import pytest

from storeplan.errors import SolverError
from storeplan.graph import NodeState
from storeplan.models import (
    CompilerInfo,
    Dependency,
    InstalledPackage,
    LocalArchive,
    LocalDirectory,
    PackageDescription,
    Platform,
    SourcePackage,
)
from storeplan.solver import AbstractPlan, GreedySolver, SolverParams, drain_progress

LINUX = Platform(arch="x86_64", os="linux")
GHC = CompilerInfo(flavor="ghc", version="9.4.8")


def _source(tmp_path: Path, name: str, version: str, *depends: str, **fields: object) -> SourcePackage:
    description = PackageDescription(
        name=name,
        version=version,
        build_type="simple",
        build_depends=tuple(Dependency.model_validate(dep) for dep in depends),
        **fields,
    )
    return SourcePackage(description=description, source=LocalArchive(path=str(tmp_path / f"{name}-{version}.tar.gz")))


def _local(tmp_path: Path, name: str, *depends: str, **fields: object) -> SourcePackage:
    description = PackageDescription(
        name=name,
        version="0.1",
        build_type="simple",
        build_depends=tuple(Dependency.model_validate(dep) for dep in depends),
        **fields,
    )
    return SourcePackage(description=description, source=LocalDirectory(path=str(tmp_path / name)))


def _solve(
    params: SolverParams,
    installed: dict[str, InstalledPackage],
    sources: list[SourcePackage],
    targets: list[SourcePackage],
) -> AbstractPlan:
    return drain_progress(GreedySolver().solve(LINUX, GHC, params, installed, sources, targets))


def test_newest_satisfying_version_is_chosen(tmp_path: Path) -> None:
    sources = [
        _source(tmp_path, "lib", "1.0"),
        _source(tmp_path, "lib", "1.2"),
        _source(tmp_path, "lib", "2.0"),
    ]
    plan = _solve(SolverParams(), {}, sources, [_local(tmp_path, "app", "lib <2")])
    assert "lib-1.2" in plan
    assert plan.lookup("app-0.1").depends == ("lib-1.2",)


def test_constraints_and_preferences_narrow_the_choice(tmp_path: Path) -> None:
    sources = [_source(tmp_path, "lib", version) for version in ("1.0", "1.2", "2.0")]
    targets = [_local(tmp_path, "app", "lib")]

    constrained = _solve(SolverParams(constraints=(Dependency.model_validate("lib <1.2"),)), {}, sources, targets)
    assert "lib-1.0" in constrained

    preferred = _solve(SolverParams(preferences=(Dependency.model_validate("lib ==1.2"),)), {}, sources, targets)
    assert "lib-1.2" in preferred


def test_installed_packages_are_reused_with_their_closure(tmp_path: Path) -> None:
    installed = {
        "ghc-prim-0.9": InstalledPackage(installed_id="ghc-prim-0.9", package_id="ghc-prim-0.9"),
        "base-4.18": InstalledPackage(installed_id="base-4.18", package_id="base-4.18", depends=("ghc-prim-0.9",)),
    }
    plan = _solve(SolverParams(), installed, [_source(tmp_path, "base", "4.19")], [_local(tmp_path, "app", "base")])
    assert plan.lookup("base-4.18").state == NodeState.PRE_EXISTING
    assert plan.lookup("ghc-prim-0.9").state == NodeState.PRE_EXISTING
    assert "base-4.19" not in plan
    assert plan.lookup("app-0.1").depends == ("base-4.18",)


def test_setup_dependencies_are_injected(tmp_path: Path) -> None:
    installed = {"base-4.18": InstalledPackage(installed_id="base-4.18", package_id="base-4.18")}
    sources = [_source(tmp_path, "Cabal", "3.10")]
    target = _local(tmp_path, "app", spec_version="3.0")
    plan = _solve(SolverParams(), installed, sources, [target])
    app = plan.lookup("app-0.1").package
    assert app is not None
    assert app.depends_on.setup() == ("Cabal-3.10", "base-4.18")
    assert app.depends_on.non_setup() == ()


def test_flag_assignments_overlay_package_defaults(tmp_path: Path) -> None:
    target = _local(tmp_path, "app", flags={"fast": False, "debug": True})
    plan = _solve(SolverParams(package_flags={"app": {"fast": True}}), {}, [], [target])
    app = plan.lookup("app-0.1").package
    assert app is not None
    assert app.flags == {"fast": True, "debug": True}


def test_unsatisfiable_dependency_reports_the_trail(tmp_path: Path) -> None:
    with pytest.raises(SolverError) as excinfo:
        _solve(SolverParams(), {}, [_source(tmp_path, "lib", "1.0")], [_local(tmp_path, "app", "lib >=2")])
    error = excinfo.value
    assert "no version of lib" in error.reason
    assert error.log_trail[0] == "targets: app-0.1"
    assert "solver log" in error.diagnostic()


def test_conflicting_requirements_are_reported(tmp_path: Path) -> None:
    sources = [
        _source(tmp_path, "lib", "1.0"),
        _source(tmp_path, "lib", "2.0"),
        _source(tmp_path, "util", "1.0", "lib ==1.0"),
    ]
    with pytest.raises(SolverError, match="conflict"):
        _solve(SolverParams(), {}, sources, [_local(tmp_path, "app", "lib", "util")])
