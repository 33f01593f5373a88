"""How each package's setup script is built and talked to.

The style is decided from the package's build type and declared spec version.
Styles that compile an external setup script get implicit setup dependencies
injected into the solver; the solver's choice of setup library then fixes the
command-line interface version used to drive the script.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from .errors import InternalInvariantError
from .graph import PlanNode, ReadyPackage
from .models import (
    BuildType,
    Dependency,
    ElaboratedPackage,
    ElaboratedSharedConfig,
    PackageDb,
    PackageDescription,
    PackageId,
    Platform,
    SetupScriptStyle,
    VersionRange,
    parse_version,
)

logger = logging.getLogger(__name__)

SETUP_LIBRARY_NAME = "Cabal"
BASE_LIBRARY_NAME = "base"
# Custom setup scripts without explicit setup deps predate this interface version.
IMPLICIT_SETUP_MAX_VERSION = "1.23"

_LEGACY_SETUP_PACKAGES = (
    "array",
    "base",
    "binary",
    "bytestring",
    "containers",
    "deepseq",
    "directory",
    "filepath",
    "pretty",
    "process",
    "time",
)


def package_setup_script_style(description: PackageDescription, supported_spec_version: str) -> SetupScriptStyle:
    if description.effective_build_type == BuildType.CUSTOM:
        if description.custom_setup is not None:
            return SetupScriptStyle.CUSTOM_EXPLICIT_DEPS
        return SetupScriptStyle.CUSTOM_IMPLICIT_DEPS
    if parse_version(description.spec_version) > parse_version(supported_spec_version):
        return SetupScriptStyle.NON_CUSTOM_EXTERNAL_LIB
    return SetupScriptStyle.NON_CUSTOM_INTERNAL_LIB


def legacy_custom_setup_packages(platform: Platform) -> list[str]:
    extra = "Win32" if platform.os.lower() == "windows" else "unix"
    return [*_LEGACY_SETUP_PACKAGES, extra]


def default_setup_deps(
    platform: Platform,
    description: PackageDescription,
    supported_spec_version: str,
) -> list[Dependency]:
    """Setup dependencies the solver should add for packages that declare none.

    Raises:
        InternalInvariantError: for packages with explicit setup dependencies,
            which the solver must take from the description instead.
    """
    style = package_setup_script_style(description, supported_spec_version)
    if style == SetupScriptStyle.CUSTOM_IMPLICIT_DEPS:
        deps = [Dependency(name=name) for name in legacy_custom_setup_packages(platform)]
        # The setup library bootstraps itself.
        if description.name != SETUP_LIBRARY_NAME:
            constraint = VersionRange.or_later(description.spec_version).intersect(
                VersionRange.earlier(IMPLICIT_SETUP_MAX_VERSION)
            )
            deps.append(Dependency(name=SETUP_LIBRARY_NAME, version_range=constraint))
        return deps
    if style == SetupScriptStyle.NON_CUSTOM_EXTERNAL_LIB:
        return [
            Dependency(name=SETUP_LIBRARY_NAME, version_range=VersionRange.or_later(description.spec_version)),
            Dependency(name=BASE_LIBRARY_NAME),
        ]
    if style == SetupScriptStyle.NON_CUSTOM_INTERNAL_LIB:
        return []
    raise InternalInvariantError(
        f"default_setup_deps called for {description.package_id}, which declares explicit setup deps"
    )


def package_setup_script_spec_version(
    description: PackageDescription,
    setup_dependencies: Iterable[PackageId],
    supported_spec_version: str,
) -> str:
    """The setup interface version used to drive this package's setup script."""
    style = package_setup_script_style(description, supported_spec_version)
    if style == SetupScriptStyle.NON_CUSTOM_INTERNAL_LIB:
        return supported_spec_version
    if style == SetupScriptStyle.CUSTOM_IMPLICIT_DEPS and description.name == SETUP_LIBRARY_NAME:
        return description.version
    for dep in setup_dependencies:
        if dep.name == SETUP_LIBRARY_NAME:
            return dep.version
    return description.spec_version


@dataclass(frozen=True)
class SetupScriptOptions:
    """Everything needed to compile and invoke a package's setup script."""

    setup_version: str
    compiler_id: str
    platform: str
    package_dbs: tuple[PackageDb, ...]
    dependencies: tuple[tuple[str, str], ...]
    dependencies_exclusive: bool
    version_macros: bool
    dist_dir: Path
    working_dir: Path
    force_external_setup: bool


def setup_script_options(
    ready: ReadyPackage[ElaboratedPackage],
    shared: ElaboratedSharedConfig,
    source_dir: Path,
    build_dir: Path,
    *,
    parallel_build: bool,
) -> SetupScriptOptions:
    package = ready.package
    setup_ids = set(package.depends_on.setup())
    return SetupScriptOptions(
        setup_version=package.setup_script_spec_version,
        compiler_id=shared.compiler.compiler_id,
        platform=str(shared.platform),
        package_dbs=package.setup_package_dbs,
        dependencies=tuple(
            (node.node_id, str(node.package_id)) for node in ready.dependencies if node.node_id in setup_ids
        ),
        dependencies_exclusive=True,
        version_macros=package.setup_script_style == SetupScriptStyle.CUSTOM_EXPLICIT_DEPS,
        dist_dir=build_dir,
        working_dir=source_dir,
        force_external_setup=parallel_build,
    )


def _flag(name: str, value: bool) -> str:
    return f"--enable-{name}" if value else f"--disable-{name}"


def _dependency_nodes(ready: ReadyPackage[ElaboratedPackage]) -> list[PlanNode[ElaboratedPackage]]:
    non_setup = set(ready.package.depends_on.non_setup())
    return [node for node in ready.dependencies if node.node_id in non_setup]


def setup_configure_args(
    ready: ReadyPackage[ElaboratedPackage],
    shared: ElaboratedSharedConfig,
    build_dir: Path,
) -> list[str]:
    """Arguments for ``setup configure``, pinned exactly to the plan's choices."""
    package = ready.package
    args = [
        f"--builddir={build_dir}",
        f"--with-compiler-flavor={shared.compiler.flavor}",
        "--exact-configuration",
        "--package-db=clear",
    ]
    for db in package.build_package_dbs:
        args.append(f"--package-db={db.path if db.path is not None else db.kind.value}")
    for program in shared.program_db.programs:
        args.append(f"--with-{program.name}={program.path}")
        args.extend(f"--{program.name}-option={arg}" for arg in program.default_args)
    args.extend(
        [
            _flag("library-vanilla", package.vanilla_lib),
            _flag("shared", package.shared_lib),
            _flag("executable-dynamic", package.dynamic_exe),
            _flag("library-for-ghci", package.ghci_lib),
            _flag("library-profiling", package.profiling_lib),
            _flag("profiling", package.profiling_exe),
            f"--profiling-detail={package.profiling_exe_detail.value}",
            f"--library-profiling-detail={package.profiling_lib_detail.value}",
            _flag("coverage", package.coverage),
            f"--optimization={package.optimization.value}",
            _flag("split-objs", package.split_objs),
            _flag("executable-stripping", package.strip_exes),
            _flag("library-stripping", package.strip_libs),
            f"--debug-info={package.debug_info.value}",
            _flag("tests", package.tests_enabled),
            _flag("benchmarks", package.benchmarks_enabled),
        ]
    )
    if package.flags:
        rendered = " ".join(f"{'' if value else '-'}{name}" for name, value in sorted(package.flags.items()))
        args.append(f"--flags={rendered}")
    args.extend(f"--configure-option={arg}" for arg in package.configure_script_args)
    args.extend(f"--extra-lib-dirs={path}" for path in package.extra_lib_dirs)
    args.extend(f"--extra-include-dirs={path}" for path in package.extra_include_dirs)
    if package.prog_prefix is not None:
        args.append(f"--program-prefix={package.prog_prefix}")
    if package.prog_suffix is not None:
        args.append(f"--program-suffix={package.prog_suffix}")
    for name, value in package.install_dirs.model_dump().items():
        args.append(f"--{name}={value}")
    for node in _dependency_nodes(ready):
        args.append(f"--dependency={node.package_id.name}={node.node_id}")
    logger.debug("Configure args for %s: %s", package.installed_id, args)
    return args
