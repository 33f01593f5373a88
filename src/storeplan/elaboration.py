"""Turn the solver's abstract plan into fully configured packages.

Elaboration decides, per package, the build style, every build option, the
package database stacks, the installed id and the install layout. Installed
ids of store packages are content hashes over the package's own options and
its dependencies' installed ids, so packages are elaborated in dependency
order and each one is built in two steps: hash inputs first, then the fields
derived from the resulting id.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, TypeVar

from .errors import InternalInvariantError
from .graph import NodeState, PlanGraph, PlanNode
from .hashing import PackageHashConfigInputs, inplace_installed_id, package_identity
from .layout import DistDirLayout, StoreDirLayout, store_install_dirs, user_install_dirs
from .models import (
    GLOBAL_PACKAGE_DB,
    AbstractPackageNode,
    BuildStyle,
    CompilerInfo,
    DebugInfoLevel,
    ElaboratedPackage,
    ElaboratedSharedConfig,
    OptimisationLevel,
    PackageConfig,
    PackageDb,
    PackageDbKind,
    PackageId,
    Platform,
    ProfDetailLevel,
    ProgramDb,
)
from .setup_policy import package_setup_script_spec_version, package_setup_script_style

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PackageOptions:
    """Per-package option lookup.

    Packages local to the project see the project's local options with their
    own per-package options layered on top; every other package sees only its
    per-package options.
    """

    def __init__(
        self,
        shared: PackageConfig,
        local: PackageConfig,
        per_package: Mapping[str, PackageConfig],
        local_packages: Iterable[PackageId],
    ) -> None:
        self.shared = shared
        self.local = local
        self.per_package = dict(per_package)
        self.local_packages = set(local_packages)

    def effective(self, package_id: PackageId) -> PackageConfig:
        own = self.per_package.get(package_id.name, PackageConfig())
        if package_id in self.local_packages:
            return self.local.combine(own)
        return own

    def maybe(self, package_id: PackageId, field: str) -> Any:
        return getattr(self.effective(package_id), field)

    def flag(self, package_id: PackageId, field: str, default: T) -> T:
        value = self.maybe(package_id, field)
        return default if value is None else value

    def lib_exe_flag(self, package_id: PackageId, default: T, both_field: str, lib_field: str) -> tuple[T, T]:
        """``(exe, lib)`` values where the lib-only option overrides the shared one."""
        both = self.maybe(package_id, both_field)
        lib_only = self.maybe(package_id, lib_field)
        exe = default if both is None else both
        lib_value = lib_only if lib_only is not None else both
        return exe, default if lib_value is None else lib_value

    def shared_flag(self, field: str, default: T) -> T:
        value = getattr(self.shared, field)
        return default if value is None else value

    def needs_shared_lib(self, package_id: PackageId, compiler: CompilerInfo) -> bool:
        shared_lib = self.shared.shared_lib
        dynamic_exe = self.maybe(package_id, "dynamic_exe")
        if shared_lib is None or dynamic_exe is None:
            return compiler.dynamic_by_default
        return shared_lib or dynamic_exe

    def needs_profiling_lib(self, package_id: PackageId) -> bool:
        config = self.effective(package_id)
        if config.profiling_lib is not None:
            return config.profiling_lib
        return bool(config.profiling)


def _non_setup_edges(node: PlanNode[AbstractPackageNode]) -> Iterable[str]:
    if node.package is None:
        return node.depends
    return node.package.depends_on.non_setup()


def packages_with_downward_closed_property(
    plan: PlanGraph[AbstractPackageNode],
    has_property: Callable[[AbstractPackageNode], bool],
) -> set[PackageId]:
    """Packages that have the property, plus all of their non-setup dependencies."""
    seeds = [node.node_id for node in plan if node.package is not None and has_property(node.package)]
    closure = plan.dependency_closure(seeds, edges=_non_setup_edges)
    return {plan.lookup(node_id).package_id for node_id in closure}


def elaborate_install_plan(
    *,
    platform: Platform,
    compiler: CompilerInfo,
    program_db: ProgramDb,
    dist_layout: DistDirLayout,
    store_layout: StoreDirLayout,
    user_prefix: Path,
    solver_plan: PlanGraph[AbstractPackageNode],
    local_packages: Iterable[PackageId],
    source_hashes: Mapping[str, str],
    options: PackageOptions,
    supported_spec_version: str,
) -> tuple[PlanGraph[ElaboratedPackage], ElaboratedSharedConfig]:
    """Elaborate every configured node of ``solver_plan``.

    ``source_hashes`` maps rendered package ids to tarball hashes and must
    cover every package that is not built in place.

    Raises:
        InternalInvariantError: if a store-bound package has no source hash or
            the solver plan holds a node that is not configured or pre-existing.
    """
    shared = ElaboratedSharedConfig(platform=platform, compiler=compiler, program_db=program_db)
    compiler_id = compiler.compiler_id

    local_ids = [str(package_id) for package_id in local_packages]
    missing = [node_id for node_id in local_ids if node_id not in solver_plan]
    if missing:
        raise InternalInvariantError(f"Local packages missing from the solver plan: {', '.join(missing)}")
    inplace_ids = solver_plan.reverse_dependency_closure(local_ids)

    shared_lib_packages = packages_with_downward_closed_property(
        solver_plan, lambda pkg: options.needs_shared_lib(pkg.package_id, compiler)
    )
    # A package that refuses profiling is still forced in when a dependent
    # asks for it; conflicting requests are not reported.
    profiling_packages = packages_with_downward_closed_property(
        solver_plan, lambda pkg: options.needs_profiling_lib(pkg.package_id)
    )

    store_dbs = (GLOBAL_PACKAGE_DB, PackageDb(kind=PackageDbKind.SPECIFIC, path=str(store_layout.package_db(compiler_id))))
    inplace_dbs = store_dbs + (PackageDb(kind=PackageDbKind.SPECIFIC, path=str(dist_layout.package_db(compiler_id))),)

    def build_options(package_id: PackageId) -> dict[str, Any]:
        profiling_exe_detail, profiling_lib_detail = options.lib_exe_flag(
            package_id, ProfDetailLevel.DEFAULT, "profiling_detail", "profiling_lib_detail"
        )
        return {
            "configure_script_args": options.maybe(package_id, "configure_args"),
            "vanilla_lib": options.shared_flag("vanilla_lib", True),
            "shared_lib": package_id in shared_lib_packages,
            "dynamic_exe": options.flag(package_id, "dynamic_exe", False),
            "ghci_lib": options.flag(package_id, "ghci_lib", False),
            "profiling_lib": package_id in profiling_packages,
            "profiling_exe": options.flag(package_id, "profiling", False),
            "profiling_lib_detail": profiling_lib_detail,
            "profiling_exe_detail": profiling_exe_detail,
            "coverage": options.flag(package_id, "coverage", False),
            "optimization": options.flag(package_id, "optimization", OptimisationLevel.NORMAL),
            "split_objs": options.flag(package_id, "split_objs", False),
            "strip_libs": options.flag(package_id, "strip_libs", False),
            "strip_exes": options.flag(package_id, "strip_exes", False),
            "debug_info": options.flag(package_id, "debug_info", DebugInfoLevel.NONE),
            "extra_lib_dirs": options.maybe(package_id, "extra_lib_dirs"),
            "extra_include_dirs": options.maybe(package_id, "extra_include_dirs"),
            "prog_prefix": options.maybe(package_id, "prog_prefix"),
            "prog_suffix": options.maybe(package_id, "prog_suffix"),
        }

    def elaborate_node(
        node: PlanNode[AbstractPackageNode],
        resolve: Callable[[str], PlanNode[ElaboratedPackage]],
    ) -> PlanNode[ElaboratedPackage]:
        if node.state == NodeState.PRE_EXISTING and node.installed is not None:
            return PlanNode.pre_existing(node.installed)
        if node.state != NodeState.CONFIGURED or node.package is None:
            raise InternalInvariantError(f"Cannot elaborate {node.state.value} plan node {node.node_id}")

        abstract = node.package
        package_id = abstract.package_id
        description = abstract.description
        depends_on = abstract.depends_on.map_ids(lambda dep: resolve(dep).node_id)
        setup_dependencies = [resolve(dep).package_id for dep in abstract.depends_on.setup()]
        inplace = node.node_id in inplace_ids
        package_options = build_options(package_id)
        source_hash = source_hashes.get(str(package_id))

        # Phase one: everything the installed id is computed from.
        hash_config = PackageHashConfigInputs(
            compiler_id=compiler_id,
            platform=platform,
            flag_assignment=abstract.flags,
            **package_options,
        )
        # Phase two: the id, then the fields derived from it.
        if inplace:
            installed_id = inplace_installed_id(package_id)
            install_dirs = user_install_dirs(user_prefix, platform, compiler_id, package_id)
        else:
            installed_id = package_identity(source_hash, depends_on.flat(), hash_config, package_id)
            install_dirs = store_install_dirs(store_layout, compiler_id, installed_id)
        package_dbs = inplace_dbs if inplace else store_dbs

        elaborated = ElaboratedPackage(
            installed_id=installed_id,
            package_id=package_id,
            build_type=description.effective_build_type,
            spec_version=description.spec_version,
            source=abstract.source,
            source_hash=source_hash,
            flags=abstract.flags,
            stanzas=abstract.stanzas,
            depends_on=depends_on,
            build_style=BuildStyle.BUILD_INPLACE_ONLY if inplace else BuildStyle.BUILD_AND_INSTALL,
            setup_package_dbs=package_dbs,
            build_package_dbs=package_dbs,
            register_package_dbs=package_dbs,
            requires_registration=description.has_library,
            install_dirs=install_dirs,
            setup_script_style=package_setup_script_style(description, supported_spec_version),
            setup_script_spec_version=package_setup_script_spec_version(
                description, setup_dependencies, supported_spec_version
            ),
            **package_options,
        )
        return PlanNode.configured(elaborated)

    plan = solver_plan.map_preserving_graph(elaborate_node)
    logger.info("Elaborated %d packages (%d built in place)", len(plan.configured_packages()), len(inplace_ids))
    return plan, shared
