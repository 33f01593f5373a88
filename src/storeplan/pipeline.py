"""The incremental planning pipeline.

Phases run as a LangGraph state graph::

    check_improved_plan --hit--> END
        |miss
    check_elaborated_plan --hit--> improve_plan
        |miss
    read_project_config -> read_local_packages -> configure_compiler
        -> run_solver -> elaborate_plan -> improve_plan -> END

Each cached phase keeps a monitor record under ``<dist>/cache``. The improved
plan and the elaborated plan share a key (command-line config, runtime
settings and search path); the improved plan additionally depends on the
store package db, so a newly installed package only re-runs improvement.
Compiler configuration, solving and source hashing are cached on their own
narrower keys inside the elaborated plan phase.
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, TypedDict

from langgraph.graph import END, START, StateGraph
from pydantic import BaseModel, ConfigDict, TypeAdapter

from .elaboration import PackageOptions, elaborate_install_plan
from .errors import InternalInvariantError
from .fetch import ArchiveFetcher, PackageFetcher, get_package_source_hashes, packages_needing_source_hashes
from .graph import PlanGraph
from .improvement import ImprovementSummary, improve_install_plan
from .layout import DistDirLayout, StoreDirLayout
from .models import (
    AbstractPackageNode,
    ElaboratedPackage,
    ElaboratedSharedConfig,
    InstalledPackage,
    ProjectConfig,
    ProjectConfigFile,
    SourcePackage,
)
from .monitor import FileMonitor
from .project_config import (
    read_installed_packages,
    read_local_packages,
    read_project_config,
    read_repository_packages,
)
from .rebuild import MonitorFrame, Rebuild
from .settings import RuntimeSettings
from .solver import GreedySolver, Solver, SolverParams, drain_progress
from .store import PackageStore
from .toolchain import DEFAULT_COMPILER_FLAVOR, CompilerSetup, SubprocessToolchainProbe, ToolchainProbe, program_monitor_files

logger = logging.getLogger(__name__)


class SolverPlanSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    pre_existing: list[InstalledPackage]
    configured: list[AbstractPackageNode]

    def to_graph(self) -> PlanGraph[AbstractPackageNode]:
        return PlanGraph.from_packages(self.pre_existing, self.configured)


class PlanSnapshot(BaseModel):
    """A plan whose nodes are all pre-existing or configured, plus what it was built with."""

    model_config = ConfigDict(frozen=True)

    pre_existing: list[InstalledPackage]
    configured: list[ElaboratedPackage]
    shared: ElaboratedSharedConfig
    project_config: ProjectConfig

    @classmethod
    def from_graph(
        cls,
        plan: PlanGraph[ElaboratedPackage],
        shared: ElaboratedSharedConfig,
        project_config: ProjectConfig,
    ) -> PlanSnapshot:
        pre_existing = plan.pre_existing_packages()
        configured = plan.configured_packages()
        if len(pre_existing) + len(configured) != len(plan):
            raise InternalInvariantError("Only pre-existing and configured plan nodes can be cached")
        return cls(pre_existing=pre_existing, configured=configured, shared=shared, project_config=project_config)

    def to_graph(self) -> PlanGraph[ElaboratedPackage]:
        return PlanGraph.from_packages(self.pre_existing, self.configured)


_COMPILER_ADAPTER = TypeAdapter(CompilerSetup)
_SOLVER_PLAN_ADAPTER = TypeAdapter(SolverPlanSnapshot)
_SOURCE_HASHES_ADAPTER = TypeAdapter(dict[str, str])
_PLAN_ADAPTER = TypeAdapter(PlanSnapshot)


class PlanningState(TypedDict, total=False):
    cli_config: ProjectConfigFile
    improved_cache_hit: bool
    elaborated_cache_hit: bool
    project_config: ProjectConfig
    local_packages: list[SourcePackage]
    compiler_setup: CompilerSetup
    solver_plan: SolverPlanSnapshot
    elaborated_snapshot: PlanSnapshot
    improved_snapshot: PlanSnapshot


@dataclass(frozen=True)
class PlanningResult:
    improved_plan: PlanGraph[ElaboratedPackage]
    shared: ElaboratedSharedConfig
    project_config: ProjectConfig
    phases_run: tuple[str, ...]
    improvement: ImprovementSummary | None = None


class PlanningPipeline:
    """Builds the improved install plan for one project, reusing cached phases."""

    def __init__(
        self,
        project_root: Path,
        *,
        settings: RuntimeSettings | None = None,
        solver: Solver | None = None,
        toolchain: ToolchainProbe | None = None,
        fetcher: PackageFetcher | None = None,
        search_path: str | None = None,
    ) -> None:
        self.project_root = project_root.resolve()
        self.settings = settings if settings is not None else RuntimeSettings.from_env(self.project_root)
        self.dist_layout = DistDirLayout.for_project(self.project_root, self.settings.dist_dir)
        self.store_layout = StoreDirLayout(self.settings.store_root_path())
        self.store = PackageStore(self.store_layout)
        self.solver = solver if solver is not None else GreedySolver()
        self.toolchain = (
            toolchain
            if toolchain is not None
            else SubprocessToolchainProbe(timeout_seconds=self.settings.http_timeout_seconds)
        )
        self.fetcher = fetcher
        self.search_path = search_path if search_path is not None else os.environ.get("PATH", "")

        self.improved_cache = FileMonitor(self.dist_layout.cache_file("improved-plan"), "improved plan")
        self.elaborated_cache = FileMonitor(self.dist_layout.cache_file("elaborated-plan"), "elaborated plan")
        self.compiler_cache = FileMonitor(self.dist_layout.cache_file("compiler"), "compiler configuration")
        self.solver_cache = FileMonitor(self.dist_layout.cache_file("solver-plan"), "solver plan")
        self.source_hash_cache = FileMonitor(self.dist_layout.cache_file("source-hashes"), "source hashes")

        self._rebuild = Rebuild()
        self._improved_frame: MonitorFrame | None = None
        self._elaborated_frame: MonitorFrame | None = None
        self._phases_run: list[str] = []
        self._improvement: ImprovementSummary | None = None
        self.graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(PlanningState)
        graph.add_node("check_improved_plan", self._check_improved_plan_node)
        graph.add_node("check_elaborated_plan", self._check_elaborated_plan_node)
        graph.add_node("read_project_config", self._read_project_config_node)
        graph.add_node("read_local_packages", self._read_local_packages_node)
        graph.add_node("configure_compiler", self._configure_compiler_node)
        graph.add_node("run_solver", self._run_solver_node)
        graph.add_node("elaborate_plan", self._elaborate_plan_node)
        graph.add_node("improve_plan", self._improve_plan_node)

        graph.add_edge(START, "check_improved_plan")
        graph.add_conditional_edges(
            "check_improved_plan",
            self._improved_route,
            {
                "hit": END,
                "miss": "check_elaborated_plan",
            },
        )
        graph.add_conditional_edges(
            "check_elaborated_plan",
            self._elaborated_route,
            {
                "hit": "improve_plan",
                "miss": "read_project_config",
            },
        )
        graph.add_edge("read_project_config", "read_local_packages")
        graph.add_edge("read_local_packages", "configure_compiler")
        graph.add_edge("configure_compiler", "run_solver")
        graph.add_edge("run_solver", "elaborate_plan")
        graph.add_edge("elaborate_plan", "improve_plan")
        graph.add_edge("improve_plan", END)
        return graph

    def _plan_key(self, state: PlanningState) -> dict[str, Any]:
        return {
            "cli_config": state["cli_config"],
            "settings": asdict(self.settings),
            "search_path": self.search_path,
        }

    def _ran(self, phase: str) -> None:
        self._phases_run.append(phase)
        logger.debug("Running phase %s", phase)

    # -- outer caches --------------------------------------------------------

    def _check_improved_plan_node(self, state: PlanningState) -> dict[str, Any]:
        cached = self._rebuild.check(self.improved_cache, self._plan_key(state), _PLAN_ADAPTER)
        if cached.hit:
            return {"improved_cache_hit": True, "improved_snapshot": cached.value}
        self._improved_frame = self._rebuild.open_frame(self.improved_cache.name)
        return {"improved_cache_hit": False}

    def _improved_route(self, state: PlanningState) -> str:
        return "hit" if state.get("improved_cache_hit") else "miss"

    def _check_elaborated_plan_node(self, state: PlanningState) -> dict[str, Any]:
        cached = self._rebuild.check(self.elaborated_cache, self._plan_key(state), _PLAN_ADAPTER)
        if cached.hit:
            return {"elaborated_cache_hit": True, "elaborated_snapshot": cached.value}
        self._elaborated_frame = self._rebuild.open_frame(self.elaborated_cache.name)
        return {"elaborated_cache_hit": False}

    def _elaborated_route(self, state: PlanningState) -> str:
        return "hit" if state.get("elaborated_cache_hit") else "miss"

    # -- elaboration phases --------------------------------------------------

    def _read_project_config_node(self, state: PlanningState) -> dict[str, Any]:
        self._ran("read_project_config")
        config = read_project_config(self._rebuild, self.project_root, state["cli_config"])
        return {"project_config": config}

    def _read_local_packages_node(self, state: PlanningState) -> dict[str, Any]:
        self._ran("read_local_packages")
        return {"local_packages": read_local_packages(self._rebuild, state["project_config"])}

    def _configure_compiler_node(self, state: PlanningState) -> dict[str, Any]:
        compiler_config = state["project_config"].compiler
        flavor = compiler_config.flavor or DEFAULT_COMPILER_FLAVOR
        key = {
            "flavor": flavor,
            "path": compiler_config.path,
            "pkg_path": compiler_config.pkg_path,
            "search_path": self.search_path,
        }

        def configure() -> CompilerSetup:
            self._ran("configure_compiler")
            setup = self.toolchain.configure(flavor, compiler_config.path, compiler_config.pkg_path, self.search_path)
            self._rebuild.monitor(*program_monitor_files(setup.program_db))
            return setup

        setup = self._rebuild.rerun_if_changed(self.compiler_cache, key, _COMPILER_ADAPTER, configure)
        return {"compiler_setup": setup}

    def _package_flags(self, config: ProjectConfig, local_packages: list[SourcePackage]) -> dict[str, dict[str, bool]]:
        flags = {name: dict(package_config.flags) for name, package_config in config.specific_packages.items()}
        for package in local_packages:
            name = package.package_id.name
            flags[name] = {**config.local_packages.flags, **flags.get(name, {})}
        return {name: value for name, value in flags.items() if value}

    def _run_solver_node(self, state: PlanningState) -> dict[str, Any]:
        config = state["project_config"]
        local_packages = state["local_packages"]
        setup = state["compiler_setup"]
        package_cache = self.settings.package_cache_path()
        global_db = self.settings.global_db_path(self.project_root)
        package_flags = self._package_flags(config, local_packages)
        key = {
            "solver": config.solver,
            "package_cache": str(package_cache),
            "repositories": config.repositories,
            "global_db": str(global_db) if global_db is not None else None,
            "local_packages": local_packages,
            "package_flags": package_flags,
            "compiler": setup.compiler,
            "platform": setup.platform,
            "programs": setup.program_db.signature(),
            "supported_spec_version": self.settings.supported_spec_version,
        }

        def solve() -> SolverPlanSnapshot:
            self._ran("run_solver")
            installed = read_installed_packages(self._rebuild, global_db)
            source_packages = read_repository_packages(self._rebuild, package_cache, config.repositories)
            params = SolverParams(
                constraints=config.solver.constraints,
                preferences=config.solver.preferences,
                package_flags=package_flags,
                max_backjumps=(
                    config.solver.max_backjumps
                    if config.solver.max_backjumps is not None
                    else self.settings.max_backjumps
                ),
                supported_spec_version=self.settings.supported_spec_version,
            )
            progress = self.solver.solve(
                setup.platform, setup.compiler, params, installed, source_packages, local_packages
            )
            plan = drain_progress(progress)
            return SolverPlanSnapshot(pre_existing=plan.pre_existing_packages(), configured=plan.configured_packages())

        snapshot = self._rebuild.rerun_if_changed(self.solver_cache, key, _SOLVER_PLAN_ADAPTER, solve)
        return {"solver_plan": snapshot}

    def _source_hashes(self, config: ProjectConfig, solver_plan: PlanGraph[AbstractPackageNode]) -> dict[str, str]:
        packages = packages_needing_source_hashes(solver_plan)
        key = [{"package_id": str(package.package_id), "source": package.source} for package in packages]

        def collect() -> dict[str, str]:
            self._ran("source_hashes")
            fetcher = self.fetcher
            if fetcher is None:
                fetcher = ArchiveFetcher(
                    self.settings.package_cache_path(),
                    config.repositories,
                    timeout_seconds=self.settings.http_timeout_seconds,
                )
            return get_package_source_hashes(self._rebuild, fetcher, packages)

        return self._rebuild.rerun_if_changed(self.source_hash_cache, key, _SOURCE_HASHES_ADAPTER, collect)

    def _elaborate_plan_node(self, state: PlanningState) -> dict[str, Any]:
        config = state["project_config"]
        setup = state["compiler_setup"]
        local_ids = [package.package_id for package in state["local_packages"]]
        solver_plan = state["solver_plan"].to_graph()
        source_hashes = self._source_hashes(config, solver_plan)

        self._ran("elaborate_plan")
        plan, shared = elaborate_install_plan(
            platform=setup.platform,
            compiler=setup.compiler,
            program_db=setup.program_db,
            dist_layout=self.dist_layout,
            store_layout=self.store_layout,
            user_prefix=self.settings.user_prefix_path(),
            solver_plan=solver_plan,
            local_packages=local_ids,
            source_hashes=source_hashes,
            options=PackageOptions(
                shared=config.all_packages,
                local=config.local_packages,
                per_package=config.specific_packages,
                local_packages=local_ids,
            ),
            supported_spec_version=self.settings.supported_spec_version,
        )
        snapshot = PlanSnapshot.from_graph(plan, shared, config)
        if self._elaborated_frame is None:
            raise InternalInvariantError("elaborated plan frame was never opened")
        self._rebuild.commit(self.elaborated_cache, self._plan_key(state), self._elaborated_frame, snapshot, _PLAN_ADAPTER)
        self._elaborated_frame = None
        return {"elaborated_snapshot": snapshot}

    # -- improvement -----------------------------------------------------------

    def _improve_plan_node(self, state: PlanningState) -> dict[str, Any]:
        self._ran("improve_plan")
        elaborated = state["elaborated_snapshot"]
        compiler_id = elaborated.shared.compiler.compiler_id
        db_dir = self.store.ensure_package_db(compiler_id)
        self._rebuild.monitor_glob(db_dir, "*.json")
        store_index = self.store.read_index(compiler_id)

        summary = ImprovementSummary()
        improved = improve_install_plan(store_index, elaborated.to_graph(), summary)
        self._improvement = summary
        snapshot = PlanSnapshot.from_graph(improved, elaborated.shared, elaborated.project_config)
        if self._improved_frame is None:
            raise InternalInvariantError("improved plan frame was never opened")
        self._rebuild.commit(self.improved_cache, self._plan_key(state), self._improved_frame, snapshot, _PLAN_ADAPTER)
        self._improved_frame = None
        return {"improved_snapshot": snapshot}

    # -- entry point -------------------------------------------------------------

    def rebuild_install_plan(self, cli_config: ProjectConfigFile | None = None) -> PlanningResult:
        """Return the improved plan for the project, recomputing only what changed.

        Raises:
            PlanningError: for configuration, solver or fetch failures.
        """
        self._rebuild = Rebuild()
        self._improved_frame = None
        self._elaborated_frame = None
        self._phases_run = []
        self._improvement = None

        initial_state: PlanningState = {"cli_config": cli_config if cli_config is not None else ProjectConfigFile()}
        result = self.graph.invoke(initial_state, config={"recursion_limit": 32})
        snapshot: PlanSnapshot = result["improved_snapshot"]
        logger.info("Planning finished; phases run: %s", ", ".join(self._phases_run) or "none")
        return PlanningResult(
            improved_plan=snapshot.to_graph(),
            shared=snapshot.shared,
            project_config=snapshot.project_config,
            phases_run=tuple(self._phases_run),
            improvement=self._improvement,
        )
