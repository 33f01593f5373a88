from importlib.metadata import PackageNotFoundError, version

from .elaboration import PackageOptions, elaborate_install_plan, packages_with_downward_closed_property
from .errors import ConfigurationError, FetchError, InternalInvariantError, PlanningError, SolverError
from .graph import NodeState, PlanGraph, PlanNode, ReadyPackage
from .hashing import (
    PackageHashConfigInputs,
    PackageHashInputs,
    hash_package_inputs,
    hashed_installed_id,
    package_hash_inputs,
    render_package_hash_inputs,
)
from .improvement import ImprovementSummary, improve_install_plan
from .models import (
    AbstractPackageNode,
    BuildStyle,
    ElaboratedPackage,
    ElaboratedSharedConfig,
    InstalledPackage,
    PackageConfig,
    PackageDescription,
    PackageId,
    ProjectConfig,
    ProjectConfigFile,
    SetupScriptStyle,
    SourcePackage,
)
from .pipeline import PlanningPipeline, PlanningResult
from .rebuild import Rebuild
from .settings import RuntimeSettings
from .solver import GreedySolver, Solver, SolverParams
from .store import PackageStore


def get_version() -> str:
    try:
        return version(__name__)
    except PackageNotFoundError:
        return "0.0.0"


__all__ = [
    "AbstractPackageNode",
    "BuildStyle",
    "ConfigurationError",
    "ElaboratedPackage",
    "ElaboratedSharedConfig",
    "FetchError",
    "GreedySolver",
    "ImprovementSummary",
    "InstalledPackage",
    "InternalInvariantError",
    "NodeState",
    "PackageConfig",
    "PackageDescription",
    "PackageHashConfigInputs",
    "PackageHashInputs",
    "PackageId",
    "PackageOptions",
    "PackageStore",
    "PlanGraph",
    "PlanNode",
    "PlanningError",
    "PlanningPipeline",
    "PlanningResult",
    "ProjectConfig",
    "ProjectConfigFile",
    "ReadyPackage",
    "Rebuild",
    "RuntimeSettings",
    "SetupScriptStyle",
    "Solver",
    "SolverError",
    "SolverParams",
    "SourcePackage",
    "elaborate_install_plan",
    "get_version",
    "hash_package_inputs",
    "hashed_installed_id",
    "improve_install_plan",
    "package_hash_inputs",
    "packages_with_downward_closed_property",
    "render_package_hash_inputs",
]
