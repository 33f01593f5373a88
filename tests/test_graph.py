from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

import pytest

from storeplan.errors import InternalInvariantError
from storeplan.graph import NodeState, PlanGraph, PlanNode
from storeplan.models import BuildFailure, BuildFailureKind, BuildSuccess, InstalledPackage, PackageId


@dataclass(frozen=True)
class _Pkg:
    installed_id: str
    package_id: PackageId
    depends: tuple[str, ...] = ()


def _pkg(node_id: str, *depends: str) -> _Pkg:
    return _Pkg(installed_id=node_id, package_id=PackageId.model_validate(node_id), depends=depends)


def _installed(node_id: str, *depends: str) -> InstalledPackage:
    return InstalledPackage(installed_id=node_id, package_id=node_id, depends=depends)


def _example() -> PlanGraph[_Pkg]:
    """base (pre-existing) <- lib <- app, and base <- tool."""
    return PlanGraph.from_packages(
        [_installed("base-1")],
        [_pkg("app-1", "lib-1"), _pkg("lib-1", "base-1"), _pkg("tool-1", "base-1")],
    )


def _ready_ids(graph: PlanGraph[_Pkg]) -> list[str]:
    return [ready.package.installed_id for ready in graph.ready()]


def test_construction_rejects_unknown_dependencies() -> None:
    with pytest.raises(ValueError, match="unknown node"):
        PlanGraph.from_packages([], [_pkg("app-1", "missing-1")])


def test_construction_rejects_duplicates() -> None:
    with pytest.raises(ValueError, match="Duplicate"):
        PlanGraph.from_packages([_installed("base-1")], [_pkg("base-1")])


def test_construction_rejects_cycles() -> None:
    with pytest.raises(ValueError, match="cycle"):
        PlanGraph.from_packages([], [_pkg("a-1", "b-1"), _pkg("b-1", "a-1"), _pkg("c-1")])


def test_iteration_is_dependency_order() -> None:
    order = _example().topological_order()
    assert order.index("base-1") < order.index("lib-1") < order.index("app-1")
    assert order.index("base-1") < order.index("tool-1")
    assert [node.node_id for node in _example()] == order


def test_ready_requires_resolved_dependencies() -> None:
    graph = _example()
    assert _ready_ids(graph) == ["lib-1", "tool-1"]
    ready_lib = graph.ready()[0]
    assert [node.node_id for node in ready_lib.dependencies] == ["base-1"]


def test_processing_dependency_blocks_dependents() -> None:
    graph = _example()
    graph.processing(["lib-1"])
    assert graph.lookup("lib-1").state == NodeState.PROCESSING
    assert _ready_ids(graph) == ["tool-1"]


def test_completed_dependency_unblocks_dependents() -> None:
    graph = _example()
    graph.processing(["lib-1"])
    graph.completed("lib-1", BuildSuccess(installed=_installed("lib-1", "base-1")))
    assert graph.lookup("lib-1").state == NodeState.INSTALLED
    assert _ready_ids(graph) == ["tool-1", "app-1"]


def test_processing_a_node_that_is_not_ready_is_rejected() -> None:
    graph = _example()
    with pytest.raises(InternalInvariantError):
        graph.processing(["app-1"])
    with pytest.raises(InternalInvariantError):
        graph.completed("lib-1", BuildSuccess())


def test_failure_propagates_to_every_configured_dependent() -> None:
    graph = _example()
    graph.processing(["lib-1"])
    failed = graph.failed("lib-1", BuildFailure(kind=BuildFailureKind.BUILD_FAILED, message="boom"))

    assert failed == ["app-1"]
    app = graph.lookup("app-1")
    assert app.state == NodeState.FAILED
    assert app.failure is not None
    assert app.failure.kind == BuildFailureKind.DEPENDENT_FAILED
    assert app.failure.failed_dependency == PackageId(name="lib", version="1")
    assert _ready_ids(graph) == ["tool-1"]


def test_preexisting_replacement_checks_identity_and_readiness() -> None:
    graph = _example()
    with pytest.raises(InternalInvariantError):
        graph.preexisting("lib-1", _installed("lib-2"))
    with pytest.raises(InternalInvariantError):
        graph.preexisting("app-1", _installed("app-1", "lib-1"))

    graph.preexisting("lib-1", _installed("lib-1", "base-1"))
    node = graph.lookup("lib-1")
    assert node.state == NodeState.PRE_EXISTING
    assert node.package is None
    assert "app-1" in _ready_ids(graph)


def test_reverted_returns_processing_nodes_to_configured() -> None:
    graph = _example()
    graph.processing(["lib-1", "tool-1"])
    graph.reverted(["lib-1", "tool-1"])
    assert graph.nodes_in_state(NodeState.PROCESSING) == []
    assert _ready_ids(graph) == ["lib-1", "tool-1"]
    with pytest.raises(InternalInvariantError):
        graph.reverted(["lib-1"])


def test_closures() -> None:
    graph = _example()
    assert graph.dependency_closure(["app-1"]) == {"app-1", "lib-1", "base-1"}
    assert graph.reverse_dependency_closure(["base-1"]) == {"base-1", "lib-1", "app-1", "tool-1"}
    assert graph.reverse_dependency_closure(["lib-1"]) == {"lib-1", "app-1"}
    assert graph.dependency_closure(["app-1"], edges=lambda node: ()) == {"app-1"}
    with pytest.raises(KeyError):
        graph.dependency_closure(["nope-1"])


def test_copy_is_independent() -> None:
    graph = _example()
    clone = graph.copy()
    clone.processing(["lib-1"])
    assert graph.lookup("lib-1").state == NodeState.CONFIGURED


def test_map_preserving_graph_sees_transformed_dependencies() -> None:
    def rename(node: PlanNode[_Pkg], resolve: Callable[[str], PlanNode[_Pkg]]) -> PlanNode[_Pkg]:
        if node.package is None:
            return node
        depends = tuple(resolve(dep).node_id for dep in node.depends)
        return PlanNode.configured(_Pkg(f"{node.node_id}-x", node.package.package_id, depends))

    mapped = _example().map_preserving_graph(rename)
    assert "app-1-x" in mapped
    assert mapped.lookup("app-1-x").depends == ("lib-1-x",)
    assert mapped.lookup("lib-1-x").depends == ("base-1",)
    assert mapped.lookup("base-1").state == NodeState.PRE_EXISTING
