"""Install plan graph shared by the solver, elaboration and improvement phases.

Each node is in exactly one state. A configured node is *ready* once every
dependency is pre-existing or installed; a dependency that is still processing,
configured or failed keeps it out of the ready set. State changes only move
forward, except ``reverted`` which returns processing nodes to configured.
"""

from __future__ import annotations

import logging
from collections import defaultdict, deque
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Generic, Iterable, Iterator, Protocol, TypeVar

from .errors import InternalInvariantError
from .models import BuildFailure, BuildSuccess, InstalledPackage, PackageId

logger = logging.getLogger(__name__)


class NodeState(str, Enum):
    PRE_EXISTING = "pre_existing"
    CONFIGURED = "configured"
    PROCESSING = "processing"
    INSTALLED = "installed"
    FAILED = "failed"


_RESOLVED_STATES = frozenset({NodeState.PRE_EXISTING, NodeState.INSTALLED})


class PlanPackage(Protocol):
    @property
    def installed_id(self) -> str: ...

    @property
    def package_id(self) -> PackageId: ...

    @property
    def depends(self) -> tuple[str, ...]: ...


PkgT = TypeVar("PkgT", bound=PlanPackage)
NewPkgT = TypeVar("NewPkgT", bound=PlanPackage)


@dataclass(frozen=True)
class PlanNode(Generic[PkgT]):
    node_id: str
    state: NodeState
    depends: tuple[str, ...]
    installed: InstalledPackage | None = None
    package: PkgT | None = None
    result: BuildSuccess | None = None
    failure: BuildFailure | None = None

    @classmethod
    def pre_existing(cls, installed: InstalledPackage) -> PlanNode[PkgT]:
        return cls(
            node_id=installed.installed_id,
            state=NodeState.PRE_EXISTING,
            depends=tuple(dict.fromkeys(installed.depends)),
            installed=installed,
        )

    @classmethod
    def configured(cls, package: PkgT) -> PlanNode[PkgT]:
        return cls(
            node_id=package.installed_id,
            state=NodeState.CONFIGURED,
            depends=tuple(dict.fromkeys(package.depends)),
            package=package,
        )

    @property
    def package_id(self) -> PackageId:
        if self.installed is not None:
            return self.installed.package_id
        assert self.package is not None
        return self.package.package_id


@dataclass(frozen=True)
class ReadyPackage(Generic[PkgT]):
    package: PkgT
    dependencies: tuple[PlanNode[PkgT], ...]


class PlanGraph(Generic[PkgT]):
    """A closed, acyclic set of plan nodes keyed by installed id."""

    def __init__(self, nodes: Iterable[PlanNode[PkgT]]) -> None:
        self._nodes: dict[str, PlanNode[PkgT]] = {}
        for node in nodes:
            if node.node_id in self._nodes:
                raise ValueError(f"Duplicate plan node: {node.node_id}")
            self._nodes[node.node_id] = node
        self._dependents: dict[str, list[str]] = defaultdict(list)
        for node in self._nodes.values():
            for dep in node.depends:
                if dep not in self._nodes:
                    raise ValueError(f"Plan node {node.node_id} depends on unknown node {dep}")
                self._dependents[dep].append(node.node_id)
        self._order = self._topological_order()

    @classmethod
    def from_packages(
        cls,
        pre_existing: Iterable[InstalledPackage],
        configured: Iterable[PkgT],
    ) -> PlanGraph[PkgT]:
        nodes: list[PlanNode[PkgT]] = [PlanNode.pre_existing(item) for item in pre_existing]
        nodes.extend(PlanNode.configured(item) for item in configured)
        return cls(nodes)

    def _topological_order(self) -> list[str]:
        indegree = {node_id: len(node.depends) for node_id, node in self._nodes.items()}
        queue = deque(sorted(node_id for node_id, degree in indegree.items() if degree == 0))
        order: list[str] = []
        while queue:
            current = queue.popleft()
            order.append(current)
            for nxt in sorted(self._dependents[current]):
                indegree[nxt] -= 1
                if indegree[nxt] == 0:
                    queue.append(nxt)
        if len(order) != len(self._nodes):
            cyclic = sorted(node_id for node_id, degree in indegree.items() if degree > 0)
            raise ValueError(f"Plan graph contains a cycle through: {', '.join(cyclic)}")
        return order

    # -- queries -----------------------------------------------------------

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __iter__(self) -> Iterator[PlanNode[PkgT]]:
        """Nodes in dependency order: every node follows all of its dependencies."""
        return (self._nodes[node_id] for node_id in self._order)

    def lookup(self, node_id: str) -> PlanNode[PkgT]:
        try:
            return self._nodes[node_id]
        except KeyError as exc:
            raise KeyError(f"Unknown plan node: {node_id}") from exc

    def topological_order(self) -> list[str]:
        return list(self._order)

    def nodes_in_state(self, state: NodeState) -> list[PlanNode[PkgT]]:
        return [node for node in self if node.state == state]

    def pre_existing_packages(self) -> list[InstalledPackage]:
        return [node.installed for node in self if node.state == NodeState.PRE_EXISTING and node.installed is not None]

    def configured_packages(self) -> list[PkgT]:
        return [node.package for node in self if node.state == NodeState.CONFIGURED and node.package is not None]

    def ready(self) -> list[ReadyPackage[PkgT]]:
        """Configured nodes whose dependencies are all pre-existing or installed."""
        frontier: list[ReadyPackage[PkgT]] = []
        for node in self:
            if node.state != NodeState.CONFIGURED:
                continue
            deps = tuple(self._nodes[dep] for dep in node.depends)
            if all(dep.state in _RESOLVED_STATES for dep in deps):
                assert node.package is not None
                frontier.append(ReadyPackage(package=node.package, dependencies=deps))
        return frontier

    def dependency_closure(
        self,
        roots: Iterable[str],
        *,
        edges: Callable[[PlanNode[PkgT]], Iterable[str]] | None = None,
    ) -> set[str]:
        """Ids reachable from ``roots`` along dependency edges, roots included.

        ``edges`` selects which dependencies to follow; all of them by default.
        """
        follow = edges if edges is not None else (lambda node: node.depends)
        return self._closure(roots, lambda node_id: follow(self._nodes[node_id]))

    def reverse_dependency_closure(self, roots: Iterable[str]) -> set[str]:
        """Ids that transitively depend on any of ``roots``, roots included."""
        return self._closure(roots, lambda node_id: self._dependents.get(node_id, ()))

    def _closure(self, roots: Iterable[str], neighbours: Callable[[str], Iterable[str]]) -> set[str]:
        ordered = list(dict.fromkeys(roots))
        for node_id in ordered:
            self.lookup(node_id)
        seen = set(ordered)
        queue: deque[str] = deque(ordered)
        while queue:
            current = queue.popleft()
            for nxt in neighbours(current):
                if nxt not in seen:
                    seen.add(nxt)
                    queue.append(nxt)
        return seen

    # -- state transitions ---------------------------------------------------

    def _require(self, node_id: str, expected: NodeState) -> PlanNode[PkgT]:
        node = self.lookup(node_id)
        if node.state != expected:
            raise InternalInvariantError(
                f"Plan node {node_id} is {node.state.value}, expected {expected.value}"
            )
        return node

    def processing(self, node_ids: Iterable[str]) -> None:
        """Mark ready nodes as being processed."""
        for node_id in node_ids:
            node = self._require(node_id, NodeState.CONFIGURED)
            if any(self._nodes[dep].state not in _RESOLVED_STATES for dep in node.depends):
                raise InternalInvariantError(f"Plan node {node_id} is not ready")
            self._nodes[node_id] = replace(node, state=NodeState.PROCESSING)

    def preexisting(self, node_id: str, installed: InstalledPackage) -> None:
        """Replace a ready node by an equivalent already-installed package."""
        node = self._require(node_id, NodeState.CONFIGURED)
        if installed.installed_id != node_id:
            raise InternalInvariantError(
                f"Cannot replace {node_id} with installed package {installed.installed_id}"
            )
        if any(self._nodes[dep].state not in _RESOLVED_STATES for dep in node.depends):
            raise InternalInvariantError(f"Plan node {node_id} is not ready")
        self._nodes[node_id] = replace(node, state=NodeState.PRE_EXISTING, installed=installed, package=None)

    def completed(self, node_id: str, result: BuildSuccess) -> None:
        node = self._require(node_id, NodeState.PROCESSING)
        self._nodes[node_id] = replace(node, state=NodeState.INSTALLED, result=result, installed=result.installed)

    def failed(self, node_id: str, failure: BuildFailure) -> list[str]:
        """Record a failure and fail every configured dependent. Returns the dependents failed."""
        node = self._require(node_id, NodeState.PROCESSING)
        self._nodes[node_id] = replace(node, state=NodeState.FAILED, failure=failure)
        dependent_failure = BuildFailure.dependent_failed(node.package_id)
        dependents = self.reverse_dependency_closure([node_id]) - {node_id}
        affected: list[str] = []
        for dependent_id in self._order:
            if dependent_id not in dependents:
                continue
            dependent = self._nodes[dependent_id]
            if dependent.state == NodeState.CONFIGURED:
                self._nodes[dependent_id] = replace(dependent, state=NodeState.FAILED, failure=dependent_failure)
                affected.append(dependent_id)
        if affected:
            logger.info("Marked %d dependents of %s as failed", len(affected), node_id)
        return affected

    def reverted(self, node_ids: Iterable[str]) -> None:
        """Return processing nodes to the configured state."""
        for node_id in node_ids:
            node = self._require(node_id, NodeState.PROCESSING)
            self._nodes[node_id] = replace(node, state=NodeState.CONFIGURED)

    # -- construction ---------------------------------------------------------

    def copy(self) -> PlanGraph[PkgT]:
        return PlanGraph(self._nodes[node_id] for node_id in self._order)

    def map_preserving_graph(
        self,
        transform: Callable[[PlanNode[PkgT], Callable[[str], PlanNode[NewPkgT]]], PlanNode[NewPkgT]],
    ) -> PlanGraph[NewPkgT]:
        """Rebuild every node in dependency order.

        ``transform`` receives the node and a lookup from an old dependency id
        to that dependency's already-transformed node, so it can embed the
        dependency's new id.
        """
        mapped: dict[str, PlanNode[NewPkgT]] = {}
        for node_id in self._order:
            mapped[node_id] = transform(self._nodes[node_id], mapped.__getitem__)
        return PlanGraph(mapped.values())
