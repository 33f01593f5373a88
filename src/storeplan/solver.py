"""Solver interface and a greedy reference solver.

A solver returns a progress generator: it yields human-readable log lines and
finally returns the abstract plan, or raises ``SolverError``.
"""

from __future__ import annotations

import logging
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Generator, Iterable, Mapping, Protocol

from .errors import SolverError
from .graph import PlanGraph
from .models import (
    COMPONENT_LIBRARY,
    COMPONENT_SETUP,
    AbstractPackageNode,
    CompilerInfo,
    ComponentDeps,
    Dependency,
    InstalledPackage,
    Platform,
    SourcePackage,
    VersionRange,
)
from .setup_policy import default_setup_deps

logger = logging.getLogger(__name__)

AbstractPlan = PlanGraph[AbstractPackageNode]
Progress = Generator[str, None, AbstractPlan]


@dataclass(frozen=True)
class SolverParams:
    constraints: tuple[Dependency, ...] = ()
    preferences: tuple[Dependency, ...] = ()
    package_flags: Mapping[str, Mapping[str, bool]] = field(default_factory=dict)
    max_backjumps: int = 2_000
    supported_spec_version: str = "1.24"


class Solver(Protocol):
    def solve(
        self,
        platform: Platform,
        compiler: CompilerInfo,
        params: SolverParams,
        installed: Mapping[str, InstalledPackage],
        source_packages: Iterable[SourcePackage],
        targets: Iterable[SourcePackage],
    ) -> Progress: ...


def drain_progress(progress: Progress) -> AbstractPlan:
    """Run a solver to completion, logging its messages.

    Raises:
        SolverError: with the messages seen so far attached as the log trail.
    """
    trail: list[str] = []
    while True:
        try:
            message = next(progress)
        except StopIteration as stop:
            return stop.value
        except SolverError as exc:
            exc.log_trail = trail + exc.log_trail
            raise
        trail.append(message)
        logger.debug("solver: %s", message)


@dataclass
class _Choice:
    name: str
    source: SourcePackage | None = None
    installed: InstalledPackage | None = None

    @property
    def node_id(self) -> str:
        if self.source is not None:
            return str(self.source.package_id)
        assert self.installed is not None
        return self.installed.installed_id

    @property
    def version(self) -> str:
        if self.source is not None:
            return self.source.package_id.version
        assert self.installed is not None
        return self.installed.package_id.version


class GreedySolver:
    """Picks one version per package name without backtracking.

    Local targets always win. Otherwise an installed package is reused when it
    satisfies every requirement seen so far, else the newest source version
    that does. A later requirement that the earlier choice does not satisfy is
    reported as a conflict. Since it never backjumps, ``max_backjumps`` is not
    consulted.
    """

    def solve(
        self,
        platform: Platform,
        compiler: CompilerInfo,
        params: SolverParams,
        installed: Mapping[str, InstalledPackage],
        source_packages: Iterable[SourcePackage],
        targets: Iterable[SourcePackage],
    ) -> Progress:
        local = {target.package_id.name: target for target in targets}
        yield f"targets: {', '.join(sorted(str(target.package_id) for target in local.values()))}"

        available: dict[str, list[SourcePackage]] = defaultdict(list)
        for package in source_packages:
            available[package.package_id.name].append(package)
        for versions in available.values():
            versions.sort(key=lambda package: package.package_id.version_key, reverse=True)

        installed_by_name: dict[str, list[InstalledPackage]] = defaultdict(list)
        for entry in installed.values():
            installed_by_name[entry.package_id.name].append(entry)
        for entries in installed_by_name.values():
            entries.sort(key=lambda entry: entry.package_id.version_key, reverse=True)

        constraints: dict[str, VersionRange] = {}
        for dep in params.constraints:
            constraints[dep.name] = constraints.get(dep.name, VersionRange.any()).intersect(dep.version_range)
        preferences = {dep.name: dep.version_range for dep in params.preferences}

        chosen: dict[str, _Choice] = {}
        component_deps: dict[str, dict[str, list[Dependency]]] = {}
        pending: deque[tuple[Dependency, str]] = deque(
            (Dependency(name=name), "target") for name in sorted(local)
        )

        while pending:
            dep, required_by = pending.popleft()
            allowed = dep.version_range.intersect(constraints.get(dep.name, VersionRange.any()))
            existing = chosen.get(dep.name)
            if existing is not None:
                if not allowed.contains(existing.version):
                    raise SolverError(
                        f"conflict: {required_by} requires {dep.name} {allowed}, "
                        f"but {dep.name}-{existing.version} was already chosen"
                    )
                continue

            choice = self._choose(dep.name, allowed, local, installed_by_name, available, preferences)
            if choice is None:
                raise SolverError(f"no version of {dep.name} satisfies {allowed} (required by {required_by})")
            chosen[dep.name] = choice
            yield f"{required_by} -> {choice.node_id}"

            if choice.source is None:
                continue
            description = choice.source.description
            components = self._component_dependencies(platform, params, choice.source)
            component_deps[dep.name] = components
            for deps in components.values():
                for child in deps:
                    pending.append((child, str(description.package_id)))

        pre_existing = self._installed_closure(chosen, installed)
        configured = [
            AbstractPackageNode(
                description=choice.source.description,
                source=choice.source.source,
                flags={**choice.source.description.flags, **params.package_flags.get(name, {})},
                depends_on=ComponentDeps(
                    components={
                        component: tuple(dict.fromkeys(chosen[child.name].node_id for child in deps))
                        for component, deps in component_deps[name].items()
                        if deps
                    }
                ),
            )
            for name, choice in sorted(chosen.items())
            if choice.source is not None
        ]
        yield f"solution: {len(configured)} source packages, {len(pre_existing)} installed"
        try:
            return PlanGraph.from_packages(pre_existing, configured)
        except ValueError as exc:
            raise SolverError(f"invalid solution: {exc}") from exc

    @staticmethod
    def _choose(
        name: str,
        allowed: VersionRange,
        local: Mapping[str, SourcePackage],
        installed_by_name: Mapping[str, list[InstalledPackage]],
        available: Mapping[str, list[SourcePackage]],
        preferences: Mapping[str, VersionRange],
    ) -> _Choice | None:
        if name in local:
            target = local[name]
            return _Choice(name=name, source=target) if allowed.contains(target.package_id.version) else None
        for entry in installed_by_name.get(name, []):
            if allowed.contains(entry.package_id.version):
                return _Choice(name=name, installed=entry)
        candidates = [pkg for pkg in available.get(name, []) if allowed.contains(pkg.package_id.version)]
        if not candidates:
            return None
        preferred = preferences.get(name)
        if preferred is not None:
            for candidate in candidates:
                if preferred.contains(candidate.package_id.version):
                    return _Choice(name=name, source=candidate)
        return _Choice(name=name, source=candidates[0])

    @staticmethod
    def _component_dependencies(
        platform: Platform,
        params: SolverParams,
        package: SourcePackage,
    ) -> dict[str, list[Dependency]]:
        description = package.description
        components: dict[str, list[Dependency]] = {}
        if description.has_library:
            components[COMPONENT_LIBRARY] = list(description.build_depends)
        for exe in description.executables:
            components[f"exe:{exe}"] = list(description.build_depends)
        if description.custom_setup is not None:
            components[COMPONENT_SETUP] = list(description.custom_setup.setup_depends)
        else:
            components[COMPONENT_SETUP] = default_setup_deps(platform, description, params.supported_spec_version)
        return components

    @staticmethod
    def _installed_closure(
        chosen: Mapping[str, _Choice],
        installed: Mapping[str, InstalledPackage],
    ) -> list[InstalledPackage]:
        queue = deque(choice.installed for choice in chosen.values() if choice.installed is not None)
        closure: dict[str, InstalledPackage] = {}
        while queue:
            entry = queue.popleft()
            if entry.installed_id in closure:
                continue
            closure[entry.installed_id] = entry
            for dep_id in entry.depends:
                dep = installed.get(dep_id)
                if dep is None:
                    raise SolverError(f"installed package {entry.installed_id} depends on missing {dep_id}")
                queue.append(dep)
        return [closure[key] for key in sorted(closure)]
