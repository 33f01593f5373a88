from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Mapping

from .graph import PlanGraph
from .models import ElaboratedPackage, InstalledPackage

logger = logging.getLogger(__name__)


@dataclass
class ImprovementSummary:
    improved: list[str] = field(default_factory=list)
    to_build: list[str] = field(default_factory=list)


def improve_install_plan(
    store_index: Mapping[str, InstalledPackage],
    plan: PlanGraph[ElaboratedPackage],
    summary: ImprovementSummary | None = None,
) -> PlanGraph[ElaboratedPackage]:
    """Replace packages that are already in the store by their store entries.

    Walks the plan as if executing it: each ready package either becomes
    pre-existing (its installed id is in the store) or is parked as processing
    so that nothing depending on it is ever considered. Parked packages are
    returned to configured at the end. A package is therefore only replaced
    when every one of its dependencies was replaced or already pre-existing.

    The input plan is left untouched.
    """
    improved = plan.copy()
    summary = summary if summary is not None else ImprovementSummary()
    parked: list[str] = []
    while True:
        frontier = improved.ready()
        if not frontier:
            break
        cannot_improve: list[str] = []
        for ready in frontier:
            installed = store_index.get(ready.package.installed_id)
            if installed is None:
                cannot_improve.append(ready.package.installed_id)
            else:
                improved.preexisting(ready.package.installed_id, installed)
                summary.improved.append(ready.package.installed_id)
        improved.processing(cannot_improve)
        parked.extend(cannot_improve)

    improved.reverted(parked)
    summary.to_build.extend(parked)
    logger.info(
        "Store improvement: %d packages already installed, %d ready to build",
        len(summary.improved),
        len(summary.to_build),
    )
    return improved
