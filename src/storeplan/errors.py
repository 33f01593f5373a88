"""Error taxonomy for planning runs.

``PlanningError`` and its subclasses are user-facing: the CLI reports them and
exits non-zero. ``InternalInvariantError`` signals a bug or a skipped phase and
is intentionally outside that hierarchy so that nothing catching planning
errors can absorb it.
"""

from __future__ import annotations


class PlanningError(RuntimeError):
    """Base class for failures that abort a planning run."""


class ConfigurationError(PlanningError):
    """Malformed project configuration or package description."""

    def __init__(self, message: str, *, path: str | None = None) -> None:
        super().__init__(f"{path}: {message}" if path else message)
        self.path = path


class SolverError(PlanningError):
    """The solver could not produce a plan."""

    def __init__(self, reason: str, *, log_trail: list[str] | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.log_trail = list(log_trail or [])

    def diagnostic(self) -> str:
        if not self.log_trail:
            return self.reason
        trail = "\n".join(f"  {line}" for line in self.log_trail)
        return f"{self.reason}\nsolver log:\n{trail}"


class FetchError(PlanningError):
    """A package source could not be fetched or hashed."""

    def __init__(self, package_id: str, message: str) -> None:
        super().__init__(f"failed to fetch {package_id}: {message}")
        self.package_id = package_id


class InternalInvariantError(AssertionError):
    """An internal invariant was violated. Callers should abort, not recover."""
