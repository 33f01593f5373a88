"""Content-derived package identities.

A store package's installed id is ``<name>-<version>-<sha256>`` where the hash
covers the source tarball hash, the installed ids of every direct dependency
(library, executable and setup alike) and every configuration value that can
change the built artifact. Install locations are not hashed: they are derived
from the id.
"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path
from typing import Iterable

from pydantic import BaseModel, ConfigDict

from .canonical import to_canonical_json
from .errors import InternalInvariantError
from .models import DebugInfoLevel, OptimisationLevel, PackageId, Platform, ProfDetailLevel

logger = logging.getLogger(__name__)

_READ_CHUNK_BYTES = 1 << 16
INPLACE_SUFFIX = "inplace"


class PackageHashConfigInputs(BaseModel):
    """Every option that affects the binary content of a built package."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    compiler_id: str
    platform: Platform
    flag_assignment: dict[str, bool]
    configure_script_args: tuple[str, ...]
    vanilla_lib: bool
    shared_lib: bool
    dynamic_exe: bool
    ghci_lib: bool
    profiling_lib: bool
    profiling_exe: bool
    profiling_lib_detail: ProfDetailLevel
    profiling_exe_detail: ProfDetailLevel
    coverage: bool
    optimization: OptimisationLevel
    split_objs: bool
    strip_libs: bool
    strip_exes: bool
    debug_info: DebugInfoLevel
    extra_lib_dirs: tuple[str, ...]
    extra_include_dirs: tuple[str, ...]
    prog_prefix: str | None
    prog_suffix: str | None


class PackageHashInputs(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    package_id: PackageId
    source_hash: str
    direct_dependencies: tuple[str, ...]
    config: PackageHashConfigInputs


def package_hash_inputs(
    package_id: PackageId,
    source_hash: str | None,
    dependency_ids: Iterable[str],
    config: PackageHashConfigInputs,
) -> PackageHashInputs:
    """Assemble hash inputs, normalizing the dependency list to a sorted set.

    Raises:
        InternalInvariantError: if ``source_hash`` is missing. Packages without
            a source hash are built in place and must use ``inplace_installed_id``.
    """
    if not source_hash:
        raise InternalInvariantError(f"package {package_id} has no source hash; only in-place packages may omit it")
    return PackageHashInputs(
        package_id=package_id,
        source_hash=source_hash,
        direct_dependencies=tuple(sorted(set(dependency_ids))),
        config=config,
    )


def render_package_hash_inputs(inputs: PackageHashInputs) -> str:
    """The exact text that is hashed; useful when diagnosing unexpected rebuilds."""
    return to_canonical_json(inputs)


def hash_package_inputs(inputs: PackageHashInputs) -> str:
    return hashlib.sha256(render_package_hash_inputs(inputs).encode("utf-8")).hexdigest()


def hashed_installed_id(inputs: PackageHashInputs) -> str:
    return f"{inputs.package_id}-{hash_package_inputs(inputs)}"


def package_identity(
    source_hash: str | None,
    dependency_ids: Iterable[str],
    config: PackageHashConfigInputs,
    package_id: PackageId,
) -> str:
    """Installed id for a store package; see ``package_hash_inputs`` for the preconditions."""
    return hashed_installed_id(package_hash_inputs(package_id, source_hash, dependency_ids, config))


def inplace_installed_id(package_id: PackageId) -> str:
    """Installed id for a package built in place. Never shared, so never hashed."""
    return f"{package_id}-{INPLACE_SUFFIX}"


def hash_file(path: Path) -> str:
    """Stream a sha256 over a file's bytes."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(_READ_CHUNK_BYTES), b""):
            digest.update(chunk)
    logger.debug("Hashed %s", path)
    return digest.hexdigest()
