from __future__ import annotations

import re
from enum import Enum
from typing import Annotated, Callable, Literal, Self, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

_VERSION_RE = re.compile(r"^\d+(\.\d+)*$")
_RANGE_CLAUSE_RE = re.compile(r"^(>=|<=|==|>|<)\s*(\d+(?:\.\d+)*)$")


def parse_version(text: str) -> tuple[int, ...]:
    """Parse a dotted numeric version into a comparable tuple."""
    candidate = text.strip()
    if not _VERSION_RE.match(candidate):
        raise ValueError(f"invalid version: {text!r}")
    return tuple(int(part) for part in candidate.split("."))


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


# ---------------------------------------------------------------------------
# Package identity and version constraints
# ---------------------------------------------------------------------------


class PackageId(_Frozen):
    name: str
    version: str

    @model_validator(mode="before")
    @classmethod
    def _from_display(cls, value: object) -> object:
        if isinstance(value, str):
            name, sep, version = value.rpartition("-")
            if not sep or not name:
                raise ValueError(f"invalid package id: {value!r}")
            return {"name": name, "version": version}
        return value

    @model_validator(mode="after")
    def _check_version(self) -> PackageId:
        parse_version(self.version)
        return self

    @property
    def version_key(self) -> tuple[int, ...]:
        return parse_version(self.version)

    def __str__(self) -> str:
        return f"{self.name}-{self.version}"


class VersionRange(_Frozen):
    """Contiguous version interval. ``None`` bounds are open."""

    lower: str | None = None
    lower_inclusive: bool = True
    upper: str | None = None
    upper_inclusive: bool = False

    @classmethod
    def any(cls) -> VersionRange:
        return cls()

    @classmethod
    def or_later(cls, version: str) -> VersionRange:
        return cls(lower=version)

    @classmethod
    def earlier(cls, version: str) -> VersionRange:
        return cls(upper=version)

    @classmethod
    def this_version(cls, version: str) -> VersionRange:
        return cls(lower=version, upper=version, upper_inclusive=True)

    @classmethod
    def parse(cls, text: str) -> VersionRange:
        """Parse ``>=1.2 && <2``, ``==1.0`` or ``-any`` style ranges."""
        stripped = text.strip()
        result = cls()
        if stripped in {"", "-any", "*"}:
            return result
        for clause in stripped.split("&&"):
            match = _RANGE_CLAUSE_RE.match(clause.strip())
            if match is None:
                raise ValueError(f"invalid version range clause: {clause.strip()!r}")
            op, version = match.groups()
            if op == ">=":
                bound = cls(lower=version)
            elif op == ">":
                bound = cls(lower=version, lower_inclusive=False)
            elif op == "<":
                bound = cls(upper=version)
            elif op == "<=":
                bound = cls(upper=version, upper_inclusive=True)
            else:
                bound = cls.this_version(version)
            result = result.intersect(bound)
        return result

    def intersect(self, other: VersionRange) -> VersionRange:
        lower, lower_inclusive = self.lower, self.lower_inclusive
        if other.lower is not None:
            if lower is None or parse_version(other.lower) > parse_version(lower):
                lower, lower_inclusive = other.lower, other.lower_inclusive
            elif parse_version(other.lower) == parse_version(lower):
                lower_inclusive = lower_inclusive and other.lower_inclusive
        upper, upper_inclusive = self.upper, self.upper_inclusive
        if other.upper is not None:
            if upper is None or parse_version(other.upper) < parse_version(upper):
                upper, upper_inclusive = other.upper, other.upper_inclusive
            elif parse_version(other.upper) == parse_version(upper):
                upper_inclusive = upper_inclusive and other.upper_inclusive
        return VersionRange(
            lower=lower,
            lower_inclusive=lower_inclusive,
            upper=upper,
            upper_inclusive=upper_inclusive,
        )

    def contains(self, version: str) -> bool:
        key = parse_version(version)
        if self.lower is not None:
            low = parse_version(self.lower)
            if key < low or (key == low and not self.lower_inclusive):
                return False
        if self.upper is not None:
            high = parse_version(self.upper)
            if key > high or (key == high and not self.upper_inclusive):
                return False
        return True

    def __str__(self) -> str:
        clauses: list[str] = []
        if self.lower is not None and self.lower == self.upper and self.lower_inclusive and self.upper_inclusive:
            return f"=={self.lower}"
        if self.lower is not None:
            clauses.append(f"{'>=' if self.lower_inclusive else '>'}{self.lower}")
        if self.upper is not None:
            clauses.append(f"{'<=' if self.upper_inclusive else '<'}{self.upper}")
        return " && ".join(clauses) if clauses else "-any"


class Dependency(_Frozen):
    """A named dependency with a version range, written ``name >=1 && <2`` in files."""

    name: str
    version_range: VersionRange = Field(default_factory=VersionRange.any)

    @model_validator(mode="before")
    @classmethod
    def _from_text(cls, value: object) -> object:
        if isinstance(value, str):
            name, _, rest = value.strip().partition(" ")
            if not name:
                raise ValueError(f"invalid dependency: {value!r}")
            return {"name": name, "version_range": VersionRange.parse(rest)}
        return value

    def __str__(self) -> str:
        return f"{self.name} {self.version_range}"


# ---------------------------------------------------------------------------
# Package descriptions and source locations
# ---------------------------------------------------------------------------


class BuildType(str, Enum):
    SIMPLE = "simple"
    CONFIGURE = "configure"
    MAKE = "make"
    CUSTOM = "custom"


class OptionalStanza(str, Enum):
    TESTS = "tests"
    BENCHMARKS = "benchmarks"


class SetupBuildInfo(_Frozen):
    setup_depends: tuple[Dependency, ...] = ()


class PackageDescription(_Frozen):
    """Contents of a ``<name>.pkg.json`` package description file."""

    name: str
    version: str
    spec_version: str = "1.10"
    build_type: BuildType | None = None
    has_library: bool = True
    executables: tuple[str, ...] = ()
    build_depends: tuple[Dependency, ...] = ()
    flags: dict[str, bool] = Field(default_factory=dict)
    custom_setup: SetupBuildInfo | None = None

    @model_validator(mode="after")
    def _check_versions(self) -> PackageDescription:
        parse_version(self.version)
        parse_version(self.spec_version)
        return self

    @property
    def package_id(self) -> PackageId:
        return PackageId(name=self.name, version=self.version)

    @property
    def effective_build_type(self) -> BuildType:
        # Packages that do not declare a build type are treated as custom.
        return self.build_type if self.build_type is not None else BuildType.CUSTOM


class LocalDirectory(_Frozen):
    kind: Literal["local_directory"] = "local_directory"
    path: str


class LocalArchive(_Frozen):
    kind: Literal["local_archive"] = "local_archive"
    path: str


class RemoteArchive(_Frozen):
    kind: Literal["remote_archive"] = "remote_archive"
    url: str


class RepositoryArchive(_Frozen):
    kind: Literal["repository_archive"] = "repository_archive"
    repo: str
    package: PackageId


SourceLocator = Annotated[
    Union[LocalDirectory, LocalArchive, RemoteArchive, RepositoryArchive],
    Field(discriminator="kind"),
]


def locator_has_content_hash(locator: SourceLocator) -> bool:
    """Only archive sources can be content hashed; local directories are built in place."""
    return not isinstance(locator, LocalDirectory)


class SourcePackage(_Frozen):
    description: PackageDescription
    source: SourceLocator

    @property
    def package_id(self) -> PackageId:
        return self.description.package_id


# ---------------------------------------------------------------------------
# Solver output
# ---------------------------------------------------------------------------

COMPONENT_LIBRARY = "lib"
COMPONENT_SETUP = "setup"


class ComponentDeps(_Frozen):
    """Dependency ids per component: ``lib``, ``exe:NAME``, ``test:NAME``, ``bench:NAME``, ``setup``."""

    components: dict[str, tuple[str, ...]] = Field(default_factory=dict)

    def _collect(self, keep: Callable[[str], bool]) -> tuple[str, ...]:
        ordered: dict[str, None] = {}
        for component in sorted(self.components):
            if keep(component):
                ordered.update(dict.fromkeys(self.components[component]))
        return tuple(ordered)

    def flat(self) -> tuple[str, ...]:
        return self._collect(lambda _component: True)

    def setup(self) -> tuple[str, ...]:
        return self.components.get(COMPONENT_SETUP, ())

    def non_setup(self) -> tuple[str, ...]:
        return self._collect(lambda component: component != COMPONENT_SETUP)

    def map_ids(self, mapping: Callable[[str], str]) -> ComponentDeps:
        return ComponentDeps(
            components={component: tuple(mapping(dep) for dep in deps) for component, deps in self.components.items()}
        )


class InstalledPackage(_Frozen):
    """An already built and registered package, from the global DB or the store."""

    installed_id: str
    package_id: PackageId
    depends: tuple[str, ...] = ()
    has_library: bool = True


class AbstractPackageNode(_Frozen):
    """A configured source package chosen by the solver.

    ``depends_on`` references other nodes by their solver-local id, which for
    source packages is the rendered package id.
    """

    description: PackageDescription
    source: SourceLocator
    flags: dict[str, bool] = Field(default_factory=dict)
    stanzas: tuple[OptionalStanza, ...] = ()
    depends_on: ComponentDeps = Field(default_factory=ComponentDeps)

    @property
    def package_id(self) -> PackageId:
        return self.description.package_id

    @property
    def installed_id(self) -> str:
        return str(self.package_id)

    @property
    def depends(self) -> tuple[str, ...]:
        return self.depends_on.flat()


# ---------------------------------------------------------------------------
# Toolchain
# ---------------------------------------------------------------------------


class Platform(_Frozen):
    arch: str
    os: str

    def __str__(self) -> str:
        return f"{self.arch}-{self.os}"


class CompilerInfo(_Frozen):
    flavor: str
    version: str
    dynamic_by_default: bool = False

    @property
    def compiler_id(self) -> str:
        return f"{self.flavor}-{self.version}"


class ConfiguredProgram(_Frozen):
    name: str
    path: str
    version: str | None = None
    default_args: tuple[str, ...] = ()
    override_env: dict[str, str | None] = Field(default_factory=dict)
    monitor_files: tuple[str, ...] = ()


class ProgramDb(_Frozen):
    programs: tuple[ConfiguredProgram, ...] = ()

    def lookup(self, name: str) -> ConfiguredProgram | None:
        for program in self.programs:
            if program.name == name:
                return program
        return None

    def signature(self) -> list[ConfiguredProgram]:
        """Programs with the run-specific parts removed, for use in cache keys."""
        return [
            program.model_copy(
                update={
                    "monitor_files": (),
                    "override_env": {key: value for key, value in program.override_env.items() if key != "PATH"},
                }
            )
            for program in sorted(self.programs, key=lambda item: item.name)
        ]


class ElaboratedSharedConfig(_Frozen):
    platform: Platform
    compiler: CompilerInfo
    program_db: ProgramDb


# ---------------------------------------------------------------------------
# Build options and configuration
# ---------------------------------------------------------------------------


class OptimisationLevel(str, Enum):
    NONE = "none"
    NORMAL = "normal"
    MAXIMUM = "maximum"


class ProfDetailLevel(str, Enum):
    NONE = "none"
    DEFAULT = "default"
    EXPORTED_FUNCTIONS = "exported_functions"
    TOPLEVEL_FUNCTIONS = "toplevel_functions"
    ALL_FUNCTIONS = "all_functions"


class DebugInfoLevel(str, Enum):
    NONE = "none"
    MINIMAL = "minimal"
    NORMAL = "normal"
    MAXIMAL = "maximal"


def _merge_mappings(mine: dict, theirs: dict) -> dict:
    merged = dict(mine)
    for key, value in theirs.items():
        current = merged.get(key)
        merged[key] = current.combine(value) if isinstance(current, _Combinable) else value
    return merged


class _Combinable(_Frozen):
    """Options where ``None`` means unset.

    ``a.combine(b)`` lets set values of ``b`` win, concatenates tuples and
    merges mappings.
    """

    def combine(self, other: Self) -> Self:
        merged: dict[str, object] = {}
        for name in type(self).model_fields:
            mine, theirs = getattr(self, name), getattr(other, name)
            if isinstance(mine, tuple):
                merged[name] = mine + theirs
            elif isinstance(mine, dict):
                merged[name] = _merge_mappings(mine, theirs)
            elif isinstance(mine, _Combinable):
                merged[name] = mine.combine(theirs)
            else:
                merged[name] = theirs if theirs is not None else mine
        return type(self)(**merged)


class PackageConfig(_Combinable):
    flags: dict[str, bool] = Field(default_factory=dict)
    vanilla_lib: bool | None = None
    shared_lib: bool | None = None
    dynamic_exe: bool | None = None
    ghci_lib: bool | None = None
    profiling: bool | None = None
    profiling_lib: bool | None = None
    profiling_detail: ProfDetailLevel | None = None
    profiling_lib_detail: ProfDetailLevel | None = None
    coverage: bool | None = None
    optimization: OptimisationLevel | None = None
    split_objs: bool | None = None
    strip_libs: bool | None = None
    strip_exes: bool | None = None
    debug_info: DebugInfoLevel | None = None
    configure_args: tuple[str, ...] = ()
    extra_lib_dirs: tuple[str, ...] = ()
    extra_include_dirs: tuple[str, ...] = ()
    prog_prefix: str | None = None
    prog_suffix: str | None = None


class CompilerConfig(_Combinable):
    flavor: str | None = None
    path: str | None = None
    pkg_path: str | None = None


class SolverConfig(_Combinable):
    constraints: tuple[Dependency, ...] = ()
    preferences: tuple[Dependency, ...] = ()
    max_backjumps: int | None = None


class Repository(_Frozen):
    name: str
    url: str


class ProjectConfigFile(_Combinable):
    """The ``storeplan.project.json`` file, and the shape of command-line overrides."""

    packages: tuple[str, ...] = ()
    repositories: tuple[Repository, ...] = ()
    compiler: CompilerConfig = Field(default_factory=CompilerConfig)
    solver: SolverConfig = Field(default_factory=SolverConfig)
    all_packages: PackageConfig = Field(default_factory=PackageConfig)
    local_packages: PackageConfig = Field(default_factory=PackageConfig)
    specific_packages: dict[str, PackageConfig] = Field(default_factory=dict)


CliConfig = ProjectConfigFile

DEFAULT_PACKAGE_GLOBS = ("*.pkg.json", "*/*.pkg.json")


class ProjectConfig(_Frozen):
    root_dir: str
    package_globs: tuple[str, ...] = DEFAULT_PACKAGE_GLOBS
    repositories: tuple[Repository, ...] = ()
    compiler: CompilerConfig = Field(default_factory=CompilerConfig)
    solver: SolverConfig = Field(default_factory=SolverConfig)
    all_packages: PackageConfig = Field(default_factory=PackageConfig)
    local_packages: PackageConfig = Field(default_factory=PackageConfig)
    specific_packages: dict[str, PackageConfig] = Field(default_factory=dict)

    @classmethod
    def from_file_config(cls, root_dir: str, config: ProjectConfigFile) -> ProjectConfig:
        return cls(
            root_dir=root_dir,
            package_globs=config.packages or DEFAULT_PACKAGE_GLOBS,
            repositories=config.repositories,
            compiler=config.compiler,
            solver=config.solver,
            all_packages=config.all_packages,
            local_packages=config.local_packages,
            specific_packages=config.specific_packages,
        )


# ---------------------------------------------------------------------------
# Elaborated plan
# ---------------------------------------------------------------------------


class BuildStyle(str, Enum):
    BUILD_AND_INSTALL = "build_and_install"
    BUILD_INPLACE_ONLY = "build_inplace_only"


class SetupScriptStyle(str, Enum):
    """How a package's setup script is built and driven.

    ``NON_CUSTOM_EXTERNAL_LIB`` is the external-tool style and
    ``NON_CUSTOM_INTERNAL_LIB`` the internal-API style.
    """

    CUSTOM_EXPLICIT_DEPS = "custom_explicit_deps"
    CUSTOM_IMPLICIT_DEPS = "custom_implicit_deps"
    NON_CUSTOM_EXTERNAL_LIB = "non_custom_external_lib"
    NON_CUSTOM_INTERNAL_LIB = "non_custom_internal_lib"


class PackageDbKind(str, Enum):
    GLOBAL = "global"
    USER = "user"
    SPECIFIC = "specific"


class PackageDb(_Frozen):
    kind: PackageDbKind
    path: str | None = None

    @model_validator(mode="after")
    def _check_path(self) -> PackageDb:
        if (self.kind == PackageDbKind.SPECIFIC) != (self.path is not None):
            raise ValueError("only specific package dbs carry a path")
        return self


GLOBAL_PACKAGE_DB = PackageDb(kind=PackageDbKind.GLOBAL)


class InstallDirs(_Frozen):
    prefix: str
    bindir: str
    libdir: str
    libsubdir: str
    dynlibdir: str
    libexecdir: str
    includedir: str
    datadir: str
    datasubdir: str
    docdir: str
    mandir: str
    htmldir: str
    haddockdir: str
    sysconfdir: str


class ElaboratedPackage(_Frozen):
    installed_id: str
    package_id: PackageId
    build_type: BuildType
    spec_version: str
    source: SourceLocator
    source_hash: str | None
    flags: dict[str, bool]
    stanzas: tuple[OptionalStanza, ...]
    depends_on: ComponentDeps
    build_style: BuildStyle
    setup_package_dbs: tuple[PackageDb, ...]
    build_package_dbs: tuple[PackageDb, ...]
    register_package_dbs: tuple[PackageDb, ...]
    requires_registration: bool

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
    configure_script_args: tuple[str, ...]
    extra_lib_dirs: tuple[str, ...]
    extra_include_dirs: tuple[str, ...]
    prog_prefix: str | None
    prog_suffix: str | None

    install_dirs: InstallDirs
    setup_script_style: SetupScriptStyle
    setup_script_spec_version: str

    @property
    def depends(self) -> tuple[str, ...]:
        return self.depends_on.flat()

    @property
    def tests_enabled(self) -> bool:
        return OptionalStanza.TESTS in self.stanzas

    @property
    def benchmarks_enabled(self) -> bool:
        return OptionalStanza.BENCHMARKS in self.stanzas


# ---------------------------------------------------------------------------
# Build results reported by an executor
# ---------------------------------------------------------------------------


class BuildFailureKind(str, Enum):
    PLANNING_FAILED = "planning_failed"
    DEPENDENT_FAILED = "dependent_failed"
    DOWNLOAD_FAILED = "download_failed"
    UNPACK_FAILED = "unpack_failed"
    CONFIGURE_FAILED = "configure_failed"
    BUILD_FAILED = "build_failed"
    TESTS_FAILED = "tests_failed"
    INSTALL_FAILED = "install_failed"


class BuildFailure(_Frozen):
    kind: BuildFailureKind
    message: str = ""
    failed_dependency: PackageId | None = None

    @classmethod
    def dependent_failed(cls, package_id: PackageId) -> BuildFailure:
        return cls(
            kind=BuildFailureKind.DEPENDENT_FAILED,
            message=f"dependency {package_id} failed",
            failed_dependency=package_id,
        )


class DocsResult(str, Enum):
    NOT_TRIED = "not_tried"
    FAILED = "failed"
    OK = "ok"


class TestsResult(str, Enum):
    NOT_TRIED = "not_tried"
    OK = "ok"


class BuildSuccess(_Frozen):
    installed: InstalledPackage | None = None
    docs: DocsResult = DocsResult.NOT_TRIED
    tests: TestsResult = TestsResult.NOT_TRIED
