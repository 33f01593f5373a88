from __future__ import annotations

import logging
import os
import platform as host_platform
import re
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, ConfigDict

from .errors import ConfigurationError
from .models import CompilerInfo, ConfiguredProgram, Platform, ProgramDb
from .monitor import MonitorFile

logger = logging.getLogger(__name__)

DEFAULT_COMPILER_FLAVOR = "ghc"
_DYNAMIC_BY_DEFAULT_RE = re.compile(r'\("Dynamic by default"\s*,\s*"(YES|NO)"\)')
_ARCH_ALIASES = {"amd64": "x86_64", "arm64": "aarch64"}
_OS_ALIASES = {"win32": "windows", "darwin": "osx"}


class CompilerSetup(BaseModel):
    model_config = ConfigDict(frozen=True)

    compiler: CompilerInfo
    platform: Platform
    program_db: ProgramDb


class ToolchainProbe(Protocol):
    def configure(
        self,
        flavor: str,
        compiler_path: str | None,
        pkg_path: str | None,
        search_path: str,
    ) -> CompilerSetup: ...


def host_platform_info() -> Platform:
    machine = host_platform.machine().lower()
    os_name = sys.platform.lower()
    if os_name.startswith("linux"):
        os_name = "linux"
    return Platform(arch=_ARCH_ALIASES.get(machine, machine), os=_OS_ALIASES.get(os_name, os_name))


def search_path_shadows(program: str, found: Path, search_path: str) -> list[str]:
    """Where a same-named program would shadow ``found`` if one appeared earlier on the search path."""
    shadows: list[str] = []
    for entry in search_path.split(os.pathsep):
        if not entry:
            continue
        candidate = Path(entry) / program
        if candidate == found:
            break
        shadows.append(str(candidate))
    return shadows


def program_monitor_files(program_db: ProgramDb) -> list[MonitorFile]:
    monitors: list[MonitorFile] = []
    for program in program_db.programs:
        monitors.append(MonitorFile(Path(program.path)))
        monitors.extend(MonitorFile(Path(path)) for path in program.monitor_files)
    return monitors


class SubprocessToolchainProbe:
    """Locates the compiler and its package tool on the search path and queries them."""

    def __init__(self, *, timeout_seconds: int = 30) -> None:
        self.timeout_seconds = timeout_seconds

    def _run(self, args: list[str]) -> str:
        try:
            completed = subprocess.run(
                args,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise ConfigurationError(f"failed to run {' '.join(args)}: {exc}") from exc
        if completed.returncode != 0:
            raise ConfigurationError(
                f"{' '.join(args)} exited with {completed.returncode}: {completed.stderr.strip()[:500]}"
            )
        return completed.stdout

    def _configure_program(self, name: str, explicit: str | None, search_path: str) -> ConfiguredProgram:
        requested = explicit or name
        if os.sep in requested:
            resolved = requested if Path(requested).is_file() else None
        else:
            resolved = shutil.which(requested, path=search_path)
        if resolved is None:
            raise ConfigurationError(f"program {requested!r} not found on the search path")
        found = Path(resolved)
        version = self._run([str(found), "--numeric-version"]).strip()
        if not version:
            raise ConfigurationError(f"{found} did not report a version")
        shadows = [] if explicit and os.sep in explicit else search_path_shadows(found.name, found, search_path)
        logger.info("Configured %s %s at %s", name, version, found)
        return ConfiguredProgram(name=name, path=str(found), version=version, monitor_files=tuple(shadows))

    def configure(
        self,
        flavor: str,
        compiler_path: str | None,
        pkg_path: str | None,
        search_path: str,
    ) -> CompilerSetup:
        compiler_program = self._configure_program(flavor, compiler_path, search_path)
        pkg_program = self._configure_program(f"{flavor}-pkg", pkg_path, search_path)
        if pkg_program.version != compiler_program.version:
            raise ConfigurationError(
                f"{pkg_program.path} is version {pkg_program.version}, "
                f"but {compiler_program.path} is version {compiler_program.version}"
            )
        info = self._run([compiler_program.path, "--info"])
        match = _DYNAMIC_BY_DEFAULT_RE.search(info)
        assert compiler_program.version is not None
        compiler = CompilerInfo(
            flavor=flavor,
            version=compiler_program.version,
            dynamic_by_default=bool(match and match.group(1) == "YES"),
        )
        return CompilerSetup(
            compiler=compiler,
            platform=host_platform_info(),
            program_db=ProgramDb(programs=(compiler_program, pkg_program)),
        )
