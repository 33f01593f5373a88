from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from .models import parse_version


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    store_root: str = "~/.storeplan/store"
    user_prefix: str = "~/.storeplan"
    dist_dir: str = "dist-newstyle"
    package_cache: str = "~/.storeplan/packages"
    global_db: str = ""
    supported_spec_version: str = "1.24"
    http_timeout_seconds: int = 60
    max_backjumps: int = 2_000

    @classmethod
    def from_env(cls, project_root: Path | None = None) -> "RuntimeSettings":
        """Read ``STOREPLAN_*`` variables, after loading ``<project_root>/.env`` if present.

        Variables already set in the environment win over the ``.env`` file.
        """
        if project_root is not None:
            env_path = project_root / ".env"
            if env_path.is_file():
                load_dotenv(env_path)
        return cls(
            store_root=os.getenv("STOREPLAN_STORE_ROOT", "~/.storeplan/store"),
            user_prefix=os.getenv("STOREPLAN_USER_PREFIX", "~/.storeplan"),
            dist_dir=os.getenv("STOREPLAN_DIST_DIR", "dist-newstyle"),
            package_cache=os.getenv("STOREPLAN_PACKAGE_CACHE", "~/.storeplan/packages"),
            global_db=os.getenv("STOREPLAN_GLOBAL_DB", ""),
            supported_spec_version=os.getenv("STOREPLAN_SUPPORTED_SPEC_VERSION", "1.24"),
            http_timeout_seconds=_get_env_int("STOREPLAN_HTTP_TIMEOUT_SECONDS", default=60, minimum=1, maximum=3_600),
            max_backjumps=_get_env_int("STOREPLAN_MAX_BACKJUMPS", default=2_000, minimum=0),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        for env_name, value in (
            ("STOREPLAN_STORE_ROOT", self.store_root),
            ("STOREPLAN_USER_PREFIX", self.user_prefix),
            ("STOREPLAN_DIST_DIR", self.dist_dir),
            ("STOREPLAN_PACKAGE_CACHE", self.package_cache),
        ):
            if not value.strip():
                raise ValueError(f"{env_name} must be non-empty")
        spec_version = self.supported_spec_version.strip()
        try:
            parse_version(spec_version)
        except ValueError as exc:
            raise ValueError(
                f"STOREPLAN_SUPPORTED_SPEC_VERSION must be a dotted version, got: {self.supported_spec_version!r}"
            ) from exc
        return RuntimeSettings(
            store_root=self.store_root.strip(),
            user_prefix=self.user_prefix.strip(),
            dist_dir=self.dist_dir.strip(),
            package_cache=self.package_cache.strip(),
            global_db=self.global_db.strip(),
            supported_spec_version=spec_version,
            http_timeout_seconds=self.http_timeout_seconds,
            max_backjumps=self.max_backjumps,
        )

    def store_root_path(self) -> Path:
        return Path(self.store_root).expanduser()

    def user_prefix_path(self) -> Path:
        return Path(self.user_prefix).expanduser()

    def package_cache_path(self) -> Path:
        return Path(self.package_cache).expanduser()

    def global_db_path(self, project_root: Path) -> Path | None:
        if not self.global_db:
            return None
        path = Path(self.global_db).expanduser()
        return path if path.is_absolute() else project_root / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed
