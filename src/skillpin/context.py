from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from platformdirs import user_cache_path, user_config_path

APP_NAME = "skillpin"
CACHE_DIR_ENV = "SKILLPIN_CACHE_DIR"
CONFIG_DIR_ENV = "SKILLPIN_CONFIG_DIR"


@dataclass(frozen=True)
class Context:
    """
    Process-wide locations every operation works against.

    Nothing in the package reads these from globals; pass a different
    Context to isolate a test run or a CI job.
    """

    cwd: Path
    cache_root: Path
    config_dir: Path

    @classmethod
    def from_env(cls, cwd: str | Path | None = None) -> "Context":
        return cls(
            cwd=Path(cwd).expanduser().resolve() if cwd is not None else Path.cwd(),
            cache_root=default_cache_root(),
            config_dir=default_config_dir(),
        )


def default_cache_root() -> Path:
    if env := os.getenv(CACHE_DIR_ENV):
        return Path(env).expanduser() / "repos"
    return user_cache_path(APP_NAME) / "repos"


def default_config_dir() -> Path:
    if env := os.getenv(CONFIG_DIR_ENV):
        return Path(env).expanduser()
    return user_config_path(APP_NAME)


def resolve_project_path(project_root: Path, rel_or_abs: str) -> Path:
    p = Path(rel_or_abs).expanduser()
    if p.is_absolute():
        return p
    return project_root / p
