from __future__ import annotations

import json
import os
import stat
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any

from .errors import ConfigurationError

CONFIG_FILENAME = "config.json"
PROTOCOLS = ("ssh", "https")


@dataclass(frozen=True)
class Config:
    default_root: str = "./skills"
    protocol: str = "ssh"  # "ssh" | "https"
    default_host: str = "github.com"
    default_repo: str = ""  # sync-back target for units without a lock entry
    github_user: str = ""

    @property
    def prefers_https(self) -> bool:
        return self.protocol.strip().lower() == "https"


def config_keys() -> tuple[str, ...]:
    return tuple(f.name for f in fields(Config))


def config_path(config_dir: Path) -> Path:
    return config_dir / CONFIG_FILENAME


def load_config(config_dir: Path) -> Config:
    path = config_path(config_dir)
    if not path.exists():
        return Config()

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Could not read config {path}: {e}. Fix or delete the file.") from e
    if not isinstance(raw, dict):
        return Config()

    allowed = set(config_keys())
    filtered: dict[str, Any] = {k: str(v) for k, v in raw.items() if k in allowed and v is not None}
    return Config(**filtered)


def save_config(cfg: Config, config_dir: Path) -> Path:
    path = config_path(config_dir)
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(asdict(cfg), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)

    # Best-effort; the file is per-user.
    try:
        os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)
    except OSError:
        pass

    return path


def save_config_if_missing(cfg: Config, config_dir: Path) -> Path | None:
    if config_path(config_dir).exists():
        return None
    return save_config(cfg, config_dir)


def get_value(cfg: Config, key: str) -> str:
    if key not in config_keys():
        raise ConfigurationError(f"Unknown config key {key!r}. Known keys: {', '.join(config_keys())}.")
    return getattr(cfg, key)


def set_value(cfg: Config, key: str, value: str) -> Config:
    if key not in config_keys():
        raise ConfigurationError(f"Unknown config key {key!r}. Known keys: {', '.join(config_keys())}.")
    value = value.strip()
    if key == "protocol":
        value = value.lower()
        if value not in PROTOCOLS:
            raise ConfigurationError(f"protocol must be one of {', '.join(PROTOCOLS)}, got {value!r}.")
    if key in ("default_root", "default_host") and not value:
        raise ConfigurationError(f"{key} must not be empty.")
    return replace(cfg, **{key: value})
