from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any

from platformdirs import user_cache_path, user_config_path

APP_NAME = "skillpm"
DEFAULT_REGISTRY = "github"
DEFAULT_TIMEOUT_S = 60.0
DEFAULT_INSTALL_DIR = ".skills"


@dataclass(frozen=True)
class Config:
    cache_dir: str | None = None  # falls back to SKILLPM_CACHE_DIR, then the platform cache dir
    default_registry: str = DEFAULT_REGISTRY
    timeout_s: float = DEFAULT_TIMEOUT_S
    strict_latest: bool = False  # fail instead of falling back to the default branch
    jobs: int = 1
    registries: dict[str, str] = field(default_factory=dict)  # extra registry name -> git host


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("SKILLPM_CONFIG_PATH"):
        return Path(env).expanduser()
    return user_config_path(APP_NAME) / "config.json"


def load_config(path_override: str | Path | None = None) -> Config:
    path = config_path(path_override)
    if not path.exists():
        return Config()

    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        return Config()

    allowed = {f.name for f in Config.__dataclass_fields__.values()}  # type: ignore[attr-defined]
    filtered: dict[str, Any] = {k: v for k, v in raw.items() if k in allowed}
    if not isinstance(filtered.get("registries", {}), dict):
        filtered.pop("registries")
    return Config(**filtered)  # type: ignore[arg-type]


def save_config(cfg: Config, path_override: str | Path | None = None) -> Path:
    path = config_path(path_override)
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(asdict(cfg), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)
    return path


def apply_env(cfg: Config) -> Config:
    # Env overrides the config file; CLI flags are applied on top by the caller.
    default_registry = os.getenv("SKILLPM_DEFAULT_REGISTRY") or cfg.default_registry
    timeout_s: Any = os.getenv("SKILLPM_TIMEOUT_S") or cfg.timeout_s
    try:
        timeout_s_f = float(timeout_s)
    except (TypeError, ValueError):
        timeout_s_f = cfg.timeout_s
    return replace(cfg, default_registry=default_registry, timeout_s=timeout_s_f)


def resolve_cache_dir(cfg: Config) -> Path:
    """Cache root: explicit config value, then SKILLPM_CACHE_DIR, then the platform cache dir."""
    if cfg.cache_dir:
        return Path(cfg.cache_dir).expanduser()
    if env := os.getenv("SKILLPM_CACHE_DIR"):
        return Path(env).expanduser()
    return user_cache_path(APP_NAME)
