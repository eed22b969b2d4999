from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import tomli_w
from platformdirs import user_config_dir

from debrid_stack.models import DEFAULT_UPDATE_SCHEDULE
from debrid_stack.paths import (
    DEFAULT_BUNDLE_MOUNT_DIR,
    DEFAULT_INSTALL_DIR,
    DEFAULT_MOUNT_DIR,
    DEFAULT_RCLONE_CONFIG,
    DEFAULT_UNIT_DIR,
    HostPaths,
)

APP_NAME = "debrid-stack"
CONFIG_FILENAME = "config.toml"
ENV_INSTALL_DIR = "DEBRID_STACK_INSTALL_DIR"

PATH_KEYS = ("install_dir", "mount_dir", "bundle_mount_dir", "rclone_config", "unit_dir")
INT_KEYS = ("puid", "pgid")


@dataclass
class InstallerSettings:
    install_dir: str = DEFAULT_INSTALL_DIR
    mount_dir: str = DEFAULT_MOUNT_DIR
    bundle_mount_dir: str = DEFAULT_BUNDLE_MOUNT_DIR
    rclone_config: str = DEFAULT_RCLONE_CONFIG
    unit_dir: str = DEFAULT_UNIT_DIR
    default_timezone: str | None = None
    puid: int = 1000
    pgid: int = 1000
    auto_update_schedule: str = DEFAULT_UPDATE_SCHEDULE

    def to_paths(self) -> HostPaths:
        return HostPaths(
            install_dir=Path(resolve_install_dir(self)),
            mount_dir=Path(self.mount_dir),
            bundle_mount_dir=Path(self.bundle_mount_dir),
            rclone_config=Path(self.rclone_config),
            unit_dir=Path(self.unit_dir),
        )


SETTING_KEYS = tuple(f.name for f in fields(InstallerSettings))


def config_path() -> str:
    return f"{user_config_dir(APP_NAME)}/{CONFIG_FILENAME}"


def default_config() -> InstallerSettings:
    return InstallerSettings()


def resolve_install_dir(cfg: InstallerSettings) -> str:
    env_value = os.getenv(ENV_INSTALL_DIR)
    if env_value and env_value.strip():
        return env_value.strip().rstrip("/") or "/"
    return cfg.install_dir


def to_toml(cfg: InstallerSettings) -> dict[str, Any]:
    return _prune_none({name: getattr(cfg, name) for name in SETTING_KEYS})


def _prune_none(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _prune_none(v) for k, v in value.items() if v is not None}
    if isinstance(value, list):
        return [_prune_none(item) for item in value if item is not None]
    return value


def from_toml(data: dict[str, Any]) -> InstallerSettings:
    cfg = default_config()
    for key in PATH_KEYS:
        raw = str(data.get(key) or "").strip()
        if raw.startswith("/"):
            setattr(cfg, key, raw.rstrip("/") or "/")
    for key in INT_KEYS:
        raw = data.get(key)
        if isinstance(raw, int) and not isinstance(raw, bool) and raw > 0:
            setattr(cfg, key, raw)
    timezone = data.get("default_timezone")
    if isinstance(timezone, str) and timezone.strip():
        cfg.default_timezone = timezone.strip()
    schedule = data.get("auto_update_schedule")
    if isinstance(schedule, str) and schedule.strip():
        cfg.auto_update_schedule = schedule.strip()
    return cfg


def load_config() -> InstallerSettings:
    path = config_path()
    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
        return from_toml(data)
    except FileNotFoundError:
        return default_config()


def save_config(cfg: InstallerSettings) -> str:
    path = config_path()
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
        tomli_w.dump(to_toml(cfg), f)
    os.chmod(path, 0o600)
    return path


def set_value(cfg: InstallerSettings, key: str, value: str) -> InstallerSettings:
    """Parse and assign one setting; raises ValueError on bad input."""
    k = key.strip().lower()
    raw = value.strip()
    if k in PATH_KEYS:
        if not raw.startswith("/"):
            raise ValueError(f"{k} must be an absolute path")
        setattr(cfg, k, raw.rstrip("/") or "/")
    elif k in INT_KEYS:
        if not raw.isdigit() or int(raw) <= 0:
            raise ValueError(f"{k} must be a positive integer")
        setattr(cfg, k, int(raw))
    elif k == "default_timezone":
        cfg.default_timezone = raw or None
    elif k == "auto_update_schedule":
        if len(raw.split()) != 6:
            raise ValueError("auto_update_schedule must be a six-field cron expression")
        cfg.auto_update_schedule = raw
    else:
        raise ValueError(f"Unknown setting: {key}")
    return cfg
