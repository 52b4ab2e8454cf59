from __future__ import annotations

from pathlib import Path
from typing import Any, Mapping, Optional
import os

from .types import Config

CONFIG_DIR_ENV = "VPS_SETUP_CONFIG_DIR"
APP_DIR_NAME = "vps-setup"

# Keys accepted by ``config set``; ``version`` is owned by the tool.
SETTABLE_KEYS = ("ansible_path", "default_profile", "log_level", "history_retention_days")


def default_config_dir(environ: Optional[Mapping[str, str]] = None) -> Path:
    env = os.environ if environ is None else environ
    override = env.get(CONFIG_DIR_ENV)
    if override:
        return Path(override).expanduser()
    xdg = env.get("XDG_CONFIG_HOME")
    base = Path(xdg).expanduser() if xdg else Path.home() / ".config"
    return base / APP_DIR_NAME


def config_from_mapping(data: Mapping[str, Any]) -> Config:
    defaults = Config()
    return Config(
        version=data.get("version", defaults.version),
        ansible_path=data.get("ansible_path", defaults.ansible_path),
        default_profile=data.get("default_profile", defaults.default_profile),
        log_level=data.get("log_level", defaults.log_level),
        history_retention_days=data.get("history_retention_days", defaults.history_retention_days),
    )


def config_to_mapping(config: Config) -> dict[str, Any]:
    data: dict[str, Any] = {
        "version": config.version,
        "ansible_path": config.ansible_path,
        "log_level": config.log_level,
        "history_retention_days": config.history_retention_days,
    }
    if config.default_profile is not None:
        data["default_profile"] = config.default_profile
    return data


def coerce_setting(key: str, raw: str) -> Any:
    """Convert a ``config set`` argument to the type stored for ``key``."""

    if key not in SETTABLE_KEYS:
        raise KeyError(key)
    if key == "history_retention_days":
        try:
            return int(raw)
        except ValueError as exc:
            raise ValueError("history_retention_days must be a number") from exc
    if key == "log_level":
        return raw.strip().lower()
    return raw
