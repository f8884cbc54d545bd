"""Configuration loader for kinkeeper."""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml

log = logging.getLogger(__name__)

DEFAULTS: dict = {
    "home": "~/kinkeeper",
    # Relative paths are resolved against home
    "database": ".kk/family.db",
    "storage": {
        "provider": "local",
        "path": "uploads",
        "url_prefix": "/api/uploads/",
    },
    "backup": {
        "max_archive_mb": 100,
        "max_entry_mb": 50,
        "max_total_mb": 500,
        "max_photos": 5000,
        "max_data_files": 20,
        "lock_timeout_seconds": 30,
        "audit_log_days": 90,
    },
    "logging": {
        "level": "info",
    },
}


def resolve_home() -> Path:
    """Resolve KK_HOME: env var > default ~/kinkeeper."""
    env_home = os.environ.get("KK_HOME")
    if env_home:
        return Path(env_home).expanduser().resolve()
    return Path("~/kinkeeper").expanduser().resolve()


def config_path(home: Path | None = None) -> Path:
    """Return the path to config.yaml."""
    if home is None:
        home = resolve_home()
    return home / ".kk" / "config.yaml"


def load_config(path: Path | None = None) -> dict:
    """Load config.yaml and merge with defaults.

    Args:
        path: Explicit path to config.yaml. If None, uses default location.

    Returns:
        Merged configuration dict.
    """
    if path is None:
        path = config_path()

    user_config: dict = {}
    if path.exists():
        try:
            raw = path.read_text(encoding="utf-8")
            user_config = yaml.safe_load(raw) or {}
        except (OSError, yaml.YAMLError):
            log.warning("Failed to read config at %s, using defaults", path, exc_info=True)

    if not isinstance(user_config, dict):
        log.warning("Config at %s is not a mapping, using defaults", path)
        user_config = {}

    merged = _deep_merge(DEFAULTS, user_config)

    home_str = os.environ.get("KK_HOME") or merged.get("home", "~/kinkeeper")
    merged["home"] = str(Path(home_str).expanduser().resolve())

    return merged


def database_path(config: dict) -> Path:
    """Absolute path of the SQLite database for a merged config."""
    db_path = Path(config.get("database", DEFAULTS["database"])).expanduser()
    if not db_path.is_absolute():
        db_path = Path(config["home"]) / db_path
    return db_path


def storage_root(config: dict) -> Path:
    """Absolute root directory of the local storage adapter."""
    root = Path(config.get("storage", {}).get("path", "uploads")).expanduser()
    if not root.is_absolute():
        root = Path(config["home"]) / root
    return root


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base, returning a new dict."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result
