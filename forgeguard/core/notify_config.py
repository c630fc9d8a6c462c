"""Shared notification configuration loader.

Reads ``configs/notify.yaml`` (or the file named by
``FORGEGUARD_NOTIFY_CONFIG``) once at import time and exposes the values
through :func:`get` with built-in defaults underneath.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict

import yaml

logger = logging.getLogger(__name__)

_DEFAULTS: Dict[str, Any] = {
    "notify": {
        "webhook_url": "",
        "channel": "forgeguard-alerts",
        "username": "ForgeGuard",
        "icon_emoji": ":factory:",
        "timeout_seconds": 8,
    },
    "suppress": {
        "cooldown_seconds": 60,
    },
}


def _cfg_path() -> Path:
    override = os.environ.get("FORGEGUARD_NOTIFY_CONFIG")
    if override:
        return Path(override)
    return Path(__file__).resolve().parents[2] / "configs" / "notify.yaml"


def _load() -> Dict[str, Any]:
    path = _cfg_path()
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text()) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Failed to load notify config from {path}: {e}")
        return {}
    if not isinstance(data, dict):
        return {}
    return data


_CFG = _load()


def _get_nested(cfg: Dict[str, Any], path: str, default: Any = None) -> Any:
    """Get a nested config value using dot notation (e.g. 'notify.webhook_url')."""
    current: Any = cfg
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return current


def lookup(path: str) -> Any:
    """Dotted lookup that prefers YAML values and falls back to defaults."""
    value = _get_nested(_CFG, path, None)
    if value is None:
        value = _get_nested(_DEFAULTS, path, None)
    return value


def get(key: str, default: Any = None) -> Any:
    """Return a top-level section, merged over the defaults when both are mappings."""
    base = _DEFAULTS.get(key)
    value = _CFG.get(key)
    if isinstance(base, dict) and isinstance(value, dict):
        return {**base, **value}
    if value is not None:
        return value
    if base is not None:
        return base
    return default


NOTIFY_WEBHOOK_URL = lookup("notify.webhook_url")
