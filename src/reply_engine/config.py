"""Configuration loading utilities for the reply engine.

This module handles layered configuration:
1. Explicit path argument (highest precedence)
2. Environment variable REPLY_ENGINE_CONFIG
3. Fallback to "config/default.yaml"

It also supports optional overrides from environment variables with prefix
``REPLY_ENGINE__`` (e.g., REPLY_ENGINE__API__MODEL=gpt-4o-mini).
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict

import yaml

from .errors import ConfigError

logger = logging.getLogger(__name__)

ENV_PREFIX = "REPLY_ENGINE__"

DEFAULTS: Dict[str, Any] = {
    "api": {"base_url": "", "api_key": "", "model": "", "temperature": 0.7, "timeout": 60},
    "engine": {
        "debounce_seconds": 180,
        "context_messages": 20,
        "min_delay": 0.6,
        "max_delay": 2.0,
        "busy_min_minutes": 1,
        "busy_max_minutes": 10,
    },
    "emoji": {"catalog": {}, "window": 6, "accept_when_none": 0.7, "accept_when_one": 0.35},
    "summary": {"enabled": True, "interval": 3, "max_snapshots": 20, "source_messages": 20, "max_chars": 400},
    "storage": {"backend": "disk", "data_dir": "data"},
    "personas": {},
    "default_persona": "",
    "server": {"cors_origins": ["*"], "log_level": "info"},
}


def _merge(base: Dict[str, Any], over: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for k, v in over.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _merge(out[k], v)
        else:
            out[k] = v
    return out


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides with prefix REPLY_ENGINE__."""
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        # e.g., REPLY_ENGINE__API__BASE_URL -> cfg["api"]["base_url"]
        parts = key[len(ENV_PREFIX):].lower().split("__")
        sub = cfg
        for p in parts[:-1]:
            if p not in sub or not isinstance(sub[p], dict):
                sub[p] = {}
            sub = sub[p]
        leaf = parts[-1]
        # Attempt to parse simple types (bool, int, float)
        if value.lower() in {"true", "false"}:
            sub[leaf] = value.lower() == "true"
        else:
            try:
                if "." in value:
                    sub[leaf] = float(value)
                else:
                    sub[leaf] = int(value)
            except ValueError:
                sub[leaf] = value
    return cfg


def load_config(path: str | None = None) -> Dict[str, Any]:
    """Load YAML configuration for the reply engine.

    Parameters
    ----------
    path : str | None
        Optional path to a configuration file. If not provided, the
        environment variable ``REPLY_ENGINE_CONFIG`` is consulted. As a
        last resort ``config/default.yaml`` is used.

    Returns
    -------
    Dict[str, Any]
        Defaults merged with the file, then environment overrides applied.
    """
    if path is None:
        path = os.environ.get("REPLY_ENGINE_CONFIG", "config/default.yaml")

    path_obj = Path(path)
    if not path_obj.exists():
        logger.warning("Config file not found at %s. Using defaults.", path_obj)
        return _apply_env_overrides(copy.deepcopy(DEFAULTS))

    with path_obj.open("r", encoding="utf-8") as f:
        try:
            loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse config file {path_obj}: {e}") from e

    if not isinstance(loaded, dict):
        raise ConfigError(f"Invalid config format in {path_obj}, expected dict.")

    return _apply_env_overrides(_merge(DEFAULTS, loaded))
