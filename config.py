#!/usr/bin/env python3
"""
Configuration helper.

Resolves settings (GATT UUIDs, scan filter, timeouts, server address).
Built-in defaults are overlaid by potentiostat.json next to this file
(when installed without it, the defaults stand alone). Any key can be
overridden with an environment variable POTENTIOSTAT_<KEY>.

Usage:
  import config

  uuid = config.get("results_char_uuid")
  port = config.get("port")                  # POTENTIOSTAT_PORT=9000 -> 9000
"""

import json
import os

_CONFIG_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'potentiostat.json')
ENV_PREFIX = "POTENTIOSTAT_"
_cache = None

# Placeholder UUIDs; set the real ones per device in potentiostat.json or the environment
DEFAULTS = {
    "service_uuid": "0000fe40-cc7a-482a-984a-7f2ed5b3e58f",
    "config_char_uuid": "0000fe41-8e22-4541-9d4c-21edae82ed19",
    "control_char_uuid": "0000fe42-8e22-4541-9d4c-21edae82ed19",
    "results_char_uuid": "0000fe43-8e22-4541-9d4c-21edae82ed19",
    "status_char_uuid": "0000fe44-8e22-4541-9d4c-21edae82ed19",
    "device_name_prefix": "Potentiostat",
    "scan_timeout": 5.0,
    "connect_timeout": 10.0,
    "host": "0.0.0.0",
    "port": 8000,
}


def _load():
    global _cache
    if _cache is None:
        cfg = dict(DEFAULTS)
        path = os.environ.get(ENV_PREFIX + "CONFIG")
        if path is None and os.path.isfile(_CONFIG_PATH):
            path = _CONFIG_PATH
        if path is not None:
            with open(path) as f:
                cfg.update(json.load(f))
        _cache = cfg
    return _cache


def reload():
    """Forget the cached file so the next get() reads it again."""
    global _cache
    _cache = None


def get(key):
    """Return a setting, environment first. Env values take the file value's type."""
    cfg = _load()
    if key not in cfg:
        raise KeyError(f"Unknown setting '{key}'. Known: {', '.join(cfg.keys())}")
    default = cfg[key]
    raw = os.environ.get(ENV_PREFIX + key.upper())
    if raw is None:
        return default
    if isinstance(default, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, (int, float)):
        return type(default)(raw)
    return raw


def settings():
    """Return dict of every resolved setting."""
    return {key: get(key) for key in _load()}
