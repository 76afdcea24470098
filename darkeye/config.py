#!/usr/bin/env python3
"""
Unified configuration loader for DarkEye.

Search order, highest priority first:
  1) DARKEYE_CONFIG (env, absolute or relative to CWD)
  2) /etc/darkeye/config.yaml
  3) <project_root>/config.yaml (derived from this file's location)
  4) <script_dir>/config.yaml (directory of the running script)
  5) ./config.yaml (current working directory)

Every file that exists is deep-merged over the defaults, so a key set in
a higher entry wins. Environment variables are applied last.

Operator-editable runtime settings (storage root, quota, retention age,
cleanup interval) are stored in the camera database, not here; the
``retention`` section only seeds their defaults.
"""
from __future__ import annotations

import copy
import os
import sys
from pathlib import Path
from typing import Any, Dict

import yaml

_DEFAULTS: Dict[str, Any] = {
    "paths": {
        "db_path": "/var/lib/darkeye/darkeye.db",
        "recordings_dir": "/var/lib/darkeye/recordings",
        "hls_dir": "/var/lib/darkeye/hls",
        "relay_config": "/var/lib/darkeye/mediamtx.yml",
    },
    "ffmpeg": {
        "binary": "ffmpeg",
        "loglevel": "error",
    },
    "relay": {
        "binary": "mediamtx",
        "host": "127.0.0.1",
        "rtsp_port": 8554,
        "webrtc_port": 8889,
        "restart_delay_sec": 1.0,
        "settle_delay_sec": 3.0,
    },
    "recorder": {
        "restart_backoff_sec": 5.0,
    },
    "live": {
        "idle_timeout_sec": 20.0,
        "sweep_interval_sec": 5.0,
    },
    "talk": {
        "sample_rate": 8000,
    },
    "thumbnails": {
        "enabled": True,
        "interval_sec": 60.0,
    },
    "retention": {
        "max_storage_gb": 500,
        "retention_hours": 72,
        "cleanup_interval_min": 60,
    },
    "web_server": {
        "listen_host": "0.0.0.0",
        "listen_port": 3000,
    },
    "logging": {
        "dev_mode": False,  # if True or ENV DEV=1, enable verbose debug
        "level": "INFO",
    },
}

_cfg_cache: Dict[str, Any] | None = None

_ENV_STRINGS = {
    "DARKEYE_DB": ("paths", "db_path"),
    "REC_DIR": ("paths", "recordings_dir"),
    "HLS_DIR": ("paths", "hls_dir"),
    "MEDIAMTX_CONFIG": ("paths", "relay_config"),
    "FFMPEG_PATH": ("ffmpeg", "binary"),
    "MEDIAMTX_PATH": ("relay", "binary"),
}


def _config_files() -> list[Path]:
    """Existing config files, highest priority first, without duplicates."""
    candidates: list[Path] = []
    explicit = os.getenv("DARKEYE_CONFIG")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates += [
        Path("/etc/darkeye/config.yaml"),
        Path(__file__).resolve().parent.parent / "config.yaml",
        Path(sys.argv[0] or ".").resolve().parent / "config.yaml",
        Path.cwd() / "config.yaml",
    ]
    found: list[Path] = []
    for candidate in candidates:
        candidate = candidate.resolve()
        if candidate.is_file() and candidate not in found:
            found.append(candidate)
    return found


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as exc:
        print(f"[config] WARNING: ignoring unreadable config {path}: {exc}", flush=True)
        return {}
    return data if isinstance(data, dict) else {}


def _deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in extra.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    if os.getenv("DEV") == "1":
        cfg.setdefault("logging", {})["dev_mode"] = True

    for env_key, (section, key) in _ENV_STRINGS.items():
        value = os.environ.get(env_key, "").strip()
        if value:
            cfg.setdefault(section, {})[key] = value

    port = os.environ.get("DARKEYE_PORT", "").strip()
    if port.isdigit() and 0 < int(port) < 65536:
        cfg.setdefault("web_server", {})["listen_port"] = int(port)


def get_cfg() -> Dict[str, Any]:
    """Return the merged configuration, loading it on first use."""
    global _cfg_cache
    if _cfg_cache is None:
        cfg = copy.deepcopy(_DEFAULTS)
        # Lowest priority first so later merges win.
        for path in reversed(_config_files()):
            cfg = _deep_merge(cfg, _read_yaml(path))
        _apply_env_overrides(cfg)
        _cfg_cache = cfg
    return _cfg_cache


def reload_cfg() -> Dict[str, Any]:
    global _cfg_cache
    _cfg_cache = None
    return get_cfg()
