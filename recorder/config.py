#!/usr/bin/env python3
"""
Unified configuration loader for the session recorder.

Load order (first found wins):
  1) RECORDER_CONFIG (env, absolute or relative to CWD)
  2) /etc/recorder/config.yaml
  3) <project_root>/config.yaml (derived from this file's location)
  4) ./config.yaml (current working directory)

Environment variables override file values when present.
"""
from __future__ import annotations

import copy
import os
from pathlib import Path
from typing import Any, Dict

import yaml

_DEFAULTS: Dict[str, Any] = {
    "paths": {
        "recordings_dir": "/apps/recorder/recordings",
    },
    "logging": {
        "level": "info",
        "sidecar_level": "debug",
        "dev_mode": False,  # if True or ENV DEV=1, mirror debug output
    },
    "archival": {
        "enabled": False,
        # Ordered; the first valid entry is the primary destination.
        "destinations": [],
    },
}

_cfg_cache: Dict[str, Any] | None = None
_active_config_path: Path | None = None


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
            if isinstance(data, dict):
                return data
    except (OSError, yaml.YAMLError):
        # Ignore parse errors and continue with other locations/defaults
        pass
    return {}


def _candidate_search_paths(project_root: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("RECORDER_CONFIG")
    if env_cfg:
        search.append(Path(env_cfg).expanduser())
    search.extend(
        [
            Path("/etc/recorder/config.yaml"),
            project_root / "config.yaml",
            Path.cwd() / "config.yaml",
        ]
    )
    seen: set[Path] = set()
    ordered: list[Path] = []
    for candidate in search:
        try:
            resolved = candidate.resolve()
        except OSError:
            resolved = candidate
        if resolved in seen:
            continue
        seen.add(resolved)
        ordered.append(resolved)
    return ordered


def _deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in extra.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    # DEV mode
    if os.getenv("DEV") == "1":
        cfg.setdefault("logging", {})["dev_mode"] = True
    if "REC_DIR" in os.environ:
        value = os.environ["REC_DIR"].strip()
        if value:
            cfg.setdefault("paths", {})["recordings_dir"] = value

    logging_env = {
        "LOG_LEVEL": "level",
        "SIDECAR_LOG_LEVEL": "sidecar_level",
    }
    for env_key, key in logging_env.items():
        if env_key in os.environ:
            value = os.environ[env_key].strip().lower()
            if value:
                cfg.setdefault("logging", {})[key] = value

    if "ARCHIVAL_ENABLED" in os.environ:
        cfg.setdefault("archival", {})["enabled"] = _parse_bool(os.environ["ARCHIVAL_ENABLED"])


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _active_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    # recorder/ -> project root
    project_root = Path(__file__).resolve().parent.parent

    search = _candidate_search_paths(project_root)

    active: Path | None = None
    for candidate in search:
        try:
            if candidate.exists():
                active = candidate
                break
        except OSError:
            pass

    for candidate in reversed(search):
        cfg = _deep_merge(cfg, _load_yaml_if_exists(candidate))

    _active_config_path = active
    _apply_env_overrides(cfg)
    _cfg_cache = cfg
    return cfg


def reload_cfg() -> Dict[str, Any]:
    global _cfg_cache
    _cfg_cache = None
    return get_cfg()


def active_config_path() -> Path | None:
    if _active_config_path is None:
        get_cfg()
    return _active_config_path


def recordings_dir(cfg: Dict[str, Any] | None = None) -> Path:
    cfg = cfg if cfg is not None else get_cfg()
    return Path(str(cfg.get("paths", {}).get("recordings_dir") or ".")).expanduser()


def outer_log_level(cfg: Dict[str, Any] | None = None) -> str:
    cfg = cfg if cfg is not None else get_cfg()
    logging_cfg = cfg.get("logging", {}) or {}
    if logging_cfg.get("dev_mode"):
        return "debug"
    return str(logging_cfg.get("level") or "info").strip().lower()


def sidecar_log_level(cfg: Dict[str, Any] | None = None) -> str:
    cfg = cfg if cfg is not None else get_cfg()
    logging_cfg = cfg.get("logging", {}) or {}
    return str(logging_cfg.get("sidecar_level") or "debug").strip().lower()
