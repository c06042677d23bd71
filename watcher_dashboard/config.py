#!/usr/bin/env python3
"""
Settings loader for the watcher dashboard.

Load order (first found wins):
  1) WATCHER_DASHBOARD_CONFIG (env, absolute or relative to CWD)
  2) ~/.config/watcher_dashboard/config.yaml
  3) <project_root>/config.yaml (derived from this file's location)
  4) ./config.yaml (current working directory)

Environment variables override file values when present.  Every path the
dashboard touches is resolved here once, so the snapshot, stream and config
modules only ever receive explicit paths.
"""
from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict

import yaml

_DEFAULTS: Dict[str, Any] = {
    "watcher": {
        "status_file": "~/.teams_watcher_status",
        "log_file": "~/Library/Logs/TeamsVoiceMemos.log",
        "config_file": "../engine/config.sh",
        "default_export_folder": "../recordings",
    },
    "service": {
        "plist": "~/Library/LaunchAgents/com.teams-voice-record.plist",
        "launchctl": "/bin/launchctl",
    },
    "web_server": {
        "host": "127.0.0.1",
        "port": 3000,
    },
}

_settings_cache: "DashboardSettings | None" = None
_search_paths: list[Path] = []
_active_config_path: Path | None = None


@dataclass(frozen=True)
class DashboardSettings:
    """Resolved filesystem locations and server options."""

    status_file: Path
    log_file: Path
    config_file: Path
    default_export_folder: Path
    plist_path: Path
    launchctl: str
    host: str
    port: int

    @classmethod
    def from_mapping(cls, cfg: Dict[str, Any], *, base_dir: Path | None = None) -> "DashboardSettings":
        base = base_dir or Path.cwd()
        watcher = cfg.get("watcher", {})
        service = cfg.get("service", {})
        web_server = cfg.get("web_server", {})
        return cls(
            status_file=_resolve_path(watcher["status_file"], base),
            log_file=_resolve_path(watcher["log_file"], base),
            config_file=_resolve_path(watcher["config_file"], base),
            default_export_folder=_resolve_path(watcher["default_export_folder"], base),
            plist_path=_resolve_path(service["plist"], base),
            launchctl=str(service["launchctl"]),
            host=str(web_server["host"]),
            port=int(web_server["port"]),
        )


def _resolve_path(raw: Any, base: Path) -> Path:
    candidate = Path(str(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base / candidate
    return Path(os.path.normpath(candidate))


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        logging.getLogger("watcher_dashboard").warning(
            "Ignoring unreadable settings file %s: %s", path, exc
        )
        return {}
    if isinstance(data, dict):
        return data
    return {}


def _candidate_search_paths(project_root: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("WATCHER_DASHBOARD_CONFIG")
    if env_cfg:
        search.append(Path(env_cfg).expanduser().resolve())
    search.extend(
        [
            Path("~/.config/watcher_dashboard/config.yaml").expanduser(),
            project_root / "config.yaml",
            Path.cwd() / "config.yaml",
        ]
    )
    seen: set[Path] = set()
    ordered: list[Path] = []
    for candidate in search:
        resolved = candidate.resolve()
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


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    env_map = {
        "WATCHER_STATUS_FILE": ("watcher", "status_file", str),
        "WATCHER_LOG_FILE": ("watcher", "log_file", str),
        "WATCHER_CONFIG_FILE": ("watcher", "config_file", str),
        "WATCHER_EXPORT_FOLDER": ("watcher", "default_export_folder", str),
        "WATCHER_PLIST": ("service", "plist", str),
        "LAUNCHCTL_BIN": ("service", "launchctl", str),
        "DASHBOARD_HOST": ("web_server", "host", str),
        "DASHBOARD_PORT": ("web_server", "port", int),
    }
    for env_key, (section, key, cast) in env_map.items():
        if env_key not in os.environ:
            continue
        raw = os.environ[env_key].strip()
        if not raw:
            continue
        try:
            cfg.setdefault(section, {})[key] = cast(raw)
        except ValueError:
            logging.getLogger("watcher_dashboard").warning(
                "Ignoring invalid %s=%r", env_key, raw
            )


def load_settings_mapping() -> Dict[str, Any]:
    """Return the merged settings mapping (defaults, files, then env)."""
    global _search_paths, _active_config_path

    cfg = copy.deepcopy(_DEFAULTS)
    project_root = Path(__file__).resolve().parent.parent
    search = _candidate_search_paths(project_root)
    _search_paths = list(search)

    active: Path | None = None
    for candidate in search:
        if candidate.exists():
            active = candidate
            break

    for candidate in reversed(search):
        cfg = _deep_merge(cfg, _load_yaml_if_exists(candidate))

    _active_config_path = active
    _apply_env_overrides(cfg)
    return cfg


def get_settings() -> DashboardSettings:
    global _settings_cache
    if _settings_cache is not None:
        return _settings_cache
    _settings_cache = DashboardSettings.from_mapping(load_settings_mapping())
    return _settings_cache


def reload_settings() -> DashboardSettings:
    global _settings_cache
    _settings_cache = None
    return get_settings()


def active_config_path() -> Path | None:
    if _settings_cache is None:
        get_settings()
    return _active_config_path


def search_paths() -> list[Path]:
    if not _search_paths:
        get_settings()
    return list(_search_paths)
