"""Tests covering settings files and environment variable overrides."""

from __future__ import annotations

from pathlib import Path

from watcher_dashboard import config as config_module


def _reset_config_state(monkeypatch) -> None:
    monkeypatch.setattr(config_module, "_settings_cache", None, raising=False)
    monkeypatch.setattr(config_module, "_search_paths", [], raising=False)
    monkeypatch.setattr(config_module, "_active_config_path", None, raising=False)


def _clear_env(monkeypatch) -> None:
    for name in (
        "WATCHER_STATUS_FILE",
        "WATCHER_LOG_FILE",
        "WATCHER_CONFIG_FILE",
        "WATCHER_EXPORT_FOLDER",
        "WATCHER_PLIST",
        "LAUNCHCTL_BIN",
        "DASHBOARD_HOST",
        "DASHBOARD_PORT",
    ):
        monkeypatch.delenv(name, raising=False)


def test_yaml_file_overrides_defaults(monkeypatch, tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        "watcher:\n"
        f"  status_file: {tmp_path / 'status'}\n"
        "  log_file: logs/watcher.log\n"
        "web_server:\n"
        "  port: 4100\n"
    )

    monkeypatch.setenv("WATCHER_DASHBOARD_CONFIG", str(config_path))
    monkeypatch.chdir(tmp_path)
    _clear_env(monkeypatch)
    _reset_config_state(monkeypatch)

    settings = config_module.get_settings()

    assert settings.status_file == tmp_path / "status"
    assert settings.log_file == tmp_path / "logs" / "watcher.log"
    assert settings.port == 4100
    assert settings.host == "127.0.0.1"
    assert settings.config_file == tmp_path.parent / "engine" / "config.sh"
    assert config_module.active_config_path() == config_path.resolve()


def test_env_overrides_win_over_file(monkeypatch, tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("web_server:\n  host: 0.0.0.0\n  port: 4100\n")

    monkeypatch.setenv("WATCHER_DASHBOARD_CONFIG", str(config_path))
    _clear_env(monkeypatch)
    monkeypatch.setenv("DASHBOARD_HOST", "localhost")
    monkeypatch.setenv("DASHBOARD_PORT", "8080")
    monkeypatch.setenv("WATCHER_CONFIG_FILE", str(tmp_path / "engine" / "config.sh"))
    monkeypatch.setenv("LAUNCHCTL_BIN", "/usr/local/bin/launchctl")
    _reset_config_state(monkeypatch)

    settings = config_module.get_settings()

    assert settings.host == "localhost"
    assert settings.port == 8080
    assert settings.config_file == tmp_path / "engine" / "config.sh"
    assert settings.launchctl == "/usr/local/bin/launchctl"


def test_invalid_port_override_is_ignored(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("WATCHER_DASHBOARD_CONFIG", str(tmp_path / "missing.yaml"))
    _clear_env(monkeypatch)
    monkeypatch.setenv("DASHBOARD_PORT", "eighty")
    _reset_config_state(monkeypatch)

    assert config_module.get_settings().port == 3000


def test_home_relative_paths_are_expanded(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setenv("WATCHER_DASHBOARD_CONFIG", str(tmp_path / "missing.yaml"))
    _clear_env(monkeypatch)
    _reset_config_state(monkeypatch)

    settings = config_module.get_settings()

    assert settings.status_file == tmp_path / ".teams_watcher_status"
    assert settings.log_file == tmp_path / "Library" / "Logs" / "TeamsVoiceMemos.log"
    assert settings.plist_path == tmp_path / "Library" / "LaunchAgents" / "com.teams-voice-record.plist"


def test_reload_settings_picks_up_changes(monkeypatch, tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("web_server:\n  port: 4100\n")
    monkeypatch.setenv("WATCHER_DASHBOARD_CONFIG", str(config_path))
    _clear_env(monkeypatch)
    _reset_config_state(monkeypatch)

    assert config_module.get_settings().port == 4100
    config_path.write_text("web_server:\n  port: 4200\n")
    assert config_module.get_settings().port == 4100
    assert config_module.reload_settings().port == 4200
