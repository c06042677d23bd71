import asyncio
import json
import os

import pytest
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from watcher_dashboard import service_control, web_server
from watcher_dashboard.config import DashboardSettings

CONFIG_TEXT = """# Watcher settings
TEAMS_WINDOW_KEYWORDS=(
  "Call" # inline
  "Daily Standup"
)
POLL_INTERVAL_ACTIVE=10
POLL_INTERVAL_INACTIVE=30 # slower when app closed
STABILITY_CHECK_DELAY=5
EXPORT_FOLDER="{export}"
"""


class FakeWatch:
    def __init__(self, directory, callback):
        self.directory = directory
        self.callback = callback
        self.close_calls = 0

    def close(self):
        self.close_calls += 1


@pytest.fixture
def dashboard_env(tmp_path):
    recordings_dir = tmp_path / "recordings"
    recordings_dir.mkdir()
    logs_dir = tmp_path / "logs"
    logs_dir.mkdir()
    engine_dir = tmp_path / "engine"
    engine_dir.mkdir()

    status_file = tmp_path / ".teams_watcher_status"
    status_file.write_text("state=recording\nmeeting=Daily Standup\n", encoding="utf-8")
    log_file = logs_dir / "TeamsVoiceMemos.log"
    log_file.write_text("watcher started\nrecording Daily Standup\n", encoding="utf-8")
    config_file = engine_dir / "config.sh"
    config_file.write_text(CONFIG_TEXT.format(export=recordings_dir), encoding="utf-8")

    return DashboardSettings(
        status_file=status_file,
        log_file=log_file,
        config_file=config_file,
        default_export_folder=tmp_path / "default_recordings",
        plist_path=tmp_path / "com.teams-voice-record.plist",
        launchctl="/bin/launchctl",
        host="127.0.0.1",
        port=3000,
    )


@pytest.fixture
def launchctl_calls(monkeypatch):
    calls: list[list[str]] = []
    failures: dict[str, tuple[int, str, str]] = {}

    async def fake_run_launchctl(launchctl, args):
        calls.append([launchctl, *args])
        return failures.get(args[0], (0, "", ""))

    monkeypatch.setattr(service_control, "run_launchctl", fake_run_launchctl)
    return calls, failures


async def _start_client(app: web.Application) -> tuple[TestClient, TestServer]:
    server = TestServer(app)
    client = TestClient(server)
    await client.start_server()
    return client, server


def _trusted_headers(server: TestServer) -> dict[str, str]:
    return {
        "Host": f"127.0.0.1:{server.port}",
        "Origin": f"http://127.0.0.1:{server.port}",
    }


def test_status_snapshot(dashboard_env):
    async def runner():
        app = web_server.build_app(dashboard_env, watch_factory=FakeWatch)
        client, server = await _start_client(app)

        try:
            resp = await client.get("/api/status?lines=1&bytes=5")
            assert resp.status == 200
            payload = await resp.json()
            assert payload["status"] == {"state": "recording", "meeting": "Daily Standup"}
            assert payload["logs"] == ["watcher started", "recording Daily Standup"]
            assert payload["meta"] == {"lines": 10, "bytes": 8192}
        finally:
            await client.close()
            await server.close()

    asyncio.run(runner())


def test_status_stream_sends_snapshot_and_cleans_up(dashboard_env):
    async def runner():
        watches: list[FakeWatch] = []

        def factory(directory, callback):
            watch = FakeWatch(directory, callback)
            watches.append(watch)
            return watch

        app = web_server.build_app(dashboard_env, watch_factory=factory)
        client, server = await _start_client(app)

        try:
            resp = await client.get("/api/status/stream")
            assert resp.status == 200
            assert resp.headers["Content-Type"] == "text/event-stream; charset=utf-8"
            assert resp.headers["Cache-Control"] == "no-cache, no-transform"
            assert resp.headers["X-Accel-Buffering"] == "no"

            event_line = await asyncio.wait_for(resp.content.readline(), timeout=5)
            data_line = await asyncio.wait_for(resp.content.readline(), timeout=5)
            blank = await asyncio.wait_for(resp.content.readline(), timeout=5)
            assert event_line == b"event: snapshot\n"
            assert blank == b"\n"
            snapshot = json.loads(data_line[len(b"data: ") :])
            assert snapshot["status"]["state"] == "recording"
            assert len(app[web_server.STREAM_SESSIONS_KEY]) == 1
            resp.close()
        finally:
            await client.close()
            await server.close()

        assert app[web_server.STREAM_SESSIONS_KEY] == set()
        assert [watch.close_calls for watch in watches] == [1, 1]

    asyncio.run(runner())


def test_config_get_returns_raw_and_values(dashboard_env):
    async def runner():
        app = web_server.build_app(dashboard_env, watch_factory=FakeWatch)
        client, server = await _start_client(app)

        try:
            resp = await client.get("/api/config")
            assert resp.status == 200
            payload = await resp.json()
            assert payload["content"].startswith("# Watcher settings")
            assert payload["values"]["TEAMS_WINDOW_KEYWORDS"] == ["Call", "Daily Standup"]
            assert payload["values"]["POLL_INTERVAL_INACTIVE"] == 30
            assert payload["config_path"] == str(dashboard_env.config_file)
        finally:
            await client.close()
            await server.close()

    asyncio.run(runner())


def test_config_get_missing_file_returns_defaults(dashboard_env):
    dashboard_env.config_file.unlink()

    async def runner():
        app = web_server.build_app(dashboard_env, watch_factory=FakeWatch)
        client, server = await _start_client(app)

        try:
            resp = await client.get("/api/config")
            assert resp.status == 200
            payload = await resp.json()
            assert payload["content"] == ""
            assert payload["values"] == {
                "TEAMS_WINDOW_KEYWORDS": ["Call", "Meeting"],
                "POLL_INTERVAL_ACTIVE": 10,
                "POLL_INTERVAL_INACTIVE": 30,
                "STABILITY_CHECK_DELAY": 5,
                "EXPORT_FOLDER": "",
            }
            assert payload["config_path"] == str(dashboard_env.config_file)
        finally:
            await client.close()
            await server.close()

    asyncio.run(runner())


def test_config_get_unreadable_file_is_a_server_error(dashboard_env):
    dashboard_env.config_file.unlink()
    dashboard_env.config_file.mkdir()

    async def runner():
        app = web_server.build_app(dashboard_env, watch_factory=FakeWatch)
        client, server = await _start_client(app)

        try:
            resp = await client.get("/api/config")
            assert resp.status == 500
            assert await resp.json() == {"error": "Failed to read config"}
        finally:
            await client.close()
            await server.close()

    asyncio.run(runner())


def test_config_update_values_preserves_comments(dashboard_env):
    async def runner():
        app = web_server.build_app(dashboard_env, watch_factory=FakeWatch)
        client, server = await _start_client(app)

        try:
            resp = await client.post(
                "/api/config",
                json={
                    "values": {
                        "TEAMS_WINDOW_KEYWORDS": ["Call", "Meeting"],
                        "POLL_INTERVAL_ACTIVE": 11,
                        "POLL_INTERVAL_INACTIVE": 45,
                        "STABILITY_CHECK_DELAY": 6,
                        "EXPORT_FOLDER": "/tmp/out",
                    }
                },
                headers=_trusted_headers(server),
            )
            assert resp.status == 200
            payload = await resp.json()
            assert payload["message"] == "Saved"
            assert payload["values"]["POLL_INTERVAL_ACTIVE"] == 11

            text = dashboard_env.config_file.read_text(encoding="utf-8")
            assert "# Watcher settings" in text
            assert "POLL_INTERVAL_INACTIVE=45 # slower when app closed" in text
            assert '  "Meeting"' in text
            assert 'EXPORT_FOLDER="/tmp/out"' in text
        finally:
            await client.close()
            await server.close()

    asyncio.run(runner())


def test_config_update_rejects_invalid_values(dashboard_env):
    async def runner():
        app = web_server.build_app(dashboard_env, watch_factory=FakeWatch)
        client, server = await _start_client(app)
        before = dashboard_env.config_file.read_text(encoding="utf-8")

        try:
            resp = await client.post(
                "/api/config",
                json={
                    "values": {
                        "TEAMS_WINDOW_KEYWORDS": [],
                        "POLL_INTERVAL_ACTIVE": 500,
                        "POLL_INTERVAL_INACTIVE": 30,
                        "STABILITY_CHECK_DELAY": 5,
                    }
                },
                headers=_trusted_headers(server),
            )
            assert resp.status == 400
            payload = await resp.json()
            assert payload["error"] == "At least one keyword is required"
            assert "POLL_INTERVAL_ACTIVE must be between 1 and 60" in payload["errors"]
            assert dashboard_env.config_file.read_text(encoding="utf-8") == before
        finally:
            await client.close()
            await server.close()

    asyncio.run(runner())


def test_config_update_raw_content(dashboard_env):
    async def runner():
        app = web_server.build_app(dashboard_env, watch_factory=FakeWatch)
        client, server = await _start_client(app)

        try:
            resp = await client.post(
                "/api/config",
                json={"content": "POLL_INTERVAL_ACTIVE=3\n"},
                headers=_trusted_headers(server),
            )
            assert resp.status == 200
            assert dashboard_env.config_file.read_text(encoding="utf-8") == "POLL_INTERVAL_ACTIVE=3\n"
        finally:
            await client.close()
            await server.close()

    asyncio.run(runner())


def test_config_update_requires_local_origin(dashboard_env):
    async def runner():
        app = web_server.build_app(dashboard_env, watch_factory=FakeWatch)
        client, server = await _start_client(app)

        try:
            resp = await client.post(
                "/api/config",
                json={"content": "rm -rf /\n"},
                headers={"Origin": "http://evil.example"},
            )
            assert resp.status == 403
            payload = await resp.json()
            assert payload["error"] == "Forbidden: local same-origin requests only"
            assert "rm -rf" not in dashboard_env.config_file.read_text(encoding="utf-8")
        finally:
            await client.close()
            await server.close()

    asyncio.run(runner())


def test_control_restart_unloads_then_loads(dashboard_env, launchctl_calls):
    calls, failures = launchctl_calls
    failures["unload"] = (1, "", "Could not find specified service")

    async def runner():
        app = web_server.build_app(dashboard_env, watch_factory=FakeWatch)
        client, server = await _start_client(app)

        try:
            resp = await client.post(
                "/api/control", json={"action": "restart"}, headers=_trusted_headers(server)
            )
            assert resp.status == 200
            assert (await resp.json()) == {"message": "Service restarted"}
        finally:
            await client.close()
            await server.close()

    asyncio.run(runner())

    plist = str(dashboard_env.plist_path)
    assert calls == [
        ["/bin/launchctl", "unload", plist],
        ["/bin/launchctl", "load", plist],
    ]


def test_control_reports_failures_and_bad_actions(dashboard_env, launchctl_calls):
    calls, failures = launchctl_calls
    failures["unload"] = (5, "", "Unload failed: 5: Input/output error")

    async def runner():
        app = web_server.build_app(dashboard_env, watch_factory=FakeWatch)
        client, server = await _start_client(app)

        try:
            resp = await client.post(
                "/api/control", json={"action": "stop"}, headers=_trusted_headers(server)
            )
            assert resp.status == 500
            assert (await resp.json())["error"] == "Unload failed: 5: Input/output error"

            resp = await client.post(
                "/api/control", json={"action": "reboot"}, headers=_trusted_headers(server)
            )
            assert resp.status == 400

            resp = await client.post("/api/control", json={"action": "stop"})
            assert resp.status == 403
        finally:
            await client.close()
            await server.close()

    asyncio.run(runner())

    assert len(calls) == 1


def test_recordings_listing(dashboard_env):
    recordings_dir = dashboard_env.config_file.parent.parent / "recordings"
    older = recordings_dir / "2024-01-01 Standup.m4a"
    newer = recordings_dir / "2024-01-02 Review.m4a"
    older.write_bytes(b"old")
    newer.write_bytes(b"newer")
    os.utime(older, (1_700_000_000, 1_700_000_000))
    os.utime(newer, (1_700_010_000, 1_700_010_000))
    (recordings_dir / "2024-01-01 Standup_summary.md").write_text("# Summary\n")
    (recordings_dir / "2024-01-02 Review_transcript.md").write_text("# Transcript\n")
    (recordings_dir / "notes.txt").write_text("ignored\n")

    async def runner():
        app = web_server.build_app(dashboard_env, watch_factory=FakeWatch)
        client, server = await _start_client(app)

        try:
            resp = await client.get("/api/recordings", headers=_trusted_headers(server))
            assert resp.status == 200
            return await resp.json()
        finally:
            await client.close()
            await server.close()

    payload = asyncio.run(runner())

    assert payload["exportFolder"] == str(recordings_dir)
    assert [item["name"] for item in payload["recordings"]] == [newer.name, older.name]
    review, standup = payload["recordings"]
    assert review["size"] == 5
    assert review["hasSummary"] is False
    assert review["hasTranscript"] is True
    assert standup["hasSummary"] is True
    assert standup["hasTranscript"] is False
    assert standup["modifiedAt"] == "2023-11-14T22:13:20.000Z"


def test_recording_file_serving(dashboard_env):
    recordings_dir = dashboard_env.config_file.parent.parent / "recordings"
    (recordings_dir / "meeting.m4a").write_bytes(b"\x00\x00\x00\x18ftypM4A ")
    (recordings_dir / "meeting_summary.md").write_text("# Notes\n", encoding="utf-8")

    async def runner():
        app = web_server.build_app(dashboard_env, watch_factory=FakeWatch)
        client, server = await _start_client(app)
        headers = _trusted_headers(server)

        try:
            resp = await client.get("/api/recordings/meeting.m4a", headers=headers)
            assert resp.status == 200
            assert resp.headers["Content-Type"] == "audio/mp4"
            assert resp.headers["Content-Disposition"] == 'inline; filename="meeting.m4a"'
            assert resp.headers["Cache-Control"] == "no-store"
            assert await resp.read() == b"\x00\x00\x00\x18ftypM4A "

            resp = await client.get("/api/recordings/meeting_summary.md", headers=headers)
            assert resp.status == 200
            assert resp.headers["Content-Type"].startswith("text/markdown")
            assert await resp.text() == "# Notes\n"

            resp = await client.get("/api/recordings/..secret.m4a", headers=headers)
            assert resp.status == 400
            assert (await resp.json())["error"] == "Invalid recording name"

            resp = await client.get("/api/recordings/notes.txt", headers=headers)
            assert resp.status == 400
            assert (await resp.json())["error"] == "Unsupported file type"

            resp = await client.get("/api/recordings/absent.m4a", headers=headers)
            assert resp.status == 404

            resp = await client.get("/api/recordings/meeting.m4a")
            assert resp.status == 403
        finally:
            await client.close()
            await server.close()

    asyncio.run(runner())


def test_health(dashboard_env):
    async def runner():
        app = web_server.build_app(dashboard_env, watch_factory=FakeWatch)
        client, server = await _start_client(app)

        try:
            resp = await client.get("/api/health")
            assert resp.status == 200
            payload = await resp.json()
            assert payload["status"] == "ok"
            assert payload["service_name"] == "teams_recorder_dashboard"
            assert payload["timestamp_utc"].endswith("Z")
        finally:
            await client.close()
            await server.close()

    asyncio.run(runner())
