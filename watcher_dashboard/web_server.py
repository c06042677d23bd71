#!/usr/bin/env python3
"""
aiohttp server for the meeting-recording watcher dashboard.

Behavior:
- Status requests read the watcher's status file and a bounded tail of its
  log on every call; nothing is cached between requests.
- Each stream subscriber owns one snapshot session that watches the status
  and log directories and pushes a fresh snapshot after changes settle.
- Config edits are merged into the watcher's shell config in place, keeping
  comments and unknown lines.
- Routes that change state or serve recordings only answer same-origin
  loopback requests.

Endpoints:
  GET  /api/status            -> JSON snapshot {status, logs, meta}
  GET  /api/status/stream     -> SSE snapshot stream (+ heartbeats)
  GET  /api/config            -> Raw config text and parsed values
  POST /api/config            -> Save raw text or validated values
  POST /api/control           -> start/stop/restart the watcher LaunchAgent
  GET  /api/recordings        -> JSON listing of exported recordings
  GET  /api/recordings/<name> -> Serve a recording or its notes
  GET  /api/health            -> Health document
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
from datetime import datetime, timezone
from typing import Any, Callable

from aiohttp import web
from aiohttp.web import AppKey

from . import __version__
from .config import DashboardSettings, get_settings
from .recordings import (
    InvalidRecordingName,
    content_type_for,
    list_recordings,
    resolve_export_folder,
    resolve_recording_file,
)
from .request_guard import require_trusted_local_request
from .service_control import SERVICE_ACTIONS, ServiceControlError, ServiceController
from .shell_config import (
    ConfigPersistenceError,
    load_watcher_config,
    parse_config,
    read_raw_config,
    save_raw_config,
    save_watcher_config,
    validate_config_payload,
)
from .snapshot_stream import (
    QueueSink,
    SnapshotStreamSession,
    format_sse_frame,
    watch_directory,
)
from .status_snapshot import SnapshotReader, get_snapshot_options

SERVICE_NAME = "teams_recorder_dashboard"

SSE_HEADERS = {
    "Content-Type": "text/event-stream; charset=utf-8",
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

SETTINGS_KEY: AppKey[DashboardSettings] = web.AppKey("dashboard_settings", DashboardSettings)
READER_KEY: AppKey[SnapshotReader] = web.AppKey("snapshot_reader", SnapshotReader)
WATCH_FACTORY_KEY: AppKey[Callable[..., Any]] = web.AppKey("watch_factory", object)
STREAM_SESSIONS_KEY: AppKey[set[SnapshotStreamSession]] = web.AppKey("stream_sessions", set)
SERVICE_CONTROLLER_KEY: AppKey[ServiceController] = web.AppKey(
    "service_controller", ServiceController
)


def _quiet_noisy_dependencies(level: int = logging.WARNING) -> None:
    """Tone down overly chatty third-party loggers."""

    for name in ("watchdog", "watchdog.observers", "watchdog.observers.inotify_buffer"):
        logging.getLogger(name).setLevel(level)


def health_payload() -> dict[str, Any]:
    return {
        "status": "ok",
        "service_name": SERVICE_NAME,
        "version": __version__,
        "timestamp_utc": datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace(
            "+00:00", "Z"
        ),
        "dependencies": [
            {"name": "watcher_status_snapshot", "status": "ok", "latency_ms": 1},
        ],
    }


def _forbidden_response(request: web.Request) -> web.Response | None:
    error = require_trusted_local_request(request.headers)
    if error is None:
        return None
    return web.json_response({"error": error}, status=403)


def _config_response_payload(settings: DashboardSettings) -> dict[str, Any]:
    content = read_raw_config(settings.config_file, missing_ok=True)
    return {
        "content": content,
        "values": parse_config(content).to_payload(),
        "config_path": str(settings.config_file),
    }


def build_app(
    settings: DashboardSettings | None = None,
    *,
    watch_factory: Callable[..., Any] = watch_directory,
    service_controller: ServiceController | None = None,
) -> web.Application:
    log = logging.getLogger("watcher_dashboard")
    if settings is None:
        settings = get_settings()

    app = web.Application()
    app[SETTINGS_KEY] = settings
    app[READER_KEY] = SnapshotReader(settings.status_file, settings.log_file)
    app[WATCH_FACTORY_KEY] = watch_factory
    app[STREAM_SESSIONS_KEY] = set()
    if service_controller is None:
        service_controller = ServiceController(settings.plist_path, launchctl=settings.launchctl)
    app[SERVICE_CONTROLLER_KEY] = service_controller

    async def status(request: web.Request) -> web.Response:
        options = get_snapshot_options(request.query)
        reader = request.app[READER_KEY]
        snapshot = await asyncio.to_thread(reader.read, options)
        return web.json_response(snapshot.to_payload(), headers={"Cache-Control": "no-store"})

    async def status_stream(request: web.Request) -> web.StreamResponse:
        options = get_snapshot_options(request.query)
        sink = QueueSink()
        session = SnapshotStreamSession(
            request.app[READER_KEY],
            options,
            sink,
            watch_factory=request.app[WATCH_FACTORY_KEY],
        )
        sessions = request.app[STREAM_SESSIONS_KEY]
        sessions.add(session)

        response = web.StreamResponse(status=200, headers=SSE_HEADERS)
        try:
            await response.prepare(request)
            await session.start()
            async for event in sink:
                try:
                    await response.write(format_sse_frame(event))
                except ConnectionResetError:
                    break
                except asyncio.CancelledError:
                    raise
                except Exception as exc:  # pragma: no cover - transport quirks
                    log.debug("status SSE write failed: %s", exc)
                    break
        finally:
            session.close()
            sessions.discard(session)
            with contextlib.suppress(Exception):
                await response.write_eof()

        return response

    async def config_get(request: web.Request) -> web.Response:
        settings = request.app[SETTINGS_KEY]
        try:
            payload = await asyncio.to_thread(_config_response_payload, settings)
        except ConfigPersistenceError as exc:
            log.warning("Unable to read watcher config: %s", exc)
            return web.json_response({"error": "Failed to read config"}, status=500)
        return web.json_response(payload)

    async def config_update(request: web.Request) -> web.Response:
        forbidden = _forbidden_response(request)
        if forbidden is not None:
            return forbidden

        try:
            data = await request.json()
        except Exception as exc:
            message = f"Invalid JSON payload: {exc}"
            return web.json_response({"error": message}, status=400)

        settings = request.app[SETTINGS_KEY]
        if isinstance(data, dict) and "values" in data:
            values, errors = validate_config_payload(data.get("values"))
            if errors:
                return web.json_response({"error": errors[0], "errors": errors}, status=400)
            action = lambda: save_watcher_config(settings.config_file, values)  # noqa: E731
        elif isinstance(data, dict) and isinstance(data.get("content"), str):
            content = data["content"]
            action = lambda: save_raw_config(settings.config_file, content)  # noqa: E731
        else:
            message = "Expected a JSON object with 'content' or 'values'"
            return web.json_response({"error": message, "errors": [message]}, status=400)

        try:
            await asyncio.to_thread(action)
            payload = await asyncio.to_thread(_config_response_payload, settings)
        except ConfigPersistenceError as exc:
            log.warning("Unable to persist watcher config: %s", exc)
            return web.json_response({"error": f"Failed to save config: {exc}"}, status=500)
        except Exception as exc:  # pragma: no cover - defensive logging
            log.exception("Unexpected watcher config failure: %s", exc)
            return web.json_response(
                {"error": "Unexpected error while saving config"}, status=500
            )

        payload["message"] = "Saved"
        return web.json_response(payload)

    async def control(request: web.Request) -> web.Response:
        forbidden = _forbidden_response(request)
        if forbidden is not None:
            return forbidden

        try:
            data = await request.json()
        except Exception as exc:
            return web.json_response({"error": f"Invalid JSON payload: {exc}"}, status=400)

        action = data.get("action") if isinstance(data, dict) else None
        if action not in SERVICE_ACTIONS:
            allowed = ", ".join(SERVICE_ACTIONS)
            return web.json_response(
                {"error": f"action must be one of: {allowed}"}, status=400
            )

        controller = request.app[SERVICE_CONTROLLER_KEY]
        try:
            message = await controller.perform(action)
        except ServiceControlError as exc:
            log.warning("launchctl %s failed: %s", action, exc)
            return web.json_response({"error": str(exc)}, status=500)
        return web.json_response({"message": message})

    async def recordings_list(request: web.Request) -> web.Response:
        forbidden = _forbidden_response(request)
        if forbidden is not None:
            return forbidden

        settings = request.app[SETTINGS_KEY]
        folder = await asyncio.to_thread(resolve_export_folder, settings)
        try:
            entries = await asyncio.to_thread(list_recordings, folder)
        except OSError as exc:
            message = exc.strerror or str(exc) or "Failed to list recordings"
            return web.json_response({"error": message}, status=500)
        return web.json_response(
            {
                "exportFolder": str(folder),
                "recordings": [entry.to_dict() for entry in entries],
            }
        )

    async def recordings_file(request: web.Request) -> web.StreamResponse:
        forbidden = _forbidden_response(request)
        if forbidden is not None:
            return forbidden

        name = request.match_info.get("name", "")
        settings = request.app[SETTINGS_KEY]
        folder = await asyncio.to_thread(resolve_export_folder, settings)
        try:
            path = resolve_recording_file(folder, name)
        except InvalidRecordingName as exc:
            return web.json_response({"error": str(exc)}, status=400)

        if not path.is_file():
            return web.json_response({"error": "Recording not found"}, status=404)

        return web.FileResponse(
            path,
            headers={
                "Content-Type": content_type_for(name),
                "Content-Disposition": f'inline; filename="{name}"',
                "Cache-Control": "no-store",
            },
        )

    async def health(_: web.Request) -> web.Response:
        return web.json_response(health_payload())

    async def _close_stream_sessions(app: web.Application) -> None:
        sessions = list(app[STREAM_SESSIONS_KEY])
        for session in sessions:
            session.close()
        app[STREAM_SESSIONS_KEY].clear()
        if sessions:
            log.info("Closed %d status stream session(s)", len(sessions))

    app.router.add_get("/api/status", status)
    app.router.add_get("/api/status/stream", status_stream)
    app.router.add_get("/api/config", config_get)
    app.router.add_post("/api/config", config_update)
    app.router.add_post("/api/control", control)
    app.router.add_get("/api/recordings", recordings_list)
    app.router.add_get("/api/recordings/{name}", recordings_file)
    app.router.add_get("/api/health", health)
    app.on_shutdown.append(_close_stream_sessions)

    return app


def cli_main():
    parser = argparse.ArgumentParser(description="Meeting-recording watcher dashboard.")
    parser.add_argument("--host", help="Override bind host (defaults to config).")
    parser.add_argument(
        "--port",
        type=int,
        help="Override bind port (defaults to config).",
    )
    parser.add_argument("--access-log", action="store_true", help="Enable aiohttp access logs.")
    parser.add_argument("--log-level", default="INFO", help="Python logging level (default: INFO).")
    args = parser.parse_args()

    level = getattr(logging, args.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    if level > logging.DEBUG:
        _quiet_noisy_dependencies()
    log = logging.getLogger("watcher_dashboard")

    settings = get_settings()
    bind_host = args.host if args.host else settings.host
    bind_port = args.port if args.port else settings.port
    log.info(
        "Starting watcher dashboard on %s:%s (access_log=%s)",
        bind_host,
        bind_port,
        "on" if args.access_log else "off",
    )
    try:
        current = load_watcher_config(settings.config_file)
    except ConfigPersistenceError as exc:
        log.warning("Watcher config %s is not readable: %s", settings.config_file, exc)
    else:
        log.info("Watcher config %s (export folder %r)", settings.config_file, current.export_folder)

    web.run_app(
        build_app(settings),
        host=bind_host,
        port=bind_port,
        access_log=logging.getLogger("aiohttp.access") if args.access_log else None,
        print=None,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(cli_main())
