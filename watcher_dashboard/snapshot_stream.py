"""Live snapshot notifications for dashboard subscribers.

Each subscriber gets its own :class:`SnapshotStreamSession`.  The session
watches the directories holding the status and log files, coalesces bursts
of changes into a single re-read, emits keep-alive heartbeats and tears all
of that down exactly once when the subscriber goes away.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Protocol

from watchdog.events import (
    EVENT_TYPE_CLOSED,
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from .status_snapshot import SnapshotOptions, SnapshotReader

__all__ = [
    "DEBOUNCE_SECONDS",
    "HEARTBEAT_SECONDS",
    "DirectoryWatch",
    "QueueSink",
    "SnapshotStreamSession",
    "StreamEvent",
    "WatchdogDirectoryWatch",
    "format_sse_frame",
    "watch_directory",
]

DEBOUNCE_SECONDS = 0.2
HEARTBEAT_SECONDS = 15.0

SNAPSHOT_EVENT = "snapshot"
STREAM_ERROR_EVENT = "stream-error"
# Name used on the SSE wire for STREAM_ERROR_EVENT.
SSE_ERROR_EVENT = "error"
HEARTBEAT_FRAME = b": heartbeat\n\n"

_CHANGE_EVENT_TYPES = frozenset(
    {
        EVENT_TYPE_CREATED,
        EVENT_TYPE_MODIFIED,
        EVENT_TYPE_MOVED,
        EVENT_TYPE_DELETED,
        EVENT_TYPE_CLOSED,
    }
)

WatchCallback = Callable[["str | None"], None]


@dataclass(frozen=True)
class StreamEvent:
    """One item delivered to a sink; heartbeats carry neither type nor payload."""

    type: str | None = None
    payload: Any = None

    @classmethod
    def snapshot(cls, payload: dict[str, Any]) -> "StreamEvent":
        return cls(SNAPSHOT_EVENT, payload)

    @classmethod
    def stream_error(cls, message: str) -> "StreamEvent":
        return cls(STREAM_ERROR_EVENT, {"message": message})

    @classmethod
    def heartbeat(cls) -> "StreamEvent":
        return cls()

    @property
    def is_heartbeat(self) -> bool:
        return self.type is None


def format_sse_frame(event: StreamEvent) -> bytes:
    if event.is_heartbeat:
        return HEARTBEAT_FRAME
    name = SSE_ERROR_EVENT if event.type == STREAM_ERROR_EVENT else event.type
    data_text = json.dumps(event.payload, separators=(",", ":"), ensure_ascii=False)
    buffer_parts = [f"event: {name}\n"]
    buffer_parts.extend(f"data: {line}\n" for line in data_text.splitlines() or [""])
    buffer_parts.append("\n")
    return "".join(buffer_parts).encode("utf-8")


class DirectoryWatch(Protocol):
    def close(self) -> None: ...


class _ChangeHandler(FileSystemEventHandler):
    def __init__(self, callback: WatchCallback) -> None:
        super().__init__()
        self._callback = callback

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type not in _CHANGE_EVENT_TYPES:
            return
        paths = [event.src_path, getattr(event, "dest_path", "")]
        for raw in paths:
            if not raw:
                continue
            name = os.path.basename(os.fsdecode(raw))
            self._callback(name or None)


class WatchdogDirectoryWatch:
    """Non-recursive watch on one directory backed by a watchdog observer."""

    def __init__(self, directory: Path, callback: WatchCallback) -> None:
        if not directory.is_dir():
            raise FileNotFoundError(f"Cannot watch missing directory: {directory}")
        self.directory = directory
        self._observer = Observer()
        self._observer.schedule(_ChangeHandler(callback), str(directory), recursive=False)
        self._observer.start()

    def close(self) -> None:
        self._observer.stop()
        self._observer.join(timeout=1.0)


def watch_directory(directory: Path, callback: WatchCallback) -> DirectoryWatch:
    return WatchdogDirectoryWatch(directory, callback)


class QueueSink:
    """asyncio queue sink; iterating it yields events until the sink is closed."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue()
        self.closed = False

    def send(self, event: StreamEvent) -> None:
        if self.closed:
            return
        self._queue.put_nowait(event)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._queue.put_nowait(None)

    async def get(self) -> StreamEvent | None:
        return await self._queue.get()

    def get_nowait(self) -> StreamEvent | None:
        return self._queue.get_nowait()

    def pending(self) -> int:
        return self._queue.qsize()

    async def __aiter__(self) -> AsyncIterator[StreamEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event


class SnapshotStreamSession:
    """Server-side state for one snapshot subscriber.

    ``idle -> watching -> closed``.  :meth:`close` is idempotent and always
    cancels the debounce timer, cancels the heartbeat timer, closes every
    registered watch and then closes the sink, in that order.
    """

    IDLE = "idle"
    WATCHING = "watching"
    CLOSED = "closed"

    def __init__(
        self,
        reader: SnapshotReader,
        options: SnapshotOptions,
        sink: Any,
        *,
        watch_factory: Callable[[Path, WatchCallback], DirectoryWatch] = watch_directory,
        debounce_seconds: float = DEBOUNCE_SECONDS,
        heartbeat_seconds: float = HEARTBEAT_SECONDS,
        logger: logging.Logger | None = None,
    ) -> None:
        if debounce_seconds < 0:
            raise ValueError("debounce_seconds must not be negative")
        if heartbeat_seconds <= 0:
            raise ValueError("heartbeat_seconds must be positive")
        self._reader = reader
        self._options = options
        self._sink = sink
        self._watch_factory = watch_factory
        self._debounce_seconds = float(debounce_seconds)
        self._heartbeat_seconds = float(heartbeat_seconds)
        self._logger = logger or logging.getLogger("watcher_dashboard.stream")
        self._names = frozenset(path.name for path in reader.watched_files)
        self._state = self.IDLE
        self._loop: asyncio.AbstractEventLoop | None = None
        self._watches: list[DirectoryWatch] = []
        self._debounce_handle: asyncio.TimerHandle | None = None
        self._heartbeat_handle: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def state(self) -> str:
        return self._state

    @property
    def closed(self) -> bool:
        return self._state == self.CLOSED

    @property
    def watch_count(self) -> int:
        return len(self._watches)

    async def __aenter__(self) -> "SnapshotStreamSession":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()

    async def start(self) -> None:
        if self._state != self.IDLE:
            return
        self._loop = asyncio.get_running_loop()
        self._state = self.WATCHING
        for path in self._reader.watched_files:
            self._register_watch(path)
        self._arm_heartbeat()
        await self._send_snapshot()

    def close(self) -> None:
        if self._state == self.CLOSED:
            return
        self._state = self.CLOSED

        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None
        if self._heartbeat_handle is not None:
            self._heartbeat_handle.cancel()
            self._heartbeat_handle = None

        watches, self._watches = self._watches, []
        for watch in watches:
            try:
                watch.close()
            except Exception as exc:  # pragma: no cover - platform quirks
                self._logger.debug("failed to close directory watch: %s", exc)

        try:
            self._sink.close()
        except Exception as exc:  # pragma: no cover - transport already gone
            self._logger.debug("failed to close snapshot sink: %s", exc)

    def notify_change(self, filename: str | None) -> None:
        """Handle a change in a watched directory (event loop thread only)."""
        if self._state != self.WATCHING:
            return
        if filename and filename not in self._names:
            return
        self._schedule_refresh()

    def _register_watch(self, path: Path) -> None:
        try:
            watch = self._watch_factory(path.parent, self._threadsafe_callback)
        except Exception as exc:
            self._logger.debug("unable to watch %s: %s", path.parent, exc)
            return
        self._watches.append(watch)

    def _threadsafe_callback(self, filename: str | None) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self.notify_change, filename)
        except RuntimeError:
            # Loop shut down between the check and the call.
            pass

    def _schedule_refresh(self) -> None:
        if self._state != self.WATCHING or self._debounce_handle is not None:
            return
        loop = self._running_loop()
        self._debounce_handle = loop.call_later(self._debounce_seconds, self._on_debounce)

    def _on_debounce(self) -> None:
        self._debounce_handle = None
        if self._state != self.WATCHING:
            return
        task = self._running_loop().create_task(self._send_snapshot())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _running_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            raise RuntimeError("snapshot stream session has not been started")
        return self._loop

    def _arm_heartbeat(self) -> None:
        loop = self._running_loop()
        self._heartbeat_handle = loop.call_later(self._heartbeat_seconds, self._on_heartbeat)

    def _on_heartbeat(self) -> None:
        self._heartbeat_handle = None
        if self._state != self.WATCHING:
            return
        self._deliver(StreamEvent.heartbeat())
        self._arm_heartbeat()

    async def _send_snapshot(self) -> None:
        try:
            snapshot = await asyncio.to_thread(self._reader.read, self._options)
        except Exception as exc:
            message = str(exc) or "Failed to read watcher snapshot"
            self._deliver(StreamEvent.stream_error(message))
            return
        self._deliver(StreamEvent.snapshot(snapshot.to_payload()))

    def _deliver(self, event: StreamEvent) -> None:
        if self._state != self.WATCHING:
            return
        self._sink.send(event)
