"""Consumer-side sync for the dashboard status feed.

Prefers the ``/api/status/stream`` SSE endpoint and degrades to polling
``/api/status`` after repeated transport failures.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable

import aiohttp

__all__ = [
    "ClientSync",
    "FAILURE_THRESHOLD",
    "LIVE_UPDATES_UNAVAILABLE",
    "POLLING",
    "POLL_INTERVAL_SECONDS",
    "STREAMING",
    "SseMessage",
    "SseParser",
    "SyncStateMachine",
]

STREAMING = "streaming"
POLLING = "polling"
FAILURE_THRESHOLD = 3
POLL_INTERVAL_SECONDS = 3.0
RECONNECT_DELAY_SECONDS = 3.0
LIVE_UPDATES_UNAVAILABLE = "Live updates unavailable; falling back to polling"


class SyncStateMachine:
    """Two-state streaming/polling machine driven by a bounded failure counter."""

    def __init__(self, *, stream_available: bool = True, failure_threshold: int = FAILURE_THRESHOLD) -> None:
        if failure_threshold <= 0:
            raise ValueError("failure_threshold must be positive")
        self.failure_threshold = failure_threshold
        self.mode = STREAMING if stream_available else POLLING
        self.reconnect_failures = 0

    def on_snapshot(self) -> None:
        if self.mode == STREAMING:
            self.reconnect_failures = 0

    def on_transport_error(self) -> bool:
        """Count one failure; return True when this one switched us to polling."""
        if self.mode != STREAMING:
            return False
        self.reconnect_failures += 1
        if self.reconnect_failures >= self.failure_threshold:
            self.mode = POLLING
            return True
        return False


@dataclass(frozen=True)
class SseMessage:
    event: str
    data: str


class SseParser:
    """Incremental ``text/event-stream`` parser; comment frames are dropped."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._event = ""
        self._data: list[str] = []

    def feed(self, chunk: bytes) -> list[SseMessage]:
        self._buffer += self._decoder.decode(chunk)
        messages: list[SseMessage] = []
        while True:
            newline = self._buffer.find("\n")
            if newline == -1:
                break
            line = self._buffer[:newline].rstrip("\r")
            self._buffer = self._buffer[newline + 1 :]
            message = self._feed_line(line)
            if message is not None:
                messages.append(message)
        return messages

    def _feed_line(self, line: str) -> SseMessage | None:
        if not line:
            if not self._data and not self._event:
                return None
            message = SseMessage(self._event or "message", "\n".join(self._data))
            self._event = ""
            self._data = []
            return message
        if line.startswith(":"):
            return None
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            self._event = value
        elif field == "data":
            self._data.append(value)
        return None


class ClientSync:
    """Keep ``current`` in sync with the dashboard, streaming when possible."""

    def __init__(
        self,
        base_url: str,
        *,
        on_snapshot: Callable[[dict[str, Any]], None] | None = None,
        on_error: Callable[[str], None] | None = None,
        on_notice: Callable[[str], None] | None = None,
        session: aiohttp.ClientSession | None = None,
        stream_available: bool = True,
        lines: int | None = None,
        max_bytes: int | None = None,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        reconnect_delay: float = RECONNECT_DELAY_SECONDS,
        failure_threshold: int = FAILURE_THRESHOLD,
        logger: logging.Logger | None = None,
    ) -> None:
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        self._base_url = base_url.rstrip("/")
        self._on_snapshot = on_snapshot
        self._on_error = on_error
        self._on_notice = on_notice
        self._session = session
        self._owns_session = session is None
        self._poll_interval = float(poll_interval)
        self._reconnect_delay = max(0.0, float(reconnect_delay))
        self._logger = logger or logging.getLogger("watcher_dashboard.client")
        self._params: dict[str, str] = {}
        if lines is not None:
            self._params["lines"] = str(lines)
        if max_bytes is not None:
            self._params["bytes"] = str(max_bytes)
        self.machine = SyncStateMachine(
            stream_available=stream_available, failure_threshold=failure_threshold
        )
        self.current: dict[str, Any] | None = None
        self.last_error: str | None = None
        self.notice: str | None = None
        self._task: asyncio.Task | None = None
        self._response: aiohttp.ClientResponse | None = None
        self._stopped = False

    @property
    def mode(self) -> str:
        return self.machine.mode

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self._stopped or self._task is not None:
            return
        self._ensure_session()
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run())

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        task = self._task
        self._task = None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        response = self._response
        self._response = None
        if response is not None:
            response.close()
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self._session

    async def _run(self) -> None:
        while self.machine.mode == STREAMING:
            await self._stream_once()
            if self.machine.mode == STREAMING:
                await asyncio.sleep(self._reconnect_delay)
        await self._poll_forever()

    async def _stream_once(self) -> None:
        session = self._ensure_session()
        url = f"{self._base_url}/api/status/stream"
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=10)
        try:
            async with session.get(
                url,
                params=self._params,
                headers={"Accept": "text/event-stream"},
                timeout=timeout,
            ) as response:
                if response.status != 200:
                    self._transport_error(f"stream responded with HTTP {response.status}")
                    return
                self._response = response
                parser = SseParser()
                async for chunk in response.content.iter_any():
                    for message in parser.feed(chunk):
                        self._dispatch(message)
            self._transport_error("stream closed by server")
        except asyncio.CancelledError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            self._transport_error(str(exc) or exc.__class__.__name__)
        finally:
            self._response = None

    def _dispatch(self, message: SseMessage) -> None:
        if message.event == "snapshot":
            try:
                payload = json.loads(message.data)
            except ValueError as exc:
                self._report_error(f"Malformed snapshot event: {exc}")
                return
            self.machine.on_snapshot()
            self._apply(payload)
        elif message.event == "error":
            try:
                body = json.loads(message.data)
            except ValueError:
                body = {}
            text = body.get("message") if isinstance(body, dict) else None
            self._report_error(text or "Failed to read watcher snapshot")

    def _transport_error(self, reason: str) -> None:
        fell_back = self.machine.on_transport_error()
        self._logger.debug(
            "status stream error (%s/%s): %s",
            self.machine.reconnect_failures,
            self.machine.failure_threshold,
            reason,
        )
        if fell_back:
            self._logger.info("status stream unavailable; polling every %.1fs", self._poll_interval)
            self.notice = LIVE_UPDATES_UNAVAILABLE
            if self._on_notice is not None:
                self._on_notice(LIVE_UPDATES_UNAVAILABLE)

    async def _poll_forever(self) -> None:
        while True:
            await self.poll_once()
            await asyncio.sleep(self._poll_interval)

    async def poll_once(self) -> dict[str, Any] | None:
        """Pull one snapshot from ``/api/status``; failures are reported, not raised."""
        session = self._ensure_session()
        url = f"{self._base_url}/api/status"
        try:
            async with session.get(url, params=self._params) as response:
                response.raise_for_status()
                payload = await response.json()
        except asyncio.CancelledError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            self._report_error(f"Failed to fetch status: {exc}")
            return None
        self._apply(payload)
        return payload

    def _apply(self, payload: dict[str, Any]) -> None:
        self.current = payload
        if self._on_snapshot is not None:
            self._on_snapshot(payload)

    def _report_error(self, message: str) -> None:
        self.last_error = message
        if self._on_error is not None:
            self._on_error(message)
