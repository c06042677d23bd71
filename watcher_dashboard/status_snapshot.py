"""Point-in-time reads of the watcher's status file and log tail."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

__all__ = [
    "DEFAULT_MAX_LOG_BYTES",
    "DEFAULT_MAX_LOG_LINES",
    "MAX_LOG_BYTES_LIMIT",
    "MAX_LOG_LINES_LIMIT",
    "MIN_LOG_BYTES",
    "MIN_LOG_LINES",
    "Snapshot",
    "SnapshotOptions",
    "SnapshotReader",
    "get_snapshot_options",
    "parse_status_content",
    "read_log_tail",
    "read_snapshot",
    "read_status",
]

DEFAULT_MAX_LOG_LINES = 50
DEFAULT_MAX_LOG_BYTES = 64 * 1024
MIN_LOG_LINES = 10
MIN_LOG_BYTES = 8 * 1024
MAX_LOG_LINES_LIMIT = 500
MAX_LOG_BYTES_LIMIT = 1024 * 1024

UNKNOWN_STATE = "unknown"

_LEADING_INT_RE = re.compile(r"^\s*[+-]?\d+")


@dataclass(frozen=True)
class SnapshotOptions:
    max_lines: int = DEFAULT_MAX_LOG_LINES
    max_bytes: int = DEFAULT_MAX_LOG_BYTES


@dataclass(frozen=True)
class Snapshot:
    """Watcher status plus the most recent log lines (oldest first)."""

    status: dict[str, str] = field(default_factory=lambda: {"state": UNKNOWN_STATE})
    logs: list[str] = field(default_factory=list)
    meta: SnapshotOptions = field(default_factory=SnapshotOptions)

    def to_payload(self) -> dict[str, Any]:
        return {
            "status": dict(self.status),
            "logs": list(self.logs),
            "meta": {"lines": self.meta.max_lines, "bytes": self.meta.max_bytes},
        }


def parse_status_content(raw: str) -> dict[str, str]:
    """Parse ``key=value`` lines; only the first ``=`` separates key and value."""
    status = {"state": UNKNOWN_STATE}
    for line in raw.split("\n"):
        key, sep, value = line.partition("=")
        if not sep:
            continue
        key = key.strip()
        if not key:
            continue
        status[key] = value.strip()
    return status


def read_status(path: str | os.PathLike[str]) -> dict[str, str]:
    try:
        raw = Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        # Status file might not exist if the watcher never ran.
        return {"state": UNKNOWN_STATE}
    return parse_status_content(raw)


def read_log_tail(path: str | os.PathLike[str], max_lines: int, max_bytes: int) -> list[str]:
    """Return up to ``max_lines`` trailing lines using one bounded positioned read."""
    try:
        with open(path, "rb") as handle:
            size = os.fstat(handle.fileno()).st_size
            if size == 0:
                return []
            to_read = min(size, max_bytes)
            start = size - to_read
            data = os.pread(handle.fileno(), to_read, start)
    except OSError:
        return []

    chunk = data.decode("utf-8", errors="replace")
    if start > 0:
        newline = chunk.find("\n")
        if newline != -1:
            chunk = chunk[newline + 1 :]
    lines = [line for line in chunk.split("\n") if line]
    return lines[-max_lines:] if max_lines > 0 else []


def _parse_bounded_int(value: str | None, fallback: int, minimum: int, maximum: int) -> int:
    if not value:
        return fallback
    match = _LEADING_INT_RE.match(value)
    if match is None:
        return fallback
    return max(minimum, min(maximum, int(match.group(0), 10)))


def get_snapshot_options(query: Mapping[str, str] | None = None) -> SnapshotOptions:
    """Clamp the optional ``lines``/``bytes`` query values into their allowed ranges."""
    query = query or {}
    return SnapshotOptions(
        max_lines=_parse_bounded_int(
            query.get("lines"), DEFAULT_MAX_LOG_LINES, MIN_LOG_LINES, MAX_LOG_LINES_LIMIT
        ),
        max_bytes=_parse_bounded_int(
            query.get("bytes"), DEFAULT_MAX_LOG_BYTES, MIN_LOG_BYTES, MAX_LOG_BYTES_LIMIT
        ),
    )


def read_snapshot(
    options: SnapshotOptions,
    *,
    status_file: str | os.PathLike[str],
    log_file: str | os.PathLike[str],
) -> Snapshot:
    status = read_status(status_file)
    logs = read_log_tail(log_file, options.max_lines, options.max_bytes)
    return Snapshot(status=status, logs=logs, meta=options)


class SnapshotReader:
    """Binds the monitored file locations so callers only pass options."""

    def __init__(self, status_file: str | os.PathLike[str], log_file: str | os.PathLike[str]) -> None:
        self.status_file = Path(status_file)
        self.log_file = Path(log_file)

    @property
    def watched_files(self) -> tuple[Path, Path]:
        return self.status_file, self.log_file

    def read(self, options: SnapshotOptions) -> Snapshot:
        return read_snapshot(options, status_file=self.status_file, log_file=self.log_file)
