from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from .config import DashboardSettings
from .shell_config import ConfigPersistenceError, parse_config, read_raw_config

__all__ = [
    "ALLOWED_EXTENSIONS",
    "AUDIO_EXTENSION",
    "InvalidRecordingName",
    "RecordingEntry",
    "content_type_for",
    "list_recordings",
    "resolve_export_folder",
    "resolve_recording_file",
]

AUDIO_EXTENSION = ".m4a"
MARKDOWN_EXTENSION = ".md"
ALLOWED_EXTENSIONS: frozenset[str] = frozenset({AUDIO_EXTENSION, MARKDOWN_EXTENSION})

_CONTENT_TYPES = {
    AUDIO_EXTENSION: "audio/mp4",
    MARKDOWN_EXTENSION: "text/markdown; charset=utf-8",
}


class InvalidRecordingName(ValueError):
    """Requested file name is unsafe or of an unsupported type."""


@dataclass(slots=True)
class RecordingEntry:
    """A single exported meeting recording."""

    name: str
    size: int
    modified: float
    has_summary: bool = False
    has_transcript: bool = False

    @property
    def modified_iso(self) -> str:
        stamp = datetime.fromtimestamp(self.modified, tz=timezone.utc)
        return stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "size": self.size,
            "modifiedAt": self.modified_iso,
            "hasSummary": self.has_summary,
            "hasTranscript": self.has_transcript,
        }


def resolve_export_folder(settings: DashboardSettings) -> Path:
    """Use ``EXPORT_FOLDER`` from the watcher config when set, else the default."""
    try:
        content = read_raw_config(settings.config_file)
    except ConfigPersistenceError:
        return settings.default_export_folder
    folder = parse_config(content).export_folder.strip()
    if folder:
        return Path(folder).expanduser()
    return settings.default_export_folder


def list_recordings(folder: Path) -> list[RecordingEntry]:
    """List ``.m4a`` files in ``folder`` newest first, flagging companion notes.

    Raises ``OSError`` when the folder cannot be listed.
    """
    markdown_names: set[str] = set()
    recordings: list[RecordingEntry] = []
    for entry in folder.iterdir():
        if not entry.is_file():
            continue
        suffix = entry.suffix.lower()
        if suffix == MARKDOWN_EXTENSION:
            markdown_names.add(entry.name)
            continue
        if suffix != AUDIO_EXTENSION:
            continue
        stat = entry.stat()
        recordings.append(RecordingEntry(name=entry.name, size=stat.st_size, modified=stat.st_mtime))

    for item in recordings:
        base = item.name[: -len(AUDIO_EXTENSION)]
        item.has_summary = f"{base}_summary.md" in markdown_names or f"{base}.md" in markdown_names
        item.has_transcript = f"{base}_transcript.md" in markdown_names

    recordings.sort(key=lambda item: item.modified, reverse=True)
    return recordings


def content_type_for(name: str) -> str:
    return _CONTENT_TYPES.get(Path(name).suffix.lower(), "application/octet-stream")


def resolve_recording_file(folder: Path, name: str) -> Path:
    """Map a client supplied file name to a path inside ``folder``.

    The file is not required to exist; callers decide how to report that.
    """
    if "/" in name or "\\" in name or ".." in name:
        raise InvalidRecordingName("Invalid recording name")
    if Path(name).suffix.lower() not in ALLOWED_EXTENSIONS:
        raise InvalidRecordingName("Unsupported file type")
    return folder / name
