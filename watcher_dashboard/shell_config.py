"""Lossless reader/writer for the watcher's shell-style ``config.sh``.

The file is a sequence of ``KEY=value`` assignments, a multi-line
``TEAMS_WINDOW_KEYWORDS=( ... )`` array, comments and blank lines.  Parsing
extracts the five settings the dashboard edits; updating rewrites only the
lines that carry those settings and leaves everything else untouched.
"""

from __future__ import annotations

import os
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Sequence

__all__ = [
    "ARRAY_KEY",
    "ConfigPersistenceError",
    "ConfigValues",
    "DEFAULT_CONFIG",
    "SCALAR_KEYS",
    "decode_quoted",
    "encode_quoted",
    "load_watcher_config",
    "parse_config",
    "read_raw_config",
    "save_raw_config",
    "save_watcher_config",
    "split_value_and_comment",
    "update_config",
    "validate_config_payload",
]

ARRAY_KEY = "TEAMS_WINDOW_KEYWORDS"
NUMBER_KEYS = ("POLL_INTERVAL_ACTIVE", "POLL_INTERVAL_INACTIVE", "STABILITY_CHECK_DELAY")
STRING_KEYS = ("EXPORT_FOLDER",)
SCALAR_KEYS = NUMBER_KEYS + STRING_KEYS

# Inclusive bounds for the integer settings.
NUMBER_RANGES: dict[str, tuple[int, int]] = {
    "POLL_INTERVAL_ACTIVE": (1, 60),
    "POLL_INTERVAL_INACTIVE": (10, 300),
    "STABILITY_CHECK_DELAY": (1, 20),
}

_ARRAY_START_RE = re.compile(r"^\s*" + ARRAY_KEY + r"\s*=\s*\(")
_ARRAY_END_RE = re.compile(r"^\s*\)")
_ASSIGNMENT_RE = re.compile(r"^(\s*)([A-Z_][A-Z0-9_]*)\s*=(.*)$")
_QUOTED_TOKEN_RE = re.compile(r'"((?:\\.|[^"\\])*)"')
_UNESCAPE_RE = re.compile(r'\\([\\`"$])')
_ESCAPE_RE = re.compile(r'([\\`"$])')
_LEADING_INT_RE = re.compile(r"^[+-]?\d+")


class ConfigPersistenceError(Exception):
    """Raised when the watcher configuration cannot be read or written."""


@dataclass(frozen=True)
class ConfigValues:
    """The settings the dashboard exposes from ``config.sh``."""

    window_keywords: tuple[str, ...] = ("Call", "Meeting")
    poll_interval_active: int = 10
    poll_interval_inactive: int = 30
    stability_check_delay: int = 5
    export_folder: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "window_keywords", tuple(self.window_keywords))

    def to_payload(self) -> dict[str, Any]:
        return {
            ARRAY_KEY: list(self.window_keywords),
            "POLL_INTERVAL_ACTIVE": self.poll_interval_active,
            "POLL_INTERVAL_INACTIVE": self.poll_interval_inactive,
            "STABILITY_CHECK_DELAY": self.stability_check_delay,
            "EXPORT_FOLDER": self.export_folder,
        }

    def rendered_scalars(self) -> dict[str, str]:
        return {
            "POLL_INTERVAL_ACTIVE": str(self.poll_interval_active),
            "POLL_INTERVAL_INACTIVE": str(self.poll_interval_inactive),
            "STABILITY_CHECK_DELAY": str(self.stability_check_delay),
            "EXPORT_FOLDER": encode_quoted(self.export_folder or ""),
        }


DEFAULT_CONFIG = ConfigValues()

_FIELD_FOR_KEY = {
    "POLL_INTERVAL_ACTIVE": "poll_interval_active",
    "POLL_INTERVAL_INACTIVE": "poll_interval_inactive",
    "STABILITY_CHECK_DELAY": "stability_check_delay",
    "EXPORT_FOLDER": "export_folder",
}


def encode_quoted(value: str) -> str:
    """Return ``value`` as a double-quoted shell string."""
    return '"' + _ESCAPE_RE.sub(r"\\\1", value) + '"'


def _unescape(inner: str) -> str:
    return _UNESCAPE_RE.sub(r"\1", inner)


def decode_quoted(value: str) -> str:
    """Undo :func:`encode_quoted`; values that are not double-quoted are returned trimmed."""
    if len(value) < 2 or value[0] != '"' or value[-1] != '"':
        return value.strip()
    return _unescape(value[1:-1])


def split_value_and_comment(segment: str) -> tuple[str, str]:
    """Split the right-hand side of an assignment into ``(value, comment)``.

    ``#`` only starts a comment outside single/double quotes and when it is
    not escaped with a backslash.  Both parts come back trimmed; the comment
    keeps its leading ``#``.
    """
    in_single = False
    in_double = False
    escaped = False
    for index, char in enumerate(segment):
        if escaped:
            escaped = False
            continue
        if char == "\\":
            escaped = True
            continue
        if char == "'" and not in_double:
            in_single = not in_single
            continue
        if char == '"' and not in_single:
            in_double = not in_double
            continue
        if char == "#" and not in_single and not in_double:
            return segment[:index].strip(), segment[index:].strip()
    return segment.strip(), ""


def _split_lines(text: str) -> list[str]:
    return text.split("\n")


def _strip_cr(line: str) -> tuple[str, str]:
    if line.endswith("\r"):
        return line[:-1], "\r"
    return line, ""


def _array_opening(line: str) -> str:
    """Return what follows ``(`` on the array start line."""
    match = _ARRAY_START_RE.match(line)
    if match is None:
        raise ValueError(f"not a keyword array start line: {line!r}")
    return line[match.end() :]


def _closes_inline(opening: str) -> bool:
    code, _comment = split_value_and_comment(opening)
    return ")" in _QUOTED_TOKEN_RE.sub("", code)


def _find_array_block(lines: Sequence[str]) -> tuple[int, int] | None:
    """Locate the keyword array as ``(start, end)`` line indexes, inclusive.

    A single-line array, or one whose closing ``)`` line never appears, is
    reported as ``(start, start)``.
    """
    for start, line in enumerate(lines):
        if _ARRAY_START_RE.match(line):
            break
    else:
        return None
    if _closes_inline(_array_opening(lines[start])):
        return start, start
    for end in range(start + 1, len(lines)):
        if _ARRAY_END_RE.match(lines[end]):
            return start, end
    return start, start


def _parse_int(text: str) -> int | None:
    match = _LEADING_INT_RE.match(text.strip())
    if match is None:
        return None
    return int(match.group(0), 10)


def _parse_keywords(lines: Sequence[str]) -> list[str]:
    block = _find_array_block(lines)
    if block is None:
        return []
    start, end = block
    opening = _array_opening(lines[start])
    if _closes_inline(opening):
        # ("a" "b") on one line; stop at the first unquoted ")"
        opening = opening[: _inline_close_index(opening)]
    elif end == start:
        # Unterminated block: the body runs to the end of the document
        end = len(lines)
    keywords: list[str] = []
    for line in [opening, *lines[start + 1 : end]]:
        for match in _QUOTED_TOKEN_RE.finditer(line):
            keywords.append(_unescape(match.group(1)))
    return keywords


def _inline_close_index(opening: str) -> int:
    position = 0
    for match in _QUOTED_TOKEN_RE.finditer(opening):
        close = opening.find(")", position, match.start())
        if close != -1:
            return close
        position = match.end()
    close = opening.find(")", position)
    return close if close != -1 else len(opening)


def parse_config(text: str) -> ConfigValues:
    """Extract :class:`ConfigValues` from ``config.sh`` text.

    Missing or malformed settings fall back to their defaults individually.
    """
    lines = _split_lines(text)
    scalars: dict[str, Any] = {}
    for raw_line in lines:
        line, _ = _strip_cr(raw_line)
        match = _ASSIGNMENT_RE.match(line)
        if match is None:
            continue
        key = match.group(2)
        value, _comment = split_value_and_comment(match.group(3))
        if key in NUMBER_KEYS:
            number = _parse_int(value)
            if number is not None:
                scalars[_FIELD_FOR_KEY[key]] = number
        elif key in STRING_KEYS:
            scalars[_FIELD_FOR_KEY[key]] = decode_quoted(value)

    keywords = _parse_keywords([_strip_cr(line)[0] for line in lines])
    if keywords:
        scalars["window_keywords"] = tuple(keywords)
    return ConfigValues(**scalars)


def _render_array_block(keywords: Sequence[str], indent: str = "", eol: str = "") -> list[str]:
    block = [f"{indent}{ARRAY_KEY}=({eol}"]
    block.extend(f"{indent}  {encode_quoted(keyword)}{eol}" for keyword in keywords)
    block.append(f"{indent}){eol}")
    return block


def update_config(text: str, values: ConfigValues) -> str:
    """Write ``values`` into ``text`` and return the new document.

    Lines that do not carry one of the five settings are kept byte for byte.
    Settings that are missing from ``text`` are appended at the end.
    """
    lines = _split_lines(text)
    handled: set[str] = set()

    block = _find_array_block([_strip_cr(line)[0] for line in lines])
    if block is not None:
        start, end = block
        start_line, eol = _strip_cr(lines[start])
        indent = start_line[: len(start_line) - len(start_line.lstrip())]
        lines[start : end + 1] = _render_array_block(values.window_keywords, indent, eol)
        handled.add(ARRAY_KEY)

    rendered = values.rendered_scalars()
    for index, raw_line in enumerate(lines):
        line, eol = _strip_cr(raw_line)
        match = _ASSIGNMENT_RE.match(line)
        if match is None:
            continue
        indent, key, rest = match.groups()
        if key not in rendered:
            continue
        _value, comment = split_value_and_comment(rest)
        suffix = f" {comment}" if comment else ""
        lines[index] = f"{indent}{key}={rendered[key]}{suffix}{eol}"
        handled.add(key)

    appended: list[str] = []
    if ARRAY_KEY not in handled:
        appended.extend(_render_array_block(values.window_keywords))
    for key in SCALAR_KEYS:
        if key not in handled:
            appended.append(f"{key}={rendered[key]}")

    if appended:
        if lines and lines[-1] == "":
            lines[-1:-1] = appended
        else:
            lines.extend(appended)
    return "\n".join(lines)


def _has_line_break(value: str) -> bool:
    return "\n" in value or "\r" in value


def validate_config_payload(payload: Any) -> tuple[ConfigValues | None, list[str]]:
    """Validate a structured values payload keyed by the ``config.sh`` names.

    Returns ``(values, [])`` on success or ``(None, errors)`` listing every
    violated constraint.
    """
    if not isinstance(payload, Mapping):
        return None, ["values must be a JSON object"]

    errors: list[str] = []
    fields: dict[str, Any] = {}

    keywords = payload.get(ARRAY_KEY)
    if not isinstance(keywords, list) or not all(isinstance(item, str) for item in keywords):
        errors.append(f"{ARRAY_KEY} must be a list of strings")
    elif not keywords:
        errors.append("At least one keyword is required")
    elif any(_has_line_break(item) for item in keywords):
        errors.append(f"{ARRAY_KEY} entries must not contain line breaks")
    else:
        fields["window_keywords"] = tuple(keywords)

    for key in NUMBER_KEYS:
        low, high = NUMBER_RANGES[key]
        raw = payload.get(key)
        if isinstance(raw, bool) or not isinstance(raw, (int, float)):
            errors.append(f"{key} must be a number")
            continue
        if isinstance(raw, float) and not raw.is_integer():
            errors.append(f"{key} must be an integer")
            continue
        if not low <= raw <= high:
            errors.append(f"{key} must be between {low} and {high}")
            continue
        fields[_FIELD_FOR_KEY[key]] = int(raw)

    folder = payload.get("EXPORT_FOLDER")
    if folder is None:
        fields["export_folder"] = ""
    elif not isinstance(folder, str):
        errors.append("EXPORT_FOLDER must be a string")
    elif _has_line_break(folder):
        errors.append("EXPORT_FOLDER must not contain line breaks")
    else:
        fields["export_folder"] = folder

    if errors:
        return None, errors
    return ConfigValues(**fields), []


def read_raw_config(path: str | os.PathLike[str], *, missing_ok: bool = False) -> str:
    """Return the config text; with ``missing_ok`` an absent file reads as ``""``."""
    try:
        return Path(path).read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        if missing_ok:
            return ""
        raise ConfigPersistenceError(f"Failed to read config: {exc}") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigPersistenceError(f"Failed to read config: {exc}") from exc


def load_watcher_config(path: str | os.PathLike[str]) -> ConfigValues:
    """Parse the config file at ``path``; a missing file yields the defaults."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except FileNotFoundError:
        return DEFAULT_CONFIG
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigPersistenceError(f"Failed to read config: {exc}") from exc
    return parse_config(text)


def _write_atomic(target: Path, content: str) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
            handle.write(content)
        if target.exists():
            os.chmod(tmp_name, target.stat().st_mode & 0o7777)
        os.replace(tmp_name, target)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


def save_raw_config(path: str | os.PathLike[str], content: str) -> None:
    try:
        _write_atomic(Path(path), content)
    except OSError as exc:
        raise ConfigPersistenceError(f"Failed to save config: {exc}") from exc


def save_watcher_config(path: str | os.PathLike[str], values: ConfigValues) -> str:
    """Merge ``values`` into the config file at ``path`` and return the written text."""
    target = Path(path)
    try:
        current = target.read_text(encoding="utf-8")
    except FileNotFoundError:
        current = ""
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigPersistenceError(f"Failed to read config: {exc}") from exc

    updated = update_config(current, values)
    save_raw_config(target, updated)
    return updated
