"""Loopback same-origin check for state-changing and file-serving routes."""

from __future__ import annotations

from typing import Mapping
from urllib.parse import urlsplit

__all__ = ["FORBIDDEN_MESSAGE", "is_loopback_host", "parse_host_header", "require_trusted_local_request"]

FORBIDDEN_MESSAGE = "Forbidden: local same-origin requests only"
LOOPBACK_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})


def _normalize_host(hostname: str) -> str:
    if hostname.startswith("[") and hostname.endswith("]"):
        hostname = hostname[1:-1]
    return hostname.lower()


def is_loopback_host(hostname: str) -> bool:
    return _normalize_host(hostname) in LOOPBACK_HOSTS


def parse_host_header(value: str) -> tuple[str, str | None] | None:
    """Split a ``Host`` header into ``(hostname, port)``; ``None`` if malformed."""
    value = value.strip()
    if not value:
        return None

    if value.startswith("["):
        closing = value.find("]")
        if closing == -1:
            return None
        hostname = value[1:closing]
        port_part = value[closing + 1 :]
        if not port_part:
            return hostname, None
        if not port_part.startswith(":"):
            return None
        return hostname, port_part[1:] or None

    if value.count(":") == 1:
        hostname, _, port = value.partition(":")
        return hostname, port or None
    # Bare IPv6 literal without brackets
    return value, None


def _effective_port(scheme: str, port: str | None) -> str:
    if port:
        return port
    return "443" if scheme == "https" else "80"


def require_trusted_local_request(headers: Mapping[str, str]) -> str | None:
    """Return an error message unless Host and Origin are the same loopback origin."""
    host_header = headers.get("Host")
    origin_header = headers.get("Origin")
    if not host_header or not origin_header:
        return FORBIDDEN_MESSAGE

    parsed_host = parse_host_header(host_header)
    if parsed_host is None or not is_loopback_host(parsed_host[0]):
        return FORBIDDEN_MESSAGE

    try:
        origin = urlsplit(origin_header.strip())
        origin_port = origin.port
    except ValueError:
        return FORBIDDEN_MESSAGE
    origin_host = origin.hostname or ""
    if origin.scheme not in {"http", "https"} or not is_loopback_host(origin_host):
        return FORBIDDEN_MESSAGE

    host_name, host_port = parsed_host
    request_port = _effective_port(origin.scheme, host_port)
    expected_port = _effective_port(origin.scheme, str(origin_port) if origin_port is not None else None)
    if _normalize_host(host_name) != _normalize_host(origin_host) or request_port != expected_port:
        return FORBIDDEN_MESSAGE
    return None
