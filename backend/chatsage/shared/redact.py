"""Helpers for keeping credentials out of log records."""

from __future__ import annotations


def redact(value: object, visible_chars: int = 3) -> str:
    """Return a log-safe form of *value*, e.g. ``"abc***"``."""
    if not value:
        return "[empty]"
    if not isinstance(value, str):
        return "[non-string]"
    if len(value) <= visible_chars:
        return "***"
    return value[:visible_chars] + "***"


def describe_secret_path(path: str) -> str:
    """Render ``projects/p/secrets/name/versions/v`` as ``name@v``."""
    parts = path.split("/")
    name = "unknown"
    version = "latest"
    if "secrets" in parts:
        idx = parts.index("secrets")
        if idx + 1 < len(parts):
            name = parts[idx + 1]
    if "versions" in parts:
        idx = parts.index("versions")
        if idx + 1 < len(parts):
            version = parts[idx + 1]
    return f"{name}@{version}"
