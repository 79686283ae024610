from __future__ import annotations

import os

from .constants import IDENTITY_MAX_CHARS


def expand_path(p: str) -> str:
    return os.path.expanduser(os.path.expandvars(p))


def normalize_identity(value, max_chars: int = IDENTITY_MAX_CHARS) -> str | None:
    if not isinstance(value, str):
        return None

    s = value.strip()
    if not s:
        return None

    if max_chars > 0 and len(s) > int(max_chars):
        return None

    # Embedded newlines or NUL break log lines and most chat UIs.
    if "\n" in s or "\r" in s or "\x00" in s:
        return None

    try:
        s.encode("utf-8", "strict")
    except UnicodeError:
        return None

    return s


def fmt_connection_id(connection) -> str:
    lid = getattr(connection, "link_id", None)
    if isinstance(lid, (bytes, bytearray)):
        return bytes(lid).hex()
    h = getattr(connection, "hash", None)
    if isinstance(h, (bytes, bytearray)):
        return bytes(h).hex()
    name = getattr(connection, "name", None)
    if isinstance(name, str) and name:
        return name
    return f"conn-{id(connection):x}"
