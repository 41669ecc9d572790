from __future__ import annotations

from typing import Any


def fmt_hash(h: Any, *, prefix: int = 12) -> str:
    if isinstance(h, (bytes, bytearray)):
        s = bytes(h).hex()
        return s if prefix <= 0 else s[: min(prefix, len(s))]
    return "-"


def link_id_hex(link: Any) -> str:
    lid = getattr(link, "link_id", None)
    if isinstance(lid, (bytes, bytearray)):
        return bytes(lid).hex()
    h = getattr(link, "hash", None)
    if isinstance(h, (bytes, bytearray)):
        return bytes(h).hex()
    return "-"


def _has_control_chars(s: str) -> bool:
    return any(ch in s for ch in ("\n", "\r", "\x00", "\t"))


def normalize_room_id(value: Any, *, max_len: int) -> str:
    """Return a usable room id or raise ValueError.

    Room ids are opaque store keys, so case is preserved.
    """
    if not isinstance(value, str):
        raise ValueError("room id must be a string")
    r = value.strip()
    if not r:
        raise ValueError("room id must not be empty")
    if max_len > 0 and len(r) > max_len:
        raise ValueError("room id too long")
    if _has_control_chars(r):
        raise ValueError("room id contains control characters")
    return r


def normalize_user_id(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    s = value.strip()
    if not s or _has_control_chars(s):
        return None
    return s
