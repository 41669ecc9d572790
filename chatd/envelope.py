from __future__ import annotations

import os
import time

import cbor2

from .constants import (
    EVENT_NAMES,
    K_BODY,
    K_ID,
    K_ROOM,
    K_SRC,
    K_T,
    K_TS,
    K_V,
    PROTOCOL_VERSION,
)


def encode(obj) -> bytes:
    return cbor2.dumps(obj)


def decode(b: bytes):
    return cbor2.loads(b)


def now_ms() -> int:
    return int(time.time() * 1000)


def msg_id() -> bytes:
    return os.urandom(8)


def event_name(msg_type: int) -> str:
    return EVENT_NAMES.get(msg_type, f"type{msg_type}")


def make_envelope(
    msg_type: int,
    *,
    src: bytes,
    room: str | None = None,
    body=None,
    mid: bytes | None = None,
    ts: int | None = None,
) -> dict:
    env: dict[int, object] = {
        K_V: PROTOCOL_VERSION,
        K_T: int(msg_type),
        K_ID: mid or msg_id(),
        K_TS: ts or now_ms(),
        K_SRC: src,
    }
    if room is not None:
        env[K_ROOM] = room
    if body is not None:
        env[K_BODY] = body
    return env


def validate_envelope(env: dict) -> None:
    if not isinstance(env, dict):
        raise TypeError("envelope must be a CBOR map (dict)")

    for k in env.keys():
        if not isinstance(k, int):
            raise TypeError("envelope keys must be integers")
        if k < 0:
            raise ValueError("envelope keys must be unsigned integers")

    for k in (K_V, K_T, K_ID, K_TS, K_SRC):
        if k not in env:
            raise ValueError(f"missing envelope key {k}")

    v = env[K_V]
    if not isinstance(v, int):
        raise TypeError("protocol version must be an integer")
    if v != PROTOCOL_VERSION:
        raise ValueError(f"unsupported version {v}")

    if not isinstance(env[K_T], int):
        raise TypeError("event type must be an integer")

    if not isinstance(env[K_ID], (bytes, bytearray)):
        raise TypeError("envelope id must be bytes")

    ts = env[K_TS]
    if not isinstance(ts, int):
        raise TypeError("timestamp must be an integer")
    if ts < 0:
        raise ValueError("timestamp must be unsigned")

    if not isinstance(env[K_SRC], (bytes, bytearray)):
        raise TypeError("sender identity must be bytes")

    if K_ROOM in env:
        room = env[K_ROOM]
        if not isinstance(room, str):
            raise TypeError("room id must be a string")
        if room == "":
            raise ValueError("room id must not be empty")


def decode_envelope(data: bytes) -> dict:
    """Decode one CBOR envelope and check its shape.

    Raises TypeError/ValueError for anything that is not a well-formed
    envelope; cbor2 decode errors are ValueError subclasses.
    """
    env = decode(data)
    validate_envelope(env)
    return env
