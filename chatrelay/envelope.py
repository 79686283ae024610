from __future__ import annotations

import os

from .constants import CHAT_VERSION, K_BODY, K_DEST, K_ID, K_TS, K_V
from .events import ChatEvent, event_to_payload, now_ms


def msg_id() -> bytes:
    return os.urandom(8)


def make_envelope(
    destination: str,
    *,
    body=None,
    mid: bytes | None = None,
    ts: int | None = None,
) -> dict:
    env: dict[int, object] = {
        K_V: CHAT_VERSION,
        K_DEST: destination,
        K_ID: mid or msg_id(),
        K_TS: ts or now_ms(),
    }
    if body is not None:
        env[K_BODY] = body
    return env


def envelope_for_event(event: ChatEvent) -> dict:
    return make_envelope(
        event.destination, body=event_to_payload(event), ts=event.timestamp
    )


def validate_envelope(env: dict) -> None:
    if not isinstance(env, dict):
        raise TypeError("envelope must be a CBOR map (dict)")

    for k in env.keys():
        if not isinstance(k, int):
            raise TypeError("envelope keys must be integers")
        if k < 0:
            raise ValueError("envelope keys must be unsigned integers")

    for k in (K_V, K_DEST, K_ID, K_TS):
        if k not in env:
            raise ValueError(f"missing envelope key {k}")

    v = env[K_V]
    if not isinstance(v, int):
        raise TypeError("protocol version must be an integer")
    if v != CHAT_VERSION:
        raise ValueError(f"unsupported version {v}")

    dest = env[K_DEST]
    if not isinstance(dest, str):
        raise TypeError("destination must be a string")
    if dest == "":
        raise ValueError("destination must not be empty")

    mid = env[K_ID]
    if not isinstance(mid, (bytes, bytearray)):
        raise TypeError("message id must be bytes")

    ts = env[K_TS]
    if not isinstance(ts, int):
        raise TypeError("timestamp must be an integer")
    if ts < 0:
        raise ValueError("timestamp must be unsigned")

    if K_BODY in env and not isinstance(env[K_BODY], dict):
        raise TypeError("body must be a map")
