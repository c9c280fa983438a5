from __future__ import annotations

import os
import time

import cbor2

from .constants import K_BODY, K_ID, K_ROOM, K_SRC, K_T, K_TS, K_V, RFS_VERSION


def encode(obj) -> bytes:
    return cbor2.dumps(obj)


def decode(b: bytes):
    return cbor2.loads(b)


def now_ms() -> int:
    return int(time.time() * 1000)


def msg_id() -> bytes:
    return os.urandom(8)


def make_envelope(
    msg_type: int,
    *,
    src: bytes | None = None,
    room: str | None = None,
    body=None,
    mid: bytes | None = None,
    ts: int | None = None,
) -> dict:
    env: dict[int, object] = {
        K_V: RFS_VERSION,
        K_T: int(msg_type),
        K_ID: mid or msg_id(),
        K_TS: ts or now_ms(),
    }
    if src is not None:
        env[K_SRC] = src
    if room is not None:
        env[K_ROOM] = room
    if body is not None:
        env[K_BODY] = body
    return env


# (key, accepted types, label) for the fields every envelope carries.
_REQUIRED_FIELDS = (
    (K_V, int, "protocol version"),
    (K_T, int, "message type"),
    (K_ID, (bytes, bytearray), "message id"),
    (K_TS, int, "timestamp"),
)

_OPTIONAL_FIELDS = (
    (K_SRC, (bytes, bytearray), "sender identity"),
    (K_ROOM, str, "room id"),
)


def validate_envelope(env: dict) -> None:
    """Raise TypeError or ValueError if ``env`` is not a usable RFS envelope.

    Unknown integer keys are allowed so newer clients can add fields.
    """
    if not isinstance(env, dict):
        raise TypeError("envelope must be a CBOR map (dict)")

    if any(not isinstance(k, int) for k in env):
        raise TypeError("envelope keys must be integers")
    if any(k < 0 for k in env):
        raise ValueError("envelope keys must be unsigned integers")

    for key, types, label in _REQUIRED_FIELDS:
        if key not in env:
            raise ValueError(f"missing {label} (key {key})")
        if not isinstance(env[key], types):
            raise TypeError(f"{label} has the wrong type")

    for key, types, label in _OPTIONAL_FIELDS:
        if key in env and not isinstance(env[key], types):
            raise TypeError(f"{label} has the wrong type")

    if env[K_V] != RFS_VERSION:
        raise ValueError(f"unsupported version {env[K_V]}")
    if env[K_TS] < 0:
        raise ValueError("timestamp must be unsigned")
    if env.get(K_ROOM) == "":
        raise ValueError("room id must not be empty")
