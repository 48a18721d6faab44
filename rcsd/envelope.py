from __future__ import annotations

import os
import time

from .constants import K_BODY, K_ID, K_SRC, K_T, K_TS, K_V, RCS_VERSION


def now_ms() -> int:
    return int(time.time() * 1000)


def msg_id() -> bytes:
    return os.urandom(8)


def make_envelope(
    event: str,
    *,
    src: bytes | None = None,
    body: dict | None = None,
    mid: bytes | None = None,
    ts: int | None = None,
) -> dict:
    env: dict[int, object] = {
        K_V: RCS_VERSION,
        K_T: str(event),
        K_ID: mid or msg_id(),
        K_TS: ts or now_ms(),
    }
    if src is not None:
        env[K_SRC] = src
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

    for k in (K_V, K_T, K_ID, K_TS):
        if k not in env:
            raise ValueError(f"missing envelope key {k}")

    v = env[K_V]
    if not isinstance(v, int):
        raise TypeError("protocol version must be an integer")
    if v != RCS_VERSION:
        raise ValueError(f"unsupported version {v}")

    t = env[K_T]
    if not isinstance(t, str):
        raise TypeError("event name must be a string")
    if not t:
        raise ValueError("event name must not be empty")

    mid = env[K_ID]
    if not isinstance(mid, (bytes, bytearray)):
        raise TypeError("message id must be bytes")

    ts = env[K_TS]
    if not isinstance(ts, int):
        raise TypeError("timestamp must be an integer")
    if ts < 0:
        raise ValueError("timestamp must be unsigned")

    if K_SRC in env and not isinstance(env[K_SRC], (bytes, bytearray)):
        raise TypeError("sender identity must be bytes")

    if K_BODY in env:
        body = env[K_BODY]
        if body is not None and not isinstance(body, dict):
            raise TypeError("event body must be a map")
        if isinstance(body, dict):
            for k in body.keys():
                if not isinstance(k, str):
                    raise TypeError("event body keys must be strings")
