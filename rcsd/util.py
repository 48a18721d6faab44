from __future__ import annotations

from typing import Any

from .constants import CALL_AUDIO, CALL_KINDS


def _clean_text(value: Any, max_chars: int) -> str | None:
    if not isinstance(value, str):
        return None

    s = value.strip()
    if not s:
        return None

    if max_chars > 0 and len(s) > int(max_chars):
        return None

    # Embedded newlines or NUL break log lines and client UIs.
    if "\n" in s or "\r" in s or "\x00" in s:
        return None

    try:
        s.encode("utf-8", "strict")
    except UnicodeError:
        return None

    return s


def normalize_address(value: Any, *, max_chars: int = 64) -> str | None:
    """Agent addresses are compared exactly after trimming whitespace."""
    if isinstance(value, int) and not isinstance(value, bool):
        value = str(value)
    return _clean_text(value, max_chars)


def normalize_name(value: Any, *, max_chars: int = 64) -> str | None:
    return _clean_text(value, max_chars)


def normalize_call_kind(value: Any) -> str | None:
    """Missing kind means audio; an unknown kind is rejected (None)."""
    if value is None:
        return CALL_AUDIO
    if not isinstance(value, str):
        return None
    s = value.strip().lower()
    if not s:
        return CALL_AUDIO
    return s if s in CALL_KINDS else None


def short_id(identity: Any, *, prefix: int = 12) -> str:
    """Shorten an identity for log lines."""
    if isinstance(identity, (bytes, bytearray)):
        identity = bytes(identity).hex()
    if not isinstance(identity, str) or not identity:
        return "-"
    return identity if prefix <= 0 else identity[: min(prefix, len(identity))]
