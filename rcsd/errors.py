"""Error taxonomy for the call-signaling core.

Core components raise these; the lifecycle controller and message router turn
them into outbound notifications. None of them is allowed to end a link or the
process.
"""

from __future__ import annotations


class SignalingError(Exception):
    """Base class. ``code`` is the stable value sent in ``error`` events."""

    code = "error"

    def __init__(self, message: str = "", **details) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details


class NotFound(SignalingError):
    """Unknown identity or address."""

    code = "not-found"


class Busy(SignalingError):
    """Every agent behind the requested address is already in a call."""

    code = "busy"


class AlreadyInCall(SignalingError):
    """A busy agent tried to place a call."""

    code = "already-in-call"


class Unauthorized(SignalingError):
    """Event sent by a role that may not send it."""

    code = "unauthorized"


class CallTimeout(SignalingError):
    code = "timeout"


class StaleReference(SignalingError):
    """Operation on a ledger entry or call that no longer exists."""

    code = "stale-reference"


class DuplicateRegistration(SignalingError):
    code = "duplicate-registration"


class InvalidRequest(SignalingError):
    """Malformed event body (missing or badly typed fields)."""

    code = "invalid-request"
