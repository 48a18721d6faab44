"""Outbound event delivery for the call-signaling hub."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import RNS

from .codec import encode
from .constants import E_ERROR
from .envelope import make_envelope

if TYPE_CHECKING:
    from .service import HubService


class MessageHelper:
    """
    Turns queued notifications into packets.

    Handles:
    - Envelope construction for ``(identity, event, body)`` notifications
    - Identity -> link lookup (unknown identities are silently dropped)
    - Falling back to an RNS.Resource when an envelope exceeds the link MDU
    - Send error logging
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = hub.log

    def packet_would_fit(self, link: RNS.Link, payload: bytes) -> bool:
        """Check if payload fits within link MDU without creating/packing packets."""
        try:
            if hasattr(link, "MDU") and link.MDU is not None:
                return len(payload) <= link.MDU
            pkt = RNS.Packet(link, payload)
            pkt.pack()
            return True
        except Exception:
            return False

    def build_payload(self, event: str, body: dict[str, Any] | None) -> bytes:
        src = self.hub.identity.hash if self.hub.identity is not None else None
        return encode(make_envelope(event, src=src, body=body))

    def flush(self, outgoing: list[tuple[str, str, dict[str, Any]]]) -> None:
        """Deliver queued notifications. Must be called without the state lock."""
        for identity, event, body in outgoing:
            with self.hub._state_lock:
                link = self.hub.session_manager.link_for(identity)
            if link is None:
                self.log.debug("Dropping %s for departed id=%s", event, identity[:12])
                continue
            self.send_payload(link, self.build_payload(event, body))

    def send_event(self, link: RNS.Link, event: str, body: dict[str, Any] | None) -> None:
        self.send_payload(link, self.build_payload(event, body))

    def send_error(self, link: RNS.Link, code: str, message: str) -> None:
        self.hub.stats_manager.inc("errors_sent")
        self.send_event(link, E_ERROR, {"code": code, "message": message})

    def send_payload(self, link: RNS.Link, payload: bytes) -> None:
        if not self.packet_would_fit(link, payload):
            if not self.hub.resource_manager.send_via_resource(link, payload):
                self.log.warning(
                    "Dropping oversized event link_id=%s bytes=%s",
                    self.hub._fmt_link_id(link),
                    len(payload),
                )
            return

        self.hub.stats_manager.inc("bytes_out", len(payload))
        try:
            RNS.Packet(link, payload).send()
        except OSError as e:
            self.log.warning(
                "Send failed link_id=%s bytes=%s err=%s",
                self.hub._fmt_link_id(link),
                len(payload),
                e,
            )
        except Exception:
            self.log.debug(
                "Send failed link_id=%s bytes=%s",
                self.hub._fmt_link_id(link),
                len(payload),
                exc_info=True,
            )
