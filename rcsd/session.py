from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import RNS

if TYPE_CHECKING:
    from .service import HubService


@dataclass
class _RateState:
    """Token bucket state for rate limiting."""

    tokens: float
    last_refill: float


def link_identity(link: RNS.Link) -> str:
    """Opaque endpoint identity for a link: its link id in hex."""
    lid = getattr(link, "link_id", None)
    if isinstance(lid, (bytes, bytearray)):
        return bytes(lid).hex()
    h = getattr(link, "hash", None)
    if isinstance(h, (bytes, bytearray)):
        return bytes(h).hex()
    return f"link-{id(link):x}"


class SessionManager:
    """
    Maps RNS links to endpoint identities.

    This class is responsible for:
    - Session creation when a link is established
    - The identity <-> link index used to deliver notifications
    - Rate limiting with a token bucket per link
    - Session teardown when a link closes

    All methods must be called with the hub state lock held.
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("rcsd.session")
        self.sessions: dict[RNS.Link, dict[str, Any]] = {}
        self._rate: dict[RNS.Link, _RateState] = {}
        self._links_by_identity: dict[str, RNS.Link] = {}

    def on_link_established(self, link: RNS.Link) -> str:
        identity = link_identity(link)
        self.sessions[link] = {
            "identity": identity,
            "connected_at": time.time(),
        }
        self._links_by_identity[identity] = link
        self._rate[link] = _RateState(
            tokens=float(self.hub.config.rate_limit_msgs_per_minute),
            last_refill=time.monotonic(),
        )
        self.log.info("Session created id=%s", identity[:12])
        return identity

    def on_link_closed(self, link: RNS.Link) -> str | None:
        """Drop session state and return the identity that was bound to *link*."""
        sess = self.sessions.pop(link, None)
        self._rate.pop(link, None)
        if not sess:
            return None

        identity = sess.get("identity")
        if isinstance(identity, str) and self._links_by_identity.get(identity) is link:
            self._links_by_identity.pop(identity, None)
        return identity if isinstance(identity, str) else None

    def get_session(self, link: RNS.Link) -> dict[str, Any] | None:
        return self.sessions.get(link)

    def identity_for(self, link: RNS.Link) -> str | None:
        sess = self.sessions.get(link)
        if sess is None:
            return None
        return sess.get("identity")

    def link_for(self, identity: str) -> RNS.Link | None:
        return self._links_by_identity.get(identity)

    def refill_and_take(self, link: RNS.Link, cost: float = 1.0) -> bool:
        """
        Token bucket rate limiting.

        Refills tokens based on elapsed time and attempts to take `cost` tokens.
        Returns True if tokens were available and taken, False if rate limited.
        """
        state = self._rate.get(link)
        if state is None:
            return True

        now = time.monotonic()
        per_min = float(max(1, int(self.hub.config.rate_limit_msgs_per_minute)))
        rate_per_s = per_min / 60.0
        elapsed = max(0.0, now - state.last_refill)
        state.tokens = min(per_min, state.tokens + elapsed * rate_per_s)
        state.last_refill = now

        if state.tokens < cost:
            return False

        state.tokens -= cost
        return True

    def clear_all(self) -> list[RNS.Link]:
        """Clear all sessions and return the links for teardown."""
        links = list(self.sessions.keys())
        self.sessions.clear()
        self._rate.clear()
        self._links_by_identity.clear()
        return links

    def get_stats(self) -> dict[str, int]:
        return {"total": len(self.sessions)}
