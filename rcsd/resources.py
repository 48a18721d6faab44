"""Resource transfer for events larger than a single packet.

Session descriptions and long presence lists do not fit a link MDU. Such
envelopes travel as an RNS.Resource whose data is the CBOR-encoded envelope,
in both directions.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import RNS

if TYPE_CHECKING:
    from .service import HubService


class ResourceManager:
    """Manages RNS Resource transfers for the hub."""

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = hub.log
        self._active_resources: dict[RNS.Link, set[RNS.Resource]] = {}

    def on_link_established(self, link: RNS.Link) -> None:
        self._active_resources[link] = set()

    def on_link_closed(self, link: RNS.Link) -> None:
        self._active_resources.pop(link, None)

    def clear_all(self) -> None:
        self._active_resources.clear()

    def configure_link_callbacks(self, link: RNS.Link) -> None:
        """Set up resource callbacks for a link if resource transfer is enabled."""
        if not self.hub.config.enable_resource_transfer:
            return

        try:
            link.set_resource_strategy(RNS.Link.ACCEPT_APP)
            link.set_resource_callback(self._resource_advertised)
            link.set_resource_concluded_callback(self._resource_concluded)
        except Exception as e:
            self.log.warning(
                "Failed to set resource callbacks link_id=%s: %s",
                self.hub._fmt_link_id(link),
                e,
            )

    def send_via_resource(self, link: RNS.Link, payload: bytes) -> bool:
        """Send an encoded envelope as a Resource. Returns True if initiated."""
        if not self.hub.config.enable_resource_transfer:
            return False

        size = len(payload)
        if size > self.hub.config.max_resource_bytes:
            self.log.error(
                "Payload too large for resource transfer: %s > %s",
                size,
                self.hub.config.max_resource_bytes,
            )
            return False

        try:
            resource = RNS.Resource(payload, link, advertise=True, auto_compress=False)
        except Exception as e:
            self.log.error(
                "Failed to create resource link_id=%s: %s",
                self.hub._fmt_link_id(link),
                e,
            )
            return False

        with self.hub._state_lock:
            self._active_resources.setdefault(link, set()).add(resource)
        self.hub.stats_manager.inc("resources_sent")
        self.hub.stats_manager.inc("bytes_out", size)
        return True

    def _resource_advertised(self, resource: RNS.Resource) -> bool:
        """Accept an inbound resource if it is within the configured size."""
        link = resource.link
        size = resource.total_size if hasattr(resource, "total_size") else resource.size
        if size > self.hub.config.max_resource_bytes:
            self.log.warning(
                "Rejecting resource (too large: %s > %s) link_id=%s",
                size,
                self.hub.config.max_resource_bytes,
                self.hub._fmt_link_id(link),
            )
            self.hub.stats_manager.inc("resources_rejected")
            return False

        with self.hub._state_lock:
            if self.hub.session_manager.get_session(link) is None:
                self.hub.stats_manager.inc("resources_rejected")
                return False
            self._active_resources.setdefault(link, set()).add(resource)
        return True

    def _resource_concluded(self, resource: RNS.Resource) -> None:
        link = resource.link
        with self.hub._state_lock:
            active = self._active_resources.get(link)
            if active is not None:
                active.discard(resource)

        if resource.status != RNS.Resource.COMPLETE:
            self.log.debug(
                "Resource transfer failed link_id=%s status=%s",
                self.hub._fmt_link_id(link),
                resource.status,
            )
            return

        # Our own outbound resources conclude here too; they carry no data to route.
        data = getattr(resource, "data", None)
        if data is None:
            return
        try:
            payload = data.read() if hasattr(data, "read") else bytes(data)
        except Exception as e:
            self.log.warning(
                "Failed to read resource data link_id=%s: %s",
                self.hub._fmt_link_id(link),
                e,
            )
            return

        self.hub.stats_manager.inc("resources_received")
        self.hub._on_packet(link, payload)
