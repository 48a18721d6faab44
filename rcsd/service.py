from __future__ import annotations

import logging
import os
import signal
import threading
import time

import RNS

from . import __version__
from .codec import encode
from .config import HubRuntimeConfig
from .constants import RCS_VERSION
from .lifecycle import LifecycleController, Outgoing
from .messages import MessageHelper
from .paths import expand_path
from .presence import Role
from .resources import ResourceManager
from .router import MessageRouter
from .session import SessionManager
from .stats import StatsManager
from .util import short_id


class HubService:
    def __init__(self, config: HubRuntimeConfig) -> None:
        self.config = config
        self.log = logging.getLogger("rcsd.hub")

        # Presence, call requests and sessions are touched from Reticulum
        # callbacks, expiry timers and the announce thread. Guard them with a
        # single re-entrant lock.
        self._state_lock = threading.RLock()

        self._shutdown = threading.Event()

        self.stats_manager = StatsManager(self)
        self.session_manager = SessionManager(self)
        self.message_helper = MessageHelper(self)
        self.resource_manager = ResourceManager(self)

        self.controller = LifecycleController(
            call_timeout_s=float(config.call_timeout_s),
            queue_offline_requests=bool(config.queue_offline_requests),
            lock=self._state_lock,
            deliver=self.message_helper.flush,
            stats=self.stats_manager,
        )
        self.router = MessageRouter(self)

        self.identity: RNS.Identity | None = None
        self.destination: RNS.Destination | None = None

        self._announce_thread: threading.Thread | None = None

    def _fmt_link_id(self, link: RNS.Link) -> str:
        lid = getattr(link, "link_id", None)
        if isinstance(lid, (bytes, bytearray)):
            return bytes(lid).hex()
        h = getattr(link, "hash", None)
        if isinstance(h, (bytes, bytearray)):
            return bytes(h).hex()
        return "-"

    def start(self) -> None:
        self.log.info("Starting Reticulum")
        self.stats_manager.set_start_time()
        RNS.Reticulum(configdir=self.config.configdir, require_shared_instance=False)

        if not self.config.identity_path:
            raise RuntimeError("identity_path is not set")
        self.identity = self._load_identity(self.config.identity_path)

        parts = [p for p in str(self.config.dest_name).split(".") if p]
        if not parts:
            raise ValueError("dest_name must not be empty")
        app_name, aspects = parts[0], parts[1:]

        self.destination = RNS.Destination(
            self.identity,
            RNS.Destination.IN,
            RNS.Destination.SINGLE,
            app_name,
            *aspects,
        )
        self.destination.set_link_established_callback(self._on_link)

        if self.config.announce_on_start:
            self._announce_once()

        if self.config.announce_period_s and self.config.announce_period_s > 0:
            self._announce_thread = threading.Thread(
                target=self._announce_loop,
                name="rcsd-announce",
                daemon=True,
            )
            self._announce_thread.start()

        self.log.info(
            "Hub running dest_name=%s dest_hash=%s version=%s",
            self.config.dest_name,
            self.destination.hash.hex() if self.destination else "-",
            __version__,
        )
        self.log.info(
            "Policy call_timeout_s=%s queue_offline_requests=%s max_address_len=%s "
            "rate_limit_msgs_per_minute=%s",
            self.config.call_timeout_s,
            self.config.queue_offline_requests,
            self.config.max_address_len,
            self.config.rate_limit_msgs_per_minute,
        )

    def _announce_once(self) -> None:
        if self.destination is None:
            return
        try:
            self.destination.announce(
                app_data=encode({"proto": "rcs", "v": RCS_VERSION, "hub": self.config.hub_name})
            )
            self.stats_manager.inc("announces")
        except Exception:
            self.log.exception("Announce failed")

    def _announce_loop(self) -> None:
        while not self._shutdown.is_set():
            period = float(self.config.announce_period_s)
            if period <= 0:
                time.sleep(1.0)
                continue

            if self._shutdown.wait(period):
                break
            self._announce_once()

    def run_forever(self) -> None:
        if self.destination is None:
            self.start()

        signal.signal(signal.SIGINT, lambda *_: self.stop())
        signal.signal(signal.SIGTERM, lambda *_: self.stop())

        while not self._shutdown.is_set():
            time.sleep(0.25)

    def stop(self) -> None:
        if self._shutdown.is_set():
            return
        self._shutdown.set()

        with self._state_lock:
            stats_text = self.stats_manager.format_stats()
            self.controller.clear_all()
            links = self.session_manager.clear_all()
            self.resource_manager.clear_all()

        for link in links:
            try:
                link.teardown()
            except Exception:
                self.log.debug("Teardown failed link_id=%s", self._fmt_link_id(link))

        for line in stats_text.splitlines():
            self.log.info("%s", line)
        self.log.info("Hub stopped")

    def _load_identity(self, path: str) -> RNS.Identity:
        p = expand_path(path)
        if not os.path.exists(p):
            raise RuntimeError(f"Identity not found at {p}")
        ident = RNS.Identity.from_file(p)
        if ident is None:
            raise RuntimeError(f"Failed to load identity from {p}")
        return ident

    def _on_link(self, link: RNS.Link) -> None:
        with self._state_lock:
            identity = self.session_manager.on_link_established(link)
            self.resource_manager.on_link_established(link)

        link.set_packet_callback(lambda data, pkt: self._on_packet(link, data))
        link.set_link_closed_callback(lambda closed_link: self._on_close(closed_link))

        self.resource_manager.configure_link_callbacks(link)

        self.log.info(
            "Link established id=%s link_id=%s", short_id(identity), self._fmt_link_id(link)
        )

    def _on_packet(self, link: RNS.Link, data: bytes) -> None:
        # Packet callbacks can occur concurrently with other link callbacks and
        # expiry timers. Keep state mutations under the shared lock, but do not
        # hold the lock while sending packets via RNS.
        outgoing: Outgoing = []
        with self._state_lock:
            self.router.route_packet(link, data, outgoing)

        if self.log.isEnabledFor(logging.DEBUG) and outgoing:
            self.log.debug(
                "Sending %d notification(s) link_id=%s",
                len(outgoing),
                self._fmt_link_id(link),
            )
        self.message_helper.flush(outgoing)

    def _on_close(self, link: RNS.Link) -> None:
        outgoing: Outgoing = []
        role: Role | None = None

        with self._state_lock:
            self.resource_manager.on_link_closed(link)
            identity = self.session_manager.identity_for(link)
            if identity is not None:
                role = self.controller.disconnect(identity, outgoing)
            self.session_manager.on_link_closed(link)

        self.log.info(
            "Link closed id=%s role=%s link_id=%s",
            short_id(identity),
            role.value if role is not None else "-",
            self._fmt_link_id(link),
        )
        self.message_helper.flush(outgoing)
