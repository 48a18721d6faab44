"""Statistics tracking and reporting for the call-signaling hub."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .service import HubService


class StatsManager:
    """
    Lifetime counters for the hub.

    Tracks:
    - Bytes and packets in/out, bad and rate-limited packets
    - Call requests opened, queued, accepted, rejected, cancelled, timed out
    - Deferred deliveries and busy replies
    - Negotiation messages relayed
    - Resource transfers
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = hub.log

        self.started_wall_time: float | None = None
        self.started_monotonic: float | None = None

        self._counters: dict[str, int] = {
            "bytes_in": 0,
            "bytes_out": 0,
            "pkts_in": 0,
            "pkts_bad": 0,
            "rate_limited": 0,
            "errors_sent": 0,
            "requests_opened": 0,
            "requests_queued": 0,
            "deferred_delivered": 0,
            "busy": 0,
            "accepted": 0,
            "rejected": 0,
            "cancelled": 0,
            "timed_out": 0,
            "ended": 0,
            "ignored": 0,
            "stale": 0,
            "relayed": 0,
            "announces": 0,
            "resources_sent": 0,
            "resources_received": 0,
            "resources_rejected": 0,
        }

    def set_start_time(self) -> None:
        self.started_wall_time = time.time()
        self.started_monotonic = time.monotonic()

    def inc(self, key: str, delta: int = 1) -> None:
        with self.hub._state_lock:
            self._counters[key] = int(self._counters.get(key, 0)) + int(delta)

    def get(self, key: str) -> int:
        with self.hub._state_lock:
            return int(self._counters.get(key, 0))

    def format_stats(self) -> str:
        """Format current statistics as a human-readable string."""
        from . import __version__

        started_mono = self.started_monotonic
        uptime_s = (time.monotonic() - started_mono) if started_mono is not None else 0.0

        with self.hub._state_lock:
            sessions = self.hub.session_manager.get_stats()
            core = self.hub.controller.get_stats()
            c = dict(self._counters)

        lines: list[str] = []
        lines.append(f"rcsd {__version__} stats")
        lines.append(f"uptime_s={uptime_s:.1f}")
        lines.append(
            f"links={sessions['total']} clients={core['clients']} "
            f"agents={core['agents']} agents_in_call={core['agents_in_call']} "
            f"addresses={core['addresses']}"
        )
        lines.append(
            f"calls: open_requests={core['open_requests']} active={core['active_calls']}"
        )
        lines.append(
            "io: pkts_in={} pkts_bad={} bytes_in={} bytes_out={} rate_limited={}".format(
                c.get("pkts_in", 0),
                c.get("pkts_bad", 0),
                c.get("bytes_in", 0),
                c.get("bytes_out", 0),
                c.get("rate_limited", 0),
            )
        )
        lines.append(
            "requests: opened={} queued={} deferred={} busy={} accepted={} "
            "rejected={} cancelled={} timed_out={} ended={}".format(
                c.get("requests_opened", 0),
                c.get("requests_queued", 0),
                c.get("deferred_delivered", 0),
                c.get("busy", 0),
                c.get("accepted", 0),
                c.get("rejected", 0),
                c.get("cancelled", 0),
                c.get("timed_out", 0),
                c.get("ended", 0),
            )
        )
        lines.append(
            "misc: relayed={} errors_sent={} ignored={} stale={} announces={}".format(
                c.get("relayed", 0),
                c.get("errors_sent", 0),
                c.get("ignored", 0),
                c.get("stale", 0),
                c.get("announces", 0),
            )
        )
        lines.append(
            "resources: sent={} received={} rejected={}".format(
                c.get("resources_sent", 0),
                c.get("resources_received", 0),
                c.get("resources_rejected", 0),
            )
        )

        return "\n".join(lines)
