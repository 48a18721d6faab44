from __future__ import annotations

import logging
import threading
from typing import Any, Callable

import pytest

from rcsd.codec import encode
from rcsd.config import HubRuntimeConfig
from rcsd.envelope import make_envelope
from rcsd.lifecycle import LifecycleController
from rcsd.messages import MessageHelper
from rcsd.resources import ResourceManager
from rcsd.router import MessageRouter
from rcsd.session import SessionManager
from rcsd.stats import StatsManager


class ManualTimer:
    def __init__(self, interval: float, callback: Callable[[], None]) -> None:
        self.interval = interval
        self.callback = callback
        self.started = False
        self.cancelled = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        # Like threading.Timer, a cancelled timer never runs its callback.
        if self.started and not self.cancelled:
            self.callback()

    @property
    def live(self) -> bool:
        return self.started and not self.cancelled


class ManualTimers:
    def __init__(self) -> None:
        self.created: list[ManualTimer] = []

    def __call__(self, interval: float, callback: Callable[[], None]) -> ManualTimer:
        t = ManualTimer(interval, callback)
        self.created.append(t)
        return t

    def live(self) -> list[ManualTimer]:
        return [t for t in self.created if t.live]

    def last(self) -> ManualTimer:
        return self.created[-1]


class FakeLink:
    def __init__(self, n: int, mdu: int = 400) -> None:
        self.link_id = bytes([n]) * 16
        self.MDU = mdu

    @property
    def identity(self) -> str:
        return self.link_id.hex()


class FakeHub:
    def __init__(self, **overrides) -> None:
        self.config = HubRuntimeConfig(**overrides)
        self.log = logging.getLogger("rcsd.test")
        self._state_lock = threading.RLock()
        self.identity = None
        self.stats_manager = StatsManager(self)
        self.session_manager = SessionManager(self)
        self.message_helper = MessageHelper(self)
        self.resource_manager = ResourceManager(self)
        self.controller = LifecycleController(
            call_timeout_s=self.config.call_timeout_s,
            queue_offline_requests=self.config.queue_offline_requests,
            lock=self._state_lock,
            timer_factory=ManualTimers(),
            stats=self.stats_manager,
        )
        self.router = MessageRouter(self)

    def _fmt_link_id(self, link) -> str:
        return link.link_id.hex()

    def connect(self, n: int) -> FakeLink:
        link = FakeLink(n)
        self.session_manager.on_link_established(link)
        return link

    def send(self, link: FakeLink, event: str, body: dict | None = None) -> list:
        out: list = []
        self.router.route_packet(link, encode(make_envelope(event, body=body)), out)
        return out


class Harness:
    """A controller plus everything it has sent so far."""

    def __init__(self, *, call_timeout_s: float = 30.0, queue_offline: bool = True) -> None:
        self.timers = ManualTimers()
        self.delivered: list[tuple[str, str, dict[str, Any]]] = []
        self.ctl = LifecycleController(
            call_timeout_s=call_timeout_s,
            queue_offline_requests=queue_offline,
            deliver=self.delivered.extend,
            timer_factory=self.timers,
        )
        self.out: list[tuple[str, str, dict[str, Any]]] = []

    def take(self) -> list[tuple[str, str, dict[str, Any]]]:
        """Return and clear everything emitted since the last call."""
        sent = self.out + self.delivered
        self.out = []
        self.delivered.clear()
        return sent

    def to(self, identity: str) -> list[tuple[str, dict[str, Any]]]:
        return [(ev, body) for who, ev, body in self.out + self.delivered if who == identity]

    def events_for(self, identity: str) -> list[str]:
        return [ev for ev, _ in self.to(identity)]

    def client(self, identity: str, **profile: Any) -> None:
        self.ctl.register_client(identity, profile or {"name": identity}, self.out)

    def agent(self, identity: str, address: str, name: str | None = None) -> None:
        self.ctl.register_agent(identity, address, name or identity.upper(), self.out)


@pytest.fixture
def harness() -> Harness:
    return Harness()


@pytest.fixture
def make_harness() -> Callable[..., Harness]:
    return Harness
