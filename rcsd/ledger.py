"""Call request ledger.

One entry per outstanding call attempt. The ledger is the only owner of
expiry timers: every terminal transition goes through :meth:`CallLedger.finish`,
which stops the entry's timer before releasing it.
"""

from __future__ import annotations

import enum
import itertools
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol, Union

from .util import short_id

LedgerKey = Union[str, tuple[str, str]]


class EntryState(enum.Enum):
    OPEN_UNRESOLVED = "open-unresolved"
    OPEN_RESOLVED = "open-resolved"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed-out"


OPEN_STATES = (EntryState.OPEN_UNRESOLVED, EntryState.OPEN_RESOLVED)


class TimerHandle(Protocol):
    def start(self) -> None: ...

    def cancel(self) -> None: ...


TimerFactory = Callable[[float, Callable[[], None]], TimerHandle]
ExpireCallback = Callable[[LedgerKey, int], None]


def thread_timer(interval: float, callback: Callable[[], None]) -> TimerHandle:
    t = threading.Timer(interval, callback)
    t.name = "rcsd-call-timeout"
    t.daemon = True
    return t


@dataclass(eq=False)
class LedgerEntry:
    entry_id: int
    key: LedgerKey
    requester: str
    kind: str
    address: str | None
    agent_call: bool
    ttl_s: float
    created_at: float = field(default_factory=time.time)
    target: str | None = None
    notified: list[str] = field(default_factory=list)
    state: EntryState = EntryState.OPEN_UNRESOLVED
    timer: TimerHandle | None = None

    @property
    def broadcast(self) -> bool:
        """True for client requests offered to any available agent."""
        return self.address is None

    @property
    def is_open(self) -> bool:
        return self.state in OPEN_STATES

    def mark_notified(self, identity: str) -> None:
        if identity not in self.notified:
            self.notified.append(identity)

    def withdraw(self, identity: str) -> None:
        try:
            self.notified.remove(identity)
        except ValueError:
            pass

    def recipients(self) -> list[str]:
        """Agents that were offered this request, in notification order."""
        out = list(self.notified)
        if self.target is not None and self.target not in out:
            out.append(self.target)
        return out

    def describe(self) -> dict[str, Any]:
        return {
            "requester": self.requester,
            "callType": self.kind,
            "targetAddress": self.address,
            "target": self.target,
            "state": self.state.value,
            "createdAt": self.created_at,
        }


class CallLedger:
    """
    Tracks open call requests and their expiry timers.

    Client requests are keyed by the requester identity; agent-to-agent
    requests by ``(requester, target address)``. A requester has at most one
    open entry: opening a new one supersedes any prior entry it owns.

    Must be used with the hub state lock held. Timer callbacks arrive on
    their own threads and are handed to ``on_expire`` with the entry id, which
    the callback passes back to :meth:`expire` under the lock.
    """

    def __init__(
        self,
        *,
        ttl_s: float = 30.0,
        on_expire: ExpireCallback | None = None,
        timer_factory: TimerFactory | None = None,
    ) -> None:
        self.log = logging.getLogger("rcsd.ledger")
        self.ttl_s = float(ttl_s)
        self.on_expire = on_expire
        self._timer_factory = timer_factory or thread_timer
        self._entries: dict[LedgerKey, LedgerEntry] = {}
        self._ids = itertools.count(1)

    @staticmethod
    def key_for(requester: str, address: str | None, *, agent_call: bool) -> LedgerKey:
        if agent_call:
            return (requester, address or "")
        return requester

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def get(self, key: LedgerKey) -> LedgerEntry | None:
        return self._entries.get(key)

    def open(
        self,
        requester: str,
        kind: str,
        address: str | None,
        *,
        agent_call: bool = False,
        ttl_s: float | None = None,
    ) -> tuple[LedgerEntry, list[LedgerEntry]]:
        """Open a new entry, superseding the requester's prior entries.

        Returns ``(entry, superseded)``. Superseded entries are already
        released (state CANCELLED); telling their targets is up to the caller.
        """
        superseded: list[LedgerEntry] = []
        for prior in self.entries_by_requester(requester):
            released = self.finish(prior.key, EntryState.CANCELLED)
            if released is not None:
                superseded.append(released)

        ttl = float(self.ttl_s if ttl_s is None else ttl_s)
        key = self.key_for(requester, address, agent_call=agent_call)
        entry = LedgerEntry(
            entry_id=next(self._ids),
            key=key,
            requester=requester,
            kind=kind,
            address=address,
            agent_call=agent_call,
            ttl_s=ttl,
        )
        self._entries[key] = entry

        if ttl > 0:
            entry_id = entry.entry_id
            entry.timer = self._timer_factory(
                ttl, lambda: self._fire(key, entry_id)
            )
            entry.timer.start()

        self.log.debug(
            "Opened entry id=%s requester=%s address=%r agent_call=%s ttl=%.1f superseded=%d",
            entry.entry_id,
            short_id(requester),
            address,
            agent_call,
            ttl,
            len(superseded),
        )
        return entry, superseded

    def resolve(self, key: LedgerKey, identity: str) -> LedgerEntry | None:
        entry = self._entries.get(key)
        if entry is None or not entry.is_open:
            return None
        entry.target = identity
        entry.state = EntryState.OPEN_RESOLVED
        return entry

    def resolve_deferred(self, address: str, identity: str) -> list[LedgerEntry]:
        """Bind unresolved entries waiting on *address* to a newly registered agent.

        Entries already resolved are left alone, so a second registration on
        the same address does not steal a request.
        """
        resolved: list[LedgerEntry] = []
        for entry in sorted(self._entries.values(), key=lambda e: e.entry_id):
            if entry.state is not EntryState.OPEN_UNRESOLVED:
                continue
            if entry.address != address or entry.requester == identity:
                continue
            entry.target = identity
            entry.state = EntryState.OPEN_RESOLVED
            resolved.append(entry)

        if resolved:
            self.log.info(
                "Resolved %d deferred request(s) address=%r target=%s",
                len(resolved),
                address,
                short_id(identity),
            )
        return resolved

    def finish(self, key: LedgerKey, state: EntryState) -> LedgerEntry | None:
        """Move an open entry to a terminal state and release it.

        Returns the released entry, or None if there was nothing to release
        (already removed by another path).
        """
        if state in OPEN_STATES:
            raise ValueError(f"{state} is not a terminal state")

        entry = self._entries.pop(key, None)
        if entry is None:
            return None

        if entry.timer is not None:
            entry.timer.cancel()
            entry.timer = None
        entry.state = state

        self.log.debug(
            "Released entry id=%s requester=%s state=%s",
            entry.entry_id,
            short_id(entry.requester),
            state.value,
        )
        return entry

    def cancel(self, key: LedgerKey) -> bool:
        return self.finish(key, EntryState.CANCELLED) is not None

    def expire(self, key: LedgerKey, entry_id: int) -> LedgerEntry | None:
        """Time out the entry under *key* if it is still the one the timer was armed for."""
        entry = self._entries.get(key)
        if entry is None or entry.entry_id != entry_id:
            self.log.debug(
                "Ignoring late timer key=%r entry_id=%s", key, entry_id
            )
            return None
        return self.finish(key, EntryState.TIMED_OUT)

    def entries_by_requester(self, identity: str) -> list[LedgerEntry]:
        return [e for e in self._entries.values() if e.requester == identity]

    def entries_involving(self, identity: str) -> list[LedgerEntry]:
        return [
            e
            for e in self._entries.values()
            if e.requester == identity
            or e.target == identity
            or identity in e.notified
        ]

    def entries(self) -> list[LedgerEntry]:
        return sorted(self._entries.values(), key=lambda e: e.entry_id)

    def clear_all(self) -> int:
        """Stop every timer and drop all entries (hub shutdown)."""
        keys = list(self._entries.keys())
        for key in keys:
            self.finish(key, EntryState.CANCELLED)
        return len(keys)

    def _fire(self, key: LedgerKey, entry_id: int) -> None:
        if self.on_expire is None:
            return
        try:
            self.on_expire(key, entry_id)
        except Exception:
            self.log.exception("Expiry handler failed key=%r entry_id=%s", key, entry_id)
