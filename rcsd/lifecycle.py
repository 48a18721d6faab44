"""Call lifecycle controller.

Applies register/request/accept/reject/cancel/end/timeout/disconnect/reset
transitions to the presence registry and call ledger. Every operation takes
an ``outgoing`` list and appends ``(identity, event, body)`` notifications to
it; the hub sends them after releasing the state lock. A notification for an
identity that is no longer connected is dropped at send time.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import TYPE_CHECKING, Any, Callable

from .addresses import AddressResolver
from .constants import (
    CALL_PAIR_AGENT_AGENT,
    CALL_PAIR_CLIENT_AGENT,
    E_AGENT_CALL_ACCEPTED,
    E_AGENT_CALL_CANCELLED,
    E_AGENT_CALL_REJECTED,
    E_AGENT_CALL_SENT,
    E_AGENT_DISCONNECTED,
    E_BUSY,
    E_CALL_ACCEPTED,
    E_CALL_ENDED,
    E_CALL_HANDLED,
    E_CALL_REJECTED,
    E_CALL_REQUEST_CANCELLED,
    E_CALL_REQUEST_QUEUED,
    E_CALL_REQUEST_SENT,
    E_CALL_TIMEOUT,
    E_CLIENT_DISCONNECTED,
    E_CURRENT_AGENTS,
    E_CURRENT_CLIENTS,
    E_ERROR,
    E_INCOMING_AGENT_CALL,
    E_INCOMING_CALL,
    E_NEW_AGENT,
    E_NEW_CLIENT,
    E_OFFLINE,
    E_STATUS_CHANGED,
    E_STATUS_REPLY,
    REASON_BUSY,
    REASON_DISCONNECT,
    REASON_RESET,
    REASON_SUPERSEDED,
    REASON_TIMEOUT,
    REASON_UNKNOWN,
    REASON_USER_CANCELLED,
)
from .errors import (
    AlreadyInCall,
    Busy,
    CallTimeout,
    DuplicateRegistration,
    InvalidRequest,
    NotFound,
    SignalingError,
    StaleReference,
    Unauthorized,
)
from .ledger import CallLedger, EntryState, LedgerEntry, LedgerKey, TimerFactory
from .presence import AgentRecord, ClientRecord, PresenceRegistry, Role
from .routing import RouteDecision, RouteKind, RoutingEngine
from .util import short_id

if TYPE_CHECKING:
    from .stats import StatsManager

Outgoing = list[tuple[str, str, dict[str, Any]]]
DeliverFn = Callable[[Outgoing], None]


def _now_ms() -> int:
    return int(time.time() * 1000)


class LifecycleController:
    """
    Single owner of presence and call-request state.

    This class is responsible for:
    - Client and agent registration (with deferred request delivery)
    - Opening call requests through the routing engine
    - Accept / reject / cancel / end / timeout / disconnect transitions
    - Busy-flag bookkeeping and the table of confirmed calls

    All public operations must be called with ``lock`` held, except the
    timer callback, which takes the lock itself.
    """

    def __init__(
        self,
        *,
        call_timeout_s: float = 30.0,
        queue_offline_requests: bool = True,
        lock: threading.RLock | None = None,
        deliver: DeliverFn | None = None,
        timer_factory: TimerFactory | None = None,
        stats: StatsManager | None = None,
    ) -> None:
        self.log = logging.getLogger("rcsd.lifecycle")
        self.lock = lock if lock is not None else threading.RLock()
        self.deliver = deliver
        self.stats = stats

        self.registry = PresenceRegistry()
        self.resolver = AddressResolver(self.registry)
        self.ledger = CallLedger(
            ttl_s=call_timeout_s,
            on_expire=self._on_entry_expired,
            timer_factory=timer_factory,
        )
        self.routing = RoutingEngine(
            self.registry, self.resolver, queue_offline=queue_offline_requests
        )

        # identity -> peer identity, both directions, for confirmed calls.
        self._peers: dict[str, str] = {}

    @property
    def call_timeout_s(self) -> float:
        return self.ledger.ttl_s

    def peer_of(self, identity: str) -> str | None:
        return self._peers.get(identity)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------
    def register_client(
        self, identity: str, profile: dict[str, Any] | None, outgoing: Outgoing
    ) -> ClientRecord | None:
        try:
            rec = self.registry.register(identity, Role.CLIENT, {"profile": profile})
        except DuplicateRegistration as e:
            self._emit_error(outgoing, identity, e)
            return None

        assert isinstance(rec, ClientRecord)
        self._broadcast_agents(
            outgoing, E_NEW_CLIENT, {"socketId": identity, "userData": rec.profile}
        )
        return rec

    def register_agent(
        self, identity: str, address: str, name: str | None, outgoing: Outgoing
    ) -> AgentRecord | None:
        try:
            rec = self.registry.register(
                identity, Role.AGENT, {"address": address, "name": name}
            )
        except DuplicateRegistration as e:
            self._emit_error(outgoing, identity, e)
            return None

        assert isinstance(rec, AgentRecord)
        clients = [c.public() for c in self.registry.list_by_role(Role.CLIENT)]
        others = [
            a.public()
            for a in self.registry.list_by_role(Role.AGENT)
            if a.identity != identity
        ]
        self._emit(outgoing, identity, E_CURRENT_CLIENTS, {"clients": clients})
        self._emit(outgoing, identity, E_CURRENT_AGENTS, {"agents": others})
        self._broadcast_agents(
            outgoing,
            E_NEW_AGENT,
            {"socketId": identity, "address": rec.address, "name": rec.name},
            exclude=identity,
        )

        # Requests queued against this address are delivered before the
        # registration returns, so the race with a just-sent request is
        # settled by registration order.
        for entry in self.ledger.resolve_deferred(rec.address, identity):
            self._notify_incoming(entry, [rec], outgoing)
            self._emit(
                outgoing,
                entry.requester,
                E_AGENT_CALL_SENT if entry.agent_call else E_CALL_REQUEST_SENT,
                self._sent_body(entry, rec, deferred=True),
            )
            self._inc("deferred_delivered")
        return rec

    # ------------------------------------------------------------------
    # New requests
    # ------------------------------------------------------------------
    def request_call(
        self,
        identity: str,
        kind: str,
        address: str | None,
        outgoing: Outgoing,
    ) -> LedgerEntry | None:
        """Client call request: broadcast, direct or queued."""
        try:
            decision = self.routing.route_client_request(identity, address)
        except Unauthorized as e:
            self._ignore(identity, e)
            return None
        except Busy as e:
            self._inc("busy")
            self._emit(outgoing, identity, E_BUSY, dict(e.details))
            return None
        except NotFound:
            self._emit(outgoing, identity, E_OFFLINE, {"address": address})
            return None

        return self._open(identity, kind, decision, outgoing, agent_call=False)

    def request_agent_call(
        self,
        identity: str,
        kind: str,
        address: str | None,
        outgoing: Outgoing,
    ) -> LedgerEntry | None:
        try:
            decision = self.routing.route_agent_request(identity, address)
        except Unauthorized as e:
            self._ignore(identity, e)
            return None
        except (AlreadyInCall, InvalidRequest) as e:
            self._emit_error(outgoing, identity, e)
            return None
        except Busy as e:
            self._inc("busy")
            self._emit(outgoing, identity, E_BUSY, dict(e.details))
            return None
        except NotFound:
            self._emit(outgoing, identity, E_OFFLINE, {"address": address})
            return None

        return self._open(identity, kind, decision, outgoing, agent_call=True)

    def _open(
        self,
        identity: str,
        kind: str,
        decision: RouteDecision,
        outgoing: Outgoing,
        *,
        agent_call: bool,
    ) -> LedgerEntry:
        entry, superseded = self.ledger.open(
            identity, kind, decision.address, agent_call=agent_call
        )
        self._inc("requests_opened")
        for prior in superseded:
            self._notify_cancelled(prior, REASON_SUPERSEDED, outgoing)

        target = decision.target
        if target is not None:
            self.ledger.resolve(entry.key, target.identity)
        self._notify_incoming(entry, decision.candidates, outgoing)

        if decision.kind is RouteKind.QUEUED:
            self._inc("requests_queued")
            self._emit(
                outgoing,
                identity,
                E_CALL_REQUEST_QUEUED,
                {
                    "callType": kind,
                    "targetAddress": decision.address,
                    "isAgentCall": agent_call,
                    "timeout": entry.ttl_s,
                },
            )
        else:
            self._emit(
                outgoing,
                identity,
                E_AGENT_CALL_SENT if agent_call else E_CALL_REQUEST_SENT,
                self._sent_body(entry, target, notified=len(decision.candidates)),
            )

        self.log.info(
            "Call request requester=%s kind=%s route=%s address=%r target=%s",
            short_id(identity),
            kind,
            decision.kind.value,
            decision.address,
            short_id(entry.target),
        )
        return entry

    # ------------------------------------------------------------------
    # Responses
    # ------------------------------------------------------------------
    def accept_call(
        self, acceptor: str, client_id: str, kind: str | None, outgoing: Outgoing
    ) -> bool:
        agent = self.registry.find_agent(acceptor)
        if agent is None:
            self._ignore(acceptor, Unauthorized("accept-call requires an agent"))
            return False

        entry = self.ledger.get(client_id)
        if entry is None or entry.agent_call:
            self._stale(acceptor, "accept-call", client_id)
            return False
        if entry.broadcast:
            if acceptor not in entry.notified:
                self._ignore(acceptor, Unauthorized("request was not offered to this agent"))
                return False
        elif entry.target is None:
            # Queued for an address nobody serves yet; registration binds it.
            self._ignore(acceptor, Unauthorized("request is waiting for its address"))
            return False
        elif entry.target != acceptor:
            self._ignore(acceptor, Unauthorized("request is bound to another agent"))
            return False
        if agent.in_call:
            self._emit_error(
                outgoing, acceptor, AlreadyInCall("you are already in a call")
            )
            return False

        released = self.ledger.finish(entry.key, EntryState.ACCEPTED)
        if released is None:
            return False
        released.target = acceptor
        self._inc("accepted")

        self._pair(released.requester, acceptor, outgoing)
        self._mark_busy(agent, outgoing)

        self._emit(
            outgoing,
            released.requester,
            E_CALL_ACCEPTED,
            {
                "agentId": acceptor,
                "agentAddress": agent.address,
                "agentName": agent.name,
                "callType": kind or released.kind,
            },
        )

        if released.broadcast:
            handled_by = {
                "socketId": acceptor,
                "address": agent.address,
                "name": agent.name,
            }
            for other in released.notified:
                if other == acceptor:
                    continue
                self._emit(
                    outgoing,
                    other,
                    E_CALL_HANDLED,
                    {"clientId": released.requester, "handledBy": handled_by},
                )

        self.log.info(
            "Call accepted client=%s agent=%s broadcast=%s",
            short_id(released.requester),
            short_id(acceptor),
            released.broadcast,
        )
        return True

    def accept_agent_call(
        self, acceptor: str, caller_id: str, kind: str | None, outgoing: Outgoing
    ) -> bool:
        agent = self.registry.find_agent(acceptor)
        if agent is None:
            self._ignore(acceptor, Unauthorized("accept-agent-call requires an agent"))
            return False

        entry = self._find_agent_entry(caller_id, acceptor)
        if entry is None:
            self._stale(acceptor, "accept-agent-call", caller_id)
            return False
        if agent.in_call:
            self._emit_error(
                outgoing, acceptor, AlreadyInCall("you are already in a call")
            )
            return False

        caller = self.registry.find_agent(caller_id)
        if caller is None or caller.in_call:
            released = self.ledger.finish(entry.key, EntryState.CANCELLED)
            if released is not None:
                self._notify_cancelled(released, REASON_BUSY, outgoing)
            return False

        released = self.ledger.finish(entry.key, EntryState.ACCEPTED)
        if released is None:
            return False
        self._inc("accepted")

        self._pair(caller_id, acceptor, outgoing)
        self._mark_busy(agent, outgoing)
        self._mark_busy(caller, outgoing)

        self._emit(
            outgoing,
            caller_id,
            E_AGENT_CALL_ACCEPTED,
            {
                "agentId": acceptor,
                "agentName": agent.name,
                "address": agent.address,
                "callType": kind or released.kind,
            },
        )
        self.log.info(
            "Agent call accepted caller=%s agent=%s",
            short_id(caller_id),
            short_id(acceptor),
        )
        return True

    def reject_call(self, rejector: str, client_id: str, outgoing: Outgoing) -> bool:
        """An agent declines a client request.

        A broadcast request stays open for the remaining candidates; only the
        rejecting agent is withdrawn from it.
        """
        agent = self.registry.find_agent(rejector)
        if agent is None:
            self._ignore(rejector, Unauthorized("reject-call requires an agent"))
            return False

        entry = self.ledger.get(client_id)
        if entry is None or entry.agent_call:
            self._stale(rejector, "reject-call", client_id)
            return False

        if entry.broadcast:
            entry.withdraw(rejector)
            return True

        if entry.target != rejector:
            self._ignore(rejector, Unauthorized("request is bound to another agent"))
            return False

        released = self.ledger.finish(entry.key, EntryState.REJECTED)
        if released is None:
            return False
        self._inc("rejected")
        self._emit(
            outgoing,
            released.requester,
            E_CALL_REJECTED,
            {"agentId": rejector, "agentName": agent.name, "callType": released.kind},
        )
        return True

    def reject_agent_call(self, rejector: str, caller_id: str, outgoing: Outgoing) -> bool:
        agent = self.registry.find_agent(rejector)
        if agent is None:
            self._ignore(rejector, Unauthorized("reject-agent-call requires an agent"))
            return False

        entry = self._find_agent_entry(caller_id, rejector)
        if entry is None:
            self._stale(rejector, "reject-agent-call", caller_id)
            return False

        released = self.ledger.finish(entry.key, EntryState.REJECTED)
        if released is None:
            return False
        self._inc("rejected")
        self._emit(
            outgoing,
            caller_id,
            E_AGENT_CALL_REJECTED,
            {"agentId": rejector, "agentName": agent.name},
        )
        return True

    # ------------------------------------------------------------------
    # Requester-side cancellation
    # ------------------------------------------------------------------
    def cancel_call_request(self, identity: str, outgoing: Outgoing) -> bool:
        """Cancel the caller's open client request.

        Returns False (and emits nothing) when there is no open entry.
        """
        entry = self.ledger.get(identity)
        if entry is None:
            return False
        released = self.ledger.finish(entry.key, EntryState.CANCELLED)
        if released is None:
            return False
        self._inc("cancelled")
        self._notify_cancelled(released, REASON_USER_CANCELLED, outgoing)
        return True

    def cancel_agent_call(
        self, identity: str, target_ref: str | None, outgoing: Outgoing
    ) -> bool:
        """Cancel an agent-to-agent request by target identity or address."""
        if self.registry.find_agent(identity) is None:
            self._ignore(identity, Unauthorized("cancel-agent-call requires an agent"))
            return False

        cancelled = False
        for entry in self.ledger.entries_by_requester(identity):
            if not entry.agent_call:
                continue
            if target_ref is not None and target_ref not in (entry.target, entry.address):
                continue
            released = self.ledger.finish(entry.key, EntryState.CANCELLED)
            if released is None:
                continue
            cancelled = True
            self._inc("cancelled")
            self._notify_cancelled(released, REASON_USER_CANCELLED, outgoing)
        return cancelled

    # ------------------------------------------------------------------
    # Timeout
    # ------------------------------------------------------------------
    def _on_entry_expired(self, key: LedgerKey, entry_id: int) -> None:
        outgoing: Outgoing = []
        with self.lock:
            self.expire(key, entry_id, outgoing)
        if outgoing and self.deliver is not None:
            self.deliver(outgoing)

    def expire(self, key: LedgerKey, entry_id: int, outgoing: Outgoing) -> bool:
        entry = self.ledger.expire(key, entry_id)
        if entry is None:
            return False
        self._inc("timed_out")

        body: dict[str, Any] = {
            "code": CallTimeout.code,
            "message": "Call request timed out. Nobody answered your call.",
            "callType": entry.kind,
            "targetAddress": entry.address,
            "isAgentCall": entry.agent_call,
        }
        if entry.target is not None:
            body["targetAgentId"] = entry.target
            target = self.registry.find_agent(entry.target)
            if target is not None:
                body["agentName"] = target.name
        self._emit(outgoing, entry.requester, E_CALL_TIMEOUT, body)
        self._notify_cancelled(entry, REASON_TIMEOUT, outgoing)

        self.log.info(
            "Call request timed out requester=%s address=%r notified=%d",
            short_id(entry.requester),
            entry.address,
            len(entry.recipients()),
        )
        return True

    # ------------------------------------------------------------------
    # Call completion and recovery
    # ------------------------------------------------------------------
    def end_call(
        self,
        identity: str,
        target_id: str | None,
        reason: str | None,
        outgoing: Outgoing,
        *,
        force_cleanup: bool = False,
    ) -> bool:
        role = self.registry.role_of(identity)
        if role is Role.UNASSIGNED:
            self._ignore(identity, Unauthorized("end-call from unregistered endpoint"))
            return False

        if not target_id:
            if force_cleanup and role is Role.AGENT:
                self.reset_busy_state(identity, outgoing)
                return True
            return False

        counterparts: set[str] = set()
        if role is Role.CLIENT:
            entry = self.ledger.get(identity)
            if entry is not None:
                released = self.ledger.finish(entry.key, EntryState.CANCELLED)
                if released is not None:
                    self._inc("cancelled")
                    counterparts.update(released.recipients())
                    self._notify_cancelled(
                        released, REASON_USER_CANCELLED, outgoing, exclude=target_id
                    )

        paired = self._peers.get(identity) == target_id
        if not paired and target_id not in counterparts:
            self._stale(identity, "end-call", target_id)
            return False

        target_role = self.registry.role_of(target_id)
        if paired:
            self._unpair(identity)
            self._inc("ended")
            for side in (identity, target_id):
                self._mark_free(side, outgoing)

        both_agents = role is Role.AGENT and target_role is Role.AGENT
        self._emit(
            outgoing,
            target_id,
            E_CALL_ENDED,
            {
                "source": identity,
                "endedBy": identity,
                "isAgent": role is Role.AGENT,
                "isAgentCall": both_agents,
                "reason": reason or REASON_UNKNOWN,
                "callType": CALL_PAIR_AGENT_AGENT if both_agents else CALL_PAIR_CLIENT_AGENT,
                "timestamp": _now_ms(),
            },
        )
        self.log.info(
            "Call ended by=%s target=%s reason=%r",
            short_id(identity),
            short_id(target_id),
            reason,
        )
        return True

    def reset_busy_state(self, identity: str, outgoing: Outgoing) -> bool:
        """Force an agent out of its call, e.g. after its peer vanished."""
        agent = self.registry.find_agent(identity)
        if agent is None:
            self._ignore(identity, Unauthorized("reset-busy-state requires an agent"))
            return False

        peer = self._unpair(identity)
        if peer is not None:
            self._mark_free(peer, outgoing)
            self._emit(
                outgoing,
                peer,
                E_CALL_ENDED,
                {
                    "source": identity,
                    "endedBy": identity,
                    "isAgent": True,
                    "reason": REASON_RESET,
                    "timestamp": _now_ms(),
                },
            )

        self.registry.set_in_call(identity, False)
        self._broadcast_status(agent, outgoing)
        self.log.info("Busy state reset agent=%s peer=%s", short_id(identity), short_id(peer))
        return True

    def disconnect(self, identity: str, outgoing: Outgoing) -> Role:
        """Purge every reference to a departing endpoint.

        Returns the role the endpoint had. Must run as one locked operation so
        no handler observes a half-removed agent.
        """
        rec = self.registry.find(identity)
        role = self.registry.role_of(identity)

        for entry in self.ledger.entries_involving(identity):
            if entry.requester == identity:
                released = self.ledger.finish(entry.key, EntryState.CANCELLED)
                if released is not None:
                    self._inc("cancelled")
                    self._notify_cancelled(released, REASON_DISCONNECT, outgoing)
            elif entry.target == identity:
                released = self.ledger.finish(entry.key, EntryState.CANCELLED)
                if released is not None:
                    self._inc("cancelled")
                    self._notify_requester_target_gone(released, rec, outgoing)
            else:
                entry.withdraw(identity)

        peer = self._unpair(identity)
        if peer is not None:
            self._mark_free(peer, outgoing)
            self._emit(
                outgoing,
                peer,
                E_CALL_ENDED,
                {
                    "source": identity,
                    "endedBy": identity,
                    "isAgent": role is Role.AGENT,
                    "reason": REASON_DISCONNECT,
                    "timestamp": _now_ms(),
                },
            )

        self.registry.unregister(identity)

        if isinstance(rec, AgentRecord):
            self._broadcast_agents(
                outgoing,
                E_AGENT_DISCONNECTED,
                {"socketId": identity, "address": rec.address, "name": rec.name},
                exclude=identity,
            )
        elif isinstance(rec, ClientRecord):
            self._broadcast_agents(
                outgoing,
                E_CLIENT_DISCONNECTED,
                {"socketId": identity, "userData": rec.profile},
            )

        if rec is not None:
            self.log.info(
                "Endpoint departed id=%s role=%s peer=%s",
                short_id(identity),
                role.value,
                short_id(peer),
            )
        return role

    def check_status(self, identity: str, address: str | None, outgoing: Outgoing) -> None:
        if address is None:
            self._emit(outgoing, identity, E_STATUS_REPLY, {"online": False})
            return

        matches = self.resolver.resolve(address)
        if not matches:
            self._emit(
                outgoing, identity, E_STATUS_REPLY, {"online": False, "address": address}
            )
            return

        available = self.resolver.resolve_available(address)
        shown = available or matches[0]
        self._emit(
            outgoing,
            identity,
            E_STATUS_REPLY,
            {
                "online": True,
                "inCall": available is None,
                "address": address,
                "agentName": shown.name,
                "agents": len(matches),
            },
        )

    def clear_all(self) -> None:
        self.ledger.clear_all()
        self.registry.clear_all()
        self._peers.clear()

    def get_stats(self) -> dict[str, int]:
        stats = dict(self.registry.get_stats())
        stats["open_requests"] = len(self.ledger)
        stats["active_calls"] = len(self._peers) // 2
        return stats

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _find_agent_entry(self, caller_id: str, target: str) -> LedgerEntry | None:
        for entry in self.ledger.entries_by_requester(caller_id):
            if entry.agent_call and entry.target == target:
                return entry
        return None

    def _pair(self, a: str, b: str, outgoing: Outgoing) -> None:
        for side in (a, b):
            displaced = self._unpair(side)
            if displaced is None or displaced in (a, b):
                continue
            # The old counterpart is no longer in any call.
            self._mark_free(displaced, outgoing)
            self._emit(
                outgoing,
                displaced,
                E_CALL_ENDED,
                {
                    "source": side,
                    "endedBy": side,
                    "isAgent": self.registry.role_of(side) is Role.AGENT,
                    "reason": REASON_SUPERSEDED,
                    "timestamp": _now_ms(),
                },
            )
            self._inc("ended")
        self._peers[a] = b
        self._peers[b] = a

    def _unpair(self, identity: str) -> str | None:
        peer = self._peers.pop(identity, None)
        if peer is not None and self._peers.get(peer) == identity:
            self._peers.pop(peer, None)
        return peer

    def _mark_busy(self, agent: AgentRecord, outgoing: Outgoing) -> None:
        self.registry.set_in_call(agent.identity, True)
        # A participant cannot keep ringing someone else.
        for entry in self.ledger.entries_by_requester(agent.identity):
            released = self.ledger.finish(entry.key, EntryState.CANCELLED)
            if released is not None:
                self._notify_cancelled(released, REASON_BUSY, outgoing)
        self._broadcast_status(agent, outgoing)

    def _mark_free(self, identity: str, outgoing: Outgoing) -> None:
        agent = self.registry.find_agent(identity)
        if agent is None or not agent.in_call:
            return
        self.registry.set_in_call(identity, False)
        self._broadcast_status(agent, outgoing)

    def _broadcast_status(self, agent: AgentRecord, outgoing: Outgoing) -> None:
        self._broadcast_agents(
            outgoing,
            E_STATUS_CHANGED,
            {"agentId": agent.identity, "address": agent.address, "inCall": agent.in_call},
            exclude=agent.identity,
        )

    def _notify_incoming(
        self, entry: LedgerEntry, agents: list[AgentRecord], outgoing: Outgoing
    ) -> None:
        if entry.agent_call:
            caller = self.registry.find_agent(entry.requester)
            body: dict[str, Any] = {
                "socketId": entry.requester,
                "agentData": {
                    "address": caller.address if caller else None,
                    "name": caller.name if caller else None,
                },
                "callType": entry.kind,
            }
            event = E_INCOMING_AGENT_CALL
        else:
            client = self.registry.find_client(entry.requester)
            body = {
                "socketId": entry.requester,
                "userData": client.profile if client else {},
                "callType": entry.kind,
            }
            if not entry.broadcast:
                body["targetSpecific"] = True
            event = E_INCOMING_CALL

        for agent in agents:
            if not self.routing.is_offerable(agent):
                continue
            entry.mark_notified(agent.identity)
            self._emit(outgoing, agent.identity, event, dict(body))

    def _notify_cancelled(
        self,
        entry: LedgerEntry,
        reason: str,
        outgoing: Outgoing,
        *,
        exclude: str | None = None,
    ) -> None:
        ts = _now_ms()
        if entry.agent_call:
            caller = self.registry.find_agent(entry.requester)
            body: dict[str, Any] = {
                "agentId": entry.requester,
                "agentName": caller.name if caller else None,
                "reason": reason,
                "timestamp": ts,
            }
            event = E_AGENT_CALL_CANCELLED
        else:
            client = self.registry.find_client(entry.requester)
            body = {
                "socketId": entry.requester,
                "userData": client.profile if client else {},
                "reason": reason,
                "timestamp": ts,
            }
            event = E_CALL_REQUEST_CANCELLED

        for identity in entry.recipients():
            if identity == exclude:
                continue
            self._emit(outgoing, identity, event, dict(body))

    def _notify_requester_target_gone(
        self, entry: LedgerEntry, target: Any, outgoing: Outgoing
    ) -> None:
        body = {
            "agentId": entry.target,
            "agentName": target.name if isinstance(target, AgentRecord) else None,
            "reason": REASON_DISCONNECT,
            "timestamp": _now_ms(),
        }
        if entry.agent_call:
            self._emit(outgoing, entry.requester, E_AGENT_CALL_CANCELLED, body)
        else:
            body["callType"] = entry.kind
            self._emit(outgoing, entry.requester, E_CALL_REQUEST_CANCELLED, body)

    def _sent_body(
        self,
        entry: LedgerEntry,
        target: AgentRecord | None,
        *,
        notified: int | None = None,
        deferred: bool = False,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "callType": entry.kind,
            "targetAddress": entry.address,
            "agentIsOnline": True,
            "timeout": entry.ttl_s,
        }
        if target is not None:
            body["targetAgentId"] = target.identity
            body["agentName"] = target.name
        if notified is not None:
            body["notified"] = notified
        if deferred:
            body["deferred"] = True
        return body

    def _broadcast_agents(
        self,
        outgoing: Outgoing,
        event: str,
        body: dict[str, Any],
        *,
        exclude: str | None = None,
    ) -> None:
        for rec in self.registry.list_by_role(Role.AGENT):
            if rec.identity == exclude:
                continue
            self._emit(outgoing, rec.identity, event, dict(body))

    def _emit(
        self, outgoing: Outgoing, identity: str, event: str, body: dict[str, Any]
    ) -> None:
        outgoing.append((identity, event, body))

    def _emit_error(self, outgoing: Outgoing, identity: str, err: SignalingError) -> None:
        self._inc("errors_sent")
        body: dict[str, Any] = {"code": err.code, "message": err.message}
        body.update(err.details)
        self._emit(outgoing, identity, E_ERROR, body)

    def _ignore(self, identity: str, err: SignalingError) -> None:
        self._inc("ignored")
        self.log.debug("Ignored id=%s: %s (%s)", short_id(identity), err.message, err.code)

    def _stale(self, identity: str, what: str, ref: Any) -> None:
        err = StaleReference(f"{what} refers to nothing open", ref=ref)
        self._inc("stale")
        self.log.debug(
            "Stale %s from id=%s ref=%s (%s)",
            what,
            short_id(identity),
            short_id(ref),
            err.code,
        )

    def _inc(self, key: str) -> None:
        if self.stats is not None:
            self.stats.inc(key)
