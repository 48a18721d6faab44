from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable

import RNS

from .codec import decode
from .constants import (
    E_ACCEPT_AGENT_CALL,
    E_ACCEPT_CALL,
    E_AGENT_CALL_AGENT,
    E_ANSWER,
    E_CALL_REQUEST,
    E_CANCEL_AGENT_CALL,
    E_CANCEL_CALL_REQUEST,
    E_CHECK_STATUS,
    E_END_CALL,
    E_ERROR,
    E_ICE_CANDIDATE,
    E_OFFER,
    E_REGISTER_AGENT,
    E_REGISTER_CLIENT,
    E_REJECT_AGENT_CALL,
    E_REJECT_CALL,
    E_RESET_BUSY_STATE,
    K_BODY,
    K_T,
)
from .envelope import validate_envelope
from .errors import InvalidRequest
from .lifecycle import LifecycleController, Outgoing
from .presence import AgentRecord, ClientRecord
from .util import normalize_address, normalize_call_kind, normalize_name, short_id

if TYPE_CHECKING:
    from .service import HubService


def _str_field(body: dict[str, Any], *names: str) -> str | None:
    for name in names:
        v = body.get(name)
        if isinstance(v, str) and v.strip():
            return v.strip()
    return None


class MessageRouter:
    """
    Handles inbound event routing for the call-signaling hub.

    This class is responsible for:
    - Decoding and validating incoming packets
    - Rate limiting
    - Normalizing event fields before they reach the lifecycle controller
    - Dispatching events by name
    - Relaying negotiation messages (offer, answer, ice-candidate)
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("rcsd.router")
        self._handlers: dict[str, Callable[[str, dict[str, Any], Outgoing], None]] = {
            E_REGISTER_CLIENT: self._handle_register_client,
            E_REGISTER_AGENT: self._handle_register_agent,
            E_CALL_REQUEST: self._handle_call_request,
            E_AGENT_CALL_AGENT: self._handle_agent_call_agent,
            E_ACCEPT_CALL: self._handle_accept_call,
            E_ACCEPT_AGENT_CALL: self._handle_accept_agent_call,
            E_REJECT_CALL: self._handle_reject_call,
            E_REJECT_AGENT_CALL: self._handle_reject_agent_call,
            E_END_CALL: self._handle_end_call,
            E_CANCEL_CALL_REQUEST: self._handle_cancel_call_request,
            E_CANCEL_AGENT_CALL: self._handle_cancel_agent_call,
            E_RESET_BUSY_STATE: self._handle_reset_busy_state,
            E_CHECK_STATUS: self._handle_check_status,
            E_OFFER: self._handle_offer,
            E_ANSWER: self._handle_answer,
            E_ICE_CANDIDATE: self._handle_ice_candidate,
        }

    @property
    def controller(self) -> LifecycleController:
        return self.hub.controller

    def route_packet(self, link: RNS.Link, data: bytes, outgoing: Outgoing) -> None:
        """
        Main entry point for routing an incoming packet.

        This method should be called with the state lock held.
        """
        identity = self.hub.session_manager.identity_for(link)
        if identity is None:
            return

        self.hub.stats_manager.inc("pkts_in")
        self.hub.stats_manager.inc("bytes_in", len(data))

        if not self.hub.session_manager.refill_and_take(link, 1.0):
            self.hub.stats_manager.inc("rate_limited")
            self.log.debug("Rate limited id=%s", short_id(identity))
            self._error(outgoing, identity, "rate-limited", "rate limited")
            return

        try:
            env = decode(data)
            validate_envelope(env)
        except Exception as e:
            self.hub.stats_manager.inc("pkts_bad")
            self.log.debug(
                "Bad packet id=%s link_id=%s bytes=%s err=%s",
                short_id(identity),
                self.hub._fmt_link_id(link),
                len(data),
                e,
            )
            self._error(outgoing, identity, "bad-message", f"bad message: {e}")
            return

        event = env.get(K_T)
        body = env.get(K_BODY) or {}

        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "RX id=%s event=%s bytes=%s keys=%s",
                short_id(identity),
                event,
                len(data),
                sorted(body.keys()),
            )

        handler = self._handlers.get(event)
        if handler is None:
            self.log.debug("Unknown event %r from id=%s", event, short_id(identity))
            return
        handler(identity, body, outgoing)

    def _error(self, outgoing: Outgoing, identity: str, code: str, message: str) -> None:
        self.hub.stats_manager.inc("errors_sent")
        outgoing.append((identity, E_ERROR, {"code": code, "message": message}))

    def _invalid(self, outgoing: Outgoing, identity: str, message: str) -> None:
        err = InvalidRequest(message)
        self._error(outgoing, identity, err.code, err.message)

    def _call_kind(
        self, identity: str, body: dict[str, Any], outgoing: Outgoing
    ) -> str | None:
        kind = normalize_call_kind(body.get("callType"))
        if kind is None:
            self._invalid(outgoing, identity, f"unsupported callType {body.get('callType')!r}")
        return kind

    def _address(self, value: Any) -> str | None:
        return normalize_address(value, max_chars=int(self.hub.config.max_address_len))

    # Registration

    def _handle_register_client(
        self, identity: str, body: dict[str, Any], outgoing: Outgoing
    ) -> None:
        profile = body.get("profile")
        if profile is None:
            profile = body.get("userData")
        if profile is not None and not isinstance(profile, dict):
            self._invalid(outgoing, identity, "profile must be a map")
            return
        self.controller.register_client(identity, profile, outgoing)

    def _handle_register_agent(
        self, identity: str, body: dict[str, Any], outgoing: Outgoing
    ) -> None:
        address = self._address(body.get("address"))
        if address is None:
            self._invalid(outgoing, identity, "register-agent requires a valid address")
            return
        name = normalize_name(body.get("name"), max_chars=int(self.hub.config.max_name_len))
        self.controller.register_agent(identity, address, name, outgoing)

    # Requests

    def _handle_call_request(
        self, identity: str, body: dict[str, Any], outgoing: Outgoing
    ) -> None:
        kind = self._call_kind(identity, body, outgoing)
        if kind is None:
            return
        raw = body.get("targetAddress")
        address = None
        if raw is not None and raw != "":
            address = self._address(raw)
            if address is None:
                self._invalid(outgoing, identity, "invalid targetAddress")
                return
        self.controller.request_call(identity, kind, address, outgoing)

    def _handle_agent_call_agent(
        self, identity: str, body: dict[str, Any], outgoing: Outgoing
    ) -> None:
        kind = self._call_kind(identity, body, outgoing)
        if kind is None:
            return
        address = self._address(body.get("targetAddress"))
        self.controller.request_agent_call(identity, kind, address, outgoing)

    # Responses

    def _handle_accept_call(
        self, identity: str, body: dict[str, Any], outgoing: Outgoing
    ) -> None:
        client_id = _str_field(body, "clientId")
        if client_id is None:
            self._invalid(outgoing, identity, "accept-call requires clientId")
            return
        kind = normalize_call_kind(body.get("callType"))
        self.controller.accept_call(identity, client_id, kind, outgoing)

    def _handle_accept_agent_call(
        self, identity: str, body: dict[str, Any], outgoing: Outgoing
    ) -> None:
        caller_id = _str_field(body, "agentId", "callerId")
        if caller_id is None:
            self._invalid(outgoing, identity, "accept-agent-call requires agentId")
            return
        kind = normalize_call_kind(body.get("callType"))
        self.controller.accept_agent_call(identity, caller_id, kind, outgoing)

    def _handle_reject_call(
        self, identity: str, body: dict[str, Any], outgoing: Outgoing
    ) -> None:
        client_id = _str_field(body, "clientId")
        if client_id is None:
            self._invalid(outgoing, identity, "reject-call requires clientId")
            return
        self.controller.reject_call(identity, client_id, outgoing)

    def _handle_reject_agent_call(
        self, identity: str, body: dict[str, Any], outgoing: Outgoing
    ) -> None:
        caller_id = _str_field(body, "agentId", "callerId")
        if caller_id is None:
            self._invalid(outgoing, identity, "reject-agent-call requires agentId")
            return
        self.controller.reject_agent_call(identity, caller_id, outgoing)

    # Completion, cancellation, recovery

    def _handle_end_call(
        self, identity: str, body: dict[str, Any], outgoing: Outgoing
    ) -> None:
        target_id = _str_field(body, "targetId")
        reason = _str_field(body, "endReason", "reason")
        force = bool(body.get("forceCleanup", False))
        self.controller.end_call(identity, target_id, reason, outgoing, force_cleanup=force)

    def _handle_cancel_call_request(
        self, identity: str, body: dict[str, Any], outgoing: Outgoing
    ) -> None:
        if not self.controller.cancel_call_request(identity, outgoing):
            self.log.debug("No open request to cancel id=%s", short_id(identity))

    def _handle_cancel_agent_call(
        self, identity: str, body: dict[str, Any], outgoing: Outgoing
    ) -> None:
        target_ref = _str_field(body, "targetAgentId")
        if target_ref is None:
            target_ref = self._address(body.get("targetAddress"))
        self.controller.cancel_agent_call(identity, target_ref, outgoing)

    def _handle_reset_busy_state(
        self, identity: str, body: dict[str, Any], outgoing: Outgoing
    ) -> None:
        self.controller.reset_busy_state(identity, outgoing)

    def _handle_check_status(
        self, identity: str, body: dict[str, Any], outgoing: Outgoing
    ) -> None:
        address = self._address(body.get("address"))
        self.controller.check_status(identity, address, outgoing)

    # Negotiation relay

    def _relay_target(
        self, identity: str, body: dict[str, Any], outgoing: Outgoing
    ) -> str | None:
        target = _str_field(body, "target")
        if target is None:
            self._invalid(outgoing, identity, "relay requires target")
            return None
        if self.controller.registry.find(identity) is None:
            self.log.debug("Relay from unregistered id=%s dropped", short_id(identity))
            return None
        return target

    def _relay(
        self, outgoing: Outgoing, target: str, event: str, fwd: dict[str, Any]
    ) -> None:
        # Opaque payload; a target that has gone away is dropped at send time.
        self.hub.stats_manager.inc("relayed")
        outgoing.append((target, event, fwd))

    def _handle_offer(
        self, identity: str, body: dict[str, Any], outgoing: Outgoing
    ) -> None:
        target = self._relay_target(identity, body, outgoing)
        if target is None:
            return
        fwd: dict[str, Any] = {
            "source": identity,
            "offer": body.get("offer"),
            "callType": normalize_call_kind(body.get("callType")),
        }
        sender = self.controller.registry.find(identity)
        if isinstance(sender, AgentRecord):
            fwd["agentData"] = {"address": sender.address, "name": sender.name}
        elif isinstance(sender, ClientRecord):
            fwd["userData"] = sender.profile
        self._relay(outgoing, target, E_OFFER, fwd)

    def _handle_answer(
        self, identity: str, body: dict[str, Any], outgoing: Outgoing
    ) -> None:
        target = self._relay_target(identity, body, outgoing)
        if target is None:
            return
        fwd = {
            "source": identity,
            "answer": body.get("answer"),
            "callType": normalize_call_kind(body.get("callType")),
        }
        self._relay(outgoing, target, E_ANSWER, fwd)

    def _handle_ice_candidate(
        self, identity: str, body: dict[str, Any], outgoing: Outgoing
    ) -> None:
        target = self._relay_target(identity, body, outgoing)
        if target is None:
            return
        self._relay(
            outgoing,
            target,
            E_ICE_CANDIDATE,
            {"source": identity, "candidate": body.get("candidate")},
        )
