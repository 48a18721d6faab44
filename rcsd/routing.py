"""Routing decisions for new call requests."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field

from .addresses import AddressResolver
from .errors import AlreadyInCall, Busy, InvalidRequest, NotFound, Unauthorized
from .presence import AgentRecord, PresenceRegistry, Role


class RouteKind(enum.Enum):
    BROADCAST = "broadcast"
    DIRECT = "direct"
    QUEUED = "queued"


@dataclass
class RouteDecision:
    kind: RouteKind
    address: str | None
    candidates: list[AgentRecord] = field(default_factory=list)

    @property
    def target(self) -> AgentRecord | None:
        if self.kind is RouteKind.DIRECT and self.candidates:
            return self.candidates[0]
        return None


class RoutingEngine:
    """
    Decides, for a new request, whom to notify.

    - no address: every connected agent that is not in a call (broadcast)
    - address with an available agent: that agent only, earliest registered first
    - address with only busy agents: :class:`Busy`, nothing is opened
    - address with no agents: a queued request, delivered when the address
      registers (or :class:`NotFound` when queueing is disabled)

    The engine only reads presence state; opening ledger entries is the
    controller's job.
    """

    def __init__(
        self,
        registry: PresenceRegistry,
        resolver: AddressResolver,
        *,
        queue_offline: bool = True,
    ) -> None:
        self.registry = registry
        self.resolver = resolver
        self.queue_offline = bool(queue_offline)

    def route_client_request(self, requester: str, address: str | None) -> RouteDecision:
        if self.registry.find_client(requester) is None:
            raise Unauthorized("call-request requires a registered client", identity=requester)

        if address is None:
            candidates = [
                rec
                for rec in self.registry.list_by_role(Role.AGENT)
                if isinstance(rec, AgentRecord) and not rec.in_call
            ]
            return RouteDecision(RouteKind.BROADCAST, None, candidates)

        return self._route_address(address, exclude=None)

    def route_agent_request(self, requester: str, address: str | None) -> RouteDecision:
        caller = self.registry.find_agent(requester)
        if caller is None:
            raise Unauthorized("agent calls require a registered agent", identity=requester)
        if caller.in_call:
            raise AlreadyInCall("you are already in a call", agentId=requester)
        if address is None:
            raise InvalidRequest("target address is required")

        return self._route_address(address, exclude=requester)

    def is_offerable(self, agent: AgentRecord) -> bool:
        return not agent.in_call

    def _route_address(self, address: str, *, exclude: str | None) -> RouteDecision:
        matches = self.resolver.resolve(address, exclude=exclude)
        if not matches:
            if not self.queue_offline:
                raise NotFound("no agent online for address", address=address)
            return RouteDecision(RouteKind.QUEUED, address)

        available = self.resolver.resolve_available(address, exclude=exclude)
        if available is None:
            first = matches[0]
            raise Busy(
                "agent is in another call",
                targetAgentId=first.identity,
                agentName=first.name,
                address=address,
            )
        return RouteDecision(RouteKind.DIRECT, address, [available])
