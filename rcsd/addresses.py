from __future__ import annotations

from .presence import AgentRecord, PresenceRegistry


class AddressResolver:
    """Maps an agent address to its connected agents.

    Several agent connections may share one address. They are always returned
    in registration order (earliest first), so routing is reproducible.
    """

    def __init__(self, registry: PresenceRegistry) -> None:
        self.registry = registry

    def resolve(self, address: str, *, exclude: str | None = None) -> list[AgentRecord]:
        out: list[AgentRecord] = []
        for identity in self.registry.agent_ids_for_address(address):
            if identity == exclude:
                continue
            rec = self.registry.find_agent(identity)
            if rec is not None:
                out.append(rec)
        out.sort(key=lambda r: r.seq)
        return out

    def resolve_available(
        self, address: str, *, exclude: str | None = None
    ) -> AgentRecord | None:
        for rec in self.resolve(address, exclude=exclude):
            if not rec.in_call:
                return rec
        return None
