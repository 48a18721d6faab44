"""Presence registry: which endpoints are connected and in what role."""

from __future__ import annotations

import enum
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Union

from .errors import DuplicateRegistration, NotFound
from .util import short_id


class Role(enum.Enum):
    UNASSIGNED = "unassigned"
    CLIENT = "client"
    AGENT = "agent"


@dataclass
class ClientRecord:
    identity: str
    profile: dict[str, Any]
    seq: int
    registered_at: float = field(default_factory=time.time)

    role = Role.CLIENT

    def public(self) -> dict[str, Any]:
        return {"socketId": self.identity, "userData": self.profile}


@dataclass
class AgentRecord:
    identity: str
    address: str
    name: str
    seq: int
    in_call: bool = False
    registered_at: float = field(default_factory=time.time)

    role = Role.AGENT

    def public(self) -> dict[str, Any]:
        return {
            "socketId": self.identity,
            "address": self.address,
            "name": self.name,
            "inCall": self.in_call,
        }


Record = Union[ClientRecord, AgentRecord]


class PresenceRegistry:
    """
    Tracks registered endpoints by identity.

    An identity is Unassigned until it registers, then belongs to exactly one
    of the client or agent partitions until it is unregistered. Agent records
    are also indexed by address, in registration order.

    Not thread-safe on its own; callers hold the hub state lock.
    """

    def __init__(self) -> None:
        self.log = logging.getLogger("rcsd.presence")
        self._clients: dict[str, ClientRecord] = {}
        self._agents: dict[str, AgentRecord] = {}
        self._by_address: dict[str, list[str]] = {}
        self._seq = itertools.count(1)

    def register(self, identity: str, role: Role, data: dict[str, Any]) -> Record:
        if self.role_of(identity) is not Role.UNASSIGNED:
            raise DuplicateRegistration(
                "endpoint already registered", identity=identity
            )

        if role is Role.CLIENT:
            profile = data.get("profile")
            rec: Record = ClientRecord(
                identity=identity,
                profile=dict(profile) if isinstance(profile, dict) else {},
                seq=next(self._seq),
            )
            self._clients[identity] = rec
        elif role is Role.AGENT:
            rec = AgentRecord(
                identity=identity,
                address=str(data["address"]),
                name=str(data.get("name") or "Agent"),
                seq=next(self._seq),
            )
            self._agents[identity] = rec
            self._by_address.setdefault(rec.address, []).append(identity)
        else:
            raise ValueError(f"cannot register role {role!r}")

        self.log.info(
            "Registered %s id=%s seq=%s", role.value, short_id(identity), rec.seq
        )
        return rec

    def unregister(self, identity: str) -> Record | None:
        rec: Record | None = self._clients.pop(identity, None)
        if rec is not None:
            return rec

        rec = self._agents.pop(identity, None)
        if rec is None:
            return None

        ids = self._by_address.get(rec.address)
        if ids is not None:
            try:
                ids.remove(identity)
            except ValueError:
                pass
            if not ids:
                self._by_address.pop(rec.address, None)
        return rec

    def find(self, identity: str) -> Record | None:
        return self._clients.get(identity) or self._agents.get(identity)

    def find_agent(self, identity: str) -> AgentRecord | None:
        return self._agents.get(identity)

    def find_client(self, identity: str) -> ClientRecord | None:
        return self._clients.get(identity)

    def role_of(self, identity: str) -> Role:
        if identity in self._clients:
            return Role.CLIENT
        if identity in self._agents:
            return Role.AGENT
        return Role.UNASSIGNED

    def list_by_role(self, role: Role) -> list[Record]:
        """Snapshot of the records in one partition, oldest registration first."""
        if role is Role.CLIENT:
            return sorted(self._clients.values(), key=lambda r: r.seq)
        if role is Role.AGENT:
            return sorted(self._agents.values(), key=lambda r: r.seq)
        return []

    def agent_ids_for_address(self, address: str) -> list[str]:
        return list(self._by_address.get(address, ()))

    def set_in_call(self, identity: str, in_call: bool) -> AgentRecord:
        rec = self._agents.get(identity)
        if rec is None:
            raise NotFound("no such agent", identity=identity)
        rec.in_call = bool(in_call)
        return rec

    def clear_all(self) -> None:
        self._clients.clear()
        self._agents.clear()
        self._by_address.clear()

    def get_stats(self) -> dict[str, int]:
        return {
            "clients": len(self._clients),
            "agents": len(self._agents),
            "agents_in_call": sum(1 for a in self._agents.values() if a.in_call),
            "addresses": len(self._by_address),
        }
