"""Data models for wsl-port-forwarder."""

from __future__ import annotations

from enum import Enum
from ipaddress import IPv4Address, IPv6Address
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, IPvAnyAddress, model_validator

from wsl_port_forwarder import constants

Port = Annotated[int, Field(ge=constants.MIN_PORT, le=constants.MAX_PORT)]
"""TCP port in 1-65535."""

GuestAddress = IPv4Address | IPv6Address
"""Current guest address; None stands for Unknown wherever it is optional."""


class ForwardingRule(BaseModel):
    """Host-side mapping from a listen port to a guest address and port."""

    model_config = ConfigDict(frozen=True)

    listen_port: Port
    target_address: IPvAnyAddress
    target_port: Port  # defaults to listen_port

    @model_validator(mode="before")
    @classmethod
    def _default_target_port(cls, data: object) -> object:
        if isinstance(data, dict) and data.get("target_port") is None:
            data = {**data, "target_port": data.get("listen_port")}
        return data

    @classmethod
    def for_port(cls, port: int, address: GuestAddress) -> ForwardingRule:
        """Rule forwarding ``port`` to the same port on ``address``."""
        return cls(listen_port=port, target_address=address, target_port=port)

    def targets(self, address: GuestAddress) -> bool:
        """True when the rule forwards to ``address`` on its own listen port."""
        return self.target_address == address and self.target_port == self.listen_port

    def __str__(self) -> str:
        return f"{self.listen_port}->{self.target_address}:{self.target_port}"


RuleTable = dict[int, ForwardingRule]
"""Live host rules keyed by listen port."""


class ManualPortConfig(BaseModel):
    """Persisted desired-port subset plus discovery toggles."""

    model_config = ConfigDict(extra="forbid")

    manual_ports: set[Port] = Field(default_factory=set)
    enable_pm2: bool = True
    enable_caddy: bool = True


class AddressEventKind(str, Enum):
    """Outcome of one address poll."""

    UNCHANGED = "unchanged"
    CHANGED = "changed"
    LOST = "lost"


class AddressEvent(BaseModel):
    """Transition reported by AddressWatcher.poll()."""

    model_config = ConfigDict(frozen=True)

    kind: AddressEventKind
    old: IPvAnyAddress | None = None
    new: IPvAnyAddress | None = None

    @property
    def triggers_reconcile(self) -> bool:
        return self.kind is not AddressEventKind.UNCHANGED


class Plan(BaseModel):
    """Rule mutations needed to converge the host table."""

    model_config = ConfigDict(frozen=True)

    to_remove: frozenset[int] = frozenset()
    to_add: frozenset[ForwardingRule] = frozenset()
    unchanged: frozenset[int] = frozenset()

    @property
    def is_empty(self) -> bool:
        return not self.to_remove and not self.to_add


RuleDelta = Plan
"""What RuleStore.apply() consumes; same shape as a plan."""


class ApplyResult(BaseModel):
    """Per-port outcome of RuleStore.apply()."""

    removed: set[int] = Field(default_factory=set)
    added: set[int] = Field(default_factory=set)
    failed: dict[int, str] = Field(default_factory=dict, description="port -> error message")


class ReconcileResult(BaseModel):
    """Outcome of one reconciliation cycle."""

    address: IPvAnyAddress | None = None
    desired: frozenset[int] = frozenset()
    added: set[int] = Field(default_factory=set)
    removed: set[int] = Field(default_factory=set)
    unchanged: set[int] = Field(default_factory=set)
    failed: dict[int, str] = Field(default_factory=dict)
    targeted: set[int] = Field(default_factory=set, description="Ports the plan tried to mutate")
    skipped: bool = Field(default=False, description="Short-circuited; no RuleStore calls were made")
    error: str | None = Field(default=None, description="Cycle-wide failure (host table unreadable)")

    @property
    def ok(self) -> bool:
        return not self.failed and self.error is None

    @property
    def total_failure(self) -> bool:
        """The cycle failed as a whole, or every port it targeted failed."""
        if self.error is not None:
            return True
        return bool(self.targeted) and set(self.failed) >= self.targeted


class DiscoveryResult(BaseModel):
    """Aggregated desired ports with per-source detail."""

    manual: frozenset[int] = frozenset()
    discovered: dict[str, frozenset[int]] = Field(default_factory=dict, description="source -> ports")
    errors: dict[str, str] = Field(default_factory=dict, description="source -> error message")

    @property
    def ports(self) -> frozenset[int]:
        result = set(self.manual)
        for ports in self.discovered.values():
            result |= ports
        return frozenset(result)

    def sources_reporting(self, port: int) -> list[str]:
        """Names of discovery sources that currently report ``port``."""
        return sorted(name for name, ports in self.discovered.items() if port in ports)
