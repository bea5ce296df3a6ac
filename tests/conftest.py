"""Shared pytest fixtures for wsl-port-forwarder tests.

Nothing here touches the real host: the netsh table is an in-memory
RecordingMutator, discovery and address sources are static fakes.
"""

from __future__ import annotations

import asyncio
from ipaddress import IPv4Address
from typing import TYPE_CHECKING

import pytest

from wsl_port_forwarder.address_watcher import AddressWatcher
from wsl_port_forwarder.config_store import ConfigStore
from wsl_port_forwarder.discovery import PortDiscoverer, PortSource
from wsl_port_forwarder.exceptions import RuleMutationError, SourceUnavailableError
from wsl_port_forwarder.models import ForwardingRule, GuestAddress
from wsl_port_forwarder.reconciler import Reconciler
from wsl_port_forwarder.rule_store import RuleStore
from wsl_port_forwarder.services import Services

if TYPE_CHECKING:
    from collections.abc import Iterable
    from pathlib import Path

# ============================================================================
# Addresses
# ============================================================================

A1 = IPv4Address("172.20.1.2")
A2 = IPv4Address("172.20.9.9")


def rule(port: int, address: GuestAddress = A1, target_port: int | None = None) -> ForwardingRule:
    """Shorthand for a rule forwarding ``port`` to ``address``."""
    return ForwardingRule(listen_port=port, target_address=address, target_port=target_port or port)


# ============================================================================
# Fakes
# ============================================================================


class RecordingMutator:
    """In-memory host rule table recording every call in order.

    calls holds ("list", None), ("remove", port) and ("add", port) tuples.
    """

    def __init__(
        self,
        rules: Iterable[ForwardingRule] = (),
        *,
        fail_add: Iterable[int] = (),
        fail_remove: Iterable[int] = (),
        fail_list: bool = False,
        delay: float = 0.0,
    ) -> None:
        self.rules: dict[int, ForwardingRule] = {r.listen_port: r for r in rules}
        self.calls: list[tuple[str, int | None]] = []
        self.fail_add = set(fail_add)
        self.fail_remove = set(fail_remove)
        self.fail_list = fail_list
        self.delay = delay

    @property
    def mutations(self) -> list[tuple[str, int | None]]:
        return [call for call in self.calls if call[0] != "list"]

    async def list_rules(self) -> list[ForwardingRule]:
        self.calls.append(("list", None))
        if self.fail_list:
            raise RuleMutationError("access denied")
        return list(self.rules.values())

    async def add_rule(self, rule: ForwardingRule) -> None:
        self.calls.append(("add", rule.listen_port))
        if self.delay:
            await asyncio.sleep(self.delay)
        if rule.listen_port in self.fail_add:
            raise RuleMutationError("The requested operation requires elevation.", port=rule.listen_port)
        self.rules[rule.listen_port] = rule

    async def remove_rule(self, port: int) -> None:
        self.calls.append(("remove", port))
        if self.delay:
            await asyncio.sleep(self.delay)
        if port in self.fail_remove:
            raise RuleMutationError("The requested operation requires elevation.", port=port)
        self.rules.pop(port, None)


class StaticPortSource:
    """Discovery source returning fixed ports, or failing."""

    def __init__(self, name: str, ports: Iterable[int] = (), *, error: str | None = None) -> None:
        self.name = name
        self.ports = set(ports)
        self.error = error
        self.fetches = 0

    async def fetch(self) -> set[int]:
        self.fetches += 1
        if self.error is not None:
            raise SourceUnavailableError(self.error, source=self.name)
        return set(self.ports)


class ScriptedAddressSource:
    """Address source replaying a script; the last entry repeats.

    Entries are addresses, None (no address) or "error" (fetch fails).
    """

    def __init__(self, *script: GuestAddress | str | None) -> None:
        self.script = list(script) or [None]
        self.fetches = 0

    async def fetch(self) -> GuestAddress | None:
        index = min(self.fetches, len(self.script) - 1)
        self.fetches += 1
        entry = self.script[index]
        if entry == "error":
            raise SourceUnavailableError("hostname -I exited with 1", source="hostname")
        return entry  # type: ignore[return-value]


def make_services(
    config_path: Path,
    mutator: RecordingMutator,
    *,
    address: GuestAddress | None = A1,
    sources: Iterable[PortSource] = (),
) -> Services:
    """Services wired to fakes (lock files under the config dir)."""
    rule_store = RuleStore(mutator, timeout=5.0)  # type: ignore[arg-type]
    return Services(
        config_store=ConfigStore(config_path, lock_timeout=2.0),
        discoverer=PortDiscoverer(list(sources)),
        watcher=AddressWatcher(ScriptedAddressSource(address)),
        mutator=mutator,  # type: ignore[arg-type]
        rule_store=rule_store,
        reconciler=Reconciler(rule_store, lock_path=config_path.parent / "reconcile.lock", lock_timeout=2.0),
    )


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    return tmp_path / "config" / "ports.yaml"


@pytest.fixture
def config_store(config_path: Path) -> ConfigStore:
    return ConfigStore(config_path, lock_timeout=5.0)


@pytest.fixture
def mutator() -> RecordingMutator:
    return RecordingMutator()


@pytest.fixture
def rule_store(mutator: RecordingMutator) -> RuleStore:
    return RuleStore(mutator)  # type: ignore[arg-type]


@pytest.fixture
def reconciler(rule_store: RuleStore) -> Reconciler:
    return Reconciler(rule_store)
