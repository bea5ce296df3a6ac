"""Component wiring shared by the one-shot commands and the daemon."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from wsl_port_forwarder.address_watcher import AddressWatcher, HostnameAddressSource
from wsl_port_forwarder.config_store import ConfigStore
from wsl_port_forwarder.discovery import PortDiscoverer, default_sources
from wsl_port_forwarder.netsh import NetshRuleMutator
from wsl_port_forwarder.reconciler import Reconciler
from wsl_port_forwarder.rule_store import RuleStore

if TYPE_CHECKING:
    from wsl_port_forwarder.models import DiscoveryResult, ReconcileResult
    from wsl_port_forwarder.settings import Settings


@dataclass
class Services:
    """One instance of every collaborator, built from Settings."""

    config_store: ConfigStore
    discoverer: PortDiscoverer
    watcher: AddressWatcher
    mutator: NetshRuleMutator
    rule_store: RuleStore
    reconciler: Reconciler

    @classmethod
    def from_settings(cls, settings: Settings) -> Services:
        mutator = NetshRuleMutator(
            powershell=settings.powershell_path,
            listen_address=settings.listen_address,
            timeout=settings.netsh_timeout_seconds,
        )
        # Outer bound per mutator call; the child itself is killed at netsh_timeout
        rule_store = RuleStore(mutator, timeout=settings.netsh_timeout_seconds * 2)
        return cls(
            config_store=ConfigStore(settings.config_path, lock_timeout=settings.lock_timeout_seconds),
            discoverer=PortDiscoverer(
                default_sources(
                    caddy_admin_url=settings.caddy_admin_url,
                    command_timeout=settings.command_timeout_seconds,
                    caddy_timeout=settings.caddy_timeout_seconds,
                )
            ),
            watcher=AddressWatcher(HostnameAddressSource(timeout=settings.command_timeout_seconds)),
            mutator=mutator,
            rule_store=rule_store,
            reconciler=Reconciler(
                rule_store,
                lock_path=settings.reconcile_lock_path,
                lock_timeout=settings.lock_timeout_seconds,
                failure_escalation_threshold=settings.failure_escalation_threshold,
            ),
        )

    async def sync_once(self, *, force: bool) -> tuple[DiscoveryResult, ReconcileResult]:
        """One full cycle for the one-shot commands (strict config load).

        Raises:
            ConfigError: Persisted config unreadable or corrupt
            LockTimeoutError: Reconcile lock held elsewhere too long
        """
        config = await self.config_store.load()
        discovery = await self.discoverer.discover(config)
        await self.watcher.poll()
        result = await self.reconciler.reconcile(discovery.ports, self.watcher.current, force=force)
        return discovery, result
