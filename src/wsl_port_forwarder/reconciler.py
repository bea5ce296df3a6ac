"""Reconciliation engine.

compute_plan() is a pure function of (desired ports, guest address, live
table). Reconciler wraps it with the side effects: read the host table,
apply the plan through RuleStore, report the outcome.

Ordering: stale rules are removed and re-created, never edited in place, and
every removal runs before any addition (RuleStore.apply is two-phase).

Serialization: one cycle at a time. An asyncio.Lock covers callers in this
process; an optional flock covers other processes (a one-shot
``wsl-port add`` while the daemon runs).
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING

from wsl_port_forwarder import constants
from wsl_port_forwarder._logging import get_logger
from wsl_port_forwarder.exceptions import RuleMutationError
from wsl_port_forwarder.locking import exclusive_lock
from wsl_port_forwarder.models import ForwardingRule, GuestAddress, Plan, ReconcileResult, RuleTable

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Set
    from pathlib import Path

    from wsl_port_forwarder.rule_store import RuleStore

logger = get_logger(__name__)


def compute_plan(desired: Set[int], address: GuestAddress | None, current: RuleTable) -> Plan:
    """Minimal mutations converging ``current`` onto ``desired`` at ``address``.

    - Unknown address: drain the table (no rule may point at a dead guest).
    - Known address: remove undesired and stale rules, add every desired port
      without a valid rule. A rule is stale when it targets another address
      or another port; stale ports appear in both sets.
    """
    if address is None:
        return Plan(to_remove=frozenset(current))

    stale = {port for port, rule in current.items() if not rule.targets(address)}
    undesired = set(current) - set(desired)
    valid = set(current) - stale

    return Plan(
        to_remove=frozenset(undesired | stale),
        to_add=frozenset(ForwardingRule.for_port(port, address) for port in desired if port not in valid),
        unchanged=frozenset(valid & set(desired)),
    )


class Reconciler:
    """Runs serialized reconciliation cycles against a RuleStore.

    Remembers the inputs of the last clean cycle so that an identical,
    unforced request is a no-op without touching the host. A cycle with
    failures never arms that short-circuit, so failed ports are retried on
    the next call.
    """

    def __init__(
        self,
        rule_store: RuleStore,
        *,
        lock_path: Path | None = None,
        lock_timeout: float = constants.LOCK_TIMEOUT_SECONDS,
        failure_escalation_threshold: int = constants.FAILURE_ESCALATION_THRESHOLD,
    ) -> None:
        self._rule_store = rule_store
        self._lock = asyncio.Lock()
        self._lock_path = lock_path
        self._lock_timeout = lock_timeout
        self._escalation_threshold = failure_escalation_threshold
        self._last_clean: tuple[GuestAddress | None, frozenset[int]] | None = None
        self._consecutive_failures = 0

    @property
    def consecutive_failures(self) -> int:
        """Cycles in a row that ended with at least one failed port."""
        return self._consecutive_failures

    @contextlib.asynccontextmanager
    async def _serialized(self) -> AsyncIterator[None]:
        async with self._lock:
            if self._lock_path is None:
                yield
                return
            async with exclusive_lock(self._lock_path, timeout=self._lock_timeout):
                yield

    async def reconcile(
        self,
        desired: Set[int],
        address: GuestAddress | None,
        *,
        force: bool = False,
    ) -> ReconcileResult:
        """Converge the host table onto ``desired`` at ``address``.

        Args:
            desired: Ports that must be forwarded
            address: Current guest address; None drains every rule
            force: Skip the no-op short-circuit and re-validate every live rule

        Returns:
            ReconcileResult with per-port outcome. Host failures are reported
            in ``failed``, never raised.

        Raises:
            LockTimeoutError: Another process held the reconcile lock too long
        """
        desired = frozenset(desired)
        async with self._serialized():
            if not force and self._last_clean == (address, desired):
                logger.debug("Nothing changed, skipping cycle")
                return ReconcileResult(address=address, desired=desired, unchanged=set(desired), skipped=True)

            result = await self._run_cycle(desired, address, force=force)

            if result.ok:
                self._last_clean = (address, desired)
                self._consecutive_failures = 0
            else:
                self._last_clean = None
                self._consecutive_failures += 1
            self._report(result)
            return result

    async def _run_cycle(
        self, desired: frozenset[int], address: GuestAddress | None, *, force: bool
    ) -> ReconcileResult:
        try:
            current = await self._rule_store.list()
        except RuleMutationError as e:
            return ReconcileResult(address=address, desired=desired, error=f"Cannot read host rules: {e.message}")

        plan = compute_plan(desired, address, current)
        logger.debug(
            "Reconcile plan",
            extra={
                "address": str(address) if address else None,
                "force": force,
                "to_remove": sorted(plan.to_remove),
                "to_add": sorted(str(rule) for rule in plan.to_add),
                "unchanged": sorted(plan.unchanged),
            },
        )
        if plan.is_empty:
            return ReconcileResult(address=address, desired=desired, unchanged=set(plan.unchanged))

        applied = await self._rule_store.apply(plan)
        return ReconcileResult(
            address=address,
            desired=desired,
            added=applied.added,
            removed=applied.removed,
            unchanged=set(plan.unchanged),
            failed=applied.failed,
            targeted=set(plan.to_remove) | {rule.listen_port for rule in plan.to_add},
        )

    def _report(self, result: ReconcileResult) -> None:
        extra = {
            "address": str(result.address) if result.address else None,
            "added": sorted(result.added),
            "removed": sorted(result.removed),
            "unchanged": len(result.unchanged),
        }
        if result.ok:
            if result.added or result.removed:
                logger.info("Reconciled forwarding rules", extra=extra)
            else:
                logger.debug("Forwarding rules already in sync", extra=extra)
            return

        level = logging.ERROR if self._consecutive_failures >= self._escalation_threshold else logging.WARNING
        logger.log(
            level,
            "Reconcile finished with failures",
            extra={
                **extra,
                "failed": sorted(result.failed),
                "error": result.error,
                "consecutive_failures": self._consecutive_failures,
            },
        )
