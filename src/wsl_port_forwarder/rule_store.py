"""Host forwarding-rule table access.

RuleStore wraps a RuleMutator (the host capability) with the two guarantees
the reconciler depends on:

- list() always reads the host; nothing is cached between calls
- apply() is two-phase: every removal completes before the first addition,
  and a port whose removal failed gets no addition in the same batch

Failures are isolated per port: one rejected rule never blocks the rest of
the batch.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Protocol, TypeVar

from wsl_port_forwarder._logging import get_logger
from wsl_port_forwarder.exceptions import RuleMutationError
from wsl_port_forwarder.models import ApplyResult, ForwardingRule, RuleDelta, RuleTable

if TYPE_CHECKING:
    from collections.abc import Awaitable

logger = get_logger(__name__)

T = TypeVar("T")


class RuleMutator(Protocol):
    """Host-side forwarding table capability."""

    async def list_rules(self) -> list[ForwardingRule]:
        """Return every managed rule currently on the host.

        Raises:
            RuleMutationError: Table could not be read
        """
        ...

    async def add_rule(self, rule: ForwardingRule) -> None:
        """Create ``rule``.

        Raises:
            RuleMutationError: Host rejected the rule
        """
        ...

    async def remove_rule(self, port: int) -> None:
        """Delete the rule listening on ``port``.

        Raises:
            RuleMutationError: Host rejected the removal
        """
        ...


class RuleStore:
    """Reads and mutates the host rule table through a RuleMutator."""

    def __init__(self, mutator: RuleMutator, *, timeout: float | None = None) -> None:
        """
        Args:
            mutator: Host capability
            timeout: Upper bound per mutator call (None = rely on the mutator)
        """
        self._mutator = mutator
        self._timeout = timeout

    async def _bounded(self, call: Awaitable[T], *, port: int | None, action: str) -> T:
        try:
            async with asyncio.timeout(self._timeout):
                return await call
        except TimeoutError as e:
            raise RuleMutationError(f"{action} timed out after {self._timeout}s", port=port) from e

    async def list(self) -> RuleTable:
        """Read the live rule table keyed by listen port.

        Raises:
            RuleMutationError: Table could not be read
        """
        rules = await self._bounded(self._mutator.list_rules(), port=None, action="Listing rules")
        table: RuleTable = {}
        for rule in rules:
            if rule.listen_port in table:
                logger.warning(
                    "Duplicate host rules for one listen port",
                    extra={"port": rule.listen_port, "rules": [str(table[rule.listen_port]), str(rule)]},
                )
            table[rule.listen_port] = rule
        return table

    async def apply(self, delta: RuleDelta) -> ApplyResult:
        """Apply removals, then additions.

        A failed removal of port P aborts only P: its addition is skipped and
        P is reported failed. Addition failures are reported per port.
        """
        result = ApplyResult()

        for port in sorted(delta.to_remove):
            try:
                await self._bounded(self._mutator.remove_rule(port), port=port, action=f"Removing rule {port}")
            except RuleMutationError as e:
                result.failed[port] = e.message
                logger.warning("Rule removal failed", extra={"port": port, "error": e.message})
                continue
            result.removed.add(port)
            logger.info("Rule removed", extra={"port": port})

        for rule in sorted(delta.to_add, key=lambda r: r.listen_port):
            port = rule.listen_port
            if port in result.failed:
                logger.warning("Skipping add after failed removal", extra={"port": port})
                continue
            try:
                await self._bounded(self._mutator.add_rule(rule), port=port, action=f"Adding rule {port}")
            except RuleMutationError as e:
                result.failed[port] = e.message
                logger.warning("Rule add failed", extra={"port": port, "rule": str(rule), "error": e.message})
                continue
            result.added.add(port)
            logger.info("Rule added", extra={"rule": str(rule)})

        return result
