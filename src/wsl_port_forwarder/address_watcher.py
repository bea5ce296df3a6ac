"""Guest address tracking.

AddressWatcher is a two-state machine (Unknown / Known(addr)) advanced by
poll(). Each poll is exactly one fetch attempt; cadence and retries belong to
the caller. A failed fetch is indistinguishable from "no address": both move
the watcher to Unknown so no rule is ever left pointing at a dead address.
"""

from __future__ import annotations

import ipaddress
from typing import Protocol

from wsl_port_forwarder import constants
from wsl_port_forwarder._logging import get_logger
from wsl_port_forwarder.exceptions import SourceUnavailableError
from wsl_port_forwarder.models import AddressEvent, AddressEventKind, GuestAddress
from wsl_port_forwarder.subprocess_utils import run_command

logger = get_logger(__name__)


class AddressSource(Protocol):
    """Reports the guest's current address."""

    async def fetch(self) -> GuestAddress | None:
        """Return the current address, or None when none is assigned.

        Raises:
            SourceUnavailableError: The query itself failed
        """
        ...


def pick_guest_address(output: str) -> GuestAddress | None:
    """Choose the forwarding target from ``hostname -I`` output.

    First IPv4 address wins; otherwise the first global (non link-local,
    non loopback) IPv6 address.

    Examples:
        >>> pick_guest_address("172.20.1.2 10.255.255.254 fe80::1")
        IPv4Address('172.20.1.2')
        >>> pick_guest_address("") is None
        True
    """
    ipv6: list[ipaddress.IPv6Address] = []
    for token in output.split():
        try:
            addr = ipaddress.ip_address(token)
        except ValueError:
            continue
        if isinstance(addr, ipaddress.IPv4Address):
            if not addr.is_loopback:
                return addr
        elif not (addr.is_link_local or addr.is_loopback):
            ipv6.append(addr)
    return ipv6[0] if ipv6 else None


class HostnameAddressSource:
    """Guest address from ``hostname -I``."""

    def __init__(self, *, timeout: float = constants.COMMAND_TIMEOUT_SECONDS) -> None:
        self._timeout = timeout

    async def fetch(self) -> GuestAddress | None:
        argv = constants.HOSTNAME_COMMAND
        try:
            result = await run_command(argv, timeout=self._timeout)
        except TimeoutError as e:
            raise SourceUnavailableError(f"{' '.join(argv)} timed out", source="hostname") from e
        except OSError as e:
            raise SourceUnavailableError(f"Cannot run {argv[0]}: {e}", source="hostname") from e
        if not result.ok:
            raise SourceUnavailableError(
                f"{' '.join(argv)} exited with {result.returncode}",
                context={"stderr": result.stderr.strip()},
                source="hostname",
            )
        return pick_guest_address(result.stdout)


class AddressWatcher:
    """Tracks the last known guest address and reports transitions."""

    def __init__(self, source: AddressSource) -> None:
        self._source = source
        self._current: GuestAddress | None = None

    @property
    def current(self) -> GuestAddress | None:
        """Last observed address; None while Unknown."""
        return self._current

    async def _observe(self) -> GuestAddress | None:
        try:
            return await self._source.fetch()
        except SourceUnavailableError as e:
            logger.debug("Address source unavailable", extra={"error": e.message})
            return None

    async def poll(self) -> AddressEvent:
        """Fetch once and advance the state machine."""
        old = self._current
        new = await self._observe()
        self._current = new

        if new is None:
            if old is None:
                return AddressEvent(kind=AddressEventKind.UNCHANGED)
            logger.warning("Guest address lost", extra={"old": str(old)})
            return AddressEvent(kind=AddressEventKind.LOST, old=old)

        if new == old:
            return AddressEvent(kind=AddressEventKind.UNCHANGED, old=old, new=new)

        logger.info("Guest address changed", extra={"old": str(old) if old else None, "new": str(new)})
        return AddressEvent(kind=AddressEventKind.CHANGED, old=old, new=new)
