"""Long-running polling loop.

Every ``interval`` seconds: reload config, rediscover ports, poll the guest
address, reconcile. The reconciler's short-circuit turns a cycle where
nothing changed into a no-op, so the host is only touched on an address
change/loss, a config change, a retry after failures, or a forced resync.

Shutdown (SIGINT/SIGTERM or stop()) is only observed between cycles: an
in-flight reconcile always runs to completion. SIGHUP or request_resync()
forces the next cycle; requests arriving mid-cycle coalesce into that one.
"""

from __future__ import annotations

import asyncio
import contextlib
import signal
import time
from typing import TYPE_CHECKING

from wsl_port_forwarder import constants
from wsl_port_forwarder._logging import get_logger
from wsl_port_forwarder.exceptions import ForwarderError

if TYPE_CHECKING:
    from wsl_port_forwarder.address_watcher import AddressWatcher
    from wsl_port_forwarder.config_store import ConfigStore
    from wsl_port_forwarder.discovery import PortDiscoverer
    from wsl_port_forwarder.models import ReconcileResult
    from wsl_port_forwarder.reconciler import Reconciler
    from wsl_port_forwarder.services import Services

logger = get_logger(__name__)


class Daemon:
    """Cooperative scheduler driving poll/reconcile steps on a timer."""

    def __init__(
        self,
        *,
        config_store: ConfigStore,
        discoverer: PortDiscoverer,
        watcher: AddressWatcher,
        reconciler: Reconciler,
        interval: float = constants.POLL_INTERVAL_SECONDS,
        resync_interval: float | None = None,
    ) -> None:
        self._config_store = config_store
        self._discoverer = discoverer
        self._watcher = watcher
        self._reconciler = reconciler
        self._interval = interval
        self._resync_interval = resync_interval
        self._wake = asyncio.Event()
        self._stopping = False
        # First cycle is forced: rules left by a previous run may be stale
        self._resync_requested = True
        self._last_forced = 0.0
        self.cycles = 0

    @classmethod
    def from_services(
        cls, services: Services, *, interval: float, resync_interval: float | None = None
    ) -> Daemon:
        return cls(
            config_store=services.config_store,
            discoverer=services.discoverer,
            watcher=services.watcher,
            reconciler=services.reconciler,
            interval=interval,
            resync_interval=resync_interval,
        )

    @property
    def stopping(self) -> bool:
        return self._stopping

    def stop(self) -> None:
        """Ask the loop to exit after the current cycle."""
        if not self._stopping:
            logger.info("Shutdown requested, finishing current cycle")
        self._stopping = True
        self._wake.set()

    def request_resync(self) -> None:
        """Force the next cycle (coalesces with any pending request)."""
        self._resync_requested = True
        self._wake.set()

    def _take_force(self) -> bool:
        force = self._resync_requested
        if (
            not force
            and self._resync_interval is not None
            and time.monotonic() - self._last_forced >= self._resync_interval
        ):
            force = True
        self._resync_requested = False
        if force:
            self._last_forced = time.monotonic()
        return force

    async def run_cycle(self) -> ReconcileResult | None:
        """One poll/reconcile step. Never raises for forwarder errors."""
        self.cycles += 1
        try:
            config = await self._config_store.load_or_default()
            discovery = await self._discoverer.discover(config)
            event = await self._watcher.poll()
            force = self._take_force()
            if event.triggers_reconcile:
                logger.info(
                    "Address event",
                    extra={"kind": event.kind.value, "old": str(event.old), "new": str(event.new)},
                )
            return await self._reconciler.reconcile(discovery.ports, self._watcher.current, force=force)
        except ForwarderError as e:
            logger.warning("Cycle aborted", extra={"error": e.message, **e.context})
        except OSError as e:
            logger.warning("Cycle aborted by OS error", extra={"error": str(e)})
        return None

    async def _sleep(self) -> None:
        with contextlib.suppress(TimeoutError):
            async with asyncio.timeout(self._interval):
                await self._wake.wait()
        self._wake.clear()

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> list[int]:
        installed: list[int] = []
        handlers = {
            signal.SIGINT: self.stop,
            signal.SIGTERM: self.stop,
            signal.SIGHUP: self.request_resync,
        }
        for signum, handler in handlers.items():
            try:
                loop.add_signal_handler(signum, handler)
            except (NotImplementedError, RuntimeError):
                continue
            installed.append(signum)
        return installed

    async def run(self, *, handle_signals: bool = True) -> None:
        """Loop until stop() is called (or a stop signal arrives)."""
        loop = asyncio.get_running_loop()
        installed = self._install_signal_handlers(loop) if handle_signals else []
        logger.info(
            "Daemon started",
            extra={"interval_seconds": self._interval, "resync_interval_seconds": self._resync_interval},
        )
        try:
            while not self._stopping:
                await self.run_cycle()
                if self._stopping:
                    break
                await self._sleep()
        finally:
            for signum in installed:
                loop.remove_signal_handler(signum)
            logger.info("Daemon stopped", extra={"cycles": self.cycles})
