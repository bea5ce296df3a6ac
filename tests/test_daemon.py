"""Tests for the polling Daemon: forcing, resync requests, shutdown, fallbacks."""

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, patch

import httpx

from tests.conftest import A1, A2, RecordingMutator, ScriptedAddressSource, StaticPortSource, make_services, rule
from wsl_port_forwarder.address_watcher import AddressWatcher
from wsl_port_forwarder.daemon import Daemon
from wsl_port_forwarder.discovery import CaddyPortSource
from wsl_port_forwarder.exceptions import LockTimeoutError
from wsl_port_forwarder.models import GuestAddress

# ============================================================================
# Helpers
# ============================================================================


def _daemon(
    config_path: Path,
    mutator: RecordingMutator,
    *addresses: GuestAddress | str | None,
    sources: tuple[StaticPortSource, ...] = (),
    interval: float = 0.01,
    resync_interval: float | None = None,
) -> Daemon:
    services = make_services(config_path, mutator, sources=sources)
    services.watcher = AddressWatcher(ScriptedAddressSource(*(addresses or (A1,))))
    return Daemon.from_services(services, interval=interval, resync_interval=resync_interval)


def _write_config(config_path: Path, content: str) -> None:
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(content)


# ============================================================================
# Cycles
# ============================================================================


async def test_first_cycle_is_forced(config_path: Path) -> None:
    mutator = RecordingMutator()
    daemon = _daemon(config_path, mutator)

    with patch.object(daemon._reconciler, "reconcile", wraps=daemon._reconciler.reconcile) as spy:
        await daemon.run_cycle()
        await daemon.run_cycle()

    assert [call.kwargs["force"] for call in spy.await_args_list] == [True, False]


async def test_cycle_reconciles_manual_and_discovered(config_path: Path) -> None:
    _write_config(config_path, "manual_ports: [5173]\n")
    mutator = RecordingMutator()
    daemon = _daemon(config_path, mutator, sources=(StaticPortSource("pm2", {3000}),))

    result = await daemon.run_cycle()

    assert result is not None
    assert result.added == {3000, 5173}
    assert mutator.rules == {3000: rule(3000, A1), 5173: rule(5173, A1)}


async def test_steady_state_touches_nothing(config_path: Path) -> None:
    _write_config(config_path, "manual_ports: [5173]\n")
    mutator = RecordingMutator()
    daemon = _daemon(config_path, mutator)

    await daemon.run_cycle()
    mutator.calls.clear()
    result = await daemon.run_cycle()

    assert result is not None
    assert result.skipped
    assert mutator.calls == []


async def test_address_change_retargets(config_path: Path) -> None:
    _write_config(config_path, "manual_ports: [5173, 8080]\n")
    mutator = RecordingMutator()
    daemon = _daemon(config_path, mutator, A1, A2)

    await daemon.run_cycle()
    await daemon.run_cycle()

    assert mutator.rules == {5173: rule(5173, A2), 8080: rule(8080, A2)}


async def test_address_loss_drains(config_path: Path) -> None:
    _write_config(config_path, "manual_ports: [5173]\n")
    mutator = RecordingMutator()
    daemon = _daemon(config_path, mutator, A1, None)

    await daemon.run_cycle()
    result = await daemon.run_cycle()

    assert result is not None
    assert result.removed == {5173}
    assert mutator.rules == {}


async def test_config_edit_picked_up(config_path: Path) -> None:
    _write_config(config_path, "manual_ports: [5173]\n")
    mutator = RecordingMutator()
    daemon = _daemon(config_path, mutator)
    await daemon.run_cycle()

    _write_config(config_path, "manual_ports: [8080]\n")
    await daemon.run_cycle()

    assert set(mutator.rules) == {8080}


async def test_corrupt_config_uses_defaults(config_path: Path) -> None:
    _write_config(config_path, "manual_ports: [5173\n")
    mutator = RecordingMutator([rule(5173, A1)])
    daemon = _daemon(config_path, mutator, sources=(StaticPortSource("caddy", {443}),))

    result = await daemon.run_cycle()

    assert result is not None
    assert mutator.rules == {443: rule(443, A1)}


async def test_cycle_errors_do_not_escape(config_path: Path) -> None:
    daemon = _daemon(config_path, RecordingMutator())

    with patch.object(daemon._reconciler, "reconcile", AsyncMock(side_effect=LockTimeoutError("busy"))):
        assert await daemon.run_cycle() is None

    assert daemon.cycles == 1


async def test_malformed_caddy_config_does_not_abort_cycle(config_path: Path) -> None:
    _write_config(config_path, "manual_ports: [5173]\n")
    caddy_config = {"apps": {"http": {"servers": {"srv0": {"listen": [":8080", "http://h:" + "1" * 5000]}}}}}
    caddy = CaddyPortSource(transport=httpx.MockTransport(lambda request: httpx.Response(200, json=caddy_config)))
    mutator = RecordingMutator()
    daemon = Daemon.from_services(make_services(config_path, mutator, sources=(caddy,)), interval=0.01)

    result = await daemon.run_cycle()

    assert result is not None
    assert mutator.rules == {5173: rule(5173, A1), 8080: rule(8080, A1)}


# ============================================================================
# Forcing
# ============================================================================


async def test_request_resync_forces_next_cycle(config_path: Path) -> None:
    daemon = _daemon(config_path, RecordingMutator())

    with patch.object(daemon._reconciler, "reconcile", wraps=daemon._reconciler.reconcile) as spy:
        await daemon.run_cycle()
        await daemon.run_cycle()
        daemon.request_resync()
        daemon.request_resync()  # coalesces
        await daemon.run_cycle()
        await daemon.run_cycle()

    assert [call.kwargs["force"] for call in spy.await_args_list] == [True, False, True, False]


async def test_periodic_resync(config_path: Path) -> None:
    daemon = _daemon(config_path, RecordingMutator(), resync_interval=0.05)

    with patch.object(daemon._reconciler, "reconcile", wraps=daemon._reconciler.reconcile) as spy:
        await daemon.run_cycle()
        await daemon.run_cycle()
        await asyncio.sleep(0.06)
        await daemon.run_cycle()

    assert [call.kwargs["force"] for call in spy.await_args_list] == [True, False, True]


async def test_out_of_band_drift_repaired_by_resync(config_path: Path) -> None:
    _write_config(config_path, "manual_ports: [5173]\n")
    mutator = RecordingMutator()
    daemon = _daemon(config_path, mutator)
    await daemon.run_cycle()

    mutator.rules.clear()  # someone ran "netsh interface portproxy reset"
    daemon.request_resync()
    await daemon.run_cycle()

    assert mutator.rules == {5173: rule(5173, A1)}


# ============================================================================
# Loop lifecycle
# ============================================================================


async def test_run_until_stopped(config_path: Path) -> None:
    daemon = _daemon(config_path, RecordingMutator(), interval=0.01)
    task = asyncio.create_task(daemon.run(handle_signals=False))

    while daemon.cycles < 3:
        await asyncio.sleep(0.01)
    daemon.stop()
    await asyncio.wait_for(task, timeout=2.0)

    assert daemon.stopping
    assert daemon.cycles >= 3


async def test_stop_wakes_sleeping_loop(config_path: Path) -> None:
    daemon = _daemon(config_path, RecordingMutator(), interval=60.0)
    task = asyncio.create_task(daemon.run(handle_signals=False))

    while daemon.cycles < 1:
        await asyncio.sleep(0.01)
    daemon.stop()

    # Returns well before the 60s interval elapses
    await asyncio.wait_for(task, timeout=2.0)
    assert daemon.cycles == 1


async def test_stop_mid_apply_lets_cycle_finish(config_path: Path) -> None:
    _write_config(config_path, "manual_ports: [5173, 8080]\n")
    mutator = RecordingMutator([rule(4444, A1)], delay=0.05)
    daemon = _daemon(config_path, mutator, interval=60.0)
    task = asyncio.create_task(daemon.run(handle_signals=False))

    while not mutator.mutations:
        await asyncio.sleep(0.005)
    daemon.stop()
    assert not task.done()

    await asyncio.wait_for(task, timeout=2.0)

    assert mutator.mutations == [("remove", 4444), ("add", 5173), ("add", 8080)]
    assert mutator.rules == {5173: rule(5173, A1), 8080: rule(8080, A1)}
    assert daemon.cycles == 1


async def test_stop_before_run(config_path: Path) -> None:
    daemon = _daemon(config_path, RecordingMutator())
    daemon.stop()

    await daemon.run(handle_signals=False)

    assert daemon.cycles == 0


async def test_signal_handlers_removed_on_exit(config_path: Path) -> None:
    daemon = _daemon(config_path, RecordingMutator())
    loop = asyncio.get_running_loop()
    daemon.stop()

    with patch.object(loop, "remove_signal_handler") as remove:
        await daemon.run()

    assert remove.call_count == 3
