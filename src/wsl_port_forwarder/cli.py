"""Command-line interface for wsl-port-forwarder.

Usage:
    wsl-port status              # Address, desired ports, host rules
    wsl-port add 5173            # Persist a manual port and sync
    wsl-port remove 5173         # Drop a manual port and sync
    wsl-port sync                # Forced full resync
    wsl-port daemon              # Follow address/config changes every 5s
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any, NoReturn

import click

from wsl_port_forwarder import __version__, constants
from wsl_port_forwarder._logging import configure_logging, get_logger, shutdown_logging
from wsl_port_forwarder.daemon import Daemon
from wsl_port_forwarder.exceptions import (
    ConfigError,
    ForwarderError,
    LockTimeoutError,
    RuleMutationError,
)
from wsl_port_forwarder.platform_utils import is_wsl
from wsl_port_forwarder.services import Services
from wsl_port_forwarder.settings import Settings

if TYPE_CHECKING:
    from collections.abc import Coroutine

    from wsl_port_forwarder.models import DiscoveryResult, ForwardingRule, GuestAddress, ReconcileResult

# Exit codes
EXIT_SUCCESS = 0
EXIT_FORWARDER_ERROR = 1
EXIT_CLI_ERROR = 2  # click usage errors, out-of-range ports
EXIT_CONFIG_ERROR = 3
EXIT_RECONCILE_FAILED = 4
EXIT_LOCK_TIMEOUT = 5

logger = get_logger(__name__)

PORT_TYPE = click.IntRange(constants.MIN_PORT, constants.MAX_PORT)


def format_error(title: str, message: str, suggestions: list[str] | None = None) -> str:
    """Format an error message following What → Why → Fix pattern."""
    lines = [
        click.style(f"Error: {title}", fg="red", bold=True),
        "",
        f"  {message}",
    ]

    if suggestions:
        lines.extend(["", "  Suggestions:"])
        lines.extend(f"    • {suggestion}" for suggestion in suggestions)

    return "\n".join(lines)


def format_ports(ports: set[int] | frozenset[int]) -> str:
    return ", ".join(str(p) for p in sorted(ports)) if ports else "(none)"


def format_summary(result: ReconcileResult) -> str:
    """One line: counts plus failed ports."""
    summary = f"{len(result.added)} added, {len(result.removed)} removed, {len(result.unchanged)} unchanged"
    if result.failed:
        summary += f", {len(result.failed)} failed ({format_ports(set(result.failed))})"
    return summary


def report_result(result: ReconcileResult) -> int:
    """Echo a reconcile outcome and map it to an exit code."""
    if result.address is None:
        click.echo(
            click.style("Guest address unknown: all managed rules are drained until it comes back.", fg="yellow"),
            err=True,
        )
    if result.error is not None:
        click.echo(
            format_error(
                "Cannot read host rules",
                result.error,
                [
                    "Run the shell from an elevated (Administrator) Windows terminal",
                    "Check that WSL interop is enabled (powershell.exe reachable)",
                ],
            ),
            err=True,
        )
        return EXIT_RECONCILE_FAILED

    click.echo(f"Rules: {format_summary(result)}")
    for port, message in sorted(result.failed.items()):
        click.echo(click.style(f"  ✗ {port}: {message}", fg="red"), err=True)

    if result.total_failure:
        click.echo(
            format_error(
                "Reconcile failed",
                "Every targeted port failed; the host forwarding table was not changed.",
                ["Portproxy changes need an elevated (Administrator) Windows session"],
            ),
            err=True,
        )
        return EXIT_RECONCILE_FAILED
    return EXIT_SUCCESS


def _rule_state(rule: ForwardingRule, discovery: DiscoveryResult, address: GuestAddress | None) -> str:
    if rule.listen_port not in discovery.ports:
        return "extra"
    if address is None or not rule.targets(address):
        return "stale"
    return "ok"


def _run(coro: Coroutine[Any, Any, int]) -> NoReturn:
    """Run an async command body and exit with its code.

    ForwarderErrors escaping the body become formatted messages and exit codes.
    """
    try:
        exit_code = asyncio.run(coro)
    except ConfigError as e:
        click.echo(
            format_error(
                "Config unreadable",
                e.message,
                ["Fix or delete the file; it is recreated with defaults"],
            ),
            err=True,
        )
        exit_code = EXIT_CONFIG_ERROR
    except LockTimeoutError as e:
        click.echo(
            format_error("Busy", e.message, ["Another wsl-port command or the daemon is mid-sync; retry"]),
            err=True,
        )
        exit_code = EXIT_LOCK_TIMEOUT
    except ForwarderError as e:
        click.echo(format_error("Forwarder error", e.message), err=True)
        exit_code = EXIT_FORWARDER_ERROR
    sys.exit(exit_code)


# ============================================================================
# Command bodies
# ============================================================================


async def run_status(services: Services, settings: Settings, *, json_output: bool) -> int:
    config = await services.config_store.load()
    discovery = await services.discoverer.discover(config)
    await services.watcher.poll()
    address = services.watcher.current

    rules: list[ForwardingRule] = []
    rules_error: str | None = None
    try:
        rules = sorted((await services.rule_store.list()).values(), key=lambda r: r.listen_port)
    except RuleMutationError as e:
        rules_error = e.message

    missing = discovery.ports - {rule.listen_port for rule in rules}

    if json_output:
        payload: dict[str, Any] = {
            "address": str(address) if address else None,
            "config_path": str(settings.config_path),
            "manual_ports": sorted(discovery.manual),
            "enable_pm2": config.enable_pm2,
            "enable_caddy": config.enable_caddy,
            "discovered": {name: sorted(ports) for name, ports in discovery.discovered.items()},
            "discovery_errors": discovery.errors,
            "desired_ports": sorted(discovery.ports),
            "rules": [
                {
                    "listen_port": rule.listen_port,
                    "target_address": str(rule.target_address),
                    "target_port": rule.target_port,
                    "state": _rule_state(rule, discovery, address),
                }
                for rule in rules
            ],
            "missing_ports": sorted(missing) if rules_error is None else [],
            "rules_error": rules_error,
        }
        click.echo(json.dumps(payload, indent=2))
        return EXIT_SUCCESS

    click.echo(f"Guest address: {address if address else click.style('unknown', fg='yellow')}")
    if not is_wsl():
        click.echo(click.style("Not running inside WSL; host interop will likely fail.", fg="yellow"))
    click.echo(f"Config file: {settings.config_path}")
    click.echo(f"Manual ports: {format_ports(discovery.manual)}")
    for name, ports in sorted(discovery.discovered.items()):
        if name in discovery.errors:
            click.echo(f"{name} ports: " + click.style(f"unavailable ({discovery.errors[name]})", dim=True))
        else:
            click.echo(f"{name} ports: {format_ports(ports)}")
    click.echo(f"Desired ports: {format_ports(discovery.ports)}")
    click.echo()
    click.echo(f"Host portproxy rules (listen {settings.listen_address}):")
    if rules_error is not None:
        click.echo(click.style(f"  Could not read rules: {rules_error}", fg="red"))
        return EXIT_SUCCESS
    if not rules:
        click.echo("  (none)")
    colors = {"ok": "green", "stale": "yellow", "extra": "red"}
    for rule in rules:
        state = _rule_state(rule, discovery, address)
        click.echo(f"  {rule}  " + click.style(state, fg=colors[state]))
    if missing:
        click.echo(f"Missing rules: {format_ports(missing)}")
    return EXIT_SUCCESS


async def run_add(services: Services, port: int) -> int:
    inserted = await services.config_store.add_port(port)
    _, result = await services.sync_once(force=False)
    if inserted:
        click.echo(f"Added port {port}.")
    else:
        click.echo(f"Port {port} already present; synced rules anyway.")
    return report_result(result)


async def run_remove(services: Services, port: int) -> int:
    removed = await services.config_store.remove_port(port)
    discovery, result = await services.sync_once(force=False)
    if removed:
        click.echo(f"Removed port {port}.")
    else:
        click.echo(f"Port {port} was not in the manual config; synced rules anyway.")
    sources = discovery.sources_reporting(port)
    if sources:
        click.echo(
            click.style(
                f"Port {port} is still forwarded: reported by {', '.join(sources)}.",
                fg="yellow",
            ),
            err=True,
        )
    return report_result(result)


async def run_sync(services: Services) -> int:
    _, result = await services.sync_once(force=True)
    code = report_result(result)
    if code == EXIT_SUCCESS:
        click.echo("Sync complete.")
    return code


async def run_daemon(services: Services, settings: Settings, interval: float) -> int:
    try:
        await services.config_store.ensure_exists()
    except ConfigError as e:
        logger.warning(
            "Config unreadable, daemon continues with defaults", extra={"error": e.message}
        )
    daemon = Daemon.from_services(services, interval=interval, resync_interval=settings.resync_interval_seconds)
    await daemon.run()
    return EXIT_SUCCESS


# ============================================================================
# Click wiring
# ============================================================================


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Config file (default: platform user config dir)",
)
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
@click.option("-q", "--quiet", is_flag=True, help="Only log errors")
@click.version_option(__version__, "-V", "--version", prog_name="wsl-port")
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, verbose: bool, quiet: bool) -> None:
    """Keep Windows portproxy rules pointed at this WSL guest."""
    configure_logging(level=logging.DEBUG if verbose else None, quiet=quiet)
    ctx.call_on_close(shutdown_logging)
    settings = Settings(config_path=config_path) if config_path else Settings()
    ctx.obj = settings


def _services(ctx: click.Context) -> tuple[Settings, Services]:
    settings: Settings = ctx.obj
    return settings, Services.from_settings(settings)


@cli.command()
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.pass_context
def status(ctx: click.Context, json_output: bool) -> None:
    """Show guest address, desired ports and host rules (read-only)."""
    settings, services = _services(ctx)
    _run(run_status(services, settings, json_output=json_output))


@cli.command()
@click.argument("port", type=PORT_TYPE)
@click.pass_context
def add(ctx: click.Context, port: int) -> None:
    """Add PORT to the manual config and sync immediately."""
    _, services = _services(ctx)
    _run(run_add(services, port))


@cli.command()
@click.argument("port", type=PORT_TYPE)
@click.pass_context
def remove(ctx: click.Context, port: int) -> None:
    """Remove PORT from the manual config and sync immediately."""
    _, services = _services(ctx)
    _run(run_remove(services, port))


@cli.command()
@click.pass_context
def sync(ctx: click.Context) -> None:
    """Force an immediate full resync of portproxy rules."""
    _, services = _services(ctx)
    _run(run_sync(services))


@cli.command()
@click.option(
    "-i",
    "--interval",
    type=click.FloatRange(min=0.1),
    default=None,
    help=f"Poll interval in seconds [default: {constants.POLL_INTERVAL_SECONDS:g}]",
)
@click.pass_context
def daemon(ctx: click.Context, interval: float | None) -> None:
    """Run the polling loop, re-syncing on address or config changes."""
    settings, services = _services(ctx)
    _run(run_daemon(services, settings, interval or settings.poll_interval_seconds))


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
