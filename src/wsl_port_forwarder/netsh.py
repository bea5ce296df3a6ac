"""Windows portproxy rules driven from inside WSL.

Every call goes through interop:
    powershell.exe -NoProfile -NonInteractive -Command "netsh interface portproxy ..."

Only rules listening on the managed listen address (0.0.0.0 by default) are
reported and touched; anything else in the host table belongs to someone
else.

Mutations need an elevated host session. Without it netsh exits non-zero and
the failure surfaces per port through RuleMutationError.
"""

from __future__ import annotations

import ipaddress
from typing import TYPE_CHECKING

from wsl_port_forwarder import constants
from wsl_port_forwarder._logging import get_logger
from wsl_port_forwarder.exceptions import DependencyError, RuleMutationError
from wsl_port_forwarder.models import ForwardingRule, GuestAddress
from wsl_port_forwarder.platform_utils import find_powershell
from wsl_port_forwarder.subprocess_utils import CommandResult, run_command

if TYPE_CHECKING:
    from pathlib import Path

logger = get_logger(__name__)

V4TOV4 = "v4tov4"
V4TOV6 = "v4tov6"

# netsh prints this (localized on non-English hosts) when deleting a missing rule
_MISSING_RULE_MARKERS = ("cannot find the file specified", "element not found")


def family_for(address: GuestAddress) -> str:
    """portproxy family for a rule listening on IPv4 and connecting to ``address``."""
    return V4TOV6 if isinstance(address, ipaddress.IPv6Address) else V4TOV4


def parse_portproxy_table(output: str, *, listen_address: str = constants.LISTEN_ADDRESS) -> list[ForwardingRule]:
    """Parse ``netsh interface portproxy show all`` output.

    Data rows have four columns: listen address, listen port, connect
    address, connect port. Headers, separators and rows for other listen
    addresses are skipped, as are rows whose connect address is a hostname.

    Example:
        >>> out = '''
        ... Listen on ipv4:             Connect to ipv4:
        ...
        ... Address         Port        Address         Port
        ... --------------- ----------  --------------- ----------
        ... 0.0.0.0         5173        172.20.1.2      5173
        ... '''
        >>> [str(r) for r in parse_portproxy_table(out)]
        ['5173->172.20.1.2:5173']
    """
    rules: list[ForwardingRule] = []
    for line in output.splitlines():
        fields = line.split()
        if len(fields) != 4 or not (fields[1].isdigit() and fields[3].isdigit()):
            continue
        listen_addr, listen_port, connect_addr, connect_port = fields
        if listen_addr != listen_address:
            continue
        try:
            target = ipaddress.ip_address(connect_addr)
            rule = ForwardingRule(listen_port=int(listen_port), target_address=target, target_port=int(connect_port))
        except ValueError:
            logger.debug("Skipping unparseable portproxy row", extra={"row": line.strip()})
            continue
        rules.append(rule)
    return rules


class NetshRuleMutator:
    """RuleMutator backed by ``netsh interface portproxy`` on the Windows host."""

    def __init__(
        self,
        *,
        powershell: Path | None = None,
        listen_address: str = constants.LISTEN_ADDRESS,
        timeout: float = constants.NETSH_TIMEOUT_SECONDS,
    ) -> None:
        self._powershell = find_powershell(powershell)
        self._listen_address = listen_address
        self._timeout = timeout
        # Family of each rule seen in the last listing; delete needs it
        self._families: dict[int, str] = {}

    async def _run_netsh(self, command: str) -> CommandResult:
        """Run one netsh command through powershell.exe.

        Raises:
            DependencyError: powershell.exe could not be launched
            TimeoutError: Command exceeded the timeout (child killed)
        """
        argv = (str(self._powershell), *constants.POWERSHELL_ARGS, command)
        try:
            return await run_command(argv, timeout=self._timeout)
        except TimeoutError:
            raise
        except OSError as e:
            raise DependencyError(
                f"Cannot launch {self._powershell}: {e}",
                context={"powershell": str(self._powershell), "command": command},
            ) from e

    async def _mutate(self, command: str, *, port: int) -> CommandResult:
        try:
            return await self._run_netsh(command)
        except (DependencyError, TimeoutError) as e:
            message = e.message if isinstance(e, DependencyError) else f"netsh timed out after {self._timeout}s"
            raise RuleMutationError(message, context={"command": command}, port=port) from e

    async def show_raw(self) -> str:
        """Unfiltered ``show all`` output (every listen address and family).

        Raises:
            DependencyError: powershell.exe could not be launched
            RuleMutationError: netsh failed or timed out
        """
        try:
            result = await self._run_netsh("netsh interface portproxy show all")
        except TimeoutError as e:
            raise RuleMutationError(f"netsh timed out after {self._timeout}s") from e
        if not result.ok:
            raise RuleMutationError(
                f"netsh show failed ({result.returncode})",
                stderr=(result.stderr or result.stdout).strip(),
            )
        return result.stdout

    async def list_rules(self) -> list[ForwardingRule]:
        try:
            output = await self.show_raw()
        except DependencyError as e:
            raise RuleMutationError(e.message, context=e.context) from e
        rules = parse_portproxy_table(output, listen_address=self._listen_address)
        self._families = {rule.listen_port: family_for(rule.target_address) for rule in rules}
        return rules

    async def add_rule(self, rule: ForwardingRule) -> None:
        family = family_for(rule.target_address)
        command = (
            f"netsh interface portproxy add {family} "
            f"listenport={rule.listen_port} listenaddress={self._listen_address} "
            f"connectport={rule.target_port} connectaddress={rule.target_address}"
        )
        result = await self._mutate(command, port=rule.listen_port)
        if not result.ok:
            raise RuleMutationError(
                f"netsh add failed ({result.returncode}): {_output_of(result)}",
                context={"command": command},
                port=rule.listen_port,
                stderr=_output_of(result),
            )
        self._families[rule.listen_port] = family

    async def remove_rule(self, port: int) -> None:
        family = self._families.get(port, V4TOV4)
        command = f"netsh interface portproxy delete {family} listenport={port} listenaddress={self._listen_address}"
        result = await self._mutate(command, port=port)
        if not result.ok:
            output = _output_of(result)
            if any(marker in output.lower() for marker in _MISSING_RULE_MARKERS):
                logger.debug("Rule already absent on host", extra={"port": port})
            else:
                raise RuleMutationError(
                    f"netsh delete failed ({result.returncode}): {output}",
                    context={"command": command},
                    port=port,
                    stderr=output,
                )
        self._families.pop(port, None)


def _output_of(result: CommandResult) -> str:
    # netsh reports errors on stdout; powershell launch problems on stderr
    return (result.stderr.strip() or result.stdout.strip()) or "no output"
