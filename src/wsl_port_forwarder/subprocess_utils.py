"""Subprocess helper: run a child to completion under a hard timeout."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING

from wsl_port_forwarder import constants
from wsl_port_forwarder._logging import get_logger
from wsl_port_forwarder.platform_utils import ProcessWrapper

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = get_logger(__name__)


@dataclass(frozen=True)
class CommandResult:
    """Completed child process."""

    argv: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


async def run_command(argv: Sequence[str], *, timeout: float) -> CommandResult:
    """Run ``argv`` and collect its output, killing it on timeout.

    Output is drained with communicate() so a chatty child cannot fill a pipe
    and deadlock. On timeout the child and its descendants are killed before
    TimeoutError propagates, so nothing keeps running past the caller's
    deadline.

    Args:
        argv: Program and arguments (no shell)
        timeout: Seconds before the child is killed

    Returns:
        CommandResult with decoded stdout/stderr

    Raises:
        TimeoutError: Child did not exit within ``timeout``
        OSError: Program could not be launched (e.g. FileNotFoundError)
    """
    proc = ProcessWrapper(
        await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError:
        logger.warning("Command timed out, killing", extra={"argv": " ".join(argv), "timeout": timeout})
        await proc.kill_tree()
        try:
            await asyncio.wait_for(proc.wait(), timeout=constants.PROCESS_KILL_GRACE_SECONDS)
        except TimeoutError:
            logger.error("Command did not exit after kill", extra={"argv": " ".join(argv), "pid": proc.pid})
        raise

    result = CommandResult(
        argv=tuple(argv),
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
    )
    logger.debug("Command finished", extra={"argv": " ".join(argv), "returncode": result.returncode})
    return result
