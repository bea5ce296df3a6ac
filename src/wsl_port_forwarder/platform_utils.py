"""Host detection and PID-reuse safe child process handling.

Commands run on both sides of the WSL boundary: guest-side tools
(``hostname``, ``pm2``) and Windows binaries through interop
(``powershell.exe``). Interop children can outlive their timeout, so they are
wrapped with psutil to kill the whole tree safely.
"""

import asyncio
import contextlib
import shutil
from functools import cache
from pathlib import Path

import psutil

from wsl_port_forwarder import constants
from wsl_port_forwarder._logging import get_logger

logger = get_logger(__name__)


@cache
def is_wsl() -> bool:
    """True when running inside a WSL guest (kernel release names Microsoft)."""
    if not psutil.LINUX:
        return False
    try:
        release = Path("/proc/sys/kernel/osrelease").read_text(encoding="utf-8")
    except OSError:
        return False
    return "microsoft" in release.lower()


def find_powershell(override: Path | None = None) -> Path:
    """Locate powershell.exe for interop calls.

    Detection order:
    1. Explicit override (settings.powershell_path)
    2. Well-known paths under the /mnt/c automount
    3. ``powershell.exe`` on PATH (returned bare when not found, so the
       launch error names it)
    """
    if override is not None:
        return override

    for candidate in constants.POWERSHELL_CANDIDATES:
        if Path(candidate).exists():
            return Path(candidate)

    found = shutil.which(constants.POWERSHELL_FALLBACK)
    return Path(found) if found else Path(constants.POWERSHELL_FALLBACK)


class ProcessWrapper:
    """PID-reuse safe process wrapper using psutil.

    Wraps asyncio.subprocess.Process with psutil.Process so that killing a
    timed-out child never hits a recycled PID, and takes its children along
    (powershell.exe spawns netsh.exe).
    """

    def __init__(self, async_proc: asyncio.subprocess.Process) -> None:
        self.async_proc = async_proc
        self.psutil_proc: psutil.Process | None = None

        if async_proc.pid:
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                self.psutil_proc = psutil.Process(async_proc.pid)

    @property
    def pid(self) -> int | None:
        """Process ID."""
        return self.async_proc.pid

    @property
    def returncode(self) -> int | None:
        """Process return code (None if still running)."""
        return self.async_proc.returncode

    async def is_running(self) -> bool:
        """Check if process is still running (PID-reuse safe)."""
        if not self.psutil_proc:
            return self.async_proc.returncode is None
        try:
            return await asyncio.to_thread(self.psutil_proc.is_running)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

    async def communicate(self, input: bytes | None = None) -> tuple[bytes, bytes]:
        """Wait for process to terminate and return stdout/stderr."""
        return await self.async_proc.communicate(input)

    async def kill_tree(self) -> None:
        """SIGKILL the process and any children it spawned."""
        if self.psutil_proc and await self.is_running():
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                children = await asyncio.to_thread(self.psutil_proc.children, True)
                for child in children:
                    with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                        child.kill()
                await asyncio.to_thread(self.psutil_proc.kill)
        elif self.async_proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                self.async_proc.kill()

    async def wait(self) -> int:
        """Wait for process to complete."""
        return await self.async_proc.wait()
