"""Cross-process exclusive file locks.

flock() locks belong to an open file description, so two opens of the same
lock file conflict whether they come from two processes (daemon vs. one-shot
``wsl-port add``) or from two coroutines in one process.

Acquisition is non-blocking (LOCK_NB) and retried with tenacity, which keeps
the event loop free while waiting and bounds the total wait.
"""

from __future__ import annotations

import contextlib
import fcntl
import logging
from typing import TYPE_CHECKING

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_delay,
    wait_random_exponential,
)

from wsl_port_forwarder import constants
from wsl_port_forwarder._logging import get_logger
from wsl_port_forwarder.exceptions import ConfigError, LockTimeoutError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

logger = get_logger(__name__)


@contextlib.asynccontextmanager
async def exclusive_lock(path: Path, *, timeout: float = constants.LOCK_TIMEOUT_SECONDS) -> AsyncIterator[None]:
    """Hold an exclusive flock on ``path`` for the duration of the block.

    Lock files are never deleted: unlinking after close lets a third party
    lock a fresh inode while another still holds the old one.

    Raises:
        LockTimeoutError: Lock still held by someone else after ``timeout``
        ConfigError: Lock file cannot be created (directory not writable)
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = path.open("a")
    except OSError as e:
        raise ConfigError(f"Cannot open lock file {path}: {e}", context={"path": str(path)}) from e
    try:
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(BlockingIOError),
                stop=stop_after_delay(timeout),
                wait=wait_random_exponential(
                    min=constants.LOCK_RETRY_MIN_SECONDS,
                    max=constants.LOCK_RETRY_MAX_SECONDS,
                ),
                before_sleep=before_sleep_log(logger, logging.DEBUG),
                reraise=True,
            ):
                with attempt:
                    fcntl.flock(fd.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as e:
            raise LockTimeoutError(
                f"Timed out waiting for lock {path}",
                context={"path": str(path), "timeout": timeout},
            ) from e
        logger.debug("Lock acquired", extra={"path": str(path)})
        yield
    finally:
        fd.close()  # Closing fd releases the flock
