"""Persisted manual port configuration.

The file is plain YAML so it stays hand-editable:

    manual_ports:
    - 3000
    - 5173
    enable_pm2: true
    enable_caddy: true

Writes go through a temp file plus os.replace(), and every read-modify-write
(add/remove) holds an exclusive flock on ``<file>.lock`` so concurrent
invocations never lose an update.
"""

from __future__ import annotations

import contextlib
from typing import TYPE_CHECKING, Any

import aiofiles
import aiofiles.os
import yaml
from pydantic import ValidationError

from wsl_port_forwarder import constants
from wsl_port_forwarder._logging import get_logger
from wsl_port_forwarder.exceptions import ConfigError, InvalidPortError
from wsl_port_forwarder.locking import exclusive_lock
from wsl_port_forwarder.models import ManualPortConfig

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

logger = get_logger(__name__)


def validate_port(port: int) -> int:
    """Return ``port`` if it is a valid TCP port.

    Raises:
        InvalidPortError: Port outside 1-65535 (or not an int)
    """
    if isinstance(port, bool) or not isinstance(port, int) or not constants.MIN_PORT <= port <= constants.MAX_PORT:
        raise InvalidPortError(
            f"Invalid port {port!r}: must be between {constants.MIN_PORT} and {constants.MAX_PORT}",
            context={"port": port},
        )
    return port


def dump_config(config: ManualPortConfig) -> str:
    """Serialize config to YAML with ports sorted."""
    data: dict[str, Any] = {
        "manual_ports": sorted(config.manual_ports),
        "enable_pm2": config.enable_pm2,
        "enable_caddy": config.enable_caddy,
    }
    return yaml.safe_dump(data, sort_keys=False, default_flow_style=False)


def parse_config(raw: str, *, source: str = "<string>") -> ManualPortConfig:
    """Parse and validate YAML config text.

    An empty document yields defaults.

    Raises:
        ConfigError: Invalid YAML, wrong shape or invalid values
    """
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"Config {source} is not valid YAML: {e}", context={"path": source}) from e

    if data is None:
        return ManualPortConfig()
    if not isinstance(data, dict):
        raise ConfigError(
            f"Config {source} must be a mapping, got {type(data).__name__}",
            context={"path": source},
        )
    try:
        return ManualPortConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(
            f"Config {source} is invalid: {e.error_count()} error(s)",
            context={"path": source, "errors": e.errors(include_url=False)},
        ) from e


class ConfigStore:
    """Load/persist ManualPortConfig at ``path``."""

    def __init__(self, path: Path, *, lock_timeout: float = constants.LOCK_TIMEOUT_SECONDS) -> None:
        self.path = path
        self.lock_path = path.with_name(f"{path.name}.lock")
        self._lock_timeout = lock_timeout

    async def load(self) -> ManualPortConfig:
        """Read the config; a missing file yields defaults.

        Raises:
            ConfigError: File unreadable or corrupt
        """
        if not await aiofiles.os.path.exists(self.path):
            return ManualPortConfig()
        try:
            async with aiofiles.open(self.path, encoding="utf-8") as f:
                raw = await f.read()
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigError(f"Cannot read config {self.path}: {e}", context={"path": str(self.path)}) from e
        return parse_config(raw, source=str(self.path))

    async def load_or_default(self) -> ManualPortConfig:
        """Read the config, falling back to defaults with a warning on error.

        Used by the daemon: a bad edit must not take the loop down.
        """
        try:
            return await self.load()
        except ConfigError as e:
            logger.warning(
                "Config unreadable, using defaults for this cycle",
                extra={"path": str(self.path), "error": e.message},
            )
            return ManualPortConfig()

    async def save(self, config: ManualPortConfig) -> None:
        """Write the config atomically (temp file + rename).

        Raises:
            ConfigError: Directory or file not writable
        """
        tmp_path = self.path.with_name(f"{self.path.name}.tmp")
        try:
            await aiofiles.os.makedirs(self.path.parent, exist_ok=True)
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(dump_config(config))
            await aiofiles.os.replace(tmp_path, self.path)
        except OSError as e:
            raise ConfigError(f"Cannot write config {self.path}: {e}", context={"path": str(self.path)}) from e
        logger.debug("Config saved", extra={"path": str(self.path), "manual_ports": sorted(config.manual_ports)})

    @contextlib.asynccontextmanager
    async def update(self) -> AsyncIterator[ManualPortConfig]:
        """Locked read-modify-write.

        Yields the current config for in-place mutation; it is saved when
        the block exits without an exception.

        Example:
            >>> async with store.update() as config:
            ...     config.manual_ports.add(5173)

        Raises:
            ConfigError: Existing file corrupt (never overwritten) or unwritable
            LockTimeoutError: Another writer held the lock too long
        """
        async with exclusive_lock(self.lock_path, timeout=self._lock_timeout):
            config = await self.load()
            yield config
            await self.save(config)

    async def ensure_exists(self) -> ManualPortConfig:
        """Create the file with defaults on first run; return current config."""
        async with exclusive_lock(self.lock_path, timeout=self._lock_timeout):
            if await aiofiles.os.path.exists(self.path):
                return await self.load()
            config = ManualPortConfig()
            await self.save(config)
            logger.info("Created default config", extra={"path": str(self.path)})
            return config

    async def add_port(self, port: int) -> bool:
        """Add a manual port. Returns False if it was already present.

        Raises:
            InvalidPortError: Port out of range (checked before any I/O)
        """
        validate_port(port)
        async with self.update() as config:
            inserted = port not in config.manual_ports
            config.manual_ports.add(port)
        logger.info("Manual port added" if inserted else "Manual port already present", extra={"port": port})
        return inserted

    async def remove_port(self, port: int) -> bool:
        """Remove a manual port. Returns False if it was not present.

        Raises:
            InvalidPortError: Port out of range (checked before any I/O)
        """
        validate_port(port)
        async with self.update() as config:
            removed = port in config.manual_ports
            config.manual_ports.discard(port)
        logger.info("Manual port removed" if removed else "Manual port not present", extra={"port": port})
        return removed
