"""Runtime configuration from environment variables."""

from pathlib import Path

import platformdirs
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from wsl_port_forwarder import constants


def default_config_path() -> Path:
    return Path(platformdirs.user_config_dir(constants.APP_NAME)) / constants.CONFIG_FILENAME


def default_state_dir() -> Path:
    return Path(platformdirs.user_state_dir(constants.APP_NAME))


class Settings(BaseSettings):
    """Runtime configuration from environment variables.

    All settings can be overridden via environment variables with the
    WSL_PORT_FORWARDER_ prefix.
    Example: WSL_PORT_FORWARDER_POLL_INTERVAL_SECONDS=2
    """

    model_config = SettingsConfigDict(
        env_prefix="WSL_PORT_FORWARDER_",
        extra="ignore",
    )

    # Paths
    config_path: Path = Field(default_factory=default_config_path)
    state_dir: Path = Field(default_factory=default_state_dir)  # lock files

    # Cadence
    poll_interval_seconds: float = Field(default=constants.POLL_INTERVAL_SECONDS, gt=0)
    resync_interval_seconds: float | None = Field(default=constants.RESYNC_INTERVAL_SECONDS, gt=0)
    """Periodic forced resync; None disables it."""

    # Timeouts
    command_timeout_seconds: float = Field(default=constants.COMMAND_TIMEOUT_SECONDS, gt=0)
    netsh_timeout_seconds: float = Field(default=constants.NETSH_TIMEOUT_SECONDS, gt=0)
    caddy_timeout_seconds: float = Field(default=constants.CADDY_TIMEOUT_SECONDS, gt=0)
    lock_timeout_seconds: float = Field(default=constants.LOCK_TIMEOUT_SECONDS, gt=0)

    # Discovery
    caddy_admin_url: str = constants.CADDY_ADMIN_URL

    # Host interop
    powershell_path: Path | None = None
    """Explicit powershell.exe; auto-detected under /mnt/c when unset."""
    listen_address: str = constants.LISTEN_ADDRESS

    # Reporting
    failure_escalation_threshold: int = Field(default=constants.FAILURE_ESCALATION_THRESHOLD, ge=1)

    @property
    def reconcile_lock_path(self) -> Path:
        return self.state_dir / constants.RECONCILE_LOCK_FILENAME
