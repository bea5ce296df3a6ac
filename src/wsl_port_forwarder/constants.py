"""Constants for wsl-port-forwarder configuration and limits."""

from typing import Final

# ============================================================================
# Ports
# ============================================================================

MIN_PORT: Final[int] = 1
"""Lowest valid TCP port."""

MAX_PORT: Final[int] = 65535
"""Highest valid TCP port."""

MAX_PORT_DIGITS: Final[int] = len(str(MAX_PORT))
"""Longest digit string that can name a port."""

# ============================================================================
# Polling and Timeouts
# ============================================================================

POLL_INTERVAL_SECONDS: Final[float] = 5.0
"""Daemon cadence between reconciliation cycles."""

COMMAND_TIMEOUT_SECONDS: Final[float] = 5.0
"""Timeout for guest-side commands (hostname -I, pm2 jlist)."""

NETSH_TIMEOUT_SECONDS: Final[float] = 10.0
"""Timeout for one powershell/netsh invocation (interop startup is slow)."""

CADDY_TIMEOUT_SECONDS: Final[float] = 3.0
"""Timeout for the Caddy admin API request."""

LOCK_TIMEOUT_SECONDS: Final[float] = 30.0
"""Upper bound on waiting for the config or reconcile lock."""

LOCK_RETRY_MIN_SECONDS: Final[float] = 0.05
"""Minimum backoff between lock attempts."""

LOCK_RETRY_MAX_SECONDS: Final[float] = 1.0
"""Maximum backoff between lock attempts."""

PROCESS_KILL_GRACE_SECONDS: Final[float] = 2.0
"""Time given to a timed-out child to exit after SIGKILL."""

FAILURE_ESCALATION_THRESHOLD: Final[int] = 3
"""Consecutive failing cycles before failures are logged at ERROR."""

RESYNC_INTERVAL_SECONDS: Final[float] = 300.0
"""Daemon forces a full resync this often to repair out-of-band drift."""

# ============================================================================
# Discovery
# ============================================================================

CADDY_ADMIN_URL: Final[str] = "http://localhost:2019"
"""Caddy admin endpoint (config is read from <url>/config/)."""

PM2_JLIST_COMMAND: Final[tuple[str, ...]] = ("pm2", "jlist")
"""Process manager listing command (JSON on stdout)."""

PORT_KEYS: Final[frozenset[str]] = frozenset({"port", "listen_port"})
"""JSON keys (lowercase) whose numeric value is a port."""

ADDRESS_KEYS: Final[frozenset[str]] = frozenset({"listen", "address"})
"""JSON keys (lowercase) whose string value may end in :<port>."""

# ============================================================================
# Host interop (netsh portproxy through powershell.exe)
# ============================================================================

HOSTNAME_COMMAND: Final[tuple[str, ...]] = ("hostname", "-I")
"""Guest command printing all assigned addresses."""

LISTEN_ADDRESS: Final[str] = "0.0.0.0"  # noqa: S104
"""Host address the managed portproxy rules listen on."""

POWERSHELL_CANDIDATES: Final[tuple[str, ...]] = (
    "/mnt/c/Windows/System32/WindowsPowerShell/v1.0/powershell.exe",
    "/mnt/c/WINDOWS/System32/WindowsPowerShell/v1.0/powershell.exe",
)
"""Well-known powershell.exe locations under the default WSL automount."""

POWERSHELL_FALLBACK: Final[str] = "powershell.exe"
"""Resolved through PATH when no candidate exists."""

POWERSHELL_ARGS: Final[tuple[str, ...]] = ("-NoProfile", "-NonInteractive", "-Command")
"""Arguments preceding the netsh command string."""

# ============================================================================
# Paths
# ============================================================================

APP_NAME: Final[str] = "wsl-port-forwarder"
"""platformdirs application name."""

CONFIG_FILENAME: Final[str] = "ports.yaml"
"""Persisted manual port config."""

RECONCILE_LOCK_FILENAME: Final[str] = "reconcile.lock"
"""Cross-process reconcile serialization lock."""
