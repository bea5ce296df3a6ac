"""Exception hierarchy for wsl-port-forwarder.

All exceptions inherit from ForwarderError.

Hierarchy:
    ForwarderError (base)
    ├── TransientError (retried on the next cycle)
    │   ├── SourceUnavailableError   ← discovery/address source failed or timed out
    │   ├── RuleMutationError        ← host rejected an add/remove for one port
    │   └── LockTimeoutError         ← config/reconcile lock not acquired in time
    ├── PermanentError (needs operator action)
    │   ├── ConfigError              ← persisted config unreadable or corrupt
    │   └── DependencyError          ← powershell.exe / netsh unusable
    └── InputValidationError (caller bug)
        └── InvalidPortError         ← port outside 1-65535
"""

from __future__ import annotations

from typing import Any


class ForwarderError(Exception):
    """Base exception for all forwarder errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


# =============================================================================
# Transient vs Permanent Error Base Classes
# =============================================================================


class TransientError(ForwarderError):
    """Base for errors that may clear up by the next reconciliation cycle."""


class PermanentError(ForwarderError):
    """Base for errors that won't clear up without operator action."""


class InputValidationError(ForwarderError):
    """Base for invalid caller input, rejected before any I/O."""


# =============================================================================
# Transient Errors
# =============================================================================


class SourceUnavailableError(TransientError):
    """A discovery or address source failed, timed out or returned garbage.

    Non-fatal: the source contributes nothing for this cycle.

    Attributes:
        source: Name of the failing source (e.g. "pm2", "caddy", "hostname")
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None, *, source: str = ""):
        super().__init__(message, context)
        self.source = source


class RuleMutationError(TransientError):
    """The host rejected adding or removing the rule for one port.

    Attributes:
        port: Listen port the failed mutation targeted (None for listing)
        stderr: Error output from the host command, if any
    """

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        *,
        port: int | None = None,
        stderr: str = "",
    ):
        super().__init__(message, context)
        self.port = port
        self.stderr = stderr


class LockTimeoutError(TransientError):
    """An exclusive file lock could not be acquired within the timeout."""


# =============================================================================
# Permanent Errors
# =============================================================================


class ConfigError(PermanentError):
    """Persisted configuration (or its lock file) is unreadable, corrupt or not writable."""


class DependencyError(PermanentError):
    """A required host binary is missing or cannot be launched."""


# =============================================================================
# Input Validation Errors
# =============================================================================


class InvalidPortError(InputValidationError):
    """Port number outside 1-65535."""
