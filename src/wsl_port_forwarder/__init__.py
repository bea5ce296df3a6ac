"""wsl-port-forwarder: Keep Windows portproxy rules pointed at a WSL guest.

The WSL guest address changes on every restart. This package keeps the
host's ``netsh interface portproxy`` table converged on the ports you want
reachable from Windows, forwarding each to the same port on the current
guest address.

Desired ports are the union of a persisted manual list and what local
services advertise (pm2 process list, Caddy admin API).

CLI:
    wsl-port status
    wsl-port add 5173
    wsl-port sync
    wsl-port daemon

Library:
    ```python
    from wsl_port_forwarder import Services, Settings

    services = Services.from_settings(Settings())
    discovery, result = await services.sync_once(force=True)
    print(result.added, result.removed, result.failed)
    ```

Requirements:
    - WSL 2 with interop enabled (powershell.exe reachable)
    - An elevated Windows session for portproxy changes
    - Python 3.12+
"""

from wsl_port_forwarder.address_watcher import AddressWatcher
from wsl_port_forwarder.config_store import ConfigStore
from wsl_port_forwarder.daemon import Daemon
from wsl_port_forwarder.discovery import PortDiscoverer
from wsl_port_forwarder.exceptions import (
    ConfigError,
    DependencyError,
    ForwarderError,
    InputValidationError,
    InvalidPortError,
    LockTimeoutError,
    PermanentError,
    RuleMutationError,
    SourceUnavailableError,
    TransientError,
)
from wsl_port_forwarder.models import (
    AddressEvent,
    AddressEventKind,
    DiscoveryResult,
    ForwardingRule,
    ManualPortConfig,
    Plan,
    ReconcileResult,
)
from wsl_port_forwarder.reconciler import Reconciler, compute_plan
from wsl_port_forwarder.rule_store import RuleStore
from wsl_port_forwarder.services import Services
from wsl_port_forwarder.settings import Settings

__all__ = [
    "AddressEvent",
    "AddressEventKind",
    "AddressWatcher",
    "ConfigError",
    "ConfigStore",
    "Daemon",
    "DependencyError",
    "DiscoveryResult",
    "ForwarderError",
    "ForwardingRule",
    "InputValidationError",
    "InvalidPortError",
    "LockTimeoutError",
    "ManualPortConfig",
    "PermanentError",
    "Plan",
    "PortDiscoverer",
    "ReconcileResult",
    "Reconciler",
    "RuleMutationError",
    "RuleStore",
    "Services",
    "Settings",
    "SourceUnavailableError",
    "TransientError",
    "compute_plan",
]

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("wsl-port-forwarder")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
