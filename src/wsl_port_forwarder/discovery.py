"""Port discovery: manual ports plus ports implied by live services.

Two sources are built in:
- pm2: ``pm2 jlist`` process listing (JSON on stdout)
- caddy: the Caddy admin API config document

Both documents are walked with the same heuristic (collect_ports_from_json),
so any ``port`` field, ``listen`` address or ``host:port`` string is picked
up wherever it sits.

A failing source never aborts discovery: it is logged and contributes the
empty set for that cycle.
"""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from wsl_port_forwarder import constants
from wsl_port_forwarder._logging import get_logger
from wsl_port_forwarder.exceptions import SourceUnavailableError
from wsl_port_forwarder.models import DiscoveryResult, ManualPortConfig
from wsl_port_forwarder.subprocess_utils import run_command

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

logger = get_logger(__name__)


# ============================================================================
# Port extraction
# ============================================================================


def to_valid_port(value: Any) -> int | None:
    """Return ``value`` as a port if it is an int (or digit string) in 1-65535."""
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        # int() rejects non-ASCII digits and very long runs that isdigit() accepts
        if not (value.isascii() and value.isdigit() and len(value) <= constants.MAX_PORT_DIGITS):
            return None
        value = int(value)
    if isinstance(value, int) and constants.MIN_PORT <= value <= constants.MAX_PORT:
        return value
    return None


def extract_ports_from_string(text: str) -> list[int]:
    """Ports encoded in address-like strings.

    Examples:
        >>> extract_ports_from_string(":8080")
        [8080]
        >>> extract_ports_from_string("http://localhost:3000/")
        [3000]
        >>> extract_ports_from_string("no port here")
        []
    """
    if text.startswith(":"):
        port = to_valid_port(text[1:])
        if port is not None:
            return [port]

    _, sep, suffix = text.rpartition(":")
    if not sep:
        return []
    port = to_valid_port(suffix.rstrip("/"))
    return [port] if port is not None else []


def _walk(value: Any) -> Iterator[int]:
    if isinstance(value, dict):
        for key, child in value.items():
            lowered = str(key).lower()
            if lowered in constants.PORT_KEYS:
                port = to_valid_port(child)
                if port is not None:
                    yield port
            if lowered in constants.ADDRESS_KEYS and isinstance(child, str):
                yield from extract_ports_from_string(child)
            yield from _walk(child)
    elif isinstance(value, list):
        for item in value:
            yield from _walk(item)
    elif isinstance(value, str):
        yield from extract_ports_from_string(value)


def collect_ports_from_json(document: Any) -> set[int]:
    """Collect every port mentioned anywhere in a decoded JSON document."""
    return set(_walk(document))


def _ports_from_document(document: Any, source: str) -> set[int]:
    try:
        return collect_ports_from_json(document)
    except (ValueError, RecursionError) as e:
        raise SourceUnavailableError(f"Malformed {source} document: {e}", source=source) from e


# ============================================================================
# Sources
# ============================================================================


class PortSource(Protocol):
    """A live system whose state implies ports to forward."""

    name: str

    async def fetch(self) -> set[int]:
        """Return the ports currently implied by this source.

        Raises:
            SourceUnavailableError: Source unreachable, timed out or malformed
        """
        ...


class Pm2PortSource:
    """Ports of processes managed by pm2 (``pm2 jlist``)."""

    name = "pm2"

    def __init__(
        self,
        *,
        command: Sequence[str] = constants.PM2_JLIST_COMMAND,
        timeout: float = constants.COMMAND_TIMEOUT_SECONDS,
    ) -> None:
        self._command = tuple(command)
        self._timeout = timeout

    async def fetch(self) -> set[int]:
        try:
            result = await run_command(self._command, timeout=self._timeout)
        except TimeoutError as e:
            raise SourceUnavailableError(
                f"{' '.join(self._command)} timed out after {self._timeout}s", source=self.name
            ) from e
        except OSError as e:
            raise SourceUnavailableError(f"Cannot run {self._command[0]}: {e}", source=self.name) from e

        if not result.ok:
            raise SourceUnavailableError(
                f"{' '.join(self._command)} exited with {result.returncode}",
                context={"stderr": result.stderr.strip()},
                source=self.name,
            )
        try:
            document = json.loads(result.stdout)
        except (ValueError, RecursionError) as e:
            raise SourceUnavailableError(f"Invalid pm2 JSON: {e}", source=self.name) from e
        return _ports_from_document(document, self.name)


class CaddyPortSource:
    """Ports configured in Caddy, read from its admin API."""

    name = "caddy"

    def __init__(
        self,
        *,
        admin_url: str = constants.CADDY_ADMIN_URL,
        timeout: float = constants.CADDY_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = f"{admin_url.rstrip('/')}/config/"
        self._timeout = timeout
        self._transport = transport

    async def fetch(self) -> set[int]:
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.get(self._url)
                response.raise_for_status()
                document = response.json()
        except httpx.HTTPStatusError as e:
            raise SourceUnavailableError(
                f"Caddy config returned {e.response.status_code}",
                context={"url": self._url},
                source=self.name,
            ) from e
        except httpx.HTTPError as e:
            raise SourceUnavailableError(
                f"Failed requesting Caddy config: {e!r}", context={"url": self._url}, source=self.name
            ) from e
        except (ValueError, RecursionError) as e:
            raise SourceUnavailableError(
                f"Invalid Caddy config JSON: {e}", context={"url": self._url}, source=self.name
            ) from e
        return _ports_from_document(document, self.name)


# ============================================================================
# Aggregation
# ============================================================================


class PortDiscoverer:
    """Union of manual ports and every reachable discovery source.

    Sources are keyed by name; the config toggles ``enable_pm2`` and
    ``enable_caddy`` select which of them are queried.
    """

    def __init__(self, sources: Sequence[PortSource]) -> None:
        self._sources = {source.name: source for source in sources}

    def _enabled(self, config: ManualPortConfig) -> list[PortSource]:
        toggles = {"pm2": config.enable_pm2, "caddy": config.enable_caddy}
        return [source for name, source in self._sources.items() if toggles.get(name, True)]

    async def _fetch(self, source: PortSource) -> tuple[str, set[int] | None, str | None]:
        try:
            return source.name, await source.fetch(), None
        except SourceUnavailableError as e:
            logger.debug(
                "Discovery source unavailable",
                extra={"source": source.name, "error": e.message, **e.context},
            )
            return source.name, None, e.message

    async def discover(self, config: ManualPortConfig) -> DiscoveryResult:
        """Aggregate desired ports for this cycle (never raises for source failures)."""
        outcomes = await asyncio.gather(*(self._fetch(source) for source in self._enabled(config)))

        discovered: dict[str, frozenset[int]] = {}
        errors: dict[str, str] = {}
        for name, ports, error in outcomes:
            if error is not None:
                errors[name] = error
                discovered[name] = frozenset()
            else:
                discovered[name] = frozenset(ports or ())

        result = DiscoveryResult(manual=frozenset(config.manual_ports), discovered=discovered, errors=errors)
        logger.debug(
            "Discovery complete",
            extra={
                "manual": sorted(result.manual),
                "discovered": {name: sorted(ports) for name, ports in discovered.items()},
                "failed_sources": sorted(errors),
            },
        )
        return result


def default_sources(
    *,
    caddy_admin_url: str = constants.CADDY_ADMIN_URL,
    command_timeout: float = constants.COMMAND_TIMEOUT_SECONDS,
    caddy_timeout: float = constants.CADDY_TIMEOUT_SECONDS,
) -> list[PortSource]:
    """The built-in pm2 and Caddy sources."""
    return [
        Pm2PortSource(timeout=command_timeout),
        CaddyPortSource(admin_url=caddy_admin_url, timeout=caddy_timeout),
    ]
