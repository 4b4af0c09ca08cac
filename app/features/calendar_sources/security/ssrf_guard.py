"""
SSRF guard for calendar feed fetches.

Every URL the fetcher is about to contact (the registered feed and each
redirect target) passes through SsrfGuard.check(). The guard resolves the
host itself and inspects every returned address; the fetcher then connects
to one of those exact addresses so DNS cannot answer differently between the
check and the connection.
"""

import asyncio
import ipaddress
import socket
from collections.abc import Awaitable, Callable, Iterable
from urllib.parse import urlsplit

from app.features.calendar_sources.domain.errors import (
    FetchError,
    SourceErrorKind,
    SsrfViolation,
)
from app.features.calendar_sources.domain.models import GuardResult
from app.features.calendar_sources.security.url import DEFAULT_PORTS, normalize_host
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address
Resolver = Callable[[str, int], Awaitable[list[str]]]

LOCALHOST_NAMES = frozenset({"localhost", "127.0.0.1", "::1", "0.0.0.0"})

# Ranges the ipaddress flags do not cover on every interpreter version
EXTRA_BLOCKED_NETWORKS = (
    ipaddress.ip_network("100.64.0.0/10"),  # carrier-grade NAT
    ipaddress.ip_network("192.0.0.0/24"),  # IETF protocol assignments
    ipaddress.ip_network("198.18.0.0/15"),  # benchmarking
    ipaddress.ip_network("fc00::/7"),  # unique-local
    ipaddress.ip_network("64:ff9b:1::/48"),  # local-use NAT64
)


async def resolve_host(host: str, port: int) -> list[str]:
    """Resolve every A/AAAA address for host using the event loop's resolver."""
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    addresses: list[str] = []
    for family, _type, _proto, _canonname, sockaddr in infos:
        if family not in (socket.AF_INET, socket.AF_INET6):
            continue
        address = sockaddr[0]
        if address not in addresses:
            addresses.append(address)
    return addresses


def parse_ip(value: str) -> IPAddress | None:
    try:
        # Drop an IPv6 zone index ("fe80::1%eth0")
        return ipaddress.ip_address(value.split("%", 1)[0])
    except ValueError:
        return None


def _effective(address: IPAddress) -> IPAddress:
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        return address.ipv4_mapped
    return address


def is_loopback(address: IPAddress) -> bool:
    return _effective(address).is_loopback


def is_disallowed(address: IPAddress) -> bool:
    """True for any address that is not plain public unicast."""
    inspected = _effective(address)
    if (
        inspected.is_private
        or inspected.is_loopback
        or inspected.is_link_local
        or inspected.is_multicast
        or inspected.is_reserved
        or inspected.is_unspecified
    ):
        return True
    return any(
        inspected.version == network.version and inspected in network
        for network in EXTRA_BLOCKED_NETWORKS
    )


class SsrfGuard:
    """
    Validates the network target of a URL.

    Checks run in order: port, literal localhost names, then every resolved
    address (loopback first, then private/reserved space). Results are never
    cached.
    """

    def __init__(
        self,
        resolver: Resolver | None = None,
        extra_allowed_ports: Iterable[int] = (),
    ):
        self._resolver = resolver or resolve_host
        self._extra_allowed_ports = frozenset(extra_allowed_ports)

    def _check_port(self, scheme: str, port: int, host: str) -> None:
        if port == DEFAULT_PORTS.get(scheme) or port in self._extra_allowed_ports:
            return
        raise SsrfViolation(
            f"Port {port} is not allowed for {scheme} feeds",
            SourceErrorKind.INVALID_PORT,
            host=host,
        )

    async def _resolve(self, host: str, port: int) -> list[IPAddress]:
        literal = parse_ip(host)
        if literal is not None:
            return [literal]

        try:
            raw_addresses = await self._resolver(host, port)
        except (OSError, UnicodeError) as e:
            raise FetchError(
                f"Could not resolve host {host!r}: {e}", SourceErrorKind.FETCH_FAILED, host=host
            ) from e

        addresses = [parsed for parsed in map(parse_ip, raw_addresses) if parsed is not None]
        if not addresses:
            raise FetchError(
                f"Host {host!r} resolved to no addresses", SourceErrorKind.FETCH_FAILED, host=host
            )
        return addresses

    async def check(self, url: str) -> GuardResult:
        """
        Validate the host and port a URL points at.

        Returns:
            GuardResult with the host, effective port and validated addresses

        Raises:
            SsrfViolation: invalid_port, localhost or private_ip
            FetchError: the host could not be resolved (fetch_failed)
        """
        parts = urlsplit(url)
        scheme = parts.scheme.lower()
        host = normalize_host(parts.hostname or "")
        try:
            port = parts.port if parts.port is not None else DEFAULT_PORTS.get(scheme, 0)
        except ValueError:
            port = 0

        self._check_port(scheme, port, host)

        if host in LOCALHOST_NAMES or host.endswith(".localhost"):
            raise SsrfViolation(
                f"Host {host!r} is a loopback name", SourceErrorKind.LOCALHOST, host=host
            )

        addresses = await self._resolve(host, port)

        if any(is_loopback(address) for address in addresses):
            logger.warning("SSRF guard rejected loopback target", host=host)
            raise SsrfViolation(
                f"Host {host!r} resolves to a loopback address",
                SourceErrorKind.LOCALHOST,
                host=host,
            )

        blocked = [str(address) for address in addresses if is_disallowed(address)]
        if blocked:
            logger.warning("SSRF guard rejected private target", host=host, addresses=blocked)
            raise SsrfViolation(
                f"Host {host!r} resolves to restricted address {blocked[0]}",
                SourceErrorKind.PRIVATE_IP,
                host=host,
            )

        return GuardResult(host=host, port=port, addresses=[str(a) for a in addresses])
