"""Egress policy: scheme allow-list, SSRF address checks and robots.txt.

``SafetyGate.authorize`` runs before the first request and before every
redirect hop. Checks run in order and stop at the first denial. DNS
failures deny; robots.txt failures allow.
"""

from __future__ import annotations

import asyncio
import ipaddress
import socket
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING
from urllib.parse import urlsplit

import structlog

from fetchgate.errors import ErrorCode, FetchGateError

if TYPE_CHECKING:
    from fetchgate.robots import RobotsCache

log = structlog.get_logger()

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address
IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network
Resolver = Callable[[str], Awaitable[list[str]]]

_SUGGESTIONS = {
    ErrorCode.SCHEME_NOT_ALLOWED: "Only http and https URLs can be fetched.",
    ErrorCode.SSRF_BLOCKED: (
        "The URL points at a private, loopback or otherwise internal address. "
        "Only publicly routable hosts can be fetched."
    ),
    ErrorCode.ROBOTS_DISALLOWED: "The site's robots.txt opts this path out of automated access.",
}


@dataclass(frozen=True)
class Allow:
    url: str
    addresses: tuple[str, ...] = ()


@dataclass(frozen=True)
class Deny:
    code: ErrorCode
    message: str

    def to_error(self) -> FetchGateError:
        return FetchGateError(
            code=self.code,
            message=self.message,
            suggestion=_SUGGESTIONS.get(self.code, ""),
            recoverable=False,
        )


async def resolve_host(host: str) -> list[str]:
    """Resolve *host* to its distinct IP addresses using the loop's resolver."""
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, None, type=socket.SOCK_STREAM)
    addresses: list[str] = []
    for info in infos:
        address = str(info[4][0]).split("%", 1)[0]  # strip IPv6 zone id
        if address not in addresses:
            addresses.append(address)
    return addresses


def parse_networks(cidrs: Iterable[str]) -> tuple[IPNetwork, ...]:
    return tuple(ipaddress.ip_network(cidr, strict=False) for cidr in cidrs)


def is_blocked_address(address: IPAddress, denied: Iterable[IPNetwork] = ()) -> bool:
    """True for any address that must never be fetched from."""
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        return is_blocked_address(address.ipv4_mapped, denied)
    if (
        address.is_loopback
        or address.is_private
        or address.is_link_local
        or address.is_multicast
        or address.is_unspecified
        or address.is_reserved
    ):
        return True
    if isinstance(address, ipaddress.IPv4Address) and address == ipaddress.IPv4Address(
        "255.255.255.255"
    ):
        return True
    return any(address.version == net.version and address in net for net in denied)


class SafetyGate:
    """Decides whether a URL may be fetched."""

    def __init__(
        self,
        *,
        allowed_schemes: Iterable[str] = ("http", "https"),
        denied_networks: Iterable[str] = (),
        robots: RobotsCache | None = None,
        resolver: Resolver | None = None,
    ) -> None:
        self._allowed_schemes = frozenset(scheme.lower() for scheme in allowed_schemes)
        self._denied_networks = parse_networks(denied_networks)
        self._robots = robots
        self._resolve = resolver or resolve_host

    async def authorize(self, url: str) -> Allow | Deny:
        parts = urlsplit(url)
        scheme = parts.scheme.lower()
        if scheme not in self._allowed_schemes:
            log.warning("scheme_blocked", url=url, scheme=scheme)
            return Deny(ErrorCode.SCHEME_NOT_ALLOWED, f"Scheme {scheme!r} is not allowed: {url}")

        host = parts.hostname
        if not host:
            log.warning("ssrf_blocked", url=url, reason="missing_host")
            return Deny(ErrorCode.SSRF_BLOCKED, f"URL has no host: {url}")

        decision = await self._check_addresses(url, host)
        if isinstance(decision, Deny):
            return decision

        if self._robots is not None and not await self._robots.is_allowed(url):
            log.info("robots_disallowed", url=url)
            return Deny(ErrorCode.ROBOTS_DISALLOWED, f"robots.txt disallows fetching {url}")

        return decision

    async def _check_addresses(self, url: str, host: str) -> Allow | Deny:
        try:
            addresses = [str(ipaddress.ip_address(host))]
        except ValueError:
            try:
                addresses = await self._resolve(host)
            except (OSError, UnicodeError) as exc:
                log.warning(
                    "ssrf_blocked", url=url, host=host, reason="dns_failure", error=str(exc)
                )
                return Deny(ErrorCode.SSRF_BLOCKED, f"Could not resolve host {host!r}")

        if not addresses:
            log.warning("ssrf_blocked", url=url, host=host, reason="no_addresses")
            return Deny(ErrorCode.SSRF_BLOCKED, f"Host {host!r} resolved to no addresses")

        for raw in addresses:
            try:
                address = ipaddress.ip_address(raw)
            except ValueError:
                log.warning("ssrf_blocked", url=url, host=host, reason="unparsable_address")
                return Deny(ErrorCode.SSRF_BLOCKED, f"Host {host!r} resolved to {raw!r}")
            if is_blocked_address(address, self._denied_networks):
                log.warning("ssrf_blocked", url=url, host=host, address=raw, reason="blocked_range")
                return Deny(
                    ErrorCode.SSRF_BLOCKED,
                    f"Host {host!r} resolves to a non-public address ({raw})",
                )
        return Allow(url=url, addresses=tuple(addresses))
