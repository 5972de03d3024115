"""Outbound request policy: keeps origin fetches away from internal address space."""

from __future__ import annotations

import asyncio
import ipaddress
import socket
import urllib.parse
from typing import Awaitable, Callable, Iterable, Optional

import httpx
import structlog

LOGGER = structlog.get_logger("imgpro.networking")

Resolver = Callable[[str], Awaitable[list[str]]]
IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address

ALLOWED_SCHEMES = frozenset({"http", "https"})


class EgressDenied(PermissionError):
    """Raised when an outbound URL points somewhere the proxy must not reach."""


class MetadataEndpointDenylist:
    """Hosts and networks that are never fetched, even when private origins are allowed."""

    def __init__(self, entries: Iterable[str] | None = None) -> None:
        self._blocked_hosts: set[str] = set()
        self._blocked_networks: list[ipaddress.IPv4Network | ipaddress.IPv6Network] = []
        for entry in entries or []:
            entry = entry.strip()
            if not entry:
                continue
            try:
                network = ipaddress.ip_network(entry, strict=False)
            except ValueError:
                self._blocked_hosts.add(entry.lower())
            else:
                self._blocked_networks.append(network)

    def blocks_host(self, host: str) -> bool:
        return host.lower() in self._blocked_hosts

    def blocks_address(self, address: IPAddress) -> bool:
        return any(address in network for network in self._blocked_networks)


def is_internal_address(address: IPAddress) -> bool:
    """True for loopback, private, link-local and other non-routable targets."""
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        address = address.ipv4_mapped
    return (
        address.is_loopback
        or address.is_private
        or address.is_link_local
        or address.is_reserved
        or address.is_multicast
        or address.is_unspecified
    )


async def resolve_host(host: str) -> list[str]:
    """Resolve ``host`` to its unique addresses without blocking the event loop."""
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, None, type=socket.SOCK_STREAM)
    addresses: list[str] = []
    for info in infos:
        address = info[4][0]
        if address not in addresses:
            addresses.append(address)
    return addresses


class OriginEgressGuard:
    """Validates every outbound URL before a connection is made.

    The check runs on the initial request and on each redirect hop, and once
    more on the final response URL.
    """

    def __init__(
        self,
        *,
        allow_private: bool = False,
        metadata_denylist: MetadataEndpointDenylist | None = None,
        resolver: Resolver | None = None,
    ) -> None:
        self._allow_private = allow_private
        self._metadata_denylist = metadata_denylist or MetadataEndpointDenylist()
        self._resolver = resolver or resolve_host

    async def ensure_allowed(self, url: str) -> None:
        parsed = urllib.parse.urlsplit(url)
        scheme = parsed.scheme.lower()
        if scheme not in ALLOWED_SCHEMES:
            raise EgressDenied(f"Outbound request scheme not allowed: {scheme or 'none'}")
        hostname = (parsed.hostname or "").rstrip(".")
        if not hostname:
            raise EgressDenied("Outbound request missing hostname")
        if self._metadata_denylist.blocks_host(hostname):
            raise EgressDenied(f"Outbound request to metadata endpoint blocked: {hostname}")

        for address in await self._addresses_for(hostname):
            if self._metadata_denylist.blocks_address(address):
                raise EgressDenied(f"Outbound request to metadata endpoint blocked: {hostname}")
            if not self._allow_private and is_internal_address(address):
                raise EgressDenied(f"Outbound request to internal address blocked: {hostname} ({address})")

    async def _addresses_for(self, hostname: str) -> list[IPAddress]:
        try:
            return [ipaddress.ip_address(hostname)]
        except ValueError:
            pass
        try:
            resolved = await self._resolver(hostname)
        except OSError as exc:
            # Unresolvable hosts cannot be connected to either; the fetch fails on its own.
            LOGGER.debug("egress_resolution_failed", host=hostname, error=str(exc))
            return []
        addresses: list[IPAddress] = []
        for entry in resolved:
            try:
                addresses.append(ipaddress.ip_address(entry.split("%", 1)[0]))
            except ValueError:
                continue
        return addresses


def create_guarded_async_client(
    *,
    guard: OriginEgressGuard,
    timeout: float,
    max_redirects: int,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """Provide an httpx.AsyncClient that runs ``guard`` before every request, redirects included."""

    async def _on_request(request: httpx.Request) -> None:
        await guard.ensure_allowed(str(request.url))

    return httpx.AsyncClient(
        timeout=timeout,
        limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
        follow_redirects=True,
        max_redirects=max(0, max_redirects),
        event_hooks={"request": [_on_request]},
        transport=transport,
    )
