"""
Access guard for proxy targets.

Decides whether a target host may be contacted by testing its address(es)
against a fixed table of disallowed networks: the unspecified address,
loopback, link-local, carrier-grade NAT, the private IPv4 blocks and the
unique-local IPv6 block. Hostnames are resolved first. A host that cannot be
resolved is reported as blocked, never as allowed.
"""

import asyncio
import ipaddress
import logging
import re
import socket
from dataclasses import dataclass
from typing import List, Union

from prometheus_client import Counter

from scalar_proxy import vars as config

logger = logging.getLogger("uvicorn.error")

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

ADDRESS_WIDTH = {4: 32, 6: 128}

DOTTED_QUAD = re.compile(r"[0-9]+\.[0-9]+\.[0-9]+\.[0-9]+")

blocked_targets = Counter(
    "proxy_blocked_requests",
    "Proxy targets refused by the access guard",
    ["reason"],
)


@dataclass(frozen=True)
class DisallowedRange:
    """A CIDR block that the proxy must never reach."""

    base: int
    prefix: int
    version: int

    def __post_init__(self):
        width = ADDRESS_WIDTH.get(self.version)
        if width is None:
            raise ValueError(f"Unknown address family: IPv{self.version}")
        if not 0 <= self.prefix <= width:
            raise ValueError(f"Prefix /{self.prefix} out of range for IPv{self.version}")
        shift = width - self.prefix
        if (self.base >> shift) << shift != self.base:
            raise ValueError(f"{self} has host bits set below the prefix")

    @classmethod
    def from_cidr(cls, cidr: str) -> "DisallowedRange":
        address, _, prefix = cidr.partition("/")
        ip = ipaddress.ip_address(address)
        width = ADDRESS_WIDTH[ip.version]
        return cls(
            base=int(ip),
            prefix=int(prefix) if prefix else width,
            version=ip.version,
        )

    @property
    def width(self) -> int:
        return ADDRESS_WIDTH[self.version]

    def contains(self, address: IPAddress) -> bool:
        if address.version != self.version:
            return False
        shift = self.width - self.prefix
        return (int(address) >> shift) == (self.base >> shift)

    def __str__(self) -> str:
        if self.version == 4:
            base = ipaddress.IPv4Address(self.base)
        else:
            base = ipaddress.IPv6Address(self.base)
        return f"{base}/{self.prefix}"


DISALLOWED_RANGES = tuple(
    DisallowedRange.from_cidr(cidr)
    for cidr in (
        "0.0.0.0/32",
        "127.0.0.0/8",
        "::1/128",
        "::/128",
        "169.254.0.0/16",
        "fe80::/10",
        "10.0.0.0/8",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "100.64.0.0/10",
        "fc00::/7",
    )
)


def address_is_disallowed(address: str) -> bool:
    """Return True if a literal IP address falls in any disallowed range.

    Anything that does not parse as an address is reported as disallowed.
    IPv4-mapped IPv6 addresses are also checked as their embedded IPv4 form.
    """
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return True

    candidates = [ip]
    if ip.version == 6 and ip.ipv4_mapped is not None:
        candidates.append(ip.ipv4_mapped)

    return any(
        disallowed.contains(candidate)
        for candidate in candidates
        for disallowed in DISALLOWED_RANGES
    )


def split_host(host: str) -> str:
    """Return the hostname part of ``host[:port]``; the port is discarded.

    Bracketed IPv6 literals (``[::1]:8080``) come back without brackets.
    An unterminated bracket yields an empty hostname.
    """
    if host.startswith("["):
        end = host.find("]")
        return host[1:end] if end != -1 else ""
    return host.split(":", 1)[0]


async def resolve_host(hostname: str) -> List[str]:
    """Resolve a hostname with the system resolver, bounded by RESOLVE_TIMEOUT."""
    if not hostname:
        raise socket.gaierror(socket.EAI_NONAME, "empty hostname")
    loop = asyncio.get_running_loop()
    infos = await asyncio.wait_for(
        loop.getaddrinfo(hostname, None, type=socket.SOCK_STREAM),
        timeout=config.RESOLVE_TIMEOUT,
    )
    return [str(info[4][0]) for info in infos]


async def is_blocked(host: str) -> bool:
    """Return True if the target ``host[:port]`` must not be contacted."""
    hostname = split_host(host)

    if DOTTED_QUAD.fullmatch(hostname):
        if address_is_disallowed(hostname):
            logger.warning(f"[AccessGuard] Blocked address literal {hostname}")
            blocked_targets.labels(reason="range").inc()
            return True
        return False

    try:
        addresses = await resolve_host(hostname)
    except Exception as e:
        logger.warning(f"[AccessGuard] Could not resolve {hostname!r}, blocking: {e!r}")
        blocked_targets.labels(reason="resolution").inc()
        return True

    if not addresses:
        logger.warning(f"[AccessGuard] No addresses for {hostname!r}, blocking")
        blocked_targets.labels(reason="resolution").inc()
        return True

    for address in addresses:
        if address_is_disallowed(address):
            logger.warning(
                f"[AccessGuard] Blocked {hostname!r}: resolves to disallowed address {address}"
            )
            blocked_targets.labels(reason="range").inc()
            return True

    logger.debug(f"[AccessGuard] Allowed {hostname!r} ({', '.join(addresses)})")
    return False
