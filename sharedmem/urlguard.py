"""
URL Safety Guard — SSRF defense for caller-supplied URLs.

Classifies a candidate URL as fetchable before any connection is made.
Hostnames are resolved once and rejected if ANY resolved address falls in
a private or reserved range, so a name with one public and one private
record cannot slip through.

The guard must run on every redirect hop, not just the first URL; the
bounded fetcher does this.
"""

from __future__ import annotations

import ipaddress
import logging
import socket
from typing import Callable, Iterable, List, Optional
from urllib.parse import urlsplit

from sharedmem.errors import BlockedHost, DisallowedScheme, InvalidURL

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = frozenset({"http", "https"})

PRIVATE_V4_NETWORKS = tuple(
    ipaddress.ip_network(n) for n in (
        "10.0.0.0/8",
        "127.0.0.0/8",
        "0.0.0.0/8",
        "169.254.0.0/16",
        "172.16.0.0/12",
        "192.168.0.0/16",
    )
)
PRIVATE_V6_NETWORKS = tuple(
    ipaddress.ip_network(n) for n in (
        "::1/128",
        "fc00::/7",
        "fe80::/10",
    )
)

Resolver = Callable[[str], List[str]]


def system_resolver(host: str) -> List[str]:
    """Resolve a hostname to every A/AAAA address via getaddrinfo."""
    infos = socket.getaddrinfo(host, None, proto=socket.IPPROTO_TCP)
    addrs: List[str] = []
    for _family, _type, _proto, _canon, sockaddr in infos:
        addr = str(sockaddr[0])
        if addr not in addrs:
            addrs.append(addr)
    return addrs


def _parse_address(addr: str):
    """Parse an address string, dropping any IPv6 zone suffix."""
    text = addr.strip()
    if text.startswith("[") and text.endswith("]"):
        text = text[1:-1]
    text = text.split("%", 1)[0]
    return ipaddress.ip_address(text)


def is_private_address(addr: str) -> bool:
    """
    Return True if addr is loopback, private, link-local or otherwise reserved.

    Anything that does not parse as an IPv4/IPv6 address is unsafe.
    """
    try:
        ip = _parse_address(addr)
    except ValueError:
        return True

    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped

    if isinstance(ip, ipaddress.IPv4Address):
        return any(ip in net for net in PRIVATE_V4_NETWORKS)
    if isinstance(ip, ipaddress.IPv6Address):
        return any(ip in net for net in PRIVATE_V6_NETWORKS)
    return True


def _is_ip_literal(host: str) -> bool:
    try:
        _parse_address(host)
    except ValueError:
        return False
    return True


def _is_localhost_name(host: str) -> bool:
    return host == "localhost" or host.endswith(".localhost")


def check_addresses(host: str, addrs: Iterable[str]) -> None:
    """Raise BlockedHost if any address is private (any-private-wins)."""
    addrs = list(addrs)
    if not addrs:
        raise InvalidURL(f"Hostname {host!r} did not resolve to any address")
    for addr in addrs:
        if is_private_address(addr):
            raise BlockedHost(
                "Refusing to fetch a hostname that resolves to a private-network IP"
            )


def validate_url(raw_url: str, resolver: Optional[Resolver] = None) -> str:
    """
    Validate a caller-supplied URL for fetching.

    Args:
        raw_url: URL as given by the caller.
        resolver: Hostname → address list.  Defaults to getaddrinfo.

    Returns:
        The canonical URL string (as re-assembled by urlsplit).

    Raises:
        InvalidURL: Unparsable URL, missing host, or unresolvable host.
        DisallowedScheme: Scheme is not http/https.
        BlockedHost: localhost, or a private/reserved address.
    """
    if not isinstance(raw_url, str) or not raw_url.strip():
        raise InvalidURL("Invalid URL")
    if any(ord(c) < 0x20 or ord(c) == 0x7F for c in raw_url.strip()):
        raise InvalidURL("Invalid URL")
    try:
        parts = urlsplit(raw_url.strip())
        host = parts.hostname
        parts.port  # raises ValueError on a bad port
    except ValueError:
        raise InvalidURL("Invalid URL")

    scheme = (parts.scheme or "").lower()
    if not scheme:
        raise InvalidURL("Invalid URL")
    if scheme not in ALLOWED_SCHEMES:
        raise DisallowedScheme("Only http/https URLs are allowed")
    if not parts.netloc or not host:
        raise InvalidURL("Invalid URL")

    host = host.lower().rstrip(".")
    if _is_localhost_name(host):
        raise BlockedHost("Refusing to fetch localhost")

    if _is_ip_literal(host):
        if is_private_address(host):
            raise BlockedHost("Refusing to fetch private-network IP")
        return parts.geturl()

    resolve = resolver or system_resolver
    try:
        addrs = resolve(host)
    except (OSError, UnicodeError) as e:
        raise InvalidURL(f"Cannot resolve host {host!r}: {e}")
    check_addresses(host, addrs)
    logger.debug("URL accepted: %s (%d address(es))", host, len(addrs))
    return parts.geturl()
