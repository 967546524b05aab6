from __future__ import annotations

from collections.abc import Callable, Iterable
import ipaddress
import socket
from urllib.parse import urlsplit

from veille.core.errors import UnsafeURLError

ALLOWED_SCHEMES = {"http", "https"}

URLValidator = Callable[[str], None]
HostResolver = Callable[[str], Iterable[str]]

_EXTRA_BLOCKED_NETWORKS = (
    ipaddress.ip_network("100.64.0.0/10"),
    ipaddress.ip_network("169.254.0.0/16"),
    ipaddress.ip_network("fc00::/7"),
    ipaddress.ip_network("fe80::/10"),
)


def resolve_host(host: str) -> list[str]:
    try:
        infos = socket.getaddrinfo(host, None, proto=socket.IPPROTO_TCP)
    except (socket.gaierror, UnicodeError):
        return []
    return [str(info[4][0]) for info in infos]


def is_blocked_address(address: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        address = address.ipv4_mapped
    if (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_multicast
        or address.is_reserved
        or address.is_unspecified
    ):
        return True
    return any(address in network for network in _EXTRA_BLOCKED_NETWORKS if network.version == address.version)


def validate_url(url: str, *, resolver: HostResolver = resolve_host) -> None:
    """Reject non-http(s) URLs and URLs whose host is or resolves to a private address.

    Hostnames that fail to resolve are let through: the request itself then
    fails with a DNS error, which the classifier treats as transient.
    """
    try:
        parsed = urlsplit(url)
    except ValueError as exc:
        raise UnsafeURLError(f"invalid url: {exc}") from exc

    if parsed.scheme.lower() not in ALLOWED_SCHEMES:
        raise UnsafeURLError(f"scheme not allowed: {parsed.scheme or '(none)'}")
    host = parsed.hostname
    if not host:
        raise UnsafeURLError("missing host")

    try:
        literal = ipaddress.ip_address(host)
    except ValueError:
        literal = None

    if literal is not None:
        if is_blocked_address(literal):
            raise UnsafeURLError(f"private address not allowed: {host}")
        return

    for resolved in resolver(host):
        try:
            address = ipaddress.ip_address(resolved.split("%", 1)[0])
        except ValueError:
            continue
        if is_blocked_address(address):
            raise UnsafeURLError(f"host {host} resolves to private address {resolved}")


def allow_all(_: str) -> None:
    return None
