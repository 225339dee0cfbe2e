"""WSGI middleware that works out the real client IP behind trusted proxies."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional, Sequence, Union

CLIENT_IP_KEY = "contrafactory.client_ip"

Network = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


@dataclass
class RealIPConfig:
    """Whether to trust forwarding headers, and from which proxies."""

    trust_proxy: bool = False
    trusted_proxies: Sequence[str] = field(default_factory=list)


def parse_trusted_networks(cidrs: Iterable[str]) -> list[Network]:
    """Parse CIDR ranges or single addresses, skipping entries that do not parse."""
    networks: list[Network] = []
    for cidr in cidrs:
        try:
            networks.append(ipaddress.ip_network(cidr.strip(), strict=False))
        except ValueError:
            continue
    return networks


def _split_host_port(address: str) -> str:
    """Return the host part of host:port, raising ValueError if it has none."""
    colon = address.rfind(":")
    if colon < 0:
        raise ValueError("missing port")
    if address.startswith("["):
        end = address.find("]")
        if end < 0:
            raise ValueError("missing ']'")
        if end + 1 == len(address) or end + 1 != colon:
            raise ValueError("bad bracketed address")
        host = address[1:end]
    else:
        host = address[:colon]
        if ":" in host:
            raise ValueError("too many colons")
    port = address[colon + 1:]
    if any(c in host for c in "[]") or any(c in port for c in "[]"):
        raise ValueError("unexpected bracket")
    return host


def extract_ip(address: str) -> str:
    """Return the IP part of an address, with or without a port."""
    try:
        return _split_host_port(address)
    except ValueError:
        return address


def is_trusted_proxy(ip: str, networks: Iterable[Network]) -> bool:
    """Return True if ip parses and lies in one of networks."""
    try:
        parsed = ipaddress.ip_address(ip)
    except ValueError:
        return False
    candidates: list[Any] = [parsed]
    if isinstance(parsed, ipaddress.IPv6Address) and parsed.ipv4_mapped is not None:
        candidates.append(parsed.ipv4_mapped)
    return any(
        candidate in network
        for network in networks
        for candidate in candidates
        if candidate.version == network.version
    )


def extract_client_ip(
    environ: dict[str, Any], trust_proxy: bool, networks: Sequence[Network]
) -> str:
    """Work out the client IP for a request environ."""
    remote_ip = extract_ip(environ.get("REMOTE_ADDR", ""))
    if not trust_proxy or not is_trusted_proxy(remote_ip, networks):
        return remote_ip

    forwarded = environ.get("HTTP_X_FORWARDED_FOR", "")
    if not forwarded:
        real_ip = environ.get("HTTP_X_REAL_IP", "")
        if real_ip:
            return real_ip.strip()
        return remote_ip

    hops = forwarded.split(",")
    for hop in reversed(hops):
        ip = hop.strip()
        if ip and not is_trusted_proxy(ip, networks):
            return ip
    return hops[0].strip()


def get_client_ip(environ: dict[str, Any]) -> str:
    """Return the client IP set by the middleware, or the remote address."""
    ip = environ.get(CLIENT_IP_KEY)
    if isinstance(ip, str) and ip:
        return ip
    return extract_ip(environ.get("REMOTE_ADDR", ""))


class RealIPMiddleware:
    """Stores the real client IP in the environ for later middleware."""

    def __init__(self, app: Callable[..., Iterable[bytes]], config: Optional[RealIPConfig] = None) -> None:
        self.app = app
        self.config = config or RealIPConfig()
        self.networks: list[Network] = (
            parse_trusted_networks(self.config.trusted_proxies) if self.config.trust_proxy else []
        )

    def __call__(self, environ: dict[str, Any], start_response: Callable[..., Any]) -> Iterable[bytes]:
        environ[CLIENT_IP_KEY] = extract_client_ip(environ, self.config.trust_proxy, self.networks)
        return self.app(environ, start_response)