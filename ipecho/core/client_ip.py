"""Client address resolution behind a TLS-terminating load balancer.

The service only ever sees the load balancer as its transport peer, so the
real client address has to come from a proxy header. Which header is
trustworthy depends on the proxy in front of the deployment:

- ``forwarded_for``: Cloud Run / GCLB append to ``X-Forwarded-For``; the
  left-most entry is the originating client.
- ``edge_header``: a dedicated header (e.g. ``X-Real-IP``) that a specific
  edge proxy always overwrites; its value is taken whole.

Only one policy is active at a time. When the trusted header is absent,
empty or not a valid IP address, resolution falls back to the transport
peer address. Resolution never fails a request.
"""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from typing import Literal, Mapping, MutableMapping, Sequence

from fastapi import Request

from ipecho.core.config import TrustModel
from ipecho.core.errors import RequestContextAppError

FORWARDED_FOR_HEADER = "X-Forwarded-For"

# ASGI scope key holding the request's ResolvedClientAddress.
CLIENT_ADDRESS_SCOPE_KEY = "ipecho.client_address"

AddressSource = Literal["header", "peer"]


@dataclass(frozen=True)
class ForwardedForTrust:
    """Trust the left-most entry of the comma-separated forwarding header."""

    header: str = FORWARDED_FOR_HEADER

    def candidate(self, value: str) -> str:
        return value.split(",", 1)[0].strip()


@dataclass(frozen=True)
class EdgeHeaderTrust:
    """Trust a single-valued header set exclusively by the edge proxy."""

    header: str = "X-Real-IP"

    def candidate(self, value: str) -> str:
        return value.strip()


TrustPolicy = ForwardedForTrust | EdgeHeaderTrust


@dataclass(frozen=True)
class ResolvedClientAddress:
    """Client address attributed to one request.

    Attributes:
        value: Canonical IP text, or the raw peer host if it is not an IP.
        source: Whether the value came from the trusted header or the peer.
    """

    value: str
    source: AddressSource


def parse_ip(raw: str) -> str | None:
    """Strictly parse an IPv4/IPv6 literal.

    Args:
        raw: Candidate address text (no port, no brackets).

    Returns:
        Canonical text form of the address, or None when ``raw`` is not a
        valid IP literal.

    IPv4-mapped IPv6 addresses keep their dotted-quad tail so the text does
    not depend on the interpreter's formatting of them.

    Examples:
        >>> parse_ip("2001:DB8:0:0::1")
        '2001:db8::1'
        >>> parse_ip("::FFFF:0102:0304")
        '::ffff:1.2.3.4'
        >>> parse_ip("203.0.113.042") is None
        True
    """
    if not raw:
        return None
    try:
        ip = ipaddress.ip_address(raw)
    except ValueError:
        return None
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return f"::ffff:{ip.ipv4_mapped}"
    return str(ip)


def split_host_port(value: str) -> tuple[str, str]:
    """Split ``host:port`` or ``[host]:port`` into its parts.

    Raises:
        ValueError: If there is no port, or the value is a bare IPv6 literal
            whose colons make the port ambiguous.
    """
    if value.startswith("["):
        end = value.find("]")
        if end == -1:
            raise ValueError(f"missing ']' in address {value!r}")
        if value[end + 1 : end + 2] != ":":
            raise ValueError(f"missing port in address {value!r}")
        return value[1:end], value[end + 2 :]

    host, sep, port = value.rpartition(":")
    if not sep:
        raise ValueError(f"missing port in address {value!r}")
    if ":" in host:
        raise ValueError(f"too many colons in address {value!r}")
    return host, port


def format_peer(client: Sequence[object] | None) -> str:
    """Render an ASGI ``scope["client"]`` pair as a transport peer string."""
    if not client:
        return ""
    host = str(client[0])
    if len(client) < 2 or client[1] is None:
        return host
    if ":" in host:
        return f"[{host}]:{client[1]}"
    return f"{host}:{client[1]}"


def resolve_peer(peer: str) -> str:
    """Resolve the client address from the transport peer string.

    Splits off the port when present (the raw value is the host otherwise),
    then returns the canonical IP text, or the raw host as a last resort.
    """
    try:
        host, _ = split_host_port(peer)
    except ValueError:
        host = peer
    return parse_ip(host) or host


class ClientAddressResolver:
    """Resolve one canonical client address per request."""

    def __init__(self, policy: TrustPolicy) -> None:
        self._policy = policy

    @property
    def policy(self) -> TrustPolicy:
        return self._policy

    def resolve(self, headers: Mapping[str, str], peer: str) -> ResolvedClientAddress:
        """Resolve the client address for a request.

        Args:
            headers: Case-insensitive request header mapping.
            peer: Transport peer address (``host:port``, ``[v6]:port`` or a
                bare host).

        Returns:
            The resolved address and where it came from.
        """
        value = headers.get(self._policy.header)
        if value:
            ip = parse_ip(self._policy.candidate(value))
            if ip is not None:
                return ResolvedClientAddress(value=ip, source="header")

        return ResolvedClientAddress(value=resolve_peer(peer), source="peer")


def build_resolver(trust_model: TrustModel, edge_header: str = "X-Real-IP") -> ClientAddressResolver:
    """Create the resolver for the configured trust model."""
    if trust_model is TrustModel.EDGE_HEADER:
        return ClientAddressResolver(EdgeHeaderTrust(header=edge_header))
    return ClientAddressResolver(ForwardedForTrust())


def bind_client_address(scope: MutableMapping, address: ResolvedClientAddress) -> None:
    """Attach the resolved address to the request scope exactly once.

    Raises:
        RequestContextAppError: If an address is already bound.
    """
    if CLIENT_ADDRESS_SCOPE_KEY in scope:
        raise RequestContextAppError(
            code="client_address_already_bound",
            message="Client address is already resolved for this request",
        )
    scope[CLIENT_ADDRESS_SCOPE_KEY] = address


def lookup_client_address(scope: Mapping) -> ResolvedClientAddress | None:
    return scope.get(CLIENT_ADDRESS_SCOPE_KEY)


def get_client_address(request: Request) -> str:
    """FastAPI dependency returning the resolved client address.

    Falls back to resolving the transport peer if the address stage did not
    run (e.g. a handler mounted outside the middleware chain).
    """
    resolved = lookup_client_address(request.scope)
    if resolved is not None:
        return resolved.value
    return resolve_peer(format_peer(request.scope.get("client")))
