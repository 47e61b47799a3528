"""Unit tests for client address resolution."""

from __future__ import annotations

import pytest
from starlette.datastructures import Headers

from ipecho.core.client_ip import (
    ClientAddressResolver,
    EdgeHeaderTrust,
    ForwardedForTrust,
    ResolvedClientAddress,
    bind_client_address,
    build_resolver,
    format_peer,
    lookup_client_address,
    parse_ip,
    resolve_peer,
    split_host_port,
)
from ipecho.core.config import TrustModel
from ipecho.core.errors import RequestContextAppError

LB_PEER = "10.0.0.5:54321"


@pytest.fixture
def forwarded_resolver() -> ClientAddressResolver:
    return ClientAddressResolver(ForwardedForTrust())


@pytest.fixture
def edge_resolver() -> ClientAddressResolver:
    return ClientAddressResolver(EdgeHeaderTrust(header="X-Real-IP"))


@pytest.mark.parametrize(
    ("header_value", "expected"),
    [
        ("203.0.113.42", "203.0.113.42"),
        ("203.0.113.42, 10.0.0.1", "203.0.113.42"),
        ("  198.51.100.7 ,10.0.0.1,10.0.0.2", "198.51.100.7"),
        ("2001:DB8::1", "2001:db8::1"),
        ("2001:0db8:0000:0000:0000:0000:0000:0001, 10.0.0.1", "2001:db8::1"),
    ],
)
def test_forwarded_for_returns_canonical_leftmost(
    forwarded_resolver: ClientAddressResolver, header_value: str, expected: str
) -> None:
    resolved = forwarded_resolver.resolve(Headers({"X-Forwarded-For": header_value}), LB_PEER)

    assert resolved == ResolvedClientAddress(value=expected, source="header")


def test_header_lookup_is_case_insensitive(forwarded_resolver: ClientAddressResolver) -> None:
    resolved = forwarded_resolver.resolve(Headers({"x-forwarded-for": "203.0.113.42"}), LB_PEER)

    assert resolved.value == "203.0.113.42"


@pytest.mark.parametrize("header_value", ["", "   ", " , 203.0.113.42"])
def test_empty_header_falls_back_to_peer(
    forwarded_resolver: ClientAddressResolver, header_value: str
) -> None:
    resolved = forwarded_resolver.resolve(Headers({"X-Forwarded-For": header_value}), LB_PEER)

    assert resolved == ResolvedClientAddress(value="10.0.0.5", source="peer")


@pytest.mark.parametrize(
    "header_value",
    ["unknown", "not-an-ip, 203.0.113.42", "203.0.113.256", "203.0.113.42:8080", "[2001:db8::1]"],
)
def test_malformed_header_falls_back_to_peer(
    forwarded_resolver: ClientAddressResolver, header_value: str
) -> None:
    resolved = forwarded_resolver.resolve(Headers({"X-Forwarded-For": header_value}), LB_PEER)

    assert resolved == ResolvedClientAddress(value="10.0.0.5", source="peer")


@pytest.mark.parametrize(
    ("peer", "expected"),
    [
        ("198.51.100.7:9000", "198.51.100.7"),
        ("198.51.100.7", "198.51.100.7"),
        ("[2001:db8::1]:443", "2001:db8::1"),
        ("2001:DB8::1", "2001:db8::1"),
        ("testclient:50000", "testclient"),
        ("unix-socket", "unix-socket"),
        ("", ""),
    ],
)
def test_no_header_uses_peer(
    forwarded_resolver: ClientAddressResolver, peer: str, expected: str
) -> None:
    resolved = forwarded_resolver.resolve(Headers({}), peer)

    assert resolved == ResolvedClientAddress(value=expected, source="peer")


def test_edge_header_takes_whole_value(edge_resolver: ClientAddressResolver) -> None:
    resolved = edge_resolver.resolve(Headers({"X-Real-IP": " 203.0.113.9 "}), LB_PEER)

    assert resolved == ResolvedClientAddress(value="203.0.113.9", source="header")


def test_edge_header_rejects_lists(edge_resolver: ClientAddressResolver) -> None:
    resolved = edge_resolver.resolve(Headers({"X-Real-IP": "203.0.113.9, 10.0.0.1"}), LB_PEER)

    assert resolved.source == "peer"
    assert resolved.value == "10.0.0.5"


def test_trust_models_do_not_mix(
    forwarded_resolver: ClientAddressResolver, edge_resolver: ClientAddressResolver
) -> None:
    headers = Headers({"X-Forwarded-For": "198.51.100.1", "X-Real-IP": "198.51.100.2"})

    assert forwarded_resolver.resolve(headers, LB_PEER).value == "198.51.100.1"
    assert edge_resolver.resolve(headers, LB_PEER).value == "198.51.100.2"
    assert edge_resolver.resolve(Headers({"X-Forwarded-For": "198.51.100.1"}), LB_PEER).value == "10.0.0.5"


def test_build_resolver_selects_policy() -> None:
    assert build_resolver(TrustModel.FORWARDED_FOR).policy == ForwardedForTrust()
    assert build_resolver(TrustModel.EDGE_HEADER, "CF-Connecting-IP").policy == EdgeHeaderTrust(
        header="CF-Connecting-IP"
    )


def test_parse_ip_is_strict() -> None:
    assert parse_ip("203.0.113.42") == "203.0.113.42"
    assert parse_ip("::FFFF:0:1") is not None
    assert parse_ip("") is None
    assert parse_ip("example.com") is None
    assert parse_ip("203.0.113") is None


@pytest.mark.parametrize(
    "raw",
    ["::ffff:1.2.3.4", "::FFFF:0102:0304", "0:0:0:0:0:ffff:102:304"],
)
def test_ipv4_mapped_address_has_one_text_form(raw: str) -> None:
    assert parse_ip(raw) == "::ffff:1.2.3.4"


def test_ipv4_mapped_header_value_is_echoed_dotted(
    forwarded_resolver: ClientAddressResolver,
) -> None:
    resolved = forwarded_resolver.resolve(
        Headers({"X-Forwarded-For": "::ffff:cb00:712a, 10.0.0.1"}), LB_PEER
    )

    assert resolved == ResolvedClientAddress(value="::ffff:203.0.113.42", source="header")


def test_split_host_port() -> None:
    assert split_host_port("198.51.100.7:9000") == ("198.51.100.7", "9000")
    assert split_host_port("[::1]:80") == ("::1", "80")

    for value in ("198.51.100.7", "::1", "[::1]", "[::1"):
        with pytest.raises(ValueError):
            split_host_port(value)


def test_format_peer() -> None:
    assert format_peer(("198.51.100.7", 9000)) == "198.51.100.7:9000"
    assert format_peer(("2001:db8::1", 443)) == "[2001:db8::1]:443"
    assert format_peer(None) == ""


def test_resolve_peer_keeps_raw_host_as_last_resort() -> None:
    assert resolve_peer("[not-an-ip]:80") == "not-an-ip"
    assert resolve_peer(format_peer(("2001:db8::1", 443))) == "2001:db8::1"


def test_client_address_is_bound_once() -> None:
    scope: dict = {}
    first = ResolvedClientAddress(value="203.0.113.42", source="header")

    bind_client_address(scope, first)
    with pytest.raises(RequestContextAppError):
        bind_client_address(scope, ResolvedClientAddress(value="10.0.0.5", source="peer"))

    assert lookup_client_address(scope) == first
