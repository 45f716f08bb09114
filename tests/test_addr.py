import ipaddress
import socket
from unittest import mock

import pytest

from swgproxy.addr import (
    Addr,
    addr_from_domain_port,
    addr_from_host_port,
    addr_from_ip_port,
    addr_port_mapped_equal,
    parse_addr,
    resolve_ip,
)

ADDR_ZERO = Addr()
ADDR_ZERO_PORT = 0
ADDR_ZERO_STRING = ""

ADDR_IP_ADDR = ipaddress.IPv6Address(
    bytes(
        [0x20, 0x01, 0x0D, 0xB8, 0xFA, 0xD6, 0x05, 0x72,
         0xAC, 0xBE, 0x71, 0x43, 0x14, 0xE5, 0x7A, 0x6E]
    )
)
ADDR_IP_PORT = 1080
ADDR_IP_ADDR_PORT = (ADDR_IP_ADDR, ADDR_IP_PORT)
ADDR_IP = addr_from_ip_port(ADDR_IP_ADDR, ADDR_IP_PORT)
ADDR_IP_HOST = "2001:db8:fad6:572:acbe:7143:14e5:7a6e"
ADDR_IP_STRING = "[2001:db8:fad6:572:acbe:7143:14e5:7a6e]:1080"

ADDR_DOMAIN_HOST = "example.com"
ADDR_DOMAIN_PORT = 443
ADDR_DOMAIN = addr_from_domain_port(ADDR_DOMAIN_HOST, ADDR_DOMAIN_PORT)
ADDR_DOMAIN_STRING = "example.com:443"

ADDR_PORT_4 = (ipaddress.IPv4Address("127.0.0.1"), 1080)
ADDR_PORT_4IN6 = (
    ipaddress.IPv6Address(bytes([0] * 10 + [0xFF, 0xFF, 127, 0, 0, 1])),
    1080,
)

RESOLVED = "192.0.2.1"


def _fake_getaddrinfo(*args, **kwargs):
    return [(socket.AF_INET, socket.SOCK_DGRAM, 17, "", (RESOLVED, 0))]


def test_equals():
    assert ADDR_ZERO == ADDR_ZERO
    assert ADDR_IP == ADDR_IP
    assert ADDR_DOMAIN == ADDR_DOMAIN

    assert ADDR_ZERO != ADDR_IP
    assert ADDR_ZERO != ADDR_DOMAIN
    assert ADDR_IP != ADDR_DOMAIN

    assert addr_from_ip_port(ADDR_IP_ADDR, 443) != ADDR_IP


def test_is():
    assert not ADDR_ZERO.is_valid()
    assert not ADDR_ZERO.is_ip()
    assert not ADDR_ZERO.is_domain()

    assert ADDR_IP.is_valid()
    assert ADDR_IP.is_ip()
    assert not ADDR_IP.is_domain()

    assert ADDR_DOMAIN.is_valid()
    assert not ADDR_DOMAIN.is_ip()
    assert ADDR_DOMAIN.is_domain()


def test_ip():
    assert ADDR_IP.ip() == ADDR_IP_ADDR
    with pytest.raises(ValueError):
        ADDR_ZERO.ip()
    with pytest.raises(ValueError):
        ADDR_DOMAIN.ip()


def test_domain():
    assert ADDR_DOMAIN.domain() == ADDR_DOMAIN_HOST
    with pytest.raises(ValueError):
        ADDR_ZERO.domain()
    with pytest.raises(ValueError):
        ADDR_IP.domain()


def test_port():
    assert ADDR_ZERO.port == ADDR_ZERO_PORT
    assert ADDR_IP.port == ADDR_IP_PORT
    assert ADDR_DOMAIN.port == ADDR_DOMAIN_PORT


def test_ip_port():
    assert ADDR_IP.ip_port() == ADDR_IP_ADDR_PORT
    with pytest.raises(ValueError):
        ADDR_ZERO.ip_port()
    with pytest.raises(ValueError):
        ADDR_DOMAIN.ip_port()


def test_resolve_ip():
    assert ADDR_IP.resolve_ip() == ADDR_IP_ADDR
    with mock.patch("socket.getaddrinfo", side_effect=_fake_getaddrinfo):
        assert ADDR_DOMAIN.resolve_ip() == ipaddress.ip_address(RESOLVED)
    with pytest.raises(ValueError):
        ADDR_ZERO.resolve_ip()


def test_resolve_ip_port():
    assert ADDR_IP.resolve_ip_port() == ADDR_IP_ADDR_PORT
    with mock.patch("socket.getaddrinfo", side_effect=_fake_getaddrinfo):
        ip, port = ADDR_DOMAIN.resolve_ip_port()
    assert ip == ipaddress.ip_address(RESOLVED)
    assert port == ADDR_DOMAIN_PORT
    with pytest.raises(ValueError):
        ADDR_ZERO.resolve_ip_port()


def test_resolve_ip_function_takes_first_result():
    results = [
        (socket.AF_INET6, socket.SOCK_DGRAM, 17, "", ("2001:db8::1", 0, 0, 0)),
        (socket.AF_INET, socket.SOCK_DGRAM, 17, "", (RESOLVED, 0)),
    ]
    with mock.patch("socket.getaddrinfo", return_value=results):
        assert resolve_ip("example.com") == ipaddress.ip_address("2001:db8::1")


def test_resolve_ip_no_results():
    with mock.patch("socket.getaddrinfo", return_value=[]):
        with pytest.raises(OSError):
            resolve_ip("example.com")


def test_host():
    assert ADDR_IP.host() == ADDR_IP_HOST
    assert ADDR_DOMAIN.host() == ADDR_DOMAIN_HOST
    with pytest.raises(ValueError):
        ADDR_ZERO.host()


def test_string():
    assert str(ADDR_ZERO) == ADDR_ZERO_STRING
    assert str(ADDR_IP) == ADDR_IP_STRING
    assert str(ADDR_DOMAIN) == ADDR_DOMAIN_STRING


def test_string_ipv4():
    assert str(addr_from_ip_port(*ADDR_PORT_4)) == "127.0.0.1:1080"


def test_marshal_and_unmarshal_text():
    text = str(ADDR_IP)
    assert text == ADDR_IP_STRING
    assert parse_addr(text.encode()) == ADDR_IP

    text = str(ADDR_DOMAIN)
    assert text == ADDR_DOMAIN_STRING
    assert parse_addr(text.encode()) == ADDR_DOMAIN


def test_addr_from_domain_port_errors():
    with pytest.raises(ValueError):
        addr_from_domain_port("", 443)
    with pytest.raises(ValueError):
        addr_from_domain_port(" " * 256, 443)


def test_addr_from_host_port():
    assert addr_from_host_port(ADDR_IP_HOST, ADDR_IP_PORT) == ADDR_IP
    assert addr_from_host_port(ADDR_DOMAIN_HOST, ADDR_DOMAIN_PORT) == ADDR_DOMAIN


def test_addr_from_host_port_empty_host_is_unspecified():
    addr = addr_from_host_port("", 20220)
    assert addr.ip() == ipaddress.IPv6Address("::")
    assert addr.port == 20220


def test_parsing():
    assert parse_addr(ADDR_IP_STRING) == ADDR_IP
    assert parse_addr(ADDR_DOMAIN_STRING) == ADDR_DOMAIN


def test_parse_listen_address_without_host():
    addr = parse_addr(":20222")
    assert addr.is_ip()
    assert addr.ip_port() == (ipaddress.IPv6Address("::"), 20222)


@pytest.mark.parametrize(
    "text",
    [
        "",
        "example.com",
        "2001:db8::1:80",
        "[2001:db8::1]",
        "[2001:db8::1]x80",
        "[2001:db8::1:80",
        "example.com:",
        "example.com:http",
        "example.com:-1",
        "example.com:+1",
        "example.com:65536",
        "exa]mple.com:80",
    ],
)
def test_parse_errors(text):
    with pytest.raises(ValueError):
        parse_addr(text)


def test_port_out_of_range():
    with pytest.raises(ValueError):
        addr_from_ip_port(ADDR_IP_ADDR, 65536)


def test_mapped_ip_round_trip():
    addr = addr_from_ip_port(*ADDR_PORT_4IN6)
    assert str(addr) == "[::ffff:127.0.0.1]:1080"
    assert parse_addr(str(addr)) == addr


def test_addr_port_mapped_equal():
    assert addr_port_mapped_equal(ADDR_PORT_4, ADDR_PORT_4)
    assert addr_port_mapped_equal(ADDR_PORT_4, ADDR_PORT_4IN6)
    assert addr_port_mapped_equal(ADDR_PORT_4IN6, ADDR_PORT_4IN6)
    assert not addr_port_mapped_equal(ADDR_PORT_4, ADDR_IP_ADDR_PORT)
    assert not addr_port_mapped_equal(ADDR_PORT_4IN6, ADDR_IP_ADDR_PORT)