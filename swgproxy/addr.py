"""Endpoint addresses: an IP address or a domain name, plus a port."""

from __future__ import annotations

import ipaddress
import socket
from dataclasses import dataclass
from typing import Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPPort = tuple[IPAddress, int]

_MAX_DOMAIN_LENGTH = 255
_MAX_PORT = 0xFFFF


def _check_port(port: int) -> int:
    port = int(port)
    if not 0 <= port <= _MAX_PORT:
        raise ValueError(f"port {port} out of range [0, {_MAX_PORT}]")
    return port


def _to_ip(ip: IPAddress | str | bytes | int) -> IPAddress:
    if isinstance(ip, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return ip
    return ipaddress.ip_address(ip)


def _format_ip(ip: IPAddress) -> str:
    """Format an IP address, keeping IPv4-mapped IPv6 addresses readable."""
    if isinstance(ip, ipaddress.IPv6Address):
        mapped = ip.ipv4_mapped
        if mapped is not None:
            text = f"::ffff:{mapped}"
            if ip.scope_id:
                text += f"%{ip.scope_id}"
            return text
    return str(ip)


def _format_ip_port(ip: IPAddress, port: int) -> str:
    if isinstance(ip, ipaddress.IPv4Address):
        return f"{ip}:{port}"
    return f"[{_format_ip(ip)}]:{port}"


def _as16(ip: IPAddress) -> bytes:
    if isinstance(ip, ipaddress.IPv4Address):
        return b"\x00" * 10 + b"\xff\xff" + ip.packed
    return ip.packed


@dataclass(frozen=True)
class Addr:
    """A port number combined with either an IP address or a domain name.

    ``Addr()`` is the zero value: it is neither an IP address nor a domain.
    Use the ``addr_from_*`` functions or ``parse_addr`` to build one.
    """

    _ip: IPAddress | None = None
    _domain: str | None = None
    port: int = 0

    def __post_init__(self) -> None:
        if self._ip is not None and self._domain is not None:
            raise ValueError("an address is either an IP address or a domain name")
        object.__setattr__(self, "port", _check_port(self.port))

    def is_valid(self) -> bool:
        """Whether the address is initialized (not the zero value)."""
        return self._ip is not None or self._domain is not None

    def is_ip(self) -> bool:
        """Whether the address is an IP address."""
        return self._ip is not None

    def is_domain(self) -> bool:
        """Whether the address is a domain name."""
        return self._domain is not None

    def ip(self) -> IPAddress:
        """Return the IP address; raise ValueError for any other address."""
        if self._ip is None:
            raise ValueError("ip() called on non-IP address")
        return self._ip

    def domain(self) -> str:
        """Return the domain name; raise ValueError for any other address."""
        if self._domain is None:
            raise ValueError("domain() called on non-domain address")
        return self._domain

    def ip_port(self) -> IPPort:
        """Return the (IP address, port) pair of an IP address."""
        if self._ip is None:
            raise ValueError("ip_port() called on non-IP address")
        return self._ip, self.port

    def host(self) -> str:
        """Return the IP address or domain name as a string."""
        if self._ip is not None:
            return _format_ip(self._ip)
        if self._domain is not None:
            return self._domain
        raise ValueError("host() called on zero value")

    def resolve_ip(self) -> IPAddress:
        """Return the IP address, resolving the domain name if needed."""
        if self._ip is not None:
            return self._ip
        if self._domain is not None:
            return resolve_ip(self._domain)
        raise ValueError("resolve_ip() called on zero value")

    def resolve_ip_port(self) -> IPPort:
        """Return the (IP address, port) pair, resolving the domain name if needed."""
        if self._ip is not None:
            return self._ip, self.port
        if self._domain is not None:
            return resolve_ip(self._domain), self.port
        raise ValueError("resolve_ip_port() called on zero value")

    def __str__(self) -> str:
        if self._ip is not None:
            return _format_ip_port(self._ip, self.port)
        if self._domain is not None:
            return f"{self._domain}:{self.port}"
        return ""

    def __repr__(self) -> str:
        return f"Addr({str(self)!r})"


def resolve_ip(host: str) -> IPAddress:
    """Resolve a domain name and return the first address the resolver gives."""
    infos = socket.getaddrinfo(host, None, type=socket.SOCK_DGRAM)
    if not infos:
        raise OSError(f"no addresses found for {host}")
    return ipaddress.ip_address(infos[0][4][0])


def addr_from_ip_port(ip: IPAddress | str, port: int) -> Addr:
    """Build an address from an IP address and a port."""
    return Addr(_ip=_to_ip(ip), port=port)


def addr_from_domain_port(domain: str, port: int) -> Addr:
    """Build an address from a domain name and a port."""
    length = len(domain.encode("utf-8"))
    if length == 0 or length > _MAX_DOMAIN_LENGTH:
        raise ValueError(
            f"length of domain {domain} out of range [1, {_MAX_DOMAIN_LENGTH}]"
        )
    return Addr(_domain=domain, port=port)


def addr_from_host_port(host: str, port: int) -> Addr:
    """Build an address from a host that is either an IP address or a domain name.

    An empty host means the IPv6 unspecified address.
    """
    if host == "":
        host = "::"
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        return addr_from_domain_port(host, port)
    return Addr(_ip=ip, port=port)


def _split_host_port(text: str) -> tuple[str, str]:
    def fail(reason: str) -> ValueError:
        return ValueError(f"address {text}: {reason}")

    colon = text.rfind(":")
    if colon < 0:
        raise fail("missing port in address")

    if text[0] == "[":
        end = text.find("]")
        if end < 0:
            raise fail("missing ']' in address")
        if end + 1 == len(text):
            raise fail("missing port in address")
        if end + 1 != colon:
            if text[end + 1] == ":":
                raise fail("too many colons in address")
            raise fail("missing port in address")
        host = text[1:end]
        host_from, port_from = 1, end + 1
    else:
        host = text[:colon]
        if ":" in host:
            raise fail("too many colons in address")
        host_from, port_from = 0, 0

    if "[" in text[host_from:]:
        raise fail("unexpected '[' in address")
    if "]" in text[port_from:]:
        raise fail("unexpected ']' in address")
    return host, text[colon + 1 :]


def parse_addr(text: str | bytes) -> Addr:
    """Parse ``host:port`` or ``[host]:port`` into an address."""
    if isinstance(text, (bytes, bytearray, memoryview)):
        text = bytes(text).decode("utf-8")
    host, port_text = _split_host_port(text)
    if not (port_text.isascii() and port_text.isdigit()):
        raise ValueError(f"failed to parse port string: invalid syntax: {port_text!r}")
    port = int(port_text)
    if port > _MAX_PORT:
        raise ValueError(f"failed to parse port string: value out of range: {port_text!r}")
    return addr_from_host_port(host, port)


def addr_port_mapped_equal(left: IPPort, right: IPPort) -> bool:
    """Whether two (IP, port) pairs point to the same endpoint.

    An IPv4 address and its IPv4-mapped IPv6 form are considered equal,
    so 1.1.1.1:53 and [::ffff:1.1.1.1]:53 match.
    """
    left_ip, left_port = left
    right_ip, right_port = right
    return _as16(_to_ip(left_ip)) == _as16(_to_ip(right_ip)) and left_port == right_port