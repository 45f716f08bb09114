"""Listener socket options and socket control message helpers."""

from __future__ import annotations

import ipaddress
import socket
import struct
import sys
from collections.abc import Callable
from dataclasses import dataclass
from functools import partial

from swgproxy.addr import parse_addr

_IS_LINUX = sys.platform.startswith("linux")
_IS_DARWIN = sys.platform == "darwin"
_IS_FREEBSD = sys.platform.startswith("freebsd")
_IS_WINDOWS = sys.platform == "win32"

IPPROTO_IP = getattr(socket, "IPPROTO_IP", 0)
IPPROTO_IPV6 = getattr(socket, "IPPROTO_IPV6", 41)

_V4_NETWORKS = ("tcp4", "udp4")
_V6_NETWORKS = ("tcp6", "udp6")
_UDP_NETWORKS = ("udp", "udp4", "udp6")

# Packet information control messages.
if _IS_LINUX:
    IP_PKTINFO: int | None = getattr(socket, "IP_PKTINFO", 8)
    IP_RECVPKTINFO: int | None = IP_PKTINFO
    IPV6_PKTINFO: int | None = getattr(socket, "IPV6_PKTINFO", 50)
    IPV6_RECVPKTINFO: int | None = getattr(socket, "IPV6_RECVPKTINFO", 49)
elif _IS_DARWIN:
    IP_PKTINFO = getattr(socket, "IP_PKTINFO", 26)
    IP_RECVPKTINFO = getattr(socket, "IP_RECVPKTINFO", 26)
    IPV6_PKTINFO = getattr(socket, "IPV6_PKTINFO", 46)
    IPV6_RECVPKTINFO = getattr(socket, "IPV6_RECVPKTINFO", 61)
else:
    IP_PKTINFO = None
    IP_RECVPKTINFO = None
    IPV6_PKTINFO = None
    IPV6_RECVPKTINFO = None

PKTINFO_SUPPORTED = IP_PKTINFO is not None

_INET4_PKTINFO = struct.Struct("=I4s4s")
_INET6_PKTINFO = struct.Struct("=16sI")

# Buffer size for receiving one packet information control message.
if PKTINFO_SUPPORTED and hasattr(socket, "CMSG_SPACE"):
    SOCKET_CONTROL_MESSAGE_BUFFER_SIZE = socket.CMSG_SPACE(_INET6_PKTINFO.size)
else:
    SOCKET_CONTROL_MESSAGE_BUFFER_SIZE = 0

# Traffic class.
IP_TOS = getattr(socket, "IP_TOS", 1 if _IS_LINUX else 3)
if _IS_LINUX:
    IPV6_TCLASS = getattr(socket, "IPV6_TCLASS", 67)
elif _IS_DARWIN:
    IPV6_TCLASS = getattr(socket, "IPV6_TCLASS", 36)
else:
    IPV6_TCLASS = getattr(socket, "IPV6_TCLASS", 61)

# Path MTU discovery.
IP_MTU_DISCOVER = getattr(socket, "IP_MTU_DISCOVER", 10)
IPV6_MTU_DISCOVER = getattr(socket, "IPV6_MTU_DISCOVER", 23)
IP_PMTUDISC_DO = getattr(socket, "IP_PMTUDISC_DO", 2)
IP_DONTFRAG = getattr(socket, "IP_DONTFRAG", 28 if _IS_DARWIN else 67)
IPV6_DONTFRAG = getattr(socket, "IPV6_DONTFRAG", 62)

SO_MARK = getattr(socket, "SO_MARK", 36)

_MSG_TRUNC = getattr(socket, "MSG_TRUNC", 0)
_MSG_CTRUNC = getattr(socket, "MSG_CTRUNC", 0)


class MessageTruncatedError(Exception):
    """The packet is larger than the supplied buffer."""

    def __init__(self, message: str = "the packet is larger than the supplied buffer") -> None:
        super().__init__(message)


class ControlMessageTruncatedError(Exception):
    """The control message is larger than the supplied buffer."""

    def __init__(
        self, message: str = "the control message is larger than the supplied buffer"
    ) -> None:
        super().__init__(message)


def parse_flags_for_error(flags: int) -> None:
    """Raise if the message flags from ``recvmsg`` report truncation.

    The check does nothing on Windows, where a truncated read already fails.
    """
    if _IS_WINDOWS:
        return None
    if flags & _MSG_TRUNC:
        raise MessageTruncatedError()
    if flags & _MSG_CTRUNC:
        raise ControlMessageTruncatedError()
    return None


def parse_pktinfo_cmsg(
    level: int, cmsg_type: int, data: bytes
) -> tuple[ipaddress.IPv4Address | ipaddress.IPv6Address | None, int]:
    """Parse an IP_PKTINFO or IPV6_PKTINFO control message.

    Returns the local address the packet was received on and the index of
    the receiving interface. On platforms without packet information
    support this returns ``(None, 0)``.
    """
    if not PKTINFO_SUPPORTED:
        return None, 0
    data = bytes(data)
    if level == IPPROTO_IP and cmsg_type == IP_PKTINFO and len(data) >= _INET4_PKTINFO.size:
        ifindex, spec_dst, _ = _INET4_PKTINFO.unpack_from(data)
        return ipaddress.IPv4Address(spec_dst), ifindex
    if level == IPPROTO_IPV6 and cmsg_type == IPV6_PKTINFO and len(data) >= _INET6_PKTINFO.size:
        addr, ifindex = _INET6_PKTINFO.unpack_from(data)
        return ipaddress.IPv6Address(addr), ifindex
    raise ValueError(f"unknown control message level {level} type {cmsg_type}")


def _setsockopt(sock: socket.socket, level: int, option: int, value: int, name: str) -> None:
    try:
        sock.setsockopt(level, option, value)
    except OSError as exc:
        raise OSError(exc.errno, f"failed to set socket option {name}: {exc.strerror}") from exc


def _unsupported(network: str) -> ValueError:
    return ValueError(f"unsupported network: {network}")


def _set_fwmark(sock: socket.socket, network: str, fwmark: int) -> None:
    _setsockopt(sock, socket.SOL_SOCKET, SO_MARK, fwmark, "SO_MARK")


def _set_traffic_class(sock: socket.socket, network: str, traffic_class: int) -> None:
    if _IS_LINUX:
        # IP_TOS applies to both IPv4 and IPv6 traffic on dual-stack sockets.
        _setsockopt(sock, IPPROTO_IP, IP_TOS, traffic_class, "IP_TOS")
        if network in _V4_NETWORKS:
            return
        if network in _V6_NETWORKS:
            _setsockopt(sock, IPPROTO_IPV6, IPV6_TCLASS, traffic_class, "IPV6_TCLASS")
            return
        raise _unsupported(network)

    if network in _V4_NETWORKS:
        _setsockopt(sock, IPPROTO_IP, IP_TOS, traffic_class, "IP_TOS")
    elif network in _V6_NETWORKS:
        _setsockopt(sock, IPPROTO_IPV6, IPV6_TCLASS, traffic_class, "IPV6_TCLASS")
    else:
        raise _unsupported(network)


def _set_pmtud(sock: socket.socket, network: str) -> None:
    if _IS_LINUX:
        _setsockopt(sock, IPPROTO_IP, IP_MTU_DISCOVER, IP_PMTUDISC_DO, "IP_MTU_DISCOVER")
        if network in _V4_NETWORKS:
            return
        if network in _V6_NETWORKS:
            _setsockopt(
                sock, IPPROTO_IPV6, IPV6_MTU_DISCOVER, IP_PMTUDISC_DO, "IPV6_MTU_DISCOVER"
            )
            return
        raise _unsupported(network)

    if network == "udp4":
        _setsockopt(sock, IPPROTO_IP, IP_DONTFRAG, 1, "IP_DONTFRAG")
    elif network == "udp6":
        _setsockopt(sock, IPPROTO_IPV6, IPV6_DONTFRAG, 1, "IPV6_DONTFRAG")
    else:
        raise _unsupported(network)


def _set_recv_pktinfo(sock: socket.socket, network: str) -> None:
    if network == "udp4":
        _setsockopt(sock, IPPROTO_IP, IP_RECVPKTINFO, 1, "IP_PKTINFO")
    elif network == "udp6":
        _setsockopt(sock, IPPROTO_IPV6, IPV6_RECVPKTINFO, 1, "IPV6_RECVPKTINFO")
    else:
        raise _unsupported(network)


_Setter = Callable[[socket.socket, str], None]


@dataclass(frozen=True)
class ListenerSocketOptions:
    """Socket options for listeners.

    ``fwmark`` is honoured on Linux, ``traffic_class`` on Unix-like systems,
    ``path_mtu_discovery`` on Linux, macOS and FreeBSD, and
    ``receive_packet_info`` on Linux and macOS.
    """

    fwmark: int = 0
    traffic_class: int = 0
    path_mtu_discovery: bool = False
    receive_packet_info: bool = False

    def _setters(self) -> list[_Setter]:
        setters: list[_Setter] = []
        if _IS_LINUX and self.fwmark:
            setters.append(partial(_set_fwmark, fwmark=self.fwmark))
        if not _IS_WINDOWS and self.traffic_class:
            setters.append(partial(_set_traffic_class, traffic_class=self.traffic_class))
        if (_IS_LINUX or _IS_DARWIN or _IS_FREEBSD) and self.path_mtu_discovery:
            setters.append(_set_pmtud)
        if PKTINFO_SUPPORTED and self.receive_packet_info:
            setters.append(_set_recv_pktinfo)
        return setters

    def apply(self, sock: socket.socket, network: str) -> None:
        """Set the options on a socket of the given network ("udp4", "udp6", ...)."""
        for setter in self._setters():
            setter(sock, network)

    def listen_udp(self, network: str, address: str) -> socket.socket:
        """Create a UDP socket with these options and bind it to ``address``.

        ``network`` is "udp", "udp4" or "udp6"; ``address`` is "host:port",
        ":port" or "" for any address and a random port.
        """
        if network not in _UDP_NETWORKS:
            raise ValueError(f"unknown network {network}")
        family, host, port, v6only = _listen_target(network, address)
        sock = socket.socket(family, socket.SOCK_DGRAM)
        try:
            if family == socket.AF_INET6:
                sock.setsockopt(IPPROTO_IPV6, socket.IPV6_V6ONLY, int(v6only))
            self.apply(sock, "udp4" if family == socket.AF_INET else "udp6")
            sock.bind((host, port))
        except BaseException:
            sock.close()
            raise
        return sock


def _listen_target(network: str, address: str) -> tuple[int, str, int, bool]:
    if address == "":
        ip = None
        port = 0
    elif address.startswith(":"):
        ip = None
        port = parse_addr(address).port
    else:
        addr = parse_addr(address)
        ip = addr.resolve_ip()
        port = addr.port

    if ip is None:
        if network == "udp4":
            return socket.AF_INET, "0.0.0.0", port, False
        if network == "udp6":
            return socket.AF_INET6, "::", port, True
        if socket.has_ipv6:
            return socket.AF_INET6, "::", port, False
        return socket.AF_INET, "0.0.0.0", port, False

    no_suitable = ValueError(f"address {address}: no suitable address found")
    if isinstance(ip, ipaddress.IPv4Address):
        if network == "udp6":
            raise no_suitable
        return socket.AF_INET, str(ip), port, False

    mapped = ip.ipv4_mapped
    if mapped is not None:
        if network == "udp6":
            return socket.AF_INET6, str(ip), port, False
        return socket.AF_INET, str(mapped), port, False

    if network == "udp4":
        raise no_suitable
    return socket.AF_INET6, str(ip), port, True


DEFAULT_UDP_SERVER_SOCKET_OPTIONS = ListenerSocketOptions(
    path_mtu_discovery=True, receive_packet_info=True
)

DEFAULT_UDP_CLIENT_SOCKET_OPTIONS = ListenerSocketOptions(path_mtu_discovery=True)