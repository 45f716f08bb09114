import ipaddress
import socket
import struct

import pytest

from swgproxy import sockopts
from swgproxy.sockopts import (
    DEFAULT_UDP_CLIENT_SOCKET_OPTIONS,
    DEFAULT_UDP_SERVER_SOCKET_OPTIONS,
    SOCKET_CONTROL_MESSAGE_BUFFER_SIZE,
    ControlMessageTruncatedError,
    ListenerSocketOptions,
    MessageTruncatedError,
    parse_flags_for_error,
    parse_pktinfo_cmsg,
)


def test_parse_flags_without_truncation():
    assert parse_flags_for_error(0) is None


def test_parse_flags_message_truncated():
    with pytest.raises(MessageTruncatedError):
        parse_flags_for_error(socket.MSG_TRUNC)


def test_parse_flags_control_message_truncated():
    with pytest.raises(ControlMessageTruncatedError):
        parse_flags_for_error(socket.MSG_CTRUNC)


def test_parse_flags_message_truncation_takes_precedence():
    with pytest.raises(MessageTruncatedError):
        parse_flags_for_error(socket.MSG_TRUNC | socket.MSG_CTRUNC)


def test_parse_pktinfo_v4():
    spec_dst = ipaddress.IPv4Address("192.0.2.1")
    addr = ipaddress.IPv4Address("198.51.100.7")
    data = struct.pack("=I4s4s", 3, spec_dst.packed, addr.packed)
    ip, ifindex = parse_pktinfo_cmsg(sockopts.IPPROTO_IP, sockopts.IP_PKTINFO, data)
    assert ip == spec_dst
    assert ifindex == 3


def test_parse_pktinfo_v6():
    addr = ipaddress.IPv6Address("2001:db8::1")
    data = struct.pack("=16sI", addr.packed, 7)
    ip, ifindex = parse_pktinfo_cmsg(sockopts.IPPROTO_IPV6, sockopts.IPV6_PKTINFO, data)
    assert ip == addr
    assert ifindex == 7


def test_parse_pktinfo_short_data():
    with pytest.raises(ValueError, match="unknown control message"):
        parse_pktinfo_cmsg(sockopts.IPPROTO_IP, sockopts.IP_PKTINFO, b"\x00" * 4)


def test_parse_pktinfo_unknown_type():
    with pytest.raises(ValueError, match="unknown control message"):
        parse_pktinfo_cmsg(socket.SOL_SOCKET, 1, b"\x00" * 32)


def test_default_option_sets():
    assert DEFAULT_UDP_CLIENT_SOCKET_OPTIONS == ListenerSocketOptions(path_mtu_discovery=True)
    assert DEFAULT_UDP_SERVER_SOCKET_OPTIONS.receive_packet_info is True
    assert DEFAULT_UDP_SERVER_SOCKET_OPTIONS.path_mtu_discovery is True


def test_options_are_hashable_cache_keys():
    cache = {DEFAULT_UDP_CLIENT_SOCKET_OPTIONS: "client"}
    assert cache[ListenerSocketOptions(path_mtu_discovery=True)] == "client"
    assert ListenerSocketOptions(fwmark=1) not in cache


def test_apply_traffic_class():
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        ListenerSocketOptions(traffic_class=0x20).apply(sock, "udp4")
        assert sock.getsockopt(socket.IPPROTO_IP, socket.IP_TOS) == 0x20


def test_apply_unsupported_network():
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        with pytest.raises(ValueError, match="unsupported network"):
            ListenerSocketOptions(receive_packet_info=True).apply(sock, "ip4")


def test_listen_udp_binds_loopback():
    sock = DEFAULT_UDP_CLIENT_SOCKET_OPTIONS.listen_udp("udp4", "127.0.0.1:0")
    with sock:
        host, port = sock.getsockname()
        assert host == "127.0.0.1"
        assert port > 0
        assert sock.family == socket.AF_INET


def test_listen_udp_rejects_unknown_network():
    with pytest.raises(ValueError, match="unknown network"):
        ListenerSocketOptions().listen_udp("tcp", "127.0.0.1:0")


def test_listen_udp6_rejects_ipv4_address():
    with pytest.raises(ValueError, match="no suitable address"):
        ListenerSocketOptions().listen_udp("udp6", "127.0.0.1:0")


def test_listen_udp_rejects_bad_port():
    with pytest.raises(ValueError):
        ListenerSocketOptions().listen_udp("udp4", "127.0.0.1:http")


def test_receive_packet_info_round_trip():
    server = DEFAULT_UDP_SERVER_SOCKET_OPTIONS.listen_udp("udp4", "127.0.0.1:0")
    client = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    with server, client:
        server.settimeout(5)
        client.sendto(b"ping", server.getsockname())
        data, ancdata, flags, source = server.recvmsg(2048, SOCKET_CONTROL_MESSAGE_BUFFER_SIZE)
        assert data == b"ping"
        assert source == client.getsockname()
        assert parse_flags_for_error(flags) is None
        assert len(ancdata) == 1
        level, cmsg_type, cmsg_data = ancdata[0]
        ip, ifindex = parse_pktinfo_cmsg(level, cmsg_type, cmsg_data)
        assert ip == ipaddress.IPv4Address("127.0.0.1")
        assert ifindex > 0