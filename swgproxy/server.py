"""The swgp server service: swgp packets in, WireGuard packets out."""

from __future__ import annotations

import asyncio
import base64
import binascii
import ipaddress
import logging
import socket
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from swgproxy.addr import Addr, IPAddress, IPPort, addr_port_mapped_equal, parse_addr
from swgproxy.config import (
    IPV4_HEADER_LENGTH,
    IPV6_HEADER_LENGTH,
    MINIMUM_MTU,
    REJECT_AFTER_TIME,
    UDP_HEADER_LENGTH,
    MTUTooSmallError,
    PerfConfig,
    Service,
    new_packet_handler,
    wg_tunnel_mtu_for_handler,
)
from swgproxy.handler import (
    MESSAGE_TYPE_HANDSHAKE_INITIATION,
    MESSAGE_TYPE_HANDSHAKE_RESPONSE,
    Handler,
    HandlerError,
)
from swgproxy.sockopts import (
    PKTINFO_SUPPORTED,
    SOCKET_CONTROL_MESSAGE_BUFFER_SIZE,
    ControlMessageTruncatedError,
    ListenerSocketOptions,
    MessageTruncatedError,
    parse_flags_for_error,
    parse_pktinfo_cmsg,
)

_logger = logging.getLogger("swgproxy.server")

_UDP_NETWORKS = ("udp", "udp4", "udp6")
_DEADLINE_REFRESH_TYPES = (MESSAGE_TYPE_HANDSHAKE_INITIATION, MESSAGE_TYPE_HANDSHAKE_RESPONSE)
_TRUNCATION_ERRORS = (MessageTruncatedError, ControlMessageTruncatedError)

_STRING_FIELDS = {
    "name": "name",
    "proxyListenNetwork": "proxy_listen_network",
    "proxyListen": "proxy_listen_address",
    "proxyMode": "proxy_mode",
    "wgConnListenNetwork": "wg_conn_listen_network",
    "wgConnListenAddress": "wg_conn_listen_address",
}
_INT_FIELDS = {
    "proxyFwmark": "proxy_fwmark",
    "proxyTrafficClass": "proxy_traffic_class",
    "wgFwmark": "wg_fwmark",
    "wgTrafficClass": "wg_traffic_class",
    "mtu": "mtu",
}
_PERF_STRING_FIELDS = {"batchMode": "batch_mode"}
_PERF_INT_FIELDS = {
    "relayBatchSize": "relay_batch_size",
    "mainRecvBatchSize": "main_recv_batch_size",
    "sendChannelCapacity": "send_channel_capacity",
}


def _log(level: int, message: str, **fields: Any) -> None:
    if _logger.isEnabledFor(level):
        _logger.log(level, message, extra={"fields": fields})


def _as_str(key: str, value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError(f"cannot use {type(value).__name__} as string for field {key}")
    return value


def _as_int(key: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"cannot use {type(value).__name__} as integer for field {key}")
    return value


def _as_base64(key: str, value: Any) -> bytes:
    text = _as_str(key, value)
    try:
        return base64.b64decode(text, validate=True)
    except binascii.Error as exc:
        raise ValueError(f"invalid base64 in field {key}: {exc}") from exc


def _check_network(name: str, network: str) -> str:
    if network == "":
        return "udp"
    if network not in _UDP_NETWORKS:
        raise ValueError(f"invalid {name}: {network}")
    return network


def _ip_port(address: tuple[Any, ...]) -> IPPort:
    return ipaddress.ip_address(address[0]), int(address[1])


def _is_v4(ip: IPAddress) -> bool:
    return isinstance(ip, ipaddress.IPv4Address) or ip.ipv4_mapped is not None


def _format_endpoint(ip_port: IPPort) -> str:
    ip, port = ip_port
    if isinstance(ip, ipaddress.IPv6Address):
        return f"[{ip}]:{port}"
    return f"{ip}:{port}"


def _sockaddr_for(sock: socket.socket, ip: IPAddress, port: int) -> tuple[str, int]:
    """Express an endpoint in the address family of ``sock``."""
    if sock.family == socket.AF_INET6 and isinstance(ip, ipaddress.IPv4Address):
        return f"::ffff:{ip}", port
    if sock.family == socket.AF_INET and isinstance(ip, ipaddress.IPv6Address):
        mapped = ip.ipv4_mapped
        if mapped is not None:
            return str(mapped), port
    return str(ip), port


async def _wait_fd(sock: socket.socket, *, write: bool) -> None:
    loop = asyncio.get_running_loop()
    fd = sock.fileno()
    waiter = loop.create_future()

    def wake() -> None:
        if not waiter.done():
            waiter.set_result(None)

    if write:
        loop.add_writer(fd, wake)
    else:
        loop.add_reader(fd, wake)
    try:
        await waiter
    finally:
        if write:
            loop.remove_writer(fd)
        else:
            loop.remove_reader(fd)


async def _recvmsg(
    sock: socket.socket, bufsize: int, ancbufsize: int
) -> tuple[bytes, list[tuple[int, int, bytes]], int, Any]:
    """Receive one datagram with its control messages from a non-blocking socket."""
    while True:
        try:
            if hasattr(sock, "recvmsg"):
                return sock.recvmsg(bufsize, ancbufsize)
            data, address = sock.recvfrom(bufsize)
            return data, [], 0, address
        except (BlockingIOError, InterruptedError):
            pass
        await _wait_fd(sock, write=False)


async def _sendmsg(
    sock: socket.socket,
    data: bytes,
    ancdata: list[tuple[int, int, bytes]],
    address: Any,
) -> None:
    """Send one datagram, with control messages if any, on a non-blocking socket."""
    while True:
        try:
            if ancdata and hasattr(sock, "sendmsg"):
                sock.sendmsg([data], ancdata, 0, address)
            else:
                sock.sendto(data, address)
            return
        except (BlockingIOError, InterruptedError):
            pass
        await _wait_fd(sock, write=True)


def _parse_pktinfo(cmsgs: tuple[tuple[int, int, bytes], ...]) -> tuple[Any, int]:
    if not cmsgs:
        if PKTINFO_SUPPORTED:
            raise ValueError("control message length 0 is shorter than cmsghdr length")
        return None, 0
    level, cmsg_type, data = cmsgs[0]
    return parse_pktinfo_cmsg(level, cmsg_type, data)


@dataclass
class ServerConfig:
    """Settings of one swgp server service."""

    name: str = ""
    proxy_listen_network: str = ""
    proxy_listen_address: str = ""
    proxy_mode: str = ""
    proxy_psk: bytes = b""
    proxy_fwmark: int = 0
    proxy_traffic_class: int = 0
    wg_endpoint: Addr = field(default_factory=Addr)
    wg_conn_listen_network: str = ""
    wg_conn_listen_address: str = ""
    wg_fwmark: int = 0
    wg_traffic_class: int = 0
    mtu: int = 0
    perf: PerfConfig = field(default_factory=PerfConfig)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ServerConfig:
        """Build a config from a decoded JSON object, rejecting unknown fields."""
        if not isinstance(data, Mapping):
            raise ValueError("server configuration must be a JSON object")
        config = cls()
        for key, value in data.items():
            if value is None:
                continue
            if key in _STRING_FIELDS:
                setattr(config, _STRING_FIELDS[key], _as_str(key, value))
            elif key in _INT_FIELDS:
                setattr(config, _INT_FIELDS[key], _as_int(key, value))
            elif key == "proxyPSK":
                config.proxy_psk = _as_base64(key, value)
            elif key == "wgEndpoint":
                config.wg_endpoint = parse_addr(_as_str(key, value))
            elif key in _PERF_STRING_FIELDS:
                setattr(config.perf, _PERF_STRING_FIELDS[key], _as_str(key, value))
            elif key in _PERF_INT_FIELDS:
                setattr(config.perf, _PERF_INT_FIELDS[key], _as_int(key, value))
            else:
                raise ValueError(f'unknown field "{key}"')
        return config

    def server(self) -> Server:
        """Validate the settings, fill in defaults and create the service."""
        if self.mtu < MINIMUM_MTU:
            raise MTUTooSmallError()
        self.proxy_listen_network = _check_network(
            "proxyListenNetwork", self.proxy_listen_network
        )
        self.wg_conn_listen_network = _check_network(
            "wgConnListenNetwork", self.wg_conn_listen_network
        )
        self.perf.check_and_apply_defaults()
        handler = new_packet_handler(self.proxy_mode, self.proxy_psk)
        return Server(self, handler)


@dataclass(eq=False)
class _Session:
    key: IPPort
    client_sockaddr: Any
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    pktinfo: list[tuple[int, int, bytes]] = field(default_factory=list)
    pktinfo_cache: tuple[tuple[int, int, bytes], ...] = ()
    deadline: float = 0.0
    stopping: bool = False
    task: asyncio.Task | None = None


class Server(Service):
    """Receives swgp packets from clients and relays them to a WireGuard endpoint."""

    def __init__(self, config: ServerConfig, handler: Handler) -> None:
        self.name = config.name
        self.proxy_listen_network = config.proxy_listen_network
        self.proxy_listen_address = config.proxy_listen_address
        self.wg_conn_listen_network = config.wg_conn_listen_network
        self.wg_conn_listen_address = config.wg_conn_listen_address
        self.send_channel_capacity = config.perf.send_channel_capacity
        self.max_proxy_packet_size_v4 = config.mtu - IPV4_HEADER_LENGTH - UDP_HEADER_LENGTH
        self.max_proxy_packet_size_v6 = config.mtu - IPV6_HEADER_LENGTH - UDP_HEADER_LENGTH
        self.wg_tunnel_mtu_v4 = wg_tunnel_mtu_for_handler(handler, self.max_proxy_packet_size_v4)
        self.wg_tunnel_mtu_v6 = wg_tunnel_mtu_for_handler(handler, self.max_proxy_packet_size_v6)
        self.wg_addr = config.wg_endpoint
        self.handler = handler
        self._proxy_options = ListenerSocketOptions(
            fwmark=config.proxy_fwmark,
            traffic_class=config.proxy_traffic_class,
            path_mtu_discovery=True,
            receive_packet_info=True,
        )
        self._wg_options = ListenerSocketOptions(
            fwmark=config.wg_fwmark,
            traffic_class=config.wg_traffic_class,
            path_mtu_discovery=True,
        )
        self._proxy_sock: socket.socket | None = None
        self._recv_task: asyncio.Task | None = None
        self._table: dict[IPPort, _Session] = {}
        self._tasks: set[asyncio.Task] = set()

    def __str__(self) -> str:
        return f"{self.name} swgp server service"

    def _spawn(self, coro: Any) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def start(self) -> None:
        """Bind the proxy socket and start receiving from clients."""
        sock = self._proxy_options.listen_udp(
            self.proxy_listen_network, self.proxy_listen_address
        )
        sock.setblocking(False)
        self._proxy_sock = sock
        self._recv_task = asyncio.get_running_loop().create_task(self._recv_from_proxy(sock))
        _log(
            logging.INFO,
            "Started service",
            server=self.name,
            listenAddress=self.proxy_listen_address,
            wgAddress=str(self.wg_addr),
            wgTunnelMTUv4=self.wg_tunnel_mtu_v4,
            wgTunnelMTUv6=self.wg_tunnel_mtu_v6,
        )

    async def _recv_from_proxy(self, proxy_sock: socket.socket) -> None:
        packets_received = 0
        wg_bytes_received = 0
        try:
            while True:
                try:
                    data, ancdata, flags, address = await _recvmsg(
                        proxy_sock,
                        self.max_proxy_packet_size_v4,
                        SOCKET_CONTROL_MESSAGE_BUFFER_SIZE,
                    )
                except OSError as exc:
                    _log(
                        logging.WARNING,
                        "Failed to read from proxyConn",
                        server=self.name,
                        listenAddress=self.proxy_listen_address,
                        error=str(exc),
                    )
                    continue

                client = _ip_port(address)
                try:
                    parse_flags_for_error(flags)
                    wg_packet = self.handler.decrypt(data)
                except _TRUNCATION_ERRORS as exc:
                    _log(
                        logging.WARNING,
                        "Failed to read from proxyConn",
                        server=self.name,
                        listenAddress=self.proxy_listen_address,
                        clientAddress=_format_endpoint(client),
                        packetLength=len(data),
                        error=str(exc),
                    )
                    continue
                except HandlerError as exc:
                    _log(
                        logging.WARNING,
                        "Failed to decrypt swgpPacket",
                        server=self.name,
                        listenAddress=self.proxy_listen_address,
                        clientAddress=_format_endpoint(client),
                        packetLength=len(data),
                        error=str(exc),
                    )
                    continue

                packets_received += 1
                wg_bytes_received += len(wg_packet)
                self._dispatch(proxy_sock, client, address, tuple(ancdata), wg_packet)
        finally:
            _log(
                logging.INFO,
                "Finished receiving from proxyConn",
                server=self.name,
                listenAddress=self.proxy_listen_address,
                wgAddress=str(self.wg_addr),
                packetsReceived=packets_received,
                wgBytesReceived=wg_bytes_received,
            )

    def _dispatch(
        self,
        proxy_sock: socket.socket,
        client: IPPort,
        address: Any,
        cmsgs: tuple[tuple[int, int, bytes], ...],
        wg_packet: bytes,
    ) -> None:
        session = self._table.get(client)
        is_new = session is None
        if session is None:
            session = _Session(key=client, client_sockaddr=address)

        if cmsgs != session.pktinfo_cache:
            try:
                pktinfo_addr, pktinfo_ifindex = _parse_pktinfo(cmsgs)
            except ValueError as exc:
                _log(
                    logging.WARNING,
                    "Failed to parse pktinfo control message from proxyConn",
                    server=self.name,
                    listenAddress=self.proxy_listen_address,
                    clientAddress=_format_endpoint(client),
                    error=str(exc),
                )
                return
            session.pktinfo = list(cmsgs)
            session.pktinfo_cache = cmsgs
            _log(
                logging.DEBUG,
                "Updated client pktinfo",
                server=self.name,
                listenAddress=self.proxy_listen_address,
                clientAddress=_format_endpoint(client),
                clientPktinfoAddr=str(pktinfo_addr),
                clientPktinfoIfindex=pktinfo_ifindex,
            )

        if is_new:
            self._table[client] = session
            session.task = self._spawn(self._run_session(session, proxy_sock))
            _log(
                logging.DEBUG,
                "New server session",
                server=self.name,
                listenAddress=self.proxy_listen_address,
                clientAddress=_format_endpoint(client),
                wgAddress=str(self.wg_addr),
            )

        if session.queue.qsize() >= self.send_channel_capacity:
            _log(
                logging.DEBUG,
                "wgPacket dropped due to full send channel",
                server=self.name,
                listenAddress=self.proxy_listen_address,
                clientAddress=_format_endpoint(client),
                wgAddress=str(self.wg_addr),
            )
            return
        session.queue.put_nowait(wg_packet)

    async def _run_session(self, session: _Session, proxy_sock: socket.socket) -> None:
        loop = asyncio.get_running_loop()
        client_text = _format_endpoint(session.key)
        try:
            try:
                if self.wg_addr.is_ip():
                    wg_addr_port = self.wg_addr.ip_port()
                else:
                    wg_addr_port = await loop.run_in_executor(None, self.wg_addr.resolve_ip_port)
            except (OSError, ValueError) as exc:
                _log(
                    logging.WARNING,
                    "Failed to resolve wg address for new session",
                    server=self.name,
                    listenAddress=self.proxy_listen_address,
                    clientAddress=client_text,
                    error=str(exc),
                )
                return

            try:
                wg_sock = self._wg_options.listen_udp(
                    self.wg_conn_listen_network, self.wg_conn_listen_address
                )
                wg_sock.setblocking(False)
            except (OSError, ValueError) as exc:
                _log(
                    logging.WARNING,
                    "Failed to create UDP socket for new session",
                    server=self.name,
                    listenAddress=self.proxy_listen_address,
                    clientAddress=client_text,
                    error=str(exc),
                )
                return

            if session.stopping:
                wg_sock.close()
                return

            session.deadline = loop.time() + REJECT_AFTER_TIME

            if _is_v4(session.key[0]):
                max_proxy_packet_size = self.max_proxy_packet_size_v4
                wg_tunnel_mtu = self.wg_tunnel_mtu_v4
            else:
                max_proxy_packet_size = self.max_proxy_packet_size_v6
                wg_tunnel_mtu = self.wg_tunnel_mtu_v6

            _log(
                logging.INFO,
                "Server relay started",
                server=self.name,
                listenAddress=self.proxy_listen_address,
                clientAddress=client_text,
                wgAddress=_format_endpoint(wg_addr_port),
                wgTunnelMTU=wg_tunnel_mtu,
            )

            self._spawn(self._relay_proxy_to_wg(session, wg_sock, wg_addr_port))
            await self._relay_wg_to_proxy(
                session, wg_sock, wg_addr_port, proxy_sock, max_proxy_packet_size
            )
        finally:
            if self._table.get(session.key) is session:
                del self._table[session.key]
            session.queue.put_nowait(None)

    async def _relay_proxy_to_wg(
        self, session: _Session, wg_sock: socket.socket, wg_addr_port: IPPort
    ) -> None:
        loop = asyncio.get_running_loop()
        target = _sockaddr_for(wg_sock, *wg_addr_port)
        packets_sent = 0
        wg_bytes_sent = 0
        try:
            while (wg_packet := await session.queue.get()) is not None:
                try:
                    await _sendmsg(wg_sock, wg_packet, [], target)
                except OSError as exc:
                    _log(
                        logging.WARNING,
                        "Failed to write wgPacket to wgConn",
                        server=self.name,
                        listenAddress=self.proxy_listen_address,
                        clientAddress=_format_endpoint(session.key),
                        wgAddress=_format_endpoint(wg_addr_port),
                        wgPacketLength=len(wg_packet),
                        error=str(exc),
                    )

                # A handshake keeps the session alive for another RejectAfterTime.
                if wg_packet and wg_packet[0] in _DEADLINE_REFRESH_TYPES and not session.stopping:
                    session.deadline = loop.time() + REJECT_AFTER_TIME

                packets_sent += 1
                wg_bytes_sent += len(wg_packet)
        finally:
            wg_sock.close()
            _log(
                logging.INFO,
                "Finished relay proxyConn -> wgConn",
                server=self.name,
                listenAddress=self.proxy_listen_address,
                clientAddress=_format_endpoint(session.key),
                wgAddress=_format_endpoint(wg_addr_port),
                packetsSent=packets_sent,
                wgBytesSent=wg_bytes_sent,
            )

    async def _relay_wg_to_proxy(
        self,
        session: _Session,
        wg_sock: socket.socket,
        wg_addr_port: IPPort,
        proxy_sock: socket.socket,
        max_proxy_packet_size: int,
    ) -> None:
        loop = asyncio.get_running_loop()
        headroom = self.handler.headroom()
        recv_size = max_proxy_packet_size - headroom.front - headroom.rear
        client_text = _format_endpoint(session.key)
        wg_text = _format_endpoint(wg_addr_port)
        packets_sent = 0
        wg_bytes_sent = 0
        try:
            while True:
                remaining = session.deadline - loop.time()
                if remaining <= 0:
                    break
                try:
                    data, _, flags, source = await asyncio.wait_for(
                        _recvmsg(wg_sock, recv_size, 0), remaining
                    )
                except TimeoutError:
                    continue
                except OSError as exc:
                    _log(
                        logging.WARNING,
                        "Failed to read from wgConn",
                        server=self.name,
                        listenAddress=self.proxy_listen_address,
                        clientAddress=client_text,
                        wgAddress=wg_text,
                        error=str(exc),
                    )
                    continue

                source_ip_port = _ip_port(source)
                try:
                    parse_flags_for_error(flags)
                except _TRUNCATION_ERRORS as exc:
                    _log(
                        logging.WARNING,
                        "Failed to read from wgConn",
                        server=self.name,
                        listenAddress=self.proxy_listen_address,
                        clientAddress=client_text,
                        wgAddress=wg_text,
                        packetSourceAddress=_format_endpoint(source_ip_port),
                        packetLength=len(data),
                        error=str(exc),
                    )
                    continue

                if not addr_port_mapped_equal(source_ip_port, wg_addr_port):
                    _log(
                        logging.WARNING,
                        "Ignoring packet from non-wg address",
                        server=self.name,
                        listenAddress=self.proxy_listen_address,
                        clientAddress=client_text,
                        wgAddress=wg_text,
                        packetSourceAddress=_format_endpoint(source_ip_port),
                        packetLength=len(data),
                    )
                    continue

                try:
                    swgp_packet = self.handler.encrypt(data, max_proxy_packet_size)
                except HandlerError as exc:
                    _log(
                        logging.WARNING,
                        "Failed to encrypt WireGuard packet",
                        server=self.name,
                        listenAddress=self.proxy_listen_address,
                        clientAddress=client_text,
                        wgAddress=wg_text,
                        error=str(exc),
                    )
                    continue

                try:
                    await _sendmsg(
                        proxy_sock, swgp_packet, list(session.pktinfo), session.client_sockaddr
                    )
                except OSError as exc:
                    _log(
                        logging.WARNING,
                        "Failed to write swgpPacket to proxyConn",
                        server=self.name,
                        listenAddress=self.proxy_listen_address,
                        clientAddress=client_text,
                        wgAddress=wg_text,
                        swgpPacketLength=len(swgp_packet),
                        error=str(exc),
                    )

                packets_sent += 1
                wg_bytes_sent += len(data)
        finally:
            _log(
                logging.INFO,
                "Finished relay wgConn -> proxyConn",
                server=self.name,
                listenAddress=self.proxy_listen_address,
                clientAddress=client_text,
                wgAddress=wg_text,
                packetsSent=packets_sent,
                wgBytesSent=wg_bytes_sent,
            )

    async def stop(self) -> None:
        """Stop receiving, end every session and close the proxy socket.

        Packets already queued for the WireGuard endpoint are still written out.
        """
        sock = self._proxy_sock
        if sock is None:
            raise RuntimeError(f"{self} is not running")

        if self._recv_task is not None:
            self._recv_task.cancel()
            await asyncio.gather(self._recv_task, return_exceptions=True)
            self._recv_task = None

        for session in list(self._table.values()):
            session.stopping = True
            session.deadline = float("-inf")
            if session.task is not None:
                session.task.cancel()

        while self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        self._table.clear()
        self._proxy_sock = None
        sock.close()