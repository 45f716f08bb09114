"""The swgp client service: WireGuard packets in, swgp packets out."""

from __future__ import annotations

import asyncio
import logging
import socket
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from swgproxy.addr import Addr, IPPort, addr_port_mapped_equal, parse_addr
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
from swgproxy.server import (
    _PERF_INT_FIELDS,
    _PERF_STRING_FIELDS,
    _Session,
    _as_base64,
    _as_int,
    _as_str,
    _check_network,
    _format_endpoint,
    _ip_port,
    _is_v4,
    _parse_pktinfo,
    _recvmsg,
    _sendmsg,
    _sockaddr_for,
)
from swgproxy.sockopts import (
    SOCKET_CONTROL_MESSAGE_BUFFER_SIZE,
    ControlMessageTruncatedError,
    ListenerSocketOptions,
    MessageTruncatedError,
    parse_flags_for_error,
)

_logger = logging.getLogger("swgproxy.client")

_DEADLINE_REFRESH_TYPES = (MESSAGE_TYPE_HANDSHAKE_INITIATION, MESSAGE_TYPE_HANDSHAKE_RESPONSE)
_TRUNCATION_ERRORS = (MessageTruncatedError, ControlMessageTruncatedError)

_STRING_FIELDS = {
    "name": "name",
    "wgListenNetwork": "wg_listen_network",
    "wgListen": "wg_listen_address",
    "proxyConnListenNetwork": "proxy_conn_listen_network",
    "proxyConnListenAddress": "proxy_conn_listen_address",
    "proxyMode": "proxy_mode",
}
_INT_FIELDS = {
    "wgFwmark": "wg_fwmark",
    "wgTrafficClass": "wg_traffic_class",
    "proxyFwmark": "proxy_fwmark",
    "proxyTrafficClass": "proxy_traffic_class",
    "mtu": "mtu",
}


def _log(level: int, message: str, **fields: Any) -> None:
    if _logger.isEnabledFor(level):
        _logger.log(level, message, extra={"fields": fields})


@dataclass
class ClientConfig:
    """Settings of one swgp client service."""

    name: str = ""
    wg_listen_network: str = ""
    wg_listen_address: str = ""
    wg_fwmark: int = 0
    wg_traffic_class: int = 0
    proxy_endpoint: Addr = field(default_factory=Addr)
    proxy_conn_listen_network: str = ""
    proxy_conn_listen_address: str = ""
    proxy_mode: str = ""
    proxy_psk: bytes = b""
    proxy_fwmark: int = 0
    proxy_traffic_class: int = 0
    mtu: int = 0
    perf: PerfConfig = field(default_factory=PerfConfig)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ClientConfig:
        """Build a config from a decoded JSON object, rejecting unknown fields."""
        if not isinstance(data, Mapping):
            raise ValueError("client configuration must be a JSON object")
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
            elif key == "proxyEndpoint":
                config.proxy_endpoint = parse_addr(_as_str(key, value))
            elif key in _PERF_STRING_FIELDS:
                setattr(config.perf, _PERF_STRING_FIELDS[key], _as_str(key, value))
            elif key in _PERF_INT_FIELDS:
                setattr(config.perf, _PERF_INT_FIELDS[key], _as_int(key, value))
            else:
                raise ValueError(f'unknown field "{key}"')
        return config

    def client(self) -> Client:
        """Validate the settings, fill in defaults and create the service."""
        if self.mtu < MINIMUM_MTU:
            raise MTUTooSmallError()
        self.wg_listen_network = _check_network("wgListenNetwork", self.wg_listen_network)
        self.proxy_conn_listen_network = _check_network(
            "proxyConnListenNetwork", self.proxy_conn_listen_network
        )
        self.perf.check_and_apply_defaults()
        handler = new_packet_handler(self.proxy_mode, self.proxy_psk)
        return Client(self, handler)


class Client(Service):
    """Receives WireGuard packets from local peers and relays them to a swgp server."""

    def __init__(self, config: ClientConfig, handler: Handler) -> None:
        self.name = config.name
        self.wg_listen_network = config.wg_listen_network
        self.wg_listen_address = config.wg_listen_address
        self.proxy_conn_listen_network = config.proxy_conn_listen_network
        self.proxy_conn_listen_address = config.proxy_conn_listen_address
        self.send_channel_capacity = config.perf.send_channel_capacity
        self.handler = handler
        self.proxy_addr = config.proxy_endpoint

        self.max_proxy_packet_size = config.mtu - IPV4_HEADER_LENGTH - UDP_HEADER_LENGTH
        self.max_proxy_packet_size_v6 = config.mtu - IPV6_HEADER_LENGTH - UDP_HEADER_LENGTH
        self.wg_tunnel_mtu = wg_tunnel_mtu_for_handler(handler, self.max_proxy_packet_size)
        self.wg_tunnel_mtu_v6 = wg_tunnel_mtu_for_handler(handler, self.max_proxy_packet_size_v6)

        # An IPv6 proxy endpoint means IPv6 headers on every proxy packet.
        if self.proxy_addr.is_ip() and not _is_v4(self.proxy_addr.ip()):
            self.max_proxy_packet_size = self.max_proxy_packet_size_v6
            self.wg_tunnel_mtu = self.wg_tunnel_mtu_v6

        self._wg_options = ListenerSocketOptions(
            fwmark=config.wg_fwmark,
            traffic_class=config.wg_traffic_class,
            path_mtu_discovery=True,
            receive_packet_info=True,
        )
        self._proxy_options = ListenerSocketOptions(
            fwmark=config.proxy_fwmark,
            traffic_class=config.proxy_traffic_class,
            path_mtu_discovery=True,
        )
        self._wg_sock: socket.socket | None = None
        self._recv_task: asyncio.Task | None = None
        self._table: dict[IPPort, _Session] = {}
        self._tasks: set[asyncio.Task] = set()

    def __str__(self) -> str:
        return f"{self.name} swgp client service"

    def _spawn(self, coro: Any) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def start(self) -> None:
        """Bind the WireGuard-facing socket and start receiving from peers."""
        sock = self._wg_options.listen_udp(self.wg_listen_network, self.wg_listen_address)
        sock.setblocking(False)
        self._wg_sock = sock
        self._recv_task = asyncio.get_running_loop().create_task(self._recv_from_wg(sock))

        fields: dict[str, Any] = {
            "client": self.name,
            "listenAddress": self.wg_listen_address,
            "proxyAddress": str(self.proxy_addr),
        }
        if self.proxy_addr.is_ip():
            fields["wgTunnelMTU"] = self.wg_tunnel_mtu
        else:
            fields["wgTunnelMTUv4"] = self.wg_tunnel_mtu
            fields["wgTunnelMTUv6"] = self.wg_tunnel_mtu_v6
        _log(logging.INFO, "Started service", **fields)

    async def _recv_from_wg(self, wg_sock: socket.socket) -> None:
        headroom = self.handler.headroom()
        recv_size = self.max_proxy_packet_size - headroom.front - headroom.rear
        packets_received = 0
        wg_bytes_received = 0
        try:
            while True:
                try:
                    data, ancdata, flags, address = await _recvmsg(
                        wg_sock, recv_size, SOCKET_CONTROL_MESSAGE_BUFFER_SIZE
                    )
                except OSError as exc:
                    _log(
                        logging.WARNING,
                        "Failed to read from wgConn",
                        client=self.name,
                        listenAddress=self.wg_listen_address,
                        error=str(exc),
                    )
                    continue

                peer = _ip_port(address)
                try:
                    parse_flags_for_error(flags)
                except _TRUNCATION_ERRORS as exc:
                    _log(
                        logging.WARNING,
                        "Failed to read from wgConn",
                        client=self.name,
                        listenAddress=self.wg_listen_address,
                        clientAddress=_format_endpoint(peer),
                        packetLength=len(data),
                        error=str(exc),
                    )
                    continue

                packets_received += 1
                wg_bytes_received += len(data)
                self._dispatch(wg_sock, peer, address, tuple(ancdata), data)
        finally:
            _log(
                logging.INFO,
                "Finished receiving from wgConn",
                client=self.name,
                listenAddress=self.wg_listen_address,
                proxyAddress=str(self.proxy_addr),
                packetsReceived=packets_received,
                wgBytesReceived=wg_bytes_received,
            )

    def _dispatch(
        self,
        wg_sock: socket.socket,
        peer: IPPort,
        address: Any,
        cmsgs: tuple[tuple[int, int, bytes], ...],
        wg_packet: bytes,
    ) -> None:
        session = self._table.get(peer)
        is_new = session is None
        if session is None:
            session = _Session(key=peer, client_sockaddr=address)

        if cmsgs != session.pktinfo_cache:
            try:
                pktinfo_addr, pktinfo_ifindex = _parse_pktinfo(cmsgs)
            except ValueError as exc:
                _log(
                    logging.WARNING,
                    "Failed to parse pktinfo control message from wgConn",
                    client=self.name,
                    listenAddress=self.wg_listen_address,
                    clientAddress=_format_endpoint(peer),
                    error=str(exc),
                )
                return
            session.pktinfo = list(cmsgs)
            session.pktinfo_cache = cmsgs
            _log(
                logging.DEBUG,
                "Updated client pktinfo",
                client=self.name,
                listenAddress=self.wg_listen_address,
                clientAddress=_format_endpoint(peer),
                clientPktinfoAddr=str(pktinfo_addr),
                clientPktinfoIfindex=pktinfo_ifindex,
            )

        if is_new:
            self._table[peer] = session
            session.task = self._spawn(self._run_session(session, wg_sock))
            _log(
                logging.DEBUG,
                "New client session",
                client=self.name,
                listenAddress=self.wg_listen_address,
                clientAddress=_format_endpoint(peer),
                proxyAddress=str(self.proxy_addr),
            )

        if session.queue.qsize() >= self.send_channel_capacity:
            _log(
                logging.DEBUG,
                "swgpPacket dropped due to full send channel",
                client=self.name,
                listenAddress=self.wg_listen_address,
                clientAddress=_format_endpoint(peer),
                proxyAddress=str(self.proxy_addr),
            )
            return
        session.queue.put_nowait(wg_packet)

    async def _run_session(self, session: _Session, wg_sock: socket.socket) -> None:
        loop = asyncio.get_running_loop()
        peer_text = _format_endpoint(session.key)
        try:
            try:
                if self.proxy_addr.is_ip():
                    proxy_addr_port = self.proxy_addr.ip_port()
                else:
                    proxy_addr_port = await loop.run_in_executor(
                        None, self.proxy_addr.resolve_ip_port
                    )
            except (OSError, ValueError) as exc:
                _log(
                    logging.WARNING,
                    "Failed to resolve proxy address for new session",
                    client=self.name,
                    listenAddress=self.wg_listen_address,
                    clientAddress=peer_text,
                    error=str(exc),
                )
                return

            try:
                proxy_sock = self._proxy_options.listen_udp(
                    self.proxy_conn_listen_network, self.proxy_conn_listen_address
                )
                proxy_sock.setblocking(False)
            except (OSError, ValueError) as exc:
                _log(
                    logging.WARNING,
                    "Failed to create UDP socket for new session",
                    client=self.name,
                    listenAddress=self.wg_listen_address,
                    clientAddress=peer_text,
                    error=str(exc),
                )
                return

            if session.stopping:
                proxy_sock.close()
                return

            session.deadline = loop.time() + REJECT_AFTER_TIME

            max_proxy_packet_size = self.max_proxy_packet_size
            wg_tunnel_mtu = self.wg_tunnel_mtu
            if self.proxy_addr.is_domain() and not _is_v4(proxy_addr_port[0]):
                max_proxy_packet_size = self.max_proxy_packet_size_v6
                wg_tunnel_mtu = self.wg_tunnel_mtu_v6

            _log(
                logging.INFO,
                "Client relay started",
                client=self.name,
                listenAddress=self.wg_listen_address,
                clientAddress=peer_text,
                proxyAddress=_format_endpoint(proxy_addr_port),
                wgTunnelMTU=wg_tunnel_mtu,
            )

            self._spawn(self._relay_wg_to_proxy(session, proxy_sock, proxy_addr_port))
            await self._relay_proxy_to_wg(
                session, proxy_sock, proxy_addr_port, wg_sock, max_proxy_packet_size
            )
        finally:
            if self._table.get(session.key) is session:
                del self._table[session.key]
            session.queue.put_nowait(None)

    async def _relay_wg_to_proxy(
        self, session: _Session, proxy_sock: socket.socket, proxy_addr_port: IPPort
    ) -> None:
        loop = asyncio.get_running_loop()
        target = _sockaddr_for(proxy_sock, *proxy_addr_port)
        peer_text = _format_endpoint(session.key)
        proxy_text = _format_endpoint(proxy_addr_port)
        packets_sent = 0
        wg_bytes_sent = 0
        try:
            while (wg_packet := await session.queue.get()) is not None:
                # A handshake keeps the session alive for another RejectAfterTime.
                if wg_packet and wg_packet[0] in _DEADLINE_REFRESH_TYPES and not session.stopping:
                    session.deadline = loop.time() + REJECT_AFTER_TIME

                try:
                    swgp_packet = self.handler.encrypt(wg_packet, self.max_proxy_packet_size)
                except HandlerError as exc:
                    _log(
                        logging.WARNING,
                        "Failed to encrypt WireGuard packet",
                        client=self.name,
                        listenAddress=self.wg_listen_address,
                        clientAddress=peer_text,
                        error=str(exc),
                    )
                    continue

                try:
                    await _sendmsg(proxy_sock, swgp_packet, [], target)
                except OSError as exc:
                    _log(
                        logging.WARNING,
                        "Failed to write swgpPacket to proxyConn",
                        client=self.name,
                        listenAddress=self.wg_listen_address,
                        clientAddress=peer_text,
                        proxyAddress=proxy_text,
                        swgpPacketLength=len(swgp_packet),
                        error=str(exc),
                    )

                packets_sent += 1
                wg_bytes_sent += len(wg_packet)
        finally:
            proxy_sock.close()
            _log(
                logging.INFO,
                "Finished relay wgConn -> proxyConn",
                client=self.name,
                listenAddress=self.wg_listen_address,
                clientAddress=peer_text,
                proxyAddress=proxy_text,
                packetsSent=packets_sent,
                wgBytesSent=wg_bytes_sent,
            )

    async def _relay_proxy_to_wg(
        self,
        session: _Session,
        proxy_sock: socket.socket,
        proxy_addr_port: IPPort,
        wg_sock: socket.socket,
        max_proxy_packet_size: int,
    ) -> None:
        loop = asyncio.get_running_loop()
        peer_text = _format_endpoint(session.key)
        proxy_text = _format_endpoint(proxy_addr_port)
        packets_sent = 0
        wg_bytes_sent = 0
        try:
            while True:
                remaining = session.deadline - loop.time()
                if remaining <= 0:
                    break
                try:
                    data, _, flags, source = await asyncio.wait_for(
                        _recvmsg(proxy_sock, max_proxy_packet_size, 0), remaining
                    )
                except TimeoutError:
                    continue
                except OSError as exc:
                    _log(
                        logging.WARNING,
                        "Failed to read from proxyConn",
                        client=self.name,
                        listenAddress=self.wg_listen_address,
                        clientAddress=peer_text,
                        proxyAddress=proxy_text,
                        error=str(exc),
                    )
                    continue

                source_ip_port = _ip_port(source)
                try:
                    parse_flags_for_error(flags)
                except _TRUNCATION_ERRORS as exc:
                    _log(
                        logging.WARNING,
                        "Failed to read from proxyConn",
                        client=self.name,
                        listenAddress=self.wg_listen_address,
                        clientAddress=peer_text,
                        proxyAddress=proxy_text,
                        packetSourceAddress=_format_endpoint(source_ip_port),
                        packetLength=len(data),
                        error=str(exc),
                    )
                    continue

                if not addr_port_mapped_equal(source_ip_port, proxy_addr_port):
                    _log(
                        logging.WARNING,
                        "Ignoring packet from non-proxy address",
                        client=self.name,
                        listenAddress=self.wg_listen_address,
                        clientAddress=peer_text,
                        proxyAddress=proxy_text,
                        packetSourceAddress=_format_endpoint(source_ip_port),
                        packetLength=len(data),
                    )
                    continue

                try:
                    wg_packet = self.handler.decrypt(data)
                except HandlerError as exc:
                    _log(
                        logging.WARNING,
                        "Failed to decrypt swgpPacket",
                        client=self.name,
                        listenAddress=self.wg_listen_address,
                        clientAddress=peer_text,
                        proxyAddress=proxy_text,
                        packetLength=len(data),
                        error=str(exc),
                    )
                    continue

                try:
                    await _sendmsg(
                        wg_sock, wg_packet, list(session.pktinfo), session.client_sockaddr
                    )
                except OSError as exc:
                    _log(
                        logging.WARNING,
                        "Failed to write wgPacket to wgConn",
                        client=self.name,
                        listenAddress=self.wg_listen_address,
                        clientAddress=peer_text,
                        proxyAddress=proxy_text,
                        wgPacketLength=len(wg_packet),
                        error=str(exc),
                    )

                packets_sent += 1
                wg_bytes_sent += len(wg_packet)
        finally:
            _log(
                logging.INFO,
                "Finished relay proxyConn -> wgConn",
                client=self.name,
                listenAddress=self.wg_listen_address,
                clientAddress=peer_text,
                proxyAddress=proxy_text,
                packetsSent=packets_sent,
                wgBytesSent=wg_bytes_sent,
            )

    async def stop(self) -> None:
        """Stop receiving, end every session and close the WireGuard-facing socket.

        Packets already queued for the proxy are still written out.
        """
        sock = self._wg_sock
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
        self._wg_sock = None
        sock.close()