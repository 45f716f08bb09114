"""Shared service settings, limits and helpers."""

from __future__ import annotations

import json
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from os import PathLike
from typing import Any

from swgproxy.handler import Handler
from swgproxy.paranoid import ParanoidHandler
from swgproxy.zerooverhead import ZeroOverheadHandler

# Minimum allowed MTU.
MINIMUM_MTU = 1280

# Default batch size of batched receive and send calls in relay sessions.
DEFAULT_RELAY_BATCH_SIZE = 256

# Default batch size of a relay service's main receive routine.
DEFAULT_MAIN_RECV_BATCH_SIZE = 64

# Default capacity of a relay session's uplink send queue.
DEFAULT_SEND_CHANNEL_CAPACITY = 1024

# WireGuard's RejectAfterTime, used as the NAT timeout, in seconds.
REJECT_AFTER_TIME = 180.0

IPV4_HEADER_LENGTH = 20
IPV6_HEADER_LENGTH = 40
UDP_HEADER_LENGTH = 8
WIREGUARD_DATA_PACKET_OVERHEAD = 32

# WireGuard pads data packets so the length is always a multiple of 16.
WIREGUARD_DATA_PACKET_LENGTH_MASK = 0xFFF0

BATCH_MODES = ("", "no", "sendmmsg")


class MTUTooSmallError(ValueError):
    """The configured MTU is below the minimum."""

    def __init__(self, message: str = f"MTU must be at least {MINIMUM_MTU}") -> None:
        super().__init__(message)


class Service(ABC):
    """A service that uses packet handlers to relay swgp traffic."""

    @abstractmethod
    def __str__(self) -> str:
        """Return the service's name."""

    @abstractmethod
    async def start(self) -> None:
        """Start the service."""

    @abstractmethod
    async def stop(self) -> None:
        """Stop the service."""


@dataclass
class PerfConfig:
    """Performance tuning knobs.

    ``batch_mode`` is "" for the platform default, "no" to handle packets
    one by one, or "sendmmsg" for batched receiving and sending.
    """

    batch_mode: str = ""
    relay_batch_size: int = 0
    main_recv_batch_size: int = 0
    send_channel_capacity: int = 0

    def check_and_apply_defaults(self) -> None:
        """Validate the settings and fill in defaults for unset ones."""
        if self.batch_mode not in BATCH_MODES:
            raise ValueError(f"unknown batch mode: {self.batch_mode}")

        if self.relay_batch_size == 0:
            self.relay_batch_size = DEFAULT_RELAY_BATCH_SIZE
        elif not 0 < self.relay_batch_size <= 1024:
            raise ValueError(
                f"relay batch size out of range [0, 1024]: {self.relay_batch_size}"
            )

        if self.main_recv_batch_size == 0:
            self.main_recv_batch_size = DEFAULT_MAIN_RECV_BATCH_SIZE
        elif not 0 < self.main_recv_batch_size <= 1024:
            raise ValueError(
                f"main recv batch size out of range [0, 1024]: {self.main_recv_batch_size}"
            )

        if self.send_channel_capacity == 0:
            self.send_channel_capacity = DEFAULT_SEND_CHANNEL_CAPACITY
        elif self.send_channel_capacity < 64:
            raise ValueError(
                f"send channel capacity must be at least 64: {self.send_channel_capacity}"
            )


def new_packet_handler(proxy_mode: str, psk: bytes) -> Handler:
    """Create the packet handler for a proxy mode."""
    if proxy_mode == "zero-overhead":
        return ZeroOverheadHandler(psk)
    if proxy_mode == "paranoid":
        return ParanoidHandler(psk)
    raise ValueError(f"unknown proxy mode: {proxy_mode}")


def wg_tunnel_mtu_for_handler(handler: Handler, max_proxy_packet_size: int) -> int:
    """Return the WireGuard tunnel MTU that fits a proxy packet size."""
    headroom = handler.headroom()
    return (
        max_proxy_packet_size
        - headroom.front
        - headroom.rear
        - WIREGUARD_DATA_PACKET_OVERHEAD
    ) & WIREGUARD_DATA_PACKET_LENGTH_MASK


def _reject_constant(name: str) -> Any:
    raise ValueError(f"invalid JSON constant: {name}")


def load_json_strict(path: str | PathLike[str]) -> Any:
    """Load a JSON document, rejecting NaN and Infinity."""
    with open(path, encoding="utf-8") as f:
        data = json.load(f, parse_constant=_reject_constant)
    return data


def _is_finite_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and math.isfinite(value)