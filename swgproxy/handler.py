"""Packet handlers that turn WireGuard packets into swgp packets and back.

Two proxy modes exist:

* Zero overhead: the first 16 bytes of every packet are AES encrypted.
  Handshake packets (message types 1, 2 and 3) are also randomly padded
  and sealed so that they look like ordinary traffic.
* Paranoid: every packet is padded without exceeding the MTU, then the
  whole packet is sealed with XChaCha20-Poly1305. Data packets are padded
  too, because WireGuard data packets always have a length that is a
  multiple of 16, and many IPv6 sites cap their MTU at 1280.
"""

from __future__ import annotations

import random
from abc import ABC, abstractmethod
from dataclasses import dataclass

MESSAGE_TYPE_HANDSHAKE_INITIATION = 1
MESSAGE_TYPE_HANDSHAKE_RESPONSE = 2
MESSAGE_TYPE_HANDSHAKE_COOKIE_REPLY = 3
MESSAGE_TYPE_DATA = 4

MESSAGE_LENGTH_HANDSHAKE_INITIATION = 148
MESSAGE_LENGTH_HANDSHAKE_RESPONSE = 92
MESSAGE_LENGTH_HANDSHAKE_COOKIE_REPLY = 64

HANDSHAKE_MESSAGE_TYPES = frozenset(
    {
        MESSAGE_TYPE_HANDSHAKE_INITIATION,
        MESSAGE_TYPE_HANDSHAKE_RESPONSE,
        MESSAGE_TYPE_HANDSHAKE_COOKIE_REPLY,
    }
)

MAX_PAYLOAD_LENGTH = 0xFFFF

# XChaCha20-Poly1305 parameters.
XNONCE_SIZE = 24
AEAD_OVERHEAD = 16


class HandlerError(Exception):
    """A packet could not be encrypted or decrypted."""


class PacketSizeError(HandlerError):
    """The packet is too big or too small to be processed."""


class PayloadLengthError(HandlerError):
    """The payload length field value is out of range."""


@dataclass(frozen=True)
class Headroom:
    """Extra space a handler needs around the payload in a packet buffer."""

    front: int = 0
    rear: int = 0


class Handler(ABC):
    """Encrypts WireGuard packets and decrypts swgp packets."""

    @abstractmethod
    def headroom(self) -> Headroom:
        """Return the space needed before and after the payload."""

    @abstractmethod
    def encrypt(self, wg_packet: bytes, max_packet_size: int) -> bytes:
        """Encrypt a WireGuard packet into a swgp packet.

        ``max_packet_size`` is the size of the packet buffer: the front
        headroom, the WireGuard packet and whatever room follows it.
        """

    @abstractmethod
    def decrypt(self, swgp_packet: bytes) -> bytes:
        """Decrypt a swgp packet and return the WireGuard packet."""


def random_padding_length(headroom: int) -> int:
    """Pick a padding length in [1, headroom], or 0 when there is no room."""
    if headroom <= 0:
        return 0
    return 1 + random.randrange(headroom)