"""The paranoid handler: whole-packet AEAD encryption with padding."""

from __future__ import annotations

import os
import struct

from Crypto.Cipher import ChaCha20_Poly1305

from swgproxy.handler import (
    AEAD_OVERHEAD,
    MAX_PAYLOAD_LENGTH,
    XNONCE_SIZE,
    Handler,
    HandlerError,
    Headroom,
    PacketSizeError,
    PayloadLengthError,
    random_padding_length,
)

_LENGTH = struct.Struct(">H")
_MIN_PACKET_LENGTH = XNONCE_SIZE + _LENGTH.size + 1 + AEAD_OVERHEAD


class ParanoidHandler(Handler):
    """Encrypts whole packets with XChaCha20-Poly1305.

    Every packet, whatever its message type, is padded up to a random
    length within the available room to hide its characteristics::

        swgp_packet = 24B nonce + AEAD_Seal(u16be payload length + payload + padding)
    """

    def __init__(self, psk: bytes) -> None:
        psk = bytes(psk)
        if len(psk) != 32:
            raise ValueError(f"invalid key size {len(psk)}: must be 32 bytes")
        self._psk = psk

    def headroom(self) -> Headroom:
        return Headroom(front=XNONCE_SIZE + _LENGTH.size, rear=AEAD_OVERHEAD)

    def encrypt(self, wg_packet: bytes, max_packet_size: int) -> bytes:
        wg_packet = bytes(wg_packet)
        if len(wg_packet) > MAX_PAYLOAD_LENGTH:
            raise PacketSizeError(
                f"wg packet (length {len(wg_packet)}) is too large "
                f"(greater than {MAX_PAYLOAD_LENGTH})"
            )

        headroom = self.headroom()
        rear_headroom = max_packet_size - headroom.front - len(wg_packet)
        padding_len = random_padding_length(rear_headroom - AEAD_OVERHEAD)

        nonce = os.urandom(XNONCE_SIZE)
        plaintext = _LENGTH.pack(len(wg_packet)) + wg_packet + bytes(padding_len)
        cipher = ChaCha20_Poly1305.new(key=self._psk, nonce=nonce)
        ciphertext, tag = cipher.encrypt_and_digest(plaintext)
        return nonce + ciphertext + tag

    def decrypt(self, swgp_packet: bytes) -> bytes:
        swgp_packet = bytes(swgp_packet)
        if len(swgp_packet) < _MIN_PACKET_LENGTH:
            raise PacketSizeError(f"swgp packet (length {len(swgp_packet)}) is too short")

        nonce = swgp_packet[:XNONCE_SIZE]
        ciphertext = swgp_packet[XNONCE_SIZE:-AEAD_OVERHEAD]
        tag = swgp_packet[-AEAD_OVERHEAD:]
        cipher = ChaCha20_Poly1305.new(key=self._psk, nonce=nonce)
        try:
            plaintext = cipher.decrypt_and_verify(ciphertext, tag)
        except ValueError as exc:
            raise HandlerError("failed to authenticate swgp packet") from exc

        (payload_length,) = _LENGTH.unpack_from(plaintext)
        if payload_length > len(plaintext) - _LENGTH.size:
            raise PayloadLengthError(
                f"payload length field value {payload_length} is out of range"
            )
        return plaintext[_LENGTH.size : _LENGTH.size + payload_length]