"""The zero-overhead handler: AES on the first block, sealed handshakes."""

from __future__ import annotations

import os
import struct

from Crypto.Cipher import AES, ChaCha20_Poly1305

from swgproxy.handler import (
    AEAD_OVERHEAD,
    HANDSHAKE_MESSAGE_TYPES,
    XNONCE_SIZE,
    Handler,
    HandlerError,
    Headroom,
    PacketSizeError,
    PayloadLengthError,
    random_padding_length,
)

_LENGTH = struct.Struct(">H")
_BLOCK = 16

# Minimum overhead of a handshake packet; the random padding comes on top.
HANDSHAKE_PACKET_MINIMUM_OVERHEAD = _LENGTH.size + AEAD_OVERHEAD + XNONCE_SIZE


class ZeroOverheadHandler(Handler):
    """Encrypts the first 16 bytes of packets with AES.

    The rest of a handshake packet (message types 1, 2 and 3) is also
    randomly padded and sealed with XChaCha20-Poly1305::

        swgp_packet = aes(wg_data_packet[:16]) + wg_data_packet[16:]
        swgp_packet = aes(wg_handshake_packet[:16])
                      + AEAD_Seal(payload + padding + u16be payload length) + 24B nonce
    """

    def __init__(self, psk: bytes) -> None:
        psk = bytes(psk)
        if len(psk) != 32:
            raise ValueError(f"invalid key size {len(psk)}: must be 32 bytes")
        self._psk = psk
        self._block = AES.new(psk, AES.MODE_ECB)

    def headroom(self) -> Headroom:
        return Headroom()

    def encrypt(self, wg_packet: bytes, max_packet_size: int) -> bytes:
        wg_packet = bytes(wg_packet)
        if len(wg_packet) < _BLOCK:
            return wg_packet

        first_block = self._block.encrypt(wg_packet[:_BLOCK])
        if wg_packet[0] not in HANDSHAKE_MESSAGE_TYPES:
            return first_block + wg_packet[_BLOCK:]

        rear_headroom = max_packet_size - len(wg_packet)
        padding_headroom = rear_headroom - HANDSHAKE_PACKET_MINIMUM_OVERHEAD
        if padding_headroom < 0:
            raise PacketSizeError(
                f"handshake packet (length {len(wg_packet)}) is too large "
                f"to process in buffer (length {max_packet_size})"
            )
        padding_len = random_padding_length(padding_headroom)

        payload = wg_packet[_BLOCK:]
        plaintext = payload + bytes(padding_len) + _LENGTH.pack(len(payload))
        nonce = os.urandom(XNONCE_SIZE)
        cipher = ChaCha20_Poly1305.new(key=self._psk, nonce=nonce)
        ciphertext, tag = cipher.encrypt_and_digest(plaintext)
        return first_block + ciphertext + tag + nonce

    def decrypt(self, swgp_packet: bytes) -> bytes:
        swgp_packet = bytes(swgp_packet)
        if len(swgp_packet) < _BLOCK:
            return swgp_packet

        first_block = self._block.decrypt(swgp_packet[:_BLOCK])
        if first_block[0] not in HANDSHAKE_MESSAGE_TYPES:
            return first_block + swgp_packet[_BLOCK:]

        if len(swgp_packet) < _BLOCK + HANDSHAKE_PACKET_MINIMUM_OVERHEAD:
            raise PacketSizeError(f"swgp packet too short: {len(swgp_packet)}")

        nonce = swgp_packet[-XNONCE_SIZE:]
        tag = swgp_packet[-XNONCE_SIZE - AEAD_OVERHEAD : -XNONCE_SIZE]
        ciphertext = swgp_packet[_BLOCK : -XNONCE_SIZE - AEAD_OVERHEAD]
        cipher = ChaCha20_Poly1305.new(key=self._psk, nonce=nonce)
        try:
            plaintext = cipher.decrypt_and_verify(ciphertext, tag)
        except ValueError as exc:
            raise HandlerError("failed to authenticate swgp packet") from exc

        (payload_length,) = _LENGTH.unpack_from(plaintext, len(plaintext) - _LENGTH.size)
        if payload_length > len(plaintext) - _LENGTH.size:
            raise PayloadLengthError(
                f"payload length field value {payload_length} is out of range"
            )
        return first_block + plaintext[:payload_length]