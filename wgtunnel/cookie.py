"""MAC1/MAC2 computation and cookie replies for handshake denial-of-service protection."""

from __future__ import annotations

import hashlib
import hmac
import os
import threading
import time
from typing import Callable, Optional, Tuple

from nacl.bindings import (
    crypto_aead_xchacha20poly1305_ietf_decrypt,
    crypto_aead_xchacha20poly1305_ietf_encrypt,
)
from nacl.exceptions import CryptoError

from wgtunnel.constants import COOKIE_REFRESH_TIME
from wgtunnel.messages import (
    BLAKE2S_SIZE_128,
    WG_LABEL_COOKIE,
    WG_LABEL_MAC1,
    XCHACHA_NONCE_SIZE,
    MessageCookieReply,
    MessageType,
)

Clock = Callable[[], float]


def _hash256(label: str, pk: bytes) -> bytes:
    h = hashlib.blake2s()
    h.update(label.encode())
    h.update(bytes(pk))
    return h.digest()


def _mac128(key: bytes, data: bytes) -> bytes:
    return hashlib.blake2s(bytes(data), digest_size=BLAKE2S_SIZE_128, key=bytes(key)).digest()


def _mac_offsets(msg: bytes) -> Tuple[int, int]:
    smac2 = len(msg) - BLAKE2S_SIZE_128
    smac1 = smac2 - BLAKE2S_SIZE_128
    if smac1 < 0:
        raise ValueError(f"message too short to carry macs: {len(msg)} bytes")
    return smac1, smac2


class _Timed:
    def __init__(self, clock: Clock) -> None:
        self._lock = threading.RLock()
        self._clock = clock

    def _expired(self, since: Optional[float]) -> bool:
        return since is None or self._clock() - since > COOKIE_REFRESH_TIME


class CookieChecker(_Timed):
    """Verifies macs on incoming handshake messages and issues cookie replies."""

    def __init__(self, clock: Clock = time.monotonic) -> None:
        super().__init__(clock)
        self._mac1_key = bytes(32)
        self._secret = bytes(32)
        self._secret_set: Optional[float] = None
        self._encryption_key = bytes(32)

    def init(self, pk: bytes) -> None:
        """Derive the mac1 and cookie encryption keys from our public key."""
        with self._lock:
            self._mac1_key = _hash256(WG_LABEL_MAC1, pk)
            self._encryption_key = _hash256(WG_LABEL_COOKIE, pk)
            self._secret_set = None

    def check_mac1(self, msg: bytes) -> bool:
        smac1, smac2 = _mac_offsets(msg)
        with self._lock:
            mac1 = _mac128(self._mac1_key, msg[:smac1])
        return hmac.compare_digest(mac1, bytes(msg[smac1:smac2]))

    def check_mac2(self, msg: bytes, src: bytes) -> bool:
        _, smac2 = _mac_offsets(msg)
        with self._lock:
            if self._expired(self._secret_set):
                return False
            cookie = _mac128(self._secret, src)
        mac2 = _mac128(cookie, msg[:smac2])
        return hmac.compare_digest(mac2, bytes(msg[smac2:]))

    def create_reply(self, msg: bytes, receiver: int, src: bytes) -> MessageCookieReply:
        """Build a cookie reply for msg, refreshing the cookie secret if it is stale."""
        smac1, smac2 = _mac_offsets(msg)
        with self._lock:
            if self._expired(self._secret_set):
                self._secret = os.urandom(32)
                self._secret_set = self._clock()
            cookie = _mac128(self._secret, src)
            key = self._encryption_key
        nonce = os.urandom(XCHACHA_NONCE_SIZE)
        sealed = crypto_aead_xchacha20poly1305_ietf_encrypt(
            cookie, bytes(msg[smac1:smac2]), nonce, key
        )
        return MessageCookieReply(
            type=MessageType.COOKIE_REPLY, receiver=receiver, nonce=nonce, cookie=sealed
        )


class CookieGenerator(_Timed):
    """Adds macs to outgoing handshake messages, using a cookie once one is received."""

    def __init__(self, clock: Clock = time.monotonic) -> None:
        super().__init__(clock)
        self._mac1_key = bytes(32)
        self._cookie = bytes(BLAKE2S_SIZE_128)
        self._cookie_set: Optional[float] = None
        self._last_mac1: Optional[bytes] = None
        self._encryption_key = bytes(32)

    def init(self, pk: bytes) -> None:
        """Derive the mac1 and cookie decryption keys from the peer's public key."""
        with self._lock:
            self._mac1_key = _hash256(WG_LABEL_MAC1, pk)
            self._encryption_key = _hash256(WG_LABEL_COOKIE, pk)
            self._cookie_set = None

    def consume_reply(self, reply: MessageCookieReply) -> bool:
        """Decrypt and store the cookie in reply; report whether it was accepted."""
        with self._lock:
            if self._last_mac1 is None:
                return False
            try:
                cookie = crypto_aead_xchacha20poly1305_ietf_decrypt(
                    bytes(reply.cookie), self._last_mac1, bytes(reply.nonce), self._encryption_key
                )
            except CryptoError:
                return False
            self._cookie_set = self._clock()
            self._cookie = cookie
            return True

    def add_macs(self, msg: bytearray) -> None:
        """Write mac1, and mac2 while a fresh cookie is held, into the tail of msg."""
        smac1, smac2 = _mac_offsets(msg)
        with self._lock:
            mac1 = _mac128(self._mac1_key, msg[:smac1])
            msg[smac1:smac2] = mac1
            self._last_mac1 = mac1
            if self._expired(self._cookie_set):
                return
            msg[smac2:] = _mac128(self._cookie, msg[:smac2])