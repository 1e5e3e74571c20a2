"""Noise key types, Curve25519 operations and the BLAKE2s HMAC-based KDF."""

from __future__ import annotations

import binascii
import hashlib
import hmac
import os
from typing import Optional, Tuple

from nacl.bindings import crypto_scalarmult, crypto_scalarmult_base
from nacl.exceptions import CryptoError

NOISE_PUBLIC_KEY_SIZE = 32
NOISE_PRIVATE_KEY_SIZE = 32
NOISE_PRESHARED_KEY_SIZE = 32
BLAKE2S_SIZE = 32


class InvalidPublicKeyError(ValueError):
    """Raised when a Diffie-Hellman exchange yields the all-zero secret."""

    def __init__(self, message: str = "invalid public key") -> None:
        super().__init__(message)


def _load_exact_hex(src: str, size: int) -> bytes:
    try:
        raw = binascii.unhexlify(src)
    except (binascii.Error, TypeError) as exc:
        raise ValueError(f"invalid hex string: {exc}") from exc
    if len(raw) != size:
        raise ValueError("hex string does not fit the slice")
    return raw


def _constant_time_equal(a: bytes, b: bytes) -> bool:
    return hmac.compare_digest(bytes(a), bytes(b))


def is_zero(val: bytes) -> bool:
    """Report, in constant time, whether every byte of val is zero."""
    data = bytes(val)
    return hmac.compare_digest(data, bytes(len(data)))


def clamp(sk: bytes) -> bytes:
    """Return sk clamped as a Curve25519 scalar."""
    out = bytearray(sk)
    out[0] &= 248
    out[31] = (out[31] & 127) | 64
    return bytes(out)


class _Key(bytes):
    SIZE = 32

    def __new__(cls, data: Optional[bytes] = None):
        raw = bytes(cls.SIZE) if data is None else bytes(data)
        if len(raw) != cls.SIZE:
            raise ValueError(f"{cls.__name__} must be {cls.SIZE} bytes, got {len(raw)}")
        return super().__new__(cls, raw)


class NoisePublicKey(_Key):
    """A Curve25519 public key."""

    SIZE = NOISE_PUBLIC_KEY_SIZE

    @classmethod
    def from_hex(cls, src: str) -> "NoisePublicKey":
        """Build a public key from exactly 32 bytes of hex."""
        return cls(_load_exact_hex(src, cls.SIZE))

    def is_zero(self) -> bool:
        return is_zero(self)

    def equals(self, other: bytes) -> bool:
        """Compare with other in constant time."""
        return _constant_time_equal(self, other)


class NoisePresharedKey(_Key):
    """A symmetric preshared key mixed into the handshake."""

    SIZE = NOISE_PRESHARED_KEY_SIZE

    def __repr__(self) -> str:
        return "NoisePresharedKey(<hidden>)"

    @classmethod
    def from_hex(cls, src: str) -> "NoisePresharedKey":
        """Build a preshared key from exactly 32 bytes of hex."""
        return cls(_load_exact_hex(src, cls.SIZE))


class NoisePrivateKey(_Key):
    """A Curve25519 private key."""

    SIZE = NOISE_PRIVATE_KEY_SIZE

    def __repr__(self) -> str:
        return "NoisePrivateKey(<hidden>)"

    @classmethod
    def from_hex(cls, src: str) -> "NoisePrivateKey":
        """Build a clamped private key from hex."""
        return cls(clamp(_load_exact_hex(src, cls.SIZE)))

    @classmethod
    def from_maybe_zero_hex(cls, src: str) -> "NoisePrivateKey":
        """Build a private key from hex, leaving an all-zero key unclamped."""
        raw = _load_exact_hex(src, cls.SIZE)
        return cls(raw if is_zero(raw) else clamp(raw))

    @classmethod
    def generate(cls) -> "NoisePrivateKey":
        """Return a fresh random clamped private key."""
        return cls(clamp(os.urandom(cls.SIZE)))

    def is_zero(self) -> bool:
        return is_zero(self)

    def equals(self, other: bytes) -> bool:
        """Compare with other in constant time."""
        return _constant_time_equal(self, other)

    def public_key(self) -> NoisePublicKey:
        return NoisePublicKey(crypto_scalarmult_base(bytes(self)))

    def shared_secret(self, pk: bytes) -> bytes:
        """Return the X25519 shared secret with pk.

        Raises InvalidPublicKeyError when the result would be all zeros.
        """
        try:
            ss = crypto_scalarmult(bytes(self), bytes(pk))
        except CryptoError as exc:
            raise InvalidPublicKeyError() from exc
        if is_zero(ss):
            raise InvalidPublicKeyError()
        return ss


def hmac1(key: bytes, in0: bytes) -> bytes:
    """HMAC-BLAKE2s of in0 under key."""
    return hmac.new(bytes(key), bytes(in0), hashlib.blake2s).digest()


def hmac2(key: bytes, in0: bytes, in1: bytes) -> bytes:
    """HMAC-BLAKE2s of in0 followed by in1 under key."""
    mac = hmac.new(bytes(key), bytes(in0), hashlib.blake2s)
    mac.update(bytes(in1))
    return mac.digest()


def kdf1(key: bytes, data: bytes) -> bytes:
    """Derive one 32-byte output from key and data."""
    return hmac1(hmac1(key, data), b"\x01")


def kdf2(key: bytes, data: bytes) -> Tuple[bytes, bytes]:
    """Derive two 32-byte outputs from key and data."""
    prk = hmac1(key, data)
    t0 = hmac1(prk, b"\x01")
    t1 = hmac2(prk, t0, b"\x02")
    return t0, t1


def kdf3(key: bytes, data: bytes) -> Tuple[bytes, bytes, bytes]:
    """Derive three 32-byte outputs from key and data."""
    prk = hmac1(key, data)
    t0 = hmac1(prk, b"\x01")
    t1 = hmac2(prk, t0, b"\x02")
    t2 = hmac2(prk, t1, b"\x03")
    return t0, t1, t2