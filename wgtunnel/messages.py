"""Wire formats of the handshake, cookie reply and transport messages.

All integers are little-endian; the 8-bit message type is followed by three
zero bytes, so it is carried as a 32-bit field.
"""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass, field

from wgtunnel.keys import NOISE_PUBLIC_KEY_SIZE, NoisePublicKey

NOISE_CONSTRUCTION = "Noise_IKpsk2_25519_ChaChaPoly_BLAKE2s"
WG_IDENTIFIER = "WireGuard v1 zx2c4 [email]"
WG_LABEL_MAC1 = "mac1----"
WG_LABEL_COOKIE = "cookie--"

POLY1305_TAG_SIZE = 16
BLAKE2S_SIZE_128 = 16
XCHACHA_NONCE_SIZE = 24
TAI64N_TIMESTAMP_SIZE = 12


class MessageType(enum.IntEnum):
    INITIATION = 0x81
    RESPONSE = 0x92
    COOKIE_REPLY = 0x93
    TRANSPORT = 0xC4


MESSAGE_INITIATION_SIZE = 148  # size of handshake initiation message
MESSAGE_RESPONSE_SIZE = 92  # size of response message
MESSAGE_COOKIE_REPLY_SIZE = 64  # size of cookie reply message
MESSAGE_TRANSPORT_HEADER_SIZE = 16  # size of data preceding content in transport message
MESSAGE_TRANSPORT_SIZE = MESSAGE_TRANSPORT_HEADER_SIZE + POLY1305_TAG_SIZE  # empty transport
MESSAGE_KEEPALIVE_SIZE = MESSAGE_TRANSPORT_SIZE
MESSAGE_HANDSHAKE_SIZE = MESSAGE_INITIATION_SIZE  # largest handshake related message

MESSAGE_TRANSPORT_OFFSET_RECEIVER = 4
MESSAGE_TRANSPORT_OFFSET_COUNTER = 8
MESSAGE_TRANSPORT_OFFSET_CONTENT = 16

_STATIC_SIZE = NOISE_PUBLIC_KEY_SIZE + POLY1305_TAG_SIZE
_TIMESTAMP_SIZE = TAI64N_TIMESTAMP_SIZE + POLY1305_TAG_SIZE
_COOKIE_SIZE = BLAKE2S_SIZE_128 + POLY1305_TAG_SIZE

_INITIATION = struct.Struct(
    f"<II{NOISE_PUBLIC_KEY_SIZE}s{_STATIC_SIZE}s{_TIMESTAMP_SIZE}s"
    f"{BLAKE2S_SIZE_128}s{BLAKE2S_SIZE_128}s"
)
_RESPONSE = struct.Struct(
    f"<III{NOISE_PUBLIC_KEY_SIZE}s{POLY1305_TAG_SIZE}s{BLAKE2S_SIZE_128}s{BLAKE2S_SIZE_128}s"
)
_COOKIE_REPLY = struct.Struct(f"<II{XCHACHA_NONCE_SIZE}s{_COOKIE_SIZE}s")
_TRANSPORT_HEADER = struct.Struct("<IIQ")


def _check_bytes(name: str, value: bytes, size: int) -> bytes:
    raw = bytes(value)
    if len(raw) != size:
        raise ValueError(f"{name} must be {size} bytes, got {len(raw)}")
    return raw


def _check_uint(name: str, value: int, bits: int) -> int:
    if not 0 <= value < (1 << bits):
        raise ValueError(f"{name} out of range: {value}")
    return int(value)


def _check_length(cls_name: str, data: bytes, size: int) -> None:
    if len(data) != size:
        raise ValueError(f"{cls_name} must be {size} bytes, got {len(data)}")


@dataclass
class MessageInitiation:
    """First handshake message, sent by the initiator."""

    type: int = MessageType.INITIATION
    sender: int = 0
    ephemeral: bytes = field(default_factory=lambda: bytes(NOISE_PUBLIC_KEY_SIZE))
    static: bytes = field(default_factory=lambda: bytes(_STATIC_SIZE))
    timestamp: bytes = field(default_factory=lambda: bytes(_TIMESTAMP_SIZE))
    mac1: bytes = field(default_factory=lambda: bytes(BLAKE2S_SIZE_128))
    mac2: bytes = field(default_factory=lambda: bytes(BLAKE2S_SIZE_128))

    def __post_init__(self) -> None:
        self.type = _check_uint("type", self.type, 32)
        self.sender = _check_uint("sender", self.sender, 32)
        self.ephemeral = NoisePublicKey(self.ephemeral)
        self.static = _check_bytes("static", self.static, _STATIC_SIZE)
        self.timestamp = _check_bytes("timestamp", self.timestamp, _TIMESTAMP_SIZE)
        self.mac1 = _check_bytes("mac1", self.mac1, BLAKE2S_SIZE_128)
        self.mac2 = _check_bytes("mac2", self.mac2, BLAKE2S_SIZE_128)

    def to_bytes(self) -> bytes:
        return _INITIATION.pack(
            self.type, self.sender, bytes(self.ephemeral),
            self.static, self.timestamp, self.mac1, self.mac2,
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> "MessageInitiation":
        data = bytes(data)
        _check_length(cls.__name__, data, MESSAGE_INITIATION_SIZE)
        type_, sender, ephemeral, static, timestamp, mac1, mac2 = _INITIATION.unpack(data)
        return cls(type_, sender, ephemeral, static, timestamp, mac1, mac2)


@dataclass
class MessageResponse:
    """Second handshake message, sent by the responder."""

    type: int = MessageType.RESPONSE
    sender: int = 0
    receiver: int = 0
    ephemeral: bytes = field(default_factory=lambda: bytes(NOISE_PUBLIC_KEY_SIZE))
    empty: bytes = field(default_factory=lambda: bytes(POLY1305_TAG_SIZE))
    mac1: bytes = field(default_factory=lambda: bytes(BLAKE2S_SIZE_128))
    mac2: bytes = field(default_factory=lambda: bytes(BLAKE2S_SIZE_128))

    def __post_init__(self) -> None:
        self.type = _check_uint("type", self.type, 32)
        self.sender = _check_uint("sender", self.sender, 32)
        self.receiver = _check_uint("receiver", self.receiver, 32)
        self.ephemeral = NoisePublicKey(self.ephemeral)
        self.empty = _check_bytes("empty", self.empty, POLY1305_TAG_SIZE)
        self.mac1 = _check_bytes("mac1", self.mac1, BLAKE2S_SIZE_128)
        self.mac2 = _check_bytes("mac2", self.mac2, BLAKE2S_SIZE_128)

    def to_bytes(self) -> bytes:
        return _RESPONSE.pack(
            self.type, self.sender, self.receiver, bytes(self.ephemeral),
            self.empty, self.mac1, self.mac2,
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> "MessageResponse":
        data = bytes(data)
        _check_length(cls.__name__, data, MESSAGE_RESPONSE_SIZE)
        return cls(*_RESPONSE.unpack(data))


@dataclass
class MessageCookieReply:
    """Encrypted cookie sent back to a peer while under load."""

    type: int = MessageType.COOKIE_REPLY
    receiver: int = 0
    nonce: bytes = field(default_factory=lambda: bytes(XCHACHA_NONCE_SIZE))
    cookie: bytes = field(default_factory=lambda: bytes(_COOKIE_SIZE))

    def __post_init__(self) -> None:
        self.type = _check_uint("type", self.type, 32)
        self.receiver = _check_uint("receiver", self.receiver, 32)
        self.nonce = _check_bytes("nonce", self.nonce, XCHACHA_NONCE_SIZE)
        self.cookie = _check_bytes("cookie", self.cookie, _COOKIE_SIZE)

    def to_bytes(self) -> bytes:
        return _COOKIE_REPLY.pack(self.type, self.receiver, self.nonce, self.cookie)

    @classmethod
    def from_bytes(cls, data: bytes) -> "MessageCookieReply":
        data = bytes(data)
        _check_length(cls.__name__, data, MESSAGE_COOKIE_REPLY_SIZE)
        return cls(*_COOKIE_REPLY.unpack(data))


@dataclass
class MessageTransport:
    """Data message: header followed by encrypted content."""

    type: int = MessageType.TRANSPORT
    receiver: int = 0
    counter: int = 0
    content: bytes = b""

    def __post_init__(self) -> None:
        self.type = _check_uint("type", self.type, 32)
        self.receiver = _check_uint("receiver", self.receiver, 32)
        self.counter = _check_uint("counter", self.counter, 64)
        self.content = bytes(self.content)

    def to_bytes(self) -> bytes:
        return _TRANSPORT_HEADER.pack(self.type, self.receiver, self.counter) + self.content

    @classmethod
    def from_bytes(cls, data: bytes) -> "MessageTransport":
        data = bytes(data)
        if len(data) < MESSAGE_TRANSPORT_HEADER_SIZE:
            raise ValueError(
                f"{cls.__name__} needs at least {MESSAGE_TRANSPORT_HEADER_SIZE} bytes, "
                f"got {len(data)}"
            )
        type_, receiver, counter = _TRANSPORT_HEADER.unpack_from(data)
        return cls(type_, receiver, counter, data[MESSAGE_TRANSPORT_OFFSET_CONTENT:])