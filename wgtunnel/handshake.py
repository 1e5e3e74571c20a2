"""Noise IKpsk2 handshake state machine and session keypair rotation."""

from __future__ import annotations

import enum
import hashlib
import struct
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from nacl.bindings import (
    crypto_aead_chacha20poly1305_ietf_decrypt,
    crypto_aead_chacha20poly1305_ietf_encrypt,
)
from nacl.exceptions import CryptoError

from wgtunnel.constants import HANDSHAKE_INITIATION_RATE, MAX_PEERS, REJECT_AFTER_MESSAGES
from wgtunnel.cookie import CookieChecker
from wgtunnel.indextable import IndexTable
from wgtunnel.keys import (
    BLAKE2S_SIZE,
    InvalidPublicKeyError,
    NoisePresharedKey,
    NoisePrivateKey,
    NoisePublicKey,
    is_zero,
    kdf1,
    kdf2,
    kdf3,
)
from wgtunnel.logger import Logger
from wgtunnel.messages import (
    NOISE_CONSTRUCTION,
    TAI64N_TIMESTAMP_SIZE,
    WG_IDENTIFIER,
    MessageInitiation,
    MessageResponse,
    MessageType,
)

Clock = Callable[[], float]

_TAI64N_BASE = 0x400000000000000A
_WHITENER_MASK = 0x1000000 - 1
_ZERO_NONCE = bytes(12)


def tai64n_now() -> bytes:
    """Return the current time as a 12-byte TAI64N label, low nanosecond bits masked."""
    secs, nanos = divmod(time.time_ns(), 1_000_000_000)
    nanos &= ~_WHITENER_MASK
    return struct.pack(">QI", _TAI64N_BASE + secs, nanos)


def _mix_hash(h: bytes, data: bytes) -> bytes:
    digest = hashlib.blake2s()
    digest.update(bytes(h))
    digest.update(bytes(data))
    return digest.digest()


def _mix_key(c: bytes, data: bytes) -> bytes:
    return kdf1(c, data)


def _seal(key: bytes, plaintext: bytes, aad: bytes) -> bytes:
    return crypto_aead_chacha20poly1305_ietf_encrypt(bytes(plaintext), bytes(aad), _ZERO_NONCE, key)


def _open(key: bytes, ciphertext: bytes, aad: bytes) -> Optional[bytes]:
    try:
        return crypto_aead_chacha20poly1305_ietf_decrypt(
            bytes(ciphertext), bytes(aad), _ZERO_NONCE, key
        )
    except CryptoError:
        return None


INITIAL_CHAIN_KEY = hashlib.blake2s(NOISE_CONSTRUCTION.encode()).digest()
INITIAL_HASH = _mix_hash(INITIAL_CHAIN_KEY, WG_IDENTIFIER.encode())


class HandshakeState(enum.IntEnum):
    ZEROED = 0
    INITIATION_CREATED = 1
    INITIATION_CONSUMED = 2
    RESPONSE_CREATED = 3
    RESPONSE_CONSUMED = 4


class HandshakeError(Exception):
    """Raised when a handshake step is attempted in the wrong state."""


class Handshake:
    """Per-peer handshake transcript and key material."""

    def __init__(
        self,
        remote_static: Optional[bytes] = None,
        preshared_key: Optional[bytes] = None,
    ) -> None:
        self.lock = threading.RLock()
        self.state = HandshakeState.ZEROED
        self.hash = bytes(BLAKE2S_SIZE)
        self.chain_key = bytes(BLAKE2S_SIZE)
        self.preshared_key = NoisePresharedKey(preshared_key)
        self.local_ephemeral = NoisePrivateKey()
        self.local_index = 0
        self.remote_index = 0
        self.remote_static = NoisePublicKey(remote_static)
        self.remote_ephemeral = NoisePublicKey()
        self.precomputed_static_static = bytes(32)
        self.last_timestamp = bytes(TAI64N_TIMESTAMP_SIZE)
        self.last_initiation_consumption: Optional[float] = None
        self.last_sent_handshake: Optional[float] = None

    def clear(self) -> None:
        """Zero the ephemeral keys, transcript and local index."""
        with self.lock:
            self.local_ephemeral = NoisePrivateKey()
            self.remote_ephemeral = NoisePublicKey()
            self.chain_key = bytes(BLAKE2S_SIZE)
            self.hash = bytes(BLAKE2S_SIZE)
            self.local_index = 0
            self.state = HandshakeState.ZEROED

    def mix_hash(self, data: bytes) -> None:
        self.hash = _mix_hash(self.hash, data)

    def mix_key(self, data: bytes) -> None:
        self.chain_key = _mix_key(self.chain_key, data)


@dataclass(eq=False)
class Keypair:
    """Symmetric session keys derived from a completed handshake."""

    send_key: bytes
    receive_key: bytes
    is_initiator: bool
    created: float
    local_index: int = 0
    remote_index: int = 0
    send_nonce: int = 0


@dataclass(eq=False)
class Keypairs:
    """The previous, current and next session keypairs of a peer."""

    current_keypair: Optional[Keypair] = None
    previous: Optional[Keypair] = None
    next: Optional[Keypair] = None
    lock: threading.RLock = field(default_factory=threading.RLock)

    def current(self) -> Optional[Keypair]:
        with self.lock:
            return self.current_keypair


class NoisePeer:
    """A remote party known by its static public key."""

    def __init__(
        self, device: "NoiseDevice", pk: bytes, preshared_key: Optional[bytes] = None
    ) -> None:
        self.device = device
        self.handshake = Handshake(pk, preshared_key)
        self.keypairs = Keypairs()
        self.is_running = True

    def __repr__(self) -> str:
        return f"NoisePeer({bytes(self.handshake.remote_static).hex()[:16]}…)"

    def begin_symmetric_session(self) -> Keypair:
        """Derive a keypair from the finished handshake and rotate it in."""
        device = self.device
        handshake = self.handshake
        with handshake.lock:
            if handshake.state == HandshakeState.RESPONSE_CONSUMED:
                send_key, recv_key = kdf2(handshake.chain_key, b"")
                is_initiator = True
            elif handshake.state == HandshakeState.RESPONSE_CREATED:
                recv_key, send_key = kdf2(handshake.chain_key, b"")
                is_initiator = False
            else:
                raise HandshakeError(
                    f"invalid state for keypair derivation: {handshake.state.name}"
                )

            handshake.chain_key = bytes(BLAKE2S_SIZE)
            handshake.hash = bytes(BLAKE2S_SIZE)
            handshake.local_ephemeral = NoisePrivateKey()
            handshake.state = HandshakeState.ZEROED

            keypair = Keypair(
                send_key=send_key,
                receive_key=recv_key,
                is_initiator=is_initiator,
                created=device.clock(),
                local_index=handshake.local_index,
                remote_index=handshake.remote_index,
            )

            device.index_table.swap_index_for_keypair(handshake.local_index, keypair)
            handshake.local_index = 0

            keypairs = self.keypairs
            with keypairs.lock:
                previous = keypairs.previous
                nxt = keypairs.next
                current = keypairs.current_keypair
                if is_initiator:
                    if nxt is not None:
                        keypairs.next = None
                        keypairs.previous = nxt
                        device.delete_keypair(current)
                    else:
                        keypairs.previous = current
                    device.delete_keypair(previous)
                    keypairs.current_keypair = keypair
                else:
                    keypairs.next = keypair
                    device.delete_keypair(nxt)
                    keypairs.previous = None
                    device.delete_keypair(previous)
            return keypair

    def received_with_keypair(self, keypair: Keypair) -> bool:
        """Promote keypair from next to current on first use; report whether it was."""
        keypairs = self.keypairs
        with keypairs.lock:
            if keypairs.next is not keypair:
                return False
            old = keypairs.previous
            keypairs.previous = keypairs.current_keypair
            self.device.delete_keypair(old)
            keypairs.current_keypair = keypairs.next
            keypairs.next = None
            return True

    def _expire_current_keypairs(self) -> None:
        with self.keypairs.lock:
            for keypair in (self.keypairs.current_keypair, self.keypairs.next):
                if keypair is not None:
                    keypair.send_nonce = REJECT_AFTER_MESSAGES


class NoiseDevice:
    """Static identity, peers and index table: the handshake side of a device."""

    def __init__(
        self,
        logger: Optional[Logger] = None,
        clock: Clock = time.monotonic,
        index_table: Optional[IndexTable] = None,
    ) -> None:
        self.log = logger or Logger()
        self.clock = clock
        self.index_table = index_table or IndexTable()
        self.cookie_checker = CookieChecker()
        self._lock = threading.RLock()
        self.private_key = NoisePrivateKey()
        self.public_key = NoisePublicKey()
        self._peers: Dict[bytes, NoisePeer] = {}

    def _precompute(self, peer: NoisePeer) -> None:
        try:
            ss = self.private_key.shared_secret(peer.handshake.remote_static)
        except InvalidPublicKeyError:
            ss = bytes(32)
        peer.handshake.precomputed_static_static = ss

    def set_private_key(self, sk: bytes) -> None:
        """Replace the static private key, dropping any peer that shares its public key."""
        sk = NoisePrivateKey(sk)
        with self._lock:
            if sk.equals(self.private_key):
                return
            public = sk.public_key()
            for key, peer in list(self._peers.items()):
                if peer.handshake.remote_static.equals(public):
                    self._remove_locked(key)
            self.private_key = sk
            self.public_key = public
            self.cookie_checker.init(public)
            expired = list(self._peers.values())
            for peer in expired:
                with peer.handshake.lock:
                    self._precompute(peer)
        for peer in expired:
            peer._expire_current_keypairs()

    def add_peer(self, pk: bytes, preshared_key: Optional[bytes] = None) -> NoisePeer:
        """Register a peer by its public key and return it."""
        pk = NoisePublicKey(pk)
        with self._lock:
            if bytes(pk) in self._peers:
                raise ValueError("adding existing peer")
            if len(self._peers) >= MAX_PEERS:
                raise ValueError("too many peers")
            peer = NoisePeer(self, pk, preshared_key)
            self._precompute(peer)
            self._peers[bytes(pk)] = peer
            return peer

    def lookup_peer(self, pk: bytes) -> Optional[NoisePeer]:
        with self._lock:
            return self._peers.get(bytes(pk))

    def _remove_locked(self, key: bytes) -> None:
        peer = self._peers.pop(key, None)
        if peer is not None:
            peer.is_running = False

    def remove_peer(self, pk: bytes) -> None:
        with self._lock:
            self._remove_locked(bytes(pk))

    def delete_keypair(self, keypair: Optional[Keypair]) -> None:
        """Release the index a keypair holds."""
        if keypair is not None:
            self.index_table.delete(keypair.local_index)

    def create_message_initiation(self, peer: NoisePeer) -> MessageInitiation:
        """Start a handshake with peer and return the initiation message."""
        with self._lock, peer.handshake.lock:
            handshake = peer.handshake
            handshake.hash = INITIAL_HASH
            handshake.chain_key = INITIAL_CHAIN_KEY
            handshake.local_ephemeral = NoisePrivateKey.generate()

            handshake.mix_hash(handshake.remote_static)
            ephemeral = handshake.local_ephemeral.public_key()
            handshake.mix_key(ephemeral)
            handshake.mix_hash(ephemeral)

            ss = handshake.local_ephemeral.shared_secret(handshake.remote_static)
            handshake.chain_key, key = kdf2(handshake.chain_key, ss)
            static = _seal(key, self.public_key, handshake.hash)
            handshake.mix_hash(static)

            if is_zero(handshake.precomputed_static_static):
                raise InvalidPublicKeyError()
            handshake.chain_key, key = kdf2(
                handshake.chain_key, handshake.precomputed_static_static
            )
            timestamp = _seal(key, tai64n_now(), handshake.hash)

            self.index_table.delete(handshake.local_index)
            sender = self.index_table.new_index_for_handshake(peer, handshake)
            handshake.local_index = sender

            handshake.mix_hash(timestamp)
            handshake.state = HandshakeState.INITIATION_CREATED
            return MessageInitiation(
                type=MessageType.INITIATION,
                sender=sender,
                ephemeral=ephemeral,
                static=static,
                timestamp=timestamp,
            )

    def consume_message_initiation(self, msg: MessageInitiation) -> Optional[NoisePeer]:
        """Process an initiation; return the peer it came from, or None if rejected."""
        if msg.type != MessageType.INITIATION:
            return None
        with self._lock:
            h = _mix_hash(INITIAL_HASH, self.public_key)
            h = _mix_hash(h, msg.ephemeral)
            chain_key = _mix_key(INITIAL_CHAIN_KEY, msg.ephemeral)

            try:
                ss = self.private_key.shared_secret(msg.ephemeral)
            except InvalidPublicKeyError:
                return None
            chain_key, key = kdf2(chain_key, ss)
            peer_pk = _open(key, msg.static, h)
            if peer_pk is None:
                return None
            h = _mix_hash(h, msg.static)

            peer = self.lookup_peer(peer_pk)
            if peer is None or not peer.is_running:
                return None
            handshake = peer.handshake

            with handshake.lock:
                if is_zero(handshake.precomputed_static_static):
                    return None
                chain_key, key = kdf2(chain_key, handshake.precomputed_static_static)
                timestamp = _open(key, msg.timestamp, h)
                if timestamp is None:
                    return None
                h = _mix_hash(h, msg.timestamp)

                now = self.clock()
                replay = not timestamp > handshake.last_timestamp
                last = handshake.last_initiation_consumption
                flood = last is not None and now - last <= HANDSHAKE_INITIATION_RATE
                if replay:
                    self.log.verbosef(
                        "%s - ConsumeMessageInitiation: handshake replay @ %s",
                        peer, timestamp.hex(),
                    )
                    return None
                if flood:
                    self.log.verbosef("%s - ConsumeMessageInitiation: handshake flood", peer)
                    return None

                handshake.hash = h
                handshake.chain_key = chain_key
                handshake.remote_index = msg.sender
                handshake.remote_ephemeral = NoisePublicKey(msg.ephemeral)
                if timestamp > handshake.last_timestamp:
                    handshake.last_timestamp = timestamp
                if last is None or now > last:
                    handshake.last_initiation_consumption = now
                handshake.state = HandshakeState.INITIATION_CONSUMED
            return peer

    def create_message_response(self, peer: NoisePeer) -> MessageResponse:
        """Answer a consumed initiation from peer."""
        handshake = peer.handshake
        with handshake.lock:
            if handshake.state != HandshakeState.INITIATION_CONSUMED:
                raise HandshakeError("handshake initiation must be consumed first")

            self.index_table.delete(handshake.local_index)
            handshake.local_index = self.index_table.new_index_for_handshake(peer, handshake)

            handshake.local_ephemeral = NoisePrivateKey.generate()
            ephemeral = handshake.local_ephemeral.public_key()
            handshake.mix_hash(ephemeral)
            handshake.mix_key(ephemeral)

            handshake.mix_key(handshake.local_ephemeral.shared_secret(handshake.remote_ephemeral))
            handshake.mix_key(handshake.local_ephemeral.shared_secret(handshake.remote_static))

            handshake.chain_key, tau, key = kdf3(handshake.chain_key, handshake.preshared_key)
            handshake.mix_hash(tau)

            empty = _seal(key, b"", handshake.hash)
            handshake.mix_hash(empty)
            handshake.state = HandshakeState.RESPONSE_CREATED
            return MessageResponse(
                type=MessageType.RESPONSE,
                sender=handshake.local_index,
                receiver=handshake.remote_index,
                ephemeral=ephemeral,
                empty=empty,
            )

    def consume_message_response(self, msg: MessageResponse) -> Optional[NoisePeer]:
        """Process a response to our initiation; return the peer, or None if rejected."""
        if msg.type != MessageType.RESPONSE:
            return None
        entry = self.index_table.lookup(msg.receiver)
        handshake = entry.handshake
        if handshake is None:
            return None

        with handshake.lock:
            if handshake.state != HandshakeState.INITIATION_CREATED:
                return None
            with self._lock:
                h = _mix_hash(handshake.hash, msg.ephemeral)
                chain_key = _mix_key(handshake.chain_key, msg.ephemeral)
                try:
                    chain_key = _mix_key(
                        chain_key, handshake.local_ephemeral.shared_secret(msg.ephemeral)
                    )
                    chain_key = _mix_key(chain_key, self.private_key.shared_secret(msg.ephemeral))
                except InvalidPublicKeyError:
                    return None
                chain_key, tau, key = kdf3(chain_key, handshake.preshared_key)
                h = _mix_hash(h, tau)
                if _open(key, msg.empty, h) is None:
                    return None
                h = _mix_hash(h, msg.empty)

            handshake.hash = h
            handshake.chain_key = chain_key
            handshake.remote_index = msg.sender
            handshake.state = HandshakeState.RESPONSE_CONSUMED
        return entry.peer