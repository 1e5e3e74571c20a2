import time

import pytest

from wgtunnel.handshake import (
    Handshake,
    HandshakeError,
    HandshakeState,
    NoiseDevice,
    tai64n_now,
)
from wgtunnel.keys import InvalidPublicKeyError, NoisePrivateKey
from wgtunnel.messages import (
    MESSAGE_INITIATION_SIZE,
    MESSAGE_RESPONSE_SIZE,
    MessageInitiation,
    MessageResponse,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def make_pair(psk_a=None, psk_b=None):
    clock = FakeClock()
    a, b = NoiseDevice(clock=clock), NoiseDevice(clock=clock)
    ska, skb = NoisePrivateKey.generate(), NoisePrivateKey.generate()
    a.set_private_key(ska)
    b.set_private_key(skb)
    peer_b_on_a = a.add_peer(skb.public_key(), psk_a)
    peer_a_on_b = b.add_peer(ska.public_key(), psk_b)
    return clock, a, b, peer_b_on_a, peer_a_on_b


def test_full_handshake_derives_matching_keys():
    _, a, b, pb, pa = make_pair()
    init = a.create_message_initiation(pb)
    wire = init.to_bytes()
    assert len(wire) == MESSAGE_INITIATION_SIZE
    consumed = b.consume_message_initiation(MessageInitiation.from_bytes(wire))
    assert consumed is pa
    resp = b.create_message_response(pa)
    assert resp.receiver == init.sender
    rwire = resp.to_bytes()
    assert len(rwire) == MESSAGE_RESPONSE_SIZE
    assert a.consume_message_response(MessageResponse.from_bytes(rwire)) is pb

    kp_a = pb.begin_symmetric_session()
    kp_b = pa.begin_symmetric_session()
    assert kp_a.is_initiator and not kp_b.is_initiator
    assert kp_a.send_key == kp_b.receive_key
    assert kp_a.receive_key == kp_b.send_key
    assert kp_a.remote_index == kp_b.local_index
    assert kp_b.remote_index == kp_a.local_index
    assert pb.keypairs.current() is kp_a
    assert pa.keypairs.current() is None
    assert pa.keypairs.next is kp_b
    assert pb.handshake.state == HandshakeState.ZEROED
    assert b.index_table.lookup(kp_b.local_index).keypair is kp_b


def test_received_with_keypair_promotes_next():
    _, a, b, pb, pa = make_pair()
    b.consume_message_initiation(a.create_message_initiation(pb))
    a.consume_message_response(b.create_message_response(pa))
    pb.begin_symmetric_session()
    kp_b = pa.begin_symmetric_session()
    assert pa.received_with_keypair(kp_b) is True
    assert pa.keypairs.current() is kp_b
    assert pa.keypairs.next is None
    assert pa.received_with_keypair(kp_b) is False


def test_replayed_initiation_rejected():
    clock, a, b, pb, pa = make_pair()
    init = a.create_message_initiation(pb)
    assert b.consume_message_initiation(init) is pa
    clock.now += 10
    assert b.consume_message_initiation(init) is None


def test_flood_rejected_then_accepted_later():
    clock, a, b, pb, pa = make_pair()
    assert b.consume_message_initiation(a.create_message_initiation(pb)) is pa
    time.sleep(0.05)
    assert b.consume_message_initiation(a.create_message_initiation(pb)) is None
    time.sleep(0.05)
    clock.now += 1
    assert b.consume_message_initiation(a.create_message_initiation(pb)) is pa


def test_wrong_type_and_tampering_rejected():
    _, a, b, pb, _ = make_pair()
    init = a.create_message_initiation(pb)
    wrong = MessageInitiation.from_bytes(init.to_bytes())
    wrong.type = 0x92
    assert b.consume_message_initiation(wrong) is None
    tampered = bytearray(init.to_bytes())
    tampered[40] ^= 1
    assert b.consume_message_initiation(MessageInitiation.from_bytes(bytes(tampered))) is None


def test_unknown_peer_rejected():
    _, a, b, pb, _ = make_pair()
    b.remove_peer(a.public_key)
    assert b.lookup_peer(a.public_key) is None
    assert b.consume_message_initiation(a.create_message_initiation(pb)) is None


def test_psk_mismatch_rejects_response():
    _, a, b, pb, pa = make_pair(psk_a=bytes([7]) * 32)
    b.consume_message_initiation(a.create_message_initiation(pb))
    resp = b.create_message_response(pa)
    assert a.consume_message_response(resp) is None
    assert pb.handshake.state == HandshakeState.INITIATION_CREATED


def test_response_with_unknown_receiver_rejected():
    _, a, _, _, _ = make_pair()
    assert a.consume_message_response(MessageResponse(receiver=12345)) is None


def test_response_before_initiation_raises():
    _, _, b, _, pa = make_pair()
    with pytest.raises(HandshakeError):
        b.create_message_response(pa)


def test_begin_session_in_zeroed_state_raises():
    _, _, _, pb, _ = make_pair()
    with pytest.raises(HandshakeError):
        pb.begin_symmetric_session()


def test_initiation_without_private_key_fails():
    dev = NoiseDevice()
    peer = dev.add_peer(NoisePrivateKey.generate().public_key())
    with pytest.raises(InvalidPublicKeyError):
        dev.create_message_initiation(peer)


def test_set_private_key_removes_peer_with_same_public_key():
    dev = NoiseDevice()
    sk = NoisePrivateKey.generate()
    dev.add_peer(sk.public_key())
    dev.set_private_key(sk)
    assert dev.lookup_peer(sk.public_key()) is None
    assert dev.public_key == sk.public_key()


def test_add_duplicate_peer_raises():
    dev = NoiseDevice()
    pk = NoisePrivateKey.generate().public_key()
    dev.add_peer(pk)
    with pytest.raises(ValueError):
        dev.add_peer(pk)


def test_delete_keypair_frees_index():
    _, a, b, pb, pa = make_pair()
    b.consume_message_initiation(a.create_message_initiation(pb))
    a.consume_message_response(b.create_message_response(pa))
    kp = pb.begin_symmetric_session()
    assert a.index_table.lookup(kp.local_index).keypair is kp
    a.delete_keypair(kp)
    assert a.index_table.lookup(kp.local_index).keypair is None


def test_handshake_clear_and_mixing():
    hs = Handshake()
    hs.mix_hash(b"data")
    hs.mix_key(b"data")
    assert hs.hash != bytes(32) and hs.chain_key != bytes(32)
    first = hs.hash
    hs.mix_hash(b"more")
    assert hs.hash != first
    hs.local_index = 9
    hs.state = HandshakeState.RESPONSE_CREATED
    hs.clear()
    assert hs.hash == bytes(32)
    assert hs.chain_key == bytes(32)
    assert hs.local_index == 0
    assert hs.state == HandshakeState.ZEROED


def test_tai64n_now_format():
    first = tai64n_now()
    second = tai64n_now()
    assert len(first) == 12
    assert int.from_bytes(first[:8], "big") > 0x400000000000000A
    assert second >= first
    assert int.from_bytes(first[8:], "big") < 1_000_000_000
    assert int.from_bytes(first[8:], "big") % 0x1000000 == 0