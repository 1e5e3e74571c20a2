import ipaddress

import pytest

from wgtunnel.allowedips import AllowedIPs, common_bits


@pytest.mark.parametrize(
    "s1, s2, match",
    [
        (bytes([1, 4, 53, 128]), bytes([0, 0, 0, 0]), 7),
        (bytes([0, 4, 53, 128]), bytes([0, 0, 0, 0]), 13),
        (bytes([0, 4, 53, 253]), bytes([0, 4, 53, 252]), 31),
        (bytes([192, 168, 1, 1]), bytes([192, 169, 1, 1]), 15),
        (bytes([65, 168, 1, 1]), bytes([192, 169, 1, 1]), 0),
    ],
)
def test_common_bits(s1, s2, match):
    assert common_bits(s1, s2) == match


def test_common_bits_wrong_size():
    with pytest.raises(ValueError):
        common_bits(b"\x01\x02", b"\x01\x02")


def _v4(table, peer, a, b, c, d, cidr):
    table.insert(f"{a}.{b}.{c}.{d}/{cidr}", peer)


def _lookup4(table, a, b, c, d):
    return table.lookup(bytes([a, b, c, d]))


def test_trie_ipv4():
    a, b, c, d, e, g, h = (object() for _ in range(7))
    table = AllowedIPs()

    _v4(table, a, 192, 168, 4, 0, 24)
    _v4(table, b, 192, 168, 4, 4, 32)
    _v4(table, c, 192, 168, 0, 0, 16)
    _v4(table, d, 192, 95, 5, 64, 27)
    _v4(table, c, 192, 95, 5, 65, 27)
    _v4(table, e, 0, 0, 0, 0, 0)
    _v4(table, g, 64, 15, 112, 0, 20)
    _v4(table, h, 64, 15, 123, 211, 25)
    _v4(table, a, 10, 0, 0, 0, 25)
    _v4(table, b, 10, 0, 0, 128, 25)
    _v4(table, a, 10, 1, 0, 0, 30)
    _v4(table, b, 10, 1, 0, 4, 30)
    _v4(table, c, 10, 1, 0, 8, 29)
    _v4(table, d, 10, 1, 0, 16, 29)

    assert _lookup4(table, 192, 168, 4, 20) is a
    assert _lookup4(table, 192, 168, 4, 0) is a
    assert _lookup4(table, 192, 168, 4, 4) is b
    assert _lookup4(table, 192, 168, 200, 182) is c
    assert _lookup4(table, 192, 95, 5, 68) is c
    assert _lookup4(table, 192, 95, 5, 96) is e
    assert _lookup4(table, 64, 15, 116, 26) is g
    assert _lookup4(table, 64, 15, 127, 3) is g

    for first in (1, 64, 128, 192, 255):
        _v4(table, a, first, 0, 0, 0, 32)
    for first in (1, 64, 128, 192, 255):
        assert _lookup4(table, first, 0, 0, 0) is a

    table.remove_by_peer(a)
    for first in (1, 64, 128, 192, 255):
        assert _lookup4(table, first, 0, 0, 0) is not a

    for peer in (a, b, c, d, e, g, h):
        table.remove_by_peer(peer)
    assert table.is_empty()

    _v4(table, a, 192, 168, 0, 0, 16)
    _v4(table, a, 192, 168, 0, 0, 24)
    table.remove_by_peer(a)
    assert _lookup4(table, 192, 168, 0, 1) is not a
    assert table.is_empty()


def _v6bytes(w0, w1, w2, w3):
    return b"".join(w.to_bytes(4, "big") for w in (w0, w1, w2, w3))


def test_trie_ipv6():
    a, b, c, d, e, f, g, h = (object() for _ in range(8))
    table = AllowedIPs()

    def insert(peer, w0, w1, w2, w3, cidr):
        table.insert(ipaddress.IPv6Network((_v6bytes(w0, w1, w2, w3), cidr), strict=False), peer)

    def lookup(w0, w1, w2, w3):
        return table.lookup(_v6bytes(w0, w1, w2, w3))

    insert(d, 0x26075300, 0x60006B00, 0, 0xC05F0543, 128)
    insert(c, 0x26075300, 0x60006B00, 0, 0, 64)
    insert(e, 0, 0, 0, 0, 0)
    insert(f, 0, 0, 0, 0, 0)
    insert(g, 0x24046800, 0, 0, 0, 32)
    insert(h, 0x24046800, 0x40040800, 0xDEADBEEF, 0xDEADBEEF, 64)
    insert(a, 0x24046800, 0x40040800, 0xDEADBEEF, 0xDEADBEEF, 128)
    insert(c, 0x24446800, 0x40E40800, 0xDEAEBEEF, 0xDEFBEEF, 128)
    insert(b, 0x24446800, 0xF0E40800, 0xEEAEBEEF, 0, 98)

    assert lookup(0x26075300, 0x60006B00, 0, 0xC05F0543) is d
    assert lookup(0x26075300, 0x60006B00, 0, 0xC02E01EE) is c
    assert lookup(0x26075300, 0x60006B01, 0, 0) is f
    assert lookup(0x24046800, 0x40040806, 0, 0x1006) is g
    assert lookup(0x24046800, 0x40040806, 0x1234, 0x5678) is g
    assert lookup(0x240467FF, 0x40040806, 0x1234, 0x5678) is f
    assert lookup(0x24046801, 0x40040806, 0x1234, 0x5678) is f
    assert lookup(0x24046800, 0x40040800, 0x1234, 0x5678) is h
    assert lookup(0x24046800, 0x40040800, 0, 0) is h
    assert lookup(0x24046800, 0x40040800, 0x10101010, 0x10101010) is h
    assert lookup(0x24046800, 0x40040800, 0xDEADBEEF, 0xDEADBEEF) is a


def test_entries_for_peer_in_insertion_order():
    a, b = object(), object()
    table = AllowedIPs()
    table.insert("192.168.4.0/24", a)
    table.insert("10.0.0.0/25", a)
    table.insert("2001:db8::/32", b)
    assert table.entries_for_peer(a) == [
        ipaddress.IPv4Network("192.168.4.0/24"),
        ipaddress.IPv4Network("10.0.0.0/25"),
    ]
    assert table.entries_for_peer(b) == [ipaddress.IPv6Network("2001:db8::/32")]


def test_exact_prefix_moves_to_new_peer():
    a, b = object(), object()
    table = AllowedIPs()
    table.insert("10.0.0.0/8", a)
    table.insert("10.0.0.0/8", b)
    assert table.lookup("10.1.2.3") is b
    assert table.entries_for_peer(a) == []
    assert table.entries_for_peer(b) == [ipaddress.IPv4Network("10.0.0.0/8")]


def test_entries_are_masked():
    a = object()
    table = AllowedIPs()
    table.insert("192.95.5.65/27", a)
    assert table.entries_for_peer(a) == [ipaddress.IPv4Network("192.95.5.64/27")]


def test_lookup_missing_and_bad_length():
    table = AllowedIPs()
    assert table.lookup(b"\x01\x02\x03\x04") is None
    with pytest.raises(ValueError):
        table.lookup(b"\x01\x02\x03")


def test_families_are_separate():
    a = object()
    table = AllowedIPs()
    table.insert("::/0", a)
    assert table.lookup("10.0.0.1") is None
    assert table.lookup("::1") is a