import ipaddress
import struct

import pytest

from wgtunnel.conn import (
    IP_PKTINFO,
    IPPROTO_IP,
    IPPROTO_IPV6,
    IPV6_PKTINFO,
    SOL_UDP,
    UDP_GRO,
    UDP_SEGMENT,
)
from wgtunnel.sticky import (
    CMSGHDR_SIZE,
    INET4_PKTINFO_SPACE,
    INET6_PKTINFO_SPACE,
    StdNetEndpoint,
    build_pktinfo,
    get_gso_size,
    get_src_from_control,
    pack_control_message,
    parse_control_messages,
    set_gso_size,
    set_src_control,
)


def _with_src(ep, addr, ifidx):
    ep.src = build_pktinfo(addr, ifidx)
    return ep


def test_set_src_control_ipv4():
    ep = _with_src(StdNetEndpoint("127.0.0.1", 1234), "127.0.0.1", 5)
    control = set_src_control(ep, INET6_PKTINFO_SPACE)
    (level, type_, data), = list(parse_control_messages(control))
    assert level == IPPROTO_IP
    assert type_ == IP_PKTINFO
    assert len(data) == 12
    ifindex, spec_dst, _ = struct.unpack("=i4s4s", data[:12])
    assert spec_dst == bytes([127, 0, 0, 1])
    assert ifindex == 5


def test_set_src_control_ipv6():
    ep = _with_src(StdNetEndpoint("::1", 1234), "::1", 5)
    control = set_src_control(ep, INET6_PKTINFO_SPACE)
    (level, type_, data), = list(parse_control_messages(control))
    assert level == IPPROTO_IPV6
    assert type_ == IPV6_PKTINFO
    assert len(data) == 20
    addr, ifindex = struct.unpack("=16sI", data[:20])
    assert addr == ep.src_ip().packed
    assert ifindex == 5


def test_set_src_control_clear_on_no_src():
    assert set_src_control(StdNetEndpoint(), INET6_PKTINFO_SPACE) == b""


def test_set_src_control_too_small():
    ep = _with_src(StdNetEndpoint("::1", 1), "::1", 5)
    assert set_src_control(ep, INET4_PKTINFO_SPACE) is None


def test_get_src_from_control_ipv4():
    control = build_pktinfo("127.0.0.1", 5).ljust(INET6_PKTINFO_SPACE, b"\0")
    ep = StdNetEndpoint()
    get_src_from_control(control, ep)
    assert ep.src_ip() == ipaddress.ip_address("127.0.0.1")
    assert ep.src_ifidx() == 5
    assert ep.src_to_string() == "127.0.0.1"


def test_get_src_from_control_ipv6():
    control = build_pktinfo("::1", 5)
    ep = StdNetEndpoint()
    get_src_from_control(control, ep)
    assert ep.src_ip() == ipaddress.ip_address("::1")
    assert ep.src_ifidx() == 5


def test_get_src_from_control_clear_on_empty():
    ep = _with_src(StdNetEndpoint(), "::1", 5)
    get_src_from_control(b"", ep)
    assert ep.src_ip() is None
    assert ep.src_ifidx() == 0
    assert ep.src_to_string() == ""


def test_get_src_from_control_multiple():
    zero = pack_control_message(0, 0, b"")
    assert len(zero) == CMSGHDR_SIZE
    combined = zero + build_pktinfo("127.0.0.1", 5)
    ep = StdNetEndpoint()
    get_src_from_control(combined, ep)
    assert ep.src_ip() == ipaddress.ip_address("127.0.0.1")
    assert ep.src_ifidx() == 5


def test_get_src_from_control_malformed_clears():
    ep = _with_src(StdNetEndpoint(), "127.0.0.1", 5)
    bad = struct.pack("=" + ("Q" if CMSGHDR_SIZE == 16 else "I") + "ii", 999, 0, 8)
    get_src_from_control(bad + bytes(8), ep)
    assert ep.src == b""


def test_parse_control_messages_malformed():
    header_fmt = "=" + ("Q" if CMSGHDR_SIZE == 16 else "I") + "ii"
    bad = struct.pack(header_fmt, 2, 0, 0) + bytes(4)
    with pytest.raises(ValueError):
        list(parse_control_messages(bad))


def test_get_gso_size():
    control = pack_control_message(SOL_UDP, UDP_GRO, struct.pack("=H", 1200))
    assert get_gso_size(control) == 1200
    assert get_gso_size(b"") == 0
    assert get_gso_size(build_pktinfo("127.0.0.1", 1)) == 0


def test_get_gso_size_malformed_raises():
    header_fmt = "=" + ("Q" if CMSGHDR_SIZE == 16 else "I") + "ii"
    bad = struct.pack(header_fmt, 4096, SOL_UDP, UDP_GRO) + bytes(4)
    with pytest.raises(ValueError):
        get_gso_size(bad)


def test_set_gso_size_appends_segment():
    existing = build_pktinfo("127.0.0.1", 3)
    control = set_gso_size(existing, 1400, 256)
    assert control.startswith(existing)
    messages = list(parse_control_messages(control))
    assert messages[1][0] == SOL_UDP
    assert messages[1][1] == UDP_SEGMENT
    assert struct.unpack("=H", messages[1][2][:2])[0] == 1400


def test_set_gso_size_without_room_is_unchanged():
    existing = build_pktinfo("127.0.0.1", 3)
    assert set_gso_size(existing, 1400, len(existing)) == existing


def test_endpoint_dst_forms():
    ep4 = StdNetEndpoint("127.0.0.1", 1234)
    assert ep4.dst_to_string() == "127.0.0.1:1234"
    assert ep4.dst_to_bytes() == bytes([127, 0, 0, 1]) + (1234).to_bytes(2, "little")
    assert ep4.dst_ip() == ipaddress.ip_address("127.0.0.1")
    ep6 = StdNetEndpoint("::1", 51820)
    assert ep6.dst_to_string() == "[::1]:51820"
    assert len(ep6.dst_to_bytes()) == 18


def test_endpoint_clear_src():
    ep = _with_src(StdNetEndpoint("127.0.0.1", 1), "127.0.0.1", 2)
    assert ep.src_ifidx() == 2
    ep.clear_src()
    assert ep.src == b""
    assert ep.src_ip() is None


def test_endpoint_rejects_bad_port():
    with pytest.raises(ValueError):
        StdNetEndpoint("127.0.0.1", 65536)