"""Sticky-source endpoints and socket control message (cmsg) handling."""

from __future__ import annotations

import ipaddress
import struct
from dataclasses import dataclass
from typing import Iterator, Optional, Tuple, Union

from wgtunnel.conn import (
    IP_PKTINFO,
    IPPROTO_IP,
    IPPROTO_IPV6,
    IPV6_PKTINFO,
    SOL_UDP,
    UDP_GRO,
    UDP_SEGMENT,
    Endpoint,
    IPAddress,
    _IS_ANDROID,
    _IS_LINUX,
)

_ALIGN = struct.calcsize("N")
_HDR = struct.Struct("=" + ("Q" if _ALIGN == 8 else "I") + "ii")
_INET4_PKTINFO = struct.Struct("=i4s4s")  # ifindex, spec_dst, addr
_INET6_PKTINFO = struct.Struct("=16sI")  # addr, ifindex
_GSO = struct.Struct("=H")

CMSGHDR_SIZE = _HDR.size


def _align(n: int) -> int:
    return (n + _ALIGN - 1) & ~(_ALIGN - 1)


def _cmsg_len(n: int) -> int:
    return _align(CMSGHDR_SIZE) + n


def _cmsg_space(n: int) -> int:
    return _align(CMSGHDR_SIZE) + _align(n)


INET4_PKTINFO_SPACE = _cmsg_space(_INET4_PKTINFO.size)
INET6_PKTINFO_SPACE = _cmsg_space(_INET6_PKTINFO.size)

STICKY_SOCKETS_SUPPORTED = _IS_LINUX and not _IS_ANDROID
# Recommended buffer sizes for pooled sticky and UDP offload control data.
STICKY_CONTROL_SIZE = INET6_PKTINFO_SPACE if STICKY_SOCKETS_SUPPORTED else 0
GSO_CONTROL_SIZE = _cmsg_space(_GSO.size) if _IS_LINUX else 0


def parse_control_messages(control: bytes) -> Iterator[Tuple[int, int, bytes]]:
    """Yield (level, type, data) for each control message in control.

    Raises ValueError on a malformed header.
    """
    rem = bytes(control)
    data_start = _align(CMSGHDR_SIZE)
    while len(rem) > CMSGHDR_SIZE:
        length, level, type_ = _HDR.unpack_from(rem)
        if length < CMSGHDR_SIZE or length > len(rem):
            raise ValueError("malformed socket control message")
        yield level, type_, rem[data_start:length]
        aligned = _align(length)
        rem = rem[aligned:] if aligned < len(rem) else b""


def pack_control_message(level: int, type_: int, data: bytes) -> bytes:
    """Encode one control message, padded to its full aligned space."""
    header = _HDR.pack(_cmsg_len(len(data)), level, type_)
    body = header.ljust(_align(CMSGHDR_SIZE), b"\0") + bytes(data)
    return body.ljust(_cmsg_space(len(data)), b"\0")


def build_pktinfo(addr: Union[str, IPAddress], ifindex: int) -> bytes:
    """Encode an IP_PKTINFO or IPV6_PKTINFO control message for addr and ifindex."""
    ip = ipaddress.ip_address(addr)
    if ip.version == 4:
        data = _INET4_PKTINFO.pack(ifindex, ip.packed, bytes(4))
        return pack_control_message(IPPROTO_IP, IP_PKTINFO, data)
    data = _INET6_PKTINFO.pack(ip.packed, ifindex & 0xFFFFFFFF)
    return pack_control_message(IPPROTO_IPV6, IPV6_PKTINFO, data)


@dataclass(eq=False)
class StdNetEndpoint(Endpoint):
    """A UDP destination plus the cached PKTINFO control message of its source."""

    addr: Optional[IPAddress] = None
    port: int = 0
    src: bytes = b""

    def __post_init__(self) -> None:
        if isinstance(self.addr, str):
            self.addr = ipaddress.ip_address(self.addr)
        if not 0 <= self.port <= 0xFFFF:
            raise ValueError(f"port out of range: {self.port}")

    def clear_src(self) -> None:
        self.src = b""

    def dst_ip(self) -> Optional[IPAddress]:
        return self.addr

    def dst_to_bytes(self) -> bytes:
        out = b""
        if self.addr is not None:
            out = self.addr.packed
            scope = getattr(self.addr, "scope_id", None)
            if scope:
                out += scope.encode()
        return out + self.port.to_bytes(2, "little")

    def dst_to_string(self) -> str:
        if self.addr is None:
            return "invalid AddrPort"
        if self.addr.version == 6:
            return f"[{self.addr}]:{self.port}"
        return f"{self.addr}:{self.port}"

    def src_ip(self) -> Optional[IPAddress]:
        start = _align(CMSGHDR_SIZE)
        if len(self.src) == INET4_PKTINFO_SPACE:
            _, spec_dst, _ = _INET4_PKTINFO.unpack_from(self.src, start)
            return ipaddress.IPv4Address(spec_dst)
        if len(self.src) == INET6_PKTINFO_SPACE:
            raw, _ = _INET6_PKTINFO.unpack_from(self.src, start)
            return ipaddress.IPv6Address(raw)
        return None

    def src_ifidx(self) -> int:
        start = _align(CMSGHDR_SIZE)
        if len(self.src) == INET4_PKTINFO_SPACE:
            return _INET4_PKTINFO.unpack_from(self.src, start)[0]
        if len(self.src) == INET6_PKTINFO_SPACE:
            ifindex = _INET6_PKTINFO.unpack_from(self.src, start)[1]
            return ifindex - (1 << 32) if ifindex >= 1 << 31 else ifindex
        return 0

    def src_to_string(self) -> str:
        ip = self.src_ip()
        return "" if ip is None else str(ip)


def _stored_src(length: int, level: int, type_: int, data: bytes, space: int) -> bytes:
    header = _HDR.pack(length, level, type_).ljust(_align(CMSGHDR_SIZE), b"\0")
    return (header + data).ljust(space, b"\0")[:space]


def get_src_from_control(control: bytes, ep: StdNetEndpoint) -> None:
    """Store the first PKTINFO found in control as ep's source, clearing it first."""
    ep.clear_src()
    try:
        for level, type_, data in parse_control_messages(control):
            length = _align(CMSGHDR_SIZE) + len(data)
            if level == IPPROTO_IP and type_ == IP_PKTINFO:
                ep.src = _stored_src(length, level, type_, data, INET4_PKTINFO_SPACE)
                return
            if level == IPPROTO_IPV6 and type_ == IPV6_PKTINFO:
                ep.src = _stored_src(length, level, type_, data, INET6_PKTINFO_SPACE)
                return
    except ValueError:
        return


def set_src_control(ep: StdNetEndpoint, capacity: int) -> Optional[bytes]:
    """Return control data carrying ep's source, or None if it exceeds capacity.

    An endpoint without a source yields empty control data.
    """
    if capacity < len(ep.src):
        return None
    return bytes(ep.src)


def get_gso_size(control: bytes) -> int:
    """Return the UDP_GRO segment size found in control, or 0."""
    try:
        for level, type_, data in parse_control_messages(control):
            if level == SOL_UDP and type_ == UDP_GRO and len(data) >= _GSO.size:
                return _GSO.unpack_from(data)[0]
    except ValueError as exc:
        raise ValueError(f"error parsing socket control message: {exc}") from exc
    return 0


def set_gso_size(control: bytes, gso_size: int, capacity: int) -> bytes:
    """Append a UDP_SEGMENT message to control if capacity allows, else return it unchanged."""
    existing = bytes(control)
    if capacity - len(existing) < _cmsg_space(_GSO.size):
        return existing
    return existing + pack_control_message(SOL_UDP, UDP_SEGMENT, _GSO.pack(gso_size))