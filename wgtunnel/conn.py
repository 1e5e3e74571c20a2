"""Network bind and endpoint interfaces plus socket helpers for UDP listeners."""

from __future__ import annotations

import abc
import errno
import functools
import socket
import struct
import sys
from contextlib import suppress
from ipaddress import IPv4Address, IPv6Address
from typing import Callable, List, Optional, Sequence, Tuple, Union

IDEAL_BATCH_SIZE = 128  # maximum number of packets handled per read and write

# UDP socket read/write buffer size (7MB), the largest a default macOS allows.
SOCKET_BUFFER_SIZE = 7 << 20

IPAddress = Union[IPv4Address, IPv6Address]

_IS_ANDROID = hasattr(sys, "getandroidapilevel") or sys.platform == "android"
_IS_LINUX = sys.platform.startswith("linux") or _IS_ANDROID
_IS_WINDOWS = sys.platform.startswith("win")

# Linux socket option numbers, fixed by the kernel ABI.
IPPROTO_IP = 0
IPPROTO_IPV6 = 41
IP_PKTINFO = 8
IPV6_RECVPKTINFO = 49
IPV6_PKTINFO = 50
SOL_UDP = 17
UDP_SEGMENT = 103
UDP_GRO = 104
SO_SNDBUFFORCE = 32
SO_RCVBUFFORCE = 33


class BindAlreadyOpenError(Exception):
    """Raised when opening a bind that is already open."""

    def __init__(self, message: str = "bind is already open") -> None:
        super().__init__(message)


class WrongEndpointTypeError(TypeError):
    """Raised when an endpoint does not belong to the bind it is used with."""

    def __init__(
        self, message: str = "endpoint type does not correspond with bind type"
    ) -> None:
        super().__init__(message)


class Endpoint(abc.ABC):
    """Source/destination cache for a peer.

    dst is the remote address of the peer; src is the local address from
    which datagrams going to that peer originate.
    """

    @abc.abstractmethod
    def clear_src(self) -> None:
        """Forget the cached source address."""

    @abc.abstractmethod
    def src_to_string(self) -> str:
        """Return the local source address."""

    @abc.abstractmethod
    def dst_to_string(self) -> str:
        """Return the destination address as ip:port."""

    @abc.abstractmethod
    def dst_to_bytes(self) -> bytes:
        """Return the destination in binary form, used for mac2 cookies."""

    @abc.abstractmethod
    def dst_ip(self) -> Optional[IPAddress]:
        """Return the destination IP address."""

    @abc.abstractmethod
    def src_ip(self) -> Optional[IPAddress]:
        """Return the cached source IP address, or None."""


# A receive function fills packets, sizes and endpoints and returns how many
# entries are valid. Entries with a size of zero are to be ignored.
ReceiveFunc = Callable[
    [Sequence[bytearray], List[int], List[Optional[Endpoint]]], int
]


class Bind(abc.ABC):
    """Listens on a port for both IPv4 and IPv6 UDP traffic."""

    @abc.abstractmethod
    def open(self, port: int) -> Tuple[List[ReceiveFunc], int]:
        """Start listening; port 0 picks a random one. Returns (fns, actual_port)."""

    @abc.abstractmethod
    def close(self) -> None:
        """Stop listening. Receive functions must then raise a closed error."""

    @abc.abstractmethod
    def set_mark(self, mark: int) -> None:
        """Set the firewall mark for every packet sent through this bind."""

    @abc.abstractmethod
    def send(self, bufs: Sequence[bytes], endpoint: Endpoint) -> None:
        """Send the packets in bufs to endpoint."""

    @abc.abstractmethod
    def parse_endpoint(self, s: str) -> Endpoint:
        """Create an endpoint from a string."""

    @abc.abstractmethod
    def batch_size(self) -> int:
        """Number of buffers passed to receive functions and to send."""


_ANONYMOUS_PARTS = ("<lambda>", "<locals>", "<genexpr>")


def pretty_name(fn: Callable) -> str:
    """Return a short human-readable name for a receive function."""
    while isinstance(fn, functools.partial):
        fn = fn.func
    qualname = getattr(fn, "__qualname__", "")
    parts = [part for part in qualname.split(".") if part]
    while parts and parts[-1] in _ANONYMOUS_PARTS:
        parts.pop()
    name = parts[-1] if parts else ""
    if not name:
        return f"0x{id(fn):x}"
    lowered = name.lower()
    if lowered.endswith("ipv4"):
        return "v4"
    if lowered.endswith("ipv6"):
        return "v6"
    return name


def _set_buffer_sizes(network: str, sock: socket.socket) -> None:
    for option in (socket.SO_RCVBUF, socket.SO_SNDBUF):
        with suppress(OSError):
            sock.setsockopt(socket.SOL_SOCKET, option, SOCKET_BUFFER_SIZE)


def _force_buffer_sizes(network: str, sock: socket.socket) -> None:
    # Goes beyond net.core.{r,w}mem_max when CAP_NET_ADMIN is held; failure
    # only costs performance.
    for option in (SO_RCVBUFFORCE, SO_SNDBUFFORCE):
        with suppress(OSError):
            sock.setsockopt(socket.SOL_SOCKET, option, SOCKET_BUFFER_SIZE)


def _enable_pktinfo(network: str, sock: socket.socket) -> None:
    if network == "udp4":
        if not _IS_ANDROID:
            sock.setsockopt(IPPROTO_IP, IP_PKTINFO, 1)
    elif network == "udp6":
        if not _IS_ANDROID:
            sock.setsockopt(IPPROTO_IPV6, IPV6_RECVPKTINFO, 1)
        sock.setsockopt(IPPROTO_IPV6, socket.IPV6_V6ONLY, 1)
    else:
        raise OSError(errno.EINVAL, f"unhandled network: {network}")


def _enable_gro(network: str, sock: socket.socket) -> None:
    with suppress(OSError):
        sock.setsockopt(SOL_UDP, UDP_GRO, 1)


def _set_v6only(network: str, sock: socket.socket) -> None:
    if network == "udp6":
        sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 1)


if _IS_LINUX:
    _CONTROL_FNS = (_set_buffer_sizes, _force_buffer_sizes, _enable_pktinfo, _enable_gro)
elif _IS_WINDOWS:
    _CONTROL_FNS = (_set_buffer_sizes,)
else:
    _CONTROL_FNS = (_set_buffer_sizes, _set_v6only)

_FAMILIES = {"udp4": socket.AF_INET, "udp6": socket.AF_INET6}


def listen_socket(network: str, port: int) -> Tuple[socket.socket, int]:
    """Open a UDP socket for "udp4" or "udp6" on port; return it with its actual port."""
    family = _FAMILIES.get(network)
    if family is None:
        raise ValueError(f"unhandled network: {network}")
    if not 0 <= port <= 0xFFFF:
        raise ValueError(f"port out of range: {port}")
    sock = socket.socket(family, socket.SOCK_DGRAM)
    try:
        for control in _CONTROL_FNS:
            control(network, sock)
        sock.bind(("0.0.0.0" if family == socket.AF_INET else "::", port))
        actual_port = sock.getsockname()[1]
    except BaseException:
        sock.close()
        raise
    return sock, actual_port


def should_disable_udp_gso(err: BaseException) -> bool:
    """Report whether a send error means UDP segmentation offload must be turned off."""
    if not _IS_LINUX:
        return False
    # EIO comes back when the NIC lacks the tx checksumming UDP_SEGMENT needs.
    return isinstance(err, OSError) and err.errno == errno.EIO


def supports_udp_offload(sock: socket.socket) -> Tuple[bool, bool]:
    """Return (tx_offload, rx_offload) support for a UDP socket."""
    if not _IS_LINUX:
        return False, False
    try:
        sock.getsockopt(SOL_UDP, UDP_SEGMENT)
        tx_offload = True
    except OSError:
        tx_offload = False
    try:
        rx_offload = sock.getsockopt(SOL_UDP, UDP_GRO) == 1
    except OSError:
        rx_offload = False
    return tx_offload, rx_offload


def _fwmark_option() -> Optional[int]:
    if _IS_LINUX:
        return 36  # SO_MARK
    if sys.platform.startswith("freebsd"):
        return 0x1015  # SO_USER_COOKIE
    if sys.platform.startswith("openbsd"):
        return 0x1021  # SO_RTABLE
    return None


_FWMARK_OPTION = _fwmark_option()


def set_socket_mark(sock: socket.socket, mark: int) -> None:
    """Apply a firewall mark to sock; a no-op where the platform has none."""
    if not 0 <= mark <= 0xFFFFFFFF:
        raise ValueError(f"mark out of range: {mark}")
    if _FWMARK_OPTION is None:
        return
    sock.setsockopt(socket.SOL_SOCKET, _FWMARK_OPTION, struct.pack("=I", mark))