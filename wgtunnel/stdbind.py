"""A UDP bind over ordinary sockets, with UDP segmentation offload where available."""

from __future__ import annotations

import errno
import functools
import ipaddress
import os
import socket
import threading
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple, Union

from wgtunnel.conn import (
    IDEAL_BATCH_SIZE,
    Bind,
    BindAlreadyOpenError,
    Endpoint,
    IPAddress,
    ReceiveFunc,
    WrongEndpointTypeError,
    _IS_LINUX,
    listen_socket,
    set_socket_mark,
    should_disable_udp_gso,
    supports_udp_offload,
)
from wgtunnel.sticky import (
    GSO_CONTROL_SIZE,
    STICKY_CONTROL_SIZE,
    StdNetEndpoint,
    get_gso_size,
    get_src_from_control,
    pack_control_message,
    parse_control_messages,
    set_gso_size,
    set_src_control,
)

# Exceeding these results in EMSGSIZE. They account for layer 3 and layer 4
# headers; the IPv6 payload length field excludes the IPv6 header itself.
MAX_IPV4_PAYLOAD_LEN = (1 << 16) - 1 - 20 - 8
MAX_IPV6_PAYLOAD_LEN = (1 << 16) - 1 - 8

# Hard limit imposed by the kernel.
UDP_SEGMENT_MAX_DATAGRAMS = 64

_OOB_CAPACITY = STICKY_CONTROL_SIZE + GSO_CONTROL_SIZE

SetGSOFunc = Callable[[bytes, int], bytes]
GetGSOFunc = Callable[[bytes], int]


@dataclass(eq=False)
class Message:
    """One datagram slot: payload, control data and peer address.

    capacity bounds how far buffer may grow when datagrams are coalesced
    into it (None means no bound beyond the payload limit); oob_capacity
    bounds the control data.
    """

    buffer: Union[bytearray, memoryview] = field(default_factory=bytearray)
    oob: bytes = b""
    addr: Optional[tuple] = None
    n: int = 0
    nn: int = 0
    capacity: Optional[int] = None
    oob_capacity: int = _OOB_CAPACITY


class UDPGSODisabledError(Exception):
    """Raised after a send had to fall back from UDP segmentation offload."""

    def __init__(self, on_laddr: str, retry_err: Optional[BaseException] = None) -> None:
        super().__init__(
            f"disabled UDP GSO on {on_laddr}, NIC(s) may not support checksum offload"
        )
        self.on_laddr = on_laddr
        self.retry_err = retry_err


class _SplitOverflowError(ValueError):
    def __init__(self, evaluated: int) -> None:
        super().__init__("splitting coalesced packet resulted in overflow")
        self.evaluated = evaluated


def _parse_addr_port(s: str) -> Tuple[IPAddress, int]:
    if s.startswith("["):
        end = s.find("]")
        if end < 0 or s[end + 1 : end + 2] != ":":
            raise ValueError(f"invalid ip:port {s!r}")
        host, port_text, bracketed = s[1:end], s[end + 2 :], True
    else:
        host, sep, port_text = s.rpartition(":")
        if not sep:
            raise ValueError(f"invalid ip:port {s!r}: missing port")
        bracketed = False
    try:
        addr = ipaddress.ip_address(host)
    except ValueError as exc:
        raise ValueError(f"invalid ip:port {s!r}: {exc}") from exc
    if bracketed and addr.version == 4:
        raise ValueError(f"invalid ip:port {s!r}: brackets are only for IPv6")
    if not bracketed and addr.version == 6:
        raise ValueError(f"invalid ip:port {s!r}: IPv6 addresses need brackets")
    if not (port_text.isascii() and port_text.isdigit()) or int(port_text) > 0xFFFF:
        raise ValueError(f"invalid ip:port {s!r}: bad port")
    return addr, int(port_text)


def _format_sockname(sock: socket.socket) -> str:
    try:
        host, port = sock.getsockname()[:2]
    except OSError:
        return "<closed>"
    return f"[{host}]:{port}" if ":" in host else f"{host}:{port}"


def coalesce_messages(
    addr: tuple,
    ep: StdNetEndpoint,
    bufs: Sequence[bytes],
    msgs: List[Message],
    set_gso: SetGSOFunc,
) -> int:
    """Pack bufs into msgs as GSO batches; return the number of msgs used."""
    base = -1  # index of the message being coalesced into
    gso_size = 0
    dgram_cnt = 0
    end_batch = False
    dst = ep.dst_ip()
    max_payload = (
        MAX_IPV6_PAYLOAD_LEN if dst is not None and dst.version == 6 else MAX_IPV4_PAYLOAD_LEN
    )
    for i, buf in enumerate(bufs):
        if i > 0:
            msg = msgs[base]
            msg_len = len(buf)
            base_len = len(msg.buffer)
            capacity = msg.capacity if msg.capacity is not None else max_payload
            if (
                msg_len + base_len <= max_payload
                and msg_len <= gso_size
                and msg_len <= capacity - base_len
                and dgram_cnt < UDP_SEGMENT_MAX_DATAGRAMS
                and not end_batch
            ):
                msg.buffer += buf
                if i == len(bufs) - 1:
                    msg.oob = set_gso(msg.oob, gso_size)
                dgram_cnt += 1
                if msg_len < gso_size:
                    # A short datagram at the tail is legal but ends the batch.
                    end_batch = True
                continue
        if dgram_cnt > 1:
            msgs[base].oob = set_gso(msgs[base].oob, gso_size)
        end_batch = False
        base += 1
        gso_size = len(buf)
        msg = msgs[base]
        control = set_src_control(ep, msg.oob_capacity)
        if control is not None:
            msg.oob = control
        msg.buffer = bytearray(buf)
        msg.addr = addr
        dgram_cnt = 1
    return base + 1


def split_coalesced_messages(
    msgs: List[Message], first_msg_at: int, get_gso: GetGSOFunc
) -> int:
    """Split GRO-coalesced datagrams from first_msg_at onward into msgs from 0.

    Returns how many leading msgs are to be evaluated. Raises ValueError
    (with an ``evaluated`` count) when the split would overrun the source.
    """
    n = 0
    for i, msg in enumerate(msgs[first_msg_at:], start=first_msg_at):
        if msg.n == 0:
            return n
        start = 0
        end = msg.n
        num_to_split = 1
        gso_size = get_gso(msg.oob[: msg.nn])
        if gso_size > 0:
            num_to_split = (msg.n + gso_size - 1) // gso_size
            end = gso_size
        for _ in range(num_to_split):
            if n > i:
                raise _SplitOverflowError(n)
            chunk = bytes(msg.buffer[start:end])
            target = msgs[n]
            copied = min(len(target.buffer), len(chunk))
            target.buffer[:copied] = chunk[:copied]
            target.n = copied
            target.addr = msg.addr
            start = end
            end += gso_size
            if end > msg.n:
                end = msg.n
            n += 1
        if i != n - 1:
            # The source slot keeps its length only when it also received
            # the last split datagram.
            msg.n = 0
    return n


class StdNetBind(Bind):
    """Bind over one IPv4 and one IPv6 UDP socket sharing a port."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ipv4: Optional[socket.socket] = None
        self._ipv6: Optional[socket.socket] = None
        self._ipv4_tx_offload = False
        self._ipv4_rx_offload = False
        self._ipv6_tx_offload = False
        self._ipv6_rx_offload = False
        self._blackhole4 = False
        self._blackhole6 = False

    def parse_endpoint(self, s: str) -> StdNetEndpoint:
        addr, port = _parse_addr_port(s)
        return StdNetEndpoint(addr=addr, port=port)

    def open(self, port: int) -> Tuple[List[ReceiveFunc], int]:
        with self._lock:
            if self._ipv4 is not None or self._ipv6 is not None:
                raise BindAlreadyOpenError()
            tries = 0
            while True:
                actual = port
                v4: Optional[socket.socket] = None
                v6: Optional[socket.socket] = None
                try:
                    v4, actual = listen_socket("udp4", actual)
                except OSError as exc:
                    if exc.errno != errno.EAFNOSUPPORT:
                        raise
                try:
                    v6, actual = listen_socket("udp6", actual)
                except OSError as exc:
                    if port == 0 and exc.errno == errno.EADDRINUSE and tries < 100:
                        if v4 is not None:
                            v4.close()
                        tries += 1
                        continue
                    if exc.errno != errno.EAFNOSUPPORT:
                        if v4 is not None:
                            v4.close()
                        raise
                break

            fns: List[ReceiveFunc] = []
            if v4 is not None:
                self._ipv4_tx_offload, self._ipv4_rx_offload = supports_udp_offload(v4)
                fns.append(self._make_receive_ipv4(v4, self._ipv4_rx_offload))
                self._ipv4 = v4
            if v6 is not None:
                self._ipv6_tx_offload, self._ipv6_rx_offload = supports_udp_offload(v6)
                fns.append(self._make_receive_ipv6(v6, self._ipv6_rx_offload))
                self._ipv6 = v6
            if not fns:
                raise OSError(errno.EAFNOSUPPORT, os.strerror(errno.EAFNOSUPPORT))
            return fns, actual

    def _make_receive_ipv4(self, sock: socket.socket, rx_offload: bool) -> ReceiveFunc:
        def receive_ipv4(bufs, sizes, eps):
            return self._receive_ip(sock, rx_offload, bufs, sizes, eps)

        return receive_ipv4

    def _make_receive_ipv6(self, sock: socket.socket, rx_offload: bool) -> ReceiveFunc:
        def receive_ipv6(bufs, sizes, eps):
            return self._receive_ip(sock, rx_offload, bufs, sizes, eps)

        return receive_ipv6

    @staticmethod
    def _read_into(sock: socket.socket, msg: Message) -> None:
        if hasattr(sock, "recvmsg_into"):
            nbytes, ancdata, _flags, address = sock.recvmsg_into([msg.buffer], _OOB_CAPACITY)
            oob = b"".join(pack_control_message(level, type_, data) for level, type_, data in ancdata)
        else:
            nbytes, address = sock.recvfrom_into(msg.buffer)
            oob = b""
        msg.n = nbytes
        msg.oob = oob
        msg.nn = len(oob)
        msg.addr = address

    def _receive_ip(
        self,
        sock: socket.socket,
        rx_offload: bool,
        bufs: Sequence[bytearray],
        sizes: List[int],
        eps: List[Optional[Endpoint]],
    ) -> int:
        msgs = [Message(buffer=buf) for buf in bufs]
        if _IS_LINUX and rx_offload:
            read_at = len(msgs) - 1
            self._read_into(sock, msgs[read_at])
            count = split_coalesced_messages(msgs, read_at, get_gso_size)
        else:
            self._read_into(sock, msgs[0])
            count = 1
        for i, msg in enumerate(msgs[:count]):
            sizes[i] = msg.n
            if msg.n == 0:
                continue
            host, port = msg.addr[:2]
            ep = StdNetEndpoint(addr=ipaddress.ip_address(host), port=port)
            get_src_from_control(msg.oob[: msg.nn], ep)
            eps[i] = ep
        return count

    def batch_size(self) -> int:
        return IDEAL_BATCH_SIZE if _IS_LINUX else 1

    def close(self) -> None:
        with self._lock:
            first_error: Optional[OSError] = None
            for sock in (self._ipv4, self._ipv6):
                if sock is None:
                    continue
                try:
                    sock.close()
                except OSError as exc:
                    first_error = first_error or exc
            self._ipv4 = None
            self._ipv6 = None
            self._blackhole4 = False
            self._blackhole6 = False
            self._ipv4_tx_offload = False
            self._ipv4_rx_offload = False
            self._ipv6_tx_offload = False
            self._ipv6_rx_offload = False
        if first_error is not None:
            raise first_error

    def set_mark(self, mark: int) -> None:
        with self._lock:
            for sock in (self._ipv4, self._ipv6):
                if sock is not None:
                    set_socket_mark(sock, mark)

    def send(self, bufs: Sequence[bytes], endpoint: Endpoint) -> None:
        if not isinstance(endpoint, StdNetEndpoint):
            raise WrongEndpointTypeError()
        dst = endpoint.dst_ip()
        is6 = dst is not None and dst.version == 6
        with self._lock:
            if is6:
                blackhole, sock, offload = self._blackhole6, self._ipv6, self._ipv6_tx_offload
            else:
                blackhole, sock, offload = self._blackhole4, self._ipv4, self._ipv4_tx_offload
        if blackhole:
            return
        if sock is None:
            raise OSError(errno.EAFNOSUPPORT, os.strerror(errno.EAFNOSUPPORT))
        addr = (str(dst), endpoint.port)

        if offload:
            msgs = [Message() for _ in bufs]
            count = coalesce_messages(
                addr, endpoint, bufs, msgs, functools.partial(set_gso_size, capacity=_OOB_CAPACITY)
            )
            try:
                self._send(sock, msgs[:count])
                return
            except OSError as exc:
                if not should_disable_udp_gso(exc):
                    raise
            with self._lock:
                if is6:
                    self._ipv6_tx_offload = False
                else:
                    self._ipv4_tx_offload = False
            laddr = _format_sockname(sock)
            try:
                self._send_plain(sock, addr, endpoint, bufs)
            except OSError as exc:
                raise UDPGSODisabledError(laddr, exc) from exc
            raise UDPGSODisabledError(laddr)

        self._send_plain(sock, addr, endpoint, bufs)

    def _send_plain(
        self, sock: socket.socket, addr: tuple, endpoint: StdNetEndpoint, bufs: Sequence[bytes]
    ) -> None:
        msgs = []
        for buf in bufs:
            control = set_src_control(endpoint, _OOB_CAPACITY)
            msgs.append(Message(buffer=bytearray(buf), addr=addr, oob=control or b""))
        self._send(sock, msgs)

    @staticmethod
    def _send(sock: socket.socket, msgs: Sequence[Message]) -> None:
        for msg in msgs:
            payload = bytes(msg.buffer)
            if hasattr(sock, "sendmsg"):
                ancillary = list(parse_control_messages(msg.oob))
                sock.sendmsg([payload], ancillary, 0, msg.addr)
            else:
                sock.sendto(payload, msg.addr)

    def _peek_fd(self, sock: Optional[socket.socket]) -> int:
        if sock is None:
            raise OSError(errno.EINVAL, os.strerror(errno.EINVAL))
        return sock.fileno()

    def peek_socket_fd4(self) -> int:
        """Return the file descriptor of the IPv4 socket."""
        return self._peek_fd(self._ipv4)

    def peek_socket_fd6(self) -> int:
        """Return the file descriptor of the IPv6 socket."""
        return self._peek_fd(self._ipv6)