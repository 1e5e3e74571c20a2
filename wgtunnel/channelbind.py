"""An in-memory pair of binds joined by queues, for exercising devices without sockets."""

from __future__ import annotations

import errno
import queue
import random
import threading
from dataclasses import dataclass
from ipaddress import IPv4Address
from typing import List, Optional, Sequence, Tuple

from wgtunnel.conn import Bind, Endpoint, IPAddress, ReceiveFunc, WrongEndpointTypeError
from wgtunnel.stdbind import _parse_addr_port

_QUEUE_SIZE = 8192
_POLL_INTERVAL = 0.01


def _closed_error() -> OSError:
    return OSError(errno.EBADF, "use of closed network connection")


@dataclass(frozen=True)
class ChannelEndpoint(Endpoint):
    """An endpoint identified only by a 16-bit number."""

    port: int

    def __post_init__(self) -> None:
        if not 0 <= self.port <= 0xFFFF:
            raise ValueError(f"port out of range: {self.port}")

    def clear_src(self) -> None:
        pass

    def src_to_string(self) -> str:
        return ""

    def dst_to_string(self) -> str:
        return f"127.0.0.1:{self.port}"

    def dst_to_bytes(self) -> bytes:
        return bytes([self.port & 0xFF])

    def dst_ip(self) -> Optional[IPAddress]:
        return IPv4Address("127.0.0.1")

    def src_ip(self) -> Optional[IPAddress]:
        return None


class ChannelBind(Bind):
    """One side of a queue-connected bind pair."""

    def __init__(
        self,
        rx4: "queue.Queue[bytes]",
        tx4: "queue.Queue[bytes]",
        rx6: "queue.Queue[bytes]",
        tx6: "queue.Queue[bytes]",
        source4: ChannelEndpoint,
        source6: ChannelEndpoint,
        target4: ChannelEndpoint,
        target6: ChannelEndpoint,
    ) -> None:
        self._rx4, self._tx4 = rx4, tx4
        self._rx6, self._tx6 = rx6, tx6
        self.source4, self.source6 = source4, source6
        self.target4, self.target6 = target4, target6
        self._close_signal: Optional[threading.Event] = None

    def open(self, port: int) -> Tuple[List[ReceiveFunc], int]:
        self._close_signal = threading.Event()
        fns = [self._make_receive_func(self._rx4), self._make_receive_func(self._rx6)]
        if random.getrandbits(1) == 0:
            return fns, self.source4.port
        return fns, self.source6.port

    def close(self) -> None:
        if self._close_signal is not None:
            self._close_signal.set()

    def batch_size(self) -> int:
        return 1

    def set_mark(self, mark: int) -> None:
        pass

    def _make_receive_func(self, rx: "queue.Queue[bytes]") -> ReceiveFunc:
        def receive(bufs: Sequence[bytearray], sizes: List[int], eps: List[Optional[Endpoint]]) -> int:
            while True:
                closed = self._close_signal
                if closed is not None and closed.is_set():
                    raise _closed_error()
                try:
                    packet = rx.get(timeout=_POLL_INTERVAL)
                except queue.Empty:
                    continue
                copied = min(len(bufs[0]), len(packet))
                bufs[0][:copied] = packet[:copied]
                sizes[0] = copied
                eps[0] = self.target6
                return 1

        return receive

    def send(self, bufs: Sequence[bytes], endpoint: Endpoint) -> None:
        if not isinstance(endpoint, ChannelEndpoint):
            raise WrongEndpointTypeError()
        for buf in bufs:
            closed = self._close_signal
            if closed is not None and closed.is_set():
                raise _closed_error()
            packet = bytes(buf)
            if endpoint == self.target4:
                self._tx4.put(packet)
            elif endpoint == self.target6:
                self._tx6.put(packet)
            else:
                raise ValueError("invalid argument")

    def parse_endpoint(self, s: str) -> ChannelEndpoint:
        _, port = _parse_addr_port(s)
        return ChannelEndpoint(port)


def new_channel_binds() -> Tuple[ChannelBind, ChannelBind]:
    """Return two binds wired so that each one's sends arrive at the other."""
    arx4: "queue.Queue[bytes]" = queue.Queue(_QUEUE_SIZE)
    brx4: "queue.Queue[bytes]" = queue.Queue(_QUEUE_SIZE)
    arx6: "queue.Queue[bytes]" = queue.Queue(_QUEUE_SIZE)
    brx6: "queue.Queue[bytes]" = queue.Queue(_QUEUE_SIZE)
    a_target4, b_target4 = ChannelEndpoint(1), ChannelEndpoint(2)
    a_target6, b_target6 = ChannelEndpoint(3), ChannelEndpoint(4)
    first = ChannelBind(
        rx4=arx4, tx4=brx4, rx6=arx6, tx6=brx6,
        source4=b_target4, source6=b_target6,
        target4=a_target4, target6=a_target6,
    )
    second = ChannelBind(
        rx4=brx4, tx4=arx4, rx6=brx6, tx6=arx6,
        source4=a_target4, source6=a_target6,
        target4=b_target4, target6=b_target6,
    )
    return first, second