"""Longest-prefix-match table mapping allowed IP prefixes to peers."""

from __future__ import annotations

import ipaddress
import threading
from typing import Any, Dict, List, Optional, Tuple, Union

IPv4_LEN = 4
IPv6_LEN = 16
_ROOT = 2  # parent_bit value for a node hanging directly off a root slot

Network = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]
PrefixLike = Union[
    str, ipaddress.IPv4Network, ipaddress.IPv6Network,
    ipaddress.IPv4Interface, ipaddress.IPv6Interface,
]
AddressLike = Union[bytes, bytearray, str, ipaddress.IPv4Address, ipaddress.IPv6Address]


def common_bits(ip1: bytes, ip2: bytes) -> int:
    """Return the number of leading bits two equally sized addresses share."""
    size = len(ip1)
    if size not in (IPv4_LEN, IPv6_LEN) or len(ip2) != size:
        raise ValueError("wrong size bit string")
    diff = int.from_bytes(ip1, "big") ^ int.from_bytes(ip2, "big")
    return size * 8 - diff.bit_length()


class _Node:
    __slots__ = (
        "peer", "child", "parent", "parent_bit",
        "cidr", "bit_at_byte", "bit_at_shift", "bits",
    )

    def __init__(self, peer: Any, bits: bytes, cidr: int) -> None:
        self.peer = peer
        self.child: List[Optional[_Node]] = [None, None]
        self.parent: Optional[_Node] = None
        self.parent_bit = _ROOT
        self.cidr = cidr
        self.bit_at_byte = cidr // 8
        self.bit_at_shift = 7 - (cidr % 8)
        self.bits = bytearray(bits)
        self._mask_self()

    def _mask_self(self) -> None:
        total = len(self.bits) * 8
        mask = ((1 << total) - 1) ^ ((1 << (total - self.cidr)) - 1)
        value = int.from_bytes(self.bits, "big") & mask
        self.bits[:] = value.to_bytes(len(self.bits), "big")

    def choose(self, ip: bytes) -> int:
        return (ip[self.bit_at_byte] >> self.bit_at_shift) & 1

    def zeroize(self) -> None:
        self.peer = None
        self.child = [None, None]
        self.parent = None


def _placement(node: Optional[_Node], ip: bytes, cidr: int) -> Tuple[Optional[_Node], bool]:
    parent = None
    while node is not None and node.cidr <= cidr and common_bits(node.bits, ip) >= node.cidr:
        parent = node
        if parent.cidr == cidr:
            return parent, True
        node = node.child[node.choose(ip)]
    return parent, False


def _to_network(prefix: PrefixLike) -> Network:
    if isinstance(prefix, (ipaddress.IPv4Interface, ipaddress.IPv6Interface)):
        return prefix.network
    if isinstance(prefix, (ipaddress.IPv4Network, ipaddress.IPv6Network)):
        return prefix
    if isinstance(prefix, str):
        return ipaddress.ip_network(prefix, strict=False)
    raise ValueError("inserting unknown address type")


def _to_packed(ip: AddressLike) -> bytes:
    if isinstance(ip, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return ip.packed
    if isinstance(ip, str):
        return ipaddress.ip_address(ip).packed
    return bytes(ip)


class AllowedIPs:
    """Per-family binary tries of prefixes, each leading to a peer."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._roots: Dict[int, Optional[_Node]] = {IPv4_LEN: None, IPv6_LEN: None}
        self._entries: Dict[int, List[_Node]] = {}

    def _add_entry(self, node: _Node) -> None:
        self._entries.setdefault(id(node.peer), []).append(node)

    def _remove_entry(self, node: _Node) -> None:
        nodes = self._entries.get(id(node.peer))
        if not nodes:
            return
        for i, candidate in enumerate(nodes):
            if candidate is node:
                del nodes[i]
                break
        if not nodes:
            del self._entries[id(node.peer)]

    def _set_slot(self, size: int, parent: Optional[_Node], bit: int, value: Optional[_Node]) -> None:
        if parent is None:
            self._roots[size] = value
        else:
            parent.child[bit] = value

    def _link(self, size: int, parent: Optional[_Node], bit: int, node: _Node) -> None:
        node.parent = parent
        node.parent_bit = bit
        self._set_slot(size, parent, bit, node)

    def _attach(self, size: int, parent: Optional[_Node], node: _Node) -> None:
        if parent is None:
            self._link(size, None, _ROOT, node)
        else:
            self._link(size, parent, parent.choose(node.bits), node)

    def _insert(self, ip: bytes, cidr: int, peer: Any) -> None:
        size = len(ip)
        root = self._roots[size]
        if root is None:
            node = _Node(peer, ip, cidr)
            self._add_entry(node)
            self._link(size, None, _ROOT, node)
            return
        node, exact = _placement(root, ip, cidr)
        if exact:
            self._remove_entry(node)
            node.peer = peer
            self._add_entry(node)
            return

        new_node = _Node(peer, ip, cidr)
        self._add_entry(new_node)
        if node is None:
            down = root
        else:
            bit = node.choose(ip)
            down = node.child[bit]
            if down is None:
                self._link(size, node, bit, new_node)
                return
        cidr = min(cidr, common_bits(down.bits, ip))
        parent = node

        if new_node.cidr == cidr:
            self._link(size, new_node, new_node.choose(down.bits), down)
            self._attach(size, parent, new_node)
            return

        branch = _Node(None, new_node.bits, cidr)
        self._link(size, branch, branch.choose(down.bits), down)
        self._link(size, branch, branch.choose(new_node.bits), new_node)
        self._attach(size, parent, branch)

    def insert(self, prefix: PrefixLike, peer: Any) -> None:
        """Route prefix to peer, replacing any peer the exact prefix had."""
        network = _to_network(prefix)
        with self._lock:
            self._insert(network.network_address.packed, network.prefixlen, peer)

    def lookup(self, ip: AddressLike) -> Any:
        """Return the peer of the longest prefix containing ip, or None."""
        packed = _to_packed(ip)
        if len(packed) not in (IPv4_LEN, IPv6_LEN):
            raise ValueError("looking up unknown address type")
        with self._lock:
            node = self._roots[len(packed)]
            found = None
            while node is not None and common_bits(node.bits, packed) >= node.cidr:
                if node.peer is not None:
                    found = node.peer
                if node.bit_at_byte == len(packed):
                    break
                node = node.child[node.choose(packed)]
            return found

    def remove_by_peer(self, peer: Any) -> None:
        """Remove every prefix that leads to peer."""
        with self._lock:
            for node in self._entries.pop(id(peer), []):
                node.peer = None
                if node.child[0] is not None and node.child[1] is not None:
                    continue
                size = len(node.bits)
                child = node.child[1 if node.child[0] is None else 0]
                if child is not None:
                    child.parent, child.parent_bit = node.parent, node.parent_bit
                self._set_slot(size, node.parent, node.parent_bit, child)
                parent = node.parent
                if child is not None or parent is None or parent.peer is not None:
                    node.zeroize()
                    continue
                sibling = parent.child[node.parent_bit ^ 1]
                if sibling is not None:
                    sibling.parent, sibling.parent_bit = parent.parent, parent.parent_bit
                self._set_slot(size, parent.parent, parent.parent_bit, sibling)
                node.zeroize()
                parent.zeroize()

    def entries_for_peer(self, peer: Any) -> List[Network]:
        """Return the prefixes leading to peer, in insertion order."""
        with self._lock:
            nodes = list(self._entries.get(id(peer), []))
        result: List[Network] = []
        for node in nodes:
            if len(node.bits) == IPv4_LEN:
                result.append(ipaddress.IPv4Network((bytes(node.bits), node.cidr)))
            else:
                result.append(ipaddress.IPv6Network((bytes(node.bits), node.cidr)))
        return result

    def is_empty(self) -> bool:
        """Report whether neither trie holds any node."""
        with self._lock:
            return self._roots[IPv4_LEN] is None and self._roots[IPv6_LEN] is None