"""Table of random 32-bit session indices to handshakes and keypairs."""

from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional


@dataclass(frozen=True)
class IndexTableEntry:
    """What an index refers to: a peer plus its handshake or keypair."""

    peer: Any = None
    handshake: Any = None
    keypair: Any = None


def _rand_uint32() -> int:
    return secrets.randbits(32)


class IndexTable:
    """Thread-safe map from local indices to index table entries."""

    def __init__(self, random_index: Optional[Callable[[], int]] = None) -> None:
        self._lock = threading.Lock()
        self._table: Dict[int, IndexTableEntry] = {}
        self._random_index = random_index or _rand_uint32

    def delete(self, index: int) -> None:
        with self._lock:
            self._table.pop(index, None)

    def swap_index_for_keypair(self, index: int, keypair: Any) -> None:
        """Point an existing index at keypair instead of its handshake."""
        with self._lock:
            entry = self._table.get(index)
            if entry is None:
                return
            self._table[index] = IndexTableEntry(peer=entry.peer, keypair=keypair)

    def new_index_for_handshake(self, peer: Any, handshake: Any) -> int:
        """Allocate an unused random index for handshake and return it."""
        while True:
            index = self._random_index() & 0xFFFFFFFF
            with self._lock:
                if index in self._table:
                    continue
                self._table[index] = IndexTableEntry(peer=peer, handshake=handshake)
                return index

    def lookup(self, index: int) -> IndexTableEntry:
        """Return the entry for index, or an empty entry if there is none."""
        with self._lock:
            return self._table.get(index, IndexTableEntry())