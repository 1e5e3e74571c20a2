"""WireGuard-style tunnel building blocks: UDP binds, allowed-IP trie, Noise handshake, cookies."""

__version__ = "0.1.0"