"""Protocol and implementation constants. Durations are in seconds."""

from __future__ import annotations

import random

# Specification constants.
REKEY_AFTER_MESSAGES = 1 << 60
REJECT_AFTER_MESSAGES = (1 << 64) - (1 << 13) - 1
REKEY_AFTER_TIME = 120.0
REKEY_ATTEMPT_TIME = 90.0
REKEY_TIMEOUT = 5.0
MAX_TIMER_HANDSHAKES = 90 // 5  # REKEY_ATTEMPT_TIME / REKEY_TIMEOUT
REKEY_TIMEOUT_JITTER_MAX_MS = 334
REJECT_AFTER_TIME = 180.0
KEEPALIVE_TIMEOUT = 10.0
COOKIE_REFRESH_TIME = 120.0
HANDSHAKE_INITIATION_RATE = 1.0 / 50
PADDING_MULTIPLE = 16

_TRANSPORT_HEADER_SIZE = 16
_POLY1305_TAG_SIZE = 16
# Minimum size of a transport message: an empty (keepalive) one.
MIN_MESSAGE_SIZE = _TRANSPORT_HEADER_SIZE + _POLY1305_TAG_SIZE

# Implementation constants.
UNDER_LOAD_AFTER_TIME = 1.0
MAX_PEERS = 1 << 16

# IP header field offsets.
IPV4_OFFSET_TOTAL_LENGTH = 2
IPV4_OFFSET_SRC = 12
IPV4_OFFSET_DST = IPV4_OFFSET_SRC + 4

IPV6_OFFSET_PAYLOAD_LENGTH = 4
IPV6_OFFSET_SRC = 8
IPV6_OFFSET_DST = IPV6_OFFSET_SRC + 16


def rekey_timeout_jitter(max_ms: int = REKEY_TIMEOUT_JITTER_MAX_MS) -> float:
    """Return a random delay in seconds, a whole number of ms below max_ms."""
    if max_ms <= 0:
        raise ValueError(f"max_ms must be positive, got {max_ms}")
    return random.randrange(max_ms) / 1000.0