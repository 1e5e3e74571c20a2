# wgtunnel

Building blocks for a WireGuard-style tunnel, written in plain Python on top
of the standard library and PyNaCl.

## What is inside

- `wgtunnel.conn`: the abstract `Bind` and `Endpoint` interfaces, the
  `BindAlreadyOpenError` and `WrongEndpointTypeError` exceptions, UDP socket
  setup (`listen_socket`), firewall marks (`set_socket_mark`), UDP offload
  detection (`supports_udp_offload`, `should_disable_udp_gso`) and
  `pretty_name` for naming receive functions (`"v4"`, `"v6"`, or the
  function's own name).
- `wgtunnel.sticky`: `StdNetEndpoint` (a UDP destination plus a cached
  packet-info source) and helpers for socket control messages:
  `parse_control_messages`, `pack_control_message`, `build_pktinfo`,
  `get_src_from_control`, `set_src_control`, `get_gso_size`, `set_gso_size`.
- `wgtunnel.stdbind`: `StdNetBind`, a bind over one IPv4 and one IPv6 UDP
  socket sharing a port, with `Message`, `UDPGSODisabledError`,
  `coalesce_messages` and `split_coalesced_messages`. On Linux it reports a
  batch size of 128 and uses UDP segmentation offload when the socket
  supports it; elsewhere the batch size is 1.
- `wgtunnel.channelbind`: `ChannelBind` and `ChannelEndpoint`, an in-memory
  bind pair made by `new_channel_binds()`, handy in tests.
- `wgtunnel.allowedips`: `AllowedIPs`, the longest-prefix-match trie that
  maps addresses to peers (`insert`, `lookup`, `remove_by_peer`,
  `entries_for_peer`, `is_empty`), and `common_bits`.
- `wgtunnel.keys`: `NoisePrivateKey`, `NoisePublicKey`, `NoisePresharedKey`,
  `InvalidPublicKeyError`, and the BLAKE2s helpers `hmac1`, `hmac2`, `kdf1`,
  `kdf2`, `kdf3`, plus `is_zero` and `clamp`.
- `wgtunnel.indextable`: `IndexTable` and `IndexTableEntry`, mapping random
  32-bit session indices to handshakes and keypairs.
- `wgtunnel.messages`: `MessageType` and the wire formats
  `MessageInitiation`, `MessageResponse`, `MessageCookieReply` and
  `MessageTransport`, each with `to_bytes` / `from_bytes`.
- `wgtunnel.cookie`: `CookieChecker` and `CookieGenerator` for mac1, mac2 and
  cookie replies.
- `wgtunnel.handshake`: the Noise_IKpsk2 handshake: `NoiseDevice`,
  `NoisePeer`, `Handshake`, `HandshakeState`, `HandshakeError`, `Keypair`,
  `Keypairs` and `tai64n_now`.
- `wgtunnel.constants`: protocol timing and size constants (durations in
  seconds) and `rekey_timeout_jitter`.
- `wgtunnel.logger`: `Logger`, `LogLevel`, `discard_logf` and
  `new_logger(level, prepend, stream)`.

## Installing

```
pip install .
```

## Example: routing with allowed IPs

```python
import ipaddress
from wgtunnel.allowedips import AllowedIPs

table = AllowedIPs()
table.insert(ipaddress.ip_network("192.168.4.0/24"), "peer-a")
table.insert(ipaddress.ip_network("192.168.4.4/32"), "peer-b")

assert table.lookup(bytes([192, 168, 4, 20])) == "peer-a"
assert table.lookup(bytes([192, 168, 4, 4])) == "peer-b"

table.remove_by_peer("peer-b")
assert table.lookup(bytes([192, 168, 4, 4])) == "peer-a"
```

## Example: a handshake between two devices

```python
from wgtunnel.keys import NoisePrivateKey
from wgtunnel.handshake import NoiseDevice

key_a = NoisePrivateKey.generate()
key_b = NoisePrivateKey.generate()

dev_a, dev_b = NoiseDevice(), NoiseDevice()
dev_a.set_private_key(key_a)
dev_b.set_private_key(key_b)

peer_b = dev_a.add_peer(key_b.public_key(), None)
peer_a = dev_b.add_peer(key_a.public_key(), None)

init = dev_a.create_message_initiation(peer_b)
assert dev_b.consume_message_initiation(init) is peer_a
response = dev_b.create_message_response(peer_a)
assert dev_a.consume_message_response(response) is peer_b

keypair_b = peer_b.begin_symmetric_session()
keypair_a = peer_a.begin_symmetric_session()
assert keypair_b.send_key == keypair_a.receive_key
```

## Example: cookie macs

```python
from wgtunnel.cookie import CookieChecker, CookieGenerator
from wgtunnel.keys import NoisePrivateKey

public = NoisePrivateKey.generate().public_key()
generator, checker = CookieGenerator(), CookieChecker()
generator.init(public)
checker.init(public)

msg = bytearray(64)
generator.add_macs(msg)
assert checker.check_mac1(msg)
```

## Example: in-memory binds

```python
from wgtunnel.channelbind import new_channel_binds

a, b = new_channel_binds()
receivers_a, port_a = a.open(0)
receivers_b, port_b = b.open(0)

a.send([b"hello"], a.target4)
bufs, sizes, eps = [bytearray(64)], [0], [None]
receivers_b[0](bufs, sizes, eps)
assert bytes(bufs[0][: sizes[0]]) == b"hello"

a.close()
b.close()
```

## What this package does not do

It provides the pieces, not a running tunnel. There is no TUN interface, no
encryption or decryption of transport data, no timers or rekeying loop, no
configuration interface and no command-line program. `NoiseDevice` covers
only the static identity, peers and handshake messages; tying it to a bind
and moving packets is left to the caller.

## Running the tests

```
pip install .[test]
pytest
```