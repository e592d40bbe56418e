# dpqchat

Building blocks for a peer-to-peer chat network on `asyncio`.

| Module | What it holds |
| --- | --- |
| `dpqchat.config` | Shared limits and constants, `HostOption`, `find_available_port`, `is_valid_username`, `is_valid_message_content`, `force_cleanup_terminal` |
| `dpqchat.message` | Wire messages and their one-JSON-object-per-line encoding |
| `dpqchat.events` | Events a node reports, and `P2PStats` |
| `dpqchat.routing` | `RoutingTable` and `MessageRouter` (flood routing) |
| `dpqchat.session` | AES-256-GCM `SessionKey`, `SessionManager`, `SessionKeyExchange` |
| `dpqchat.message_crypto` | Encrypted chat payloads, message kinds, replay protection |
| `dpqchat.tls_config` | `TlsConfig` and `P2PConfig` with TLS 1.3 enforcement |
| `dpqchat.tls` | Self-signed certificates, TLS contexts, `TlsConnection`, `TlsListener` |
| `dpqchat.discovery` | Multicast, bootstrap and manual peer discovery |
| `dpqchat.peer` | `Peer`, `PeerConnection`, `PeerManager` |
| `dpqchat.node` | `P2PNode` and `P2PNodeConfig` |

## Wire messages

`dpqchat.message` defines `PeerAnnounce`, `PeerListRequest`,
`PeerListResponse`, `ChatMessage`, `Handshake`, `Heartbeat` and `Disconnect`
(plus `PeerInfo`). `encode_message` turns one into a compact JSON line of the
form `{"ChatMessage": {...}}`; `decode_message` reads it back and raises
`ValueError` on unknown variants, missing fields, wrong types or addresses that
are not `host:port`. Each message's `str()` is a readable line, for example
`alice: hello` for a chat message.

## Routing a chat message

`MessageRouter.process_message` returns one of `Drop`, `Deliver`,
`ForwardAndDeliver`, `Respond` or `UpdateHeartbeat`. Chat messages carry a TTL
(7 for messages made by `create_chat_message`) and a `seen_by` list; a message
is dropped when its id has been seen before, its TTL is 0, or the local peer is
already in `seen_by`. The forwarded copy has the TTL lowered by one.

```python
from dpqchat.routing import ForwardAndDeliver, MessageRouter

alice = MessageRouter("alice-id", "alice")
bob = MessageRouter("bob-id", "bob")

message = alice.create_chat_message("hello")
action = bob.process_message(message, "alice-id")

assert isinstance(action, ForwardAndDeliver)
print(action.original_message.content)  # hello
print(action.forward_message.ttl)       # 6

# The same message a second time is dropped.
print(bob.process_message(message, "alice-id"))  # Drop()
```

`PeerAnnounce` and `PeerListResponse` add peers to the router's
`routing_table`, `Disconnect` removes one, and a `PeerListRequest` is answered
with a `Respond` carrying the known peers. `get_network_stats` returns the peer
count and the number of cached message ids.

## Encrypting messages for a peer

```python
from dpqchat.message_crypto import (
    MessageSequenceManager,
    create_text_message,
    decrypt_message,
    encrypt_message,
)
from dpqchat.session import SessionKey, SessionManager

sessions = SessionManager()
sessions.add_session("bob-fp", SessionKey.generate("bob-fp"))

key = sessions.get_session("bob-fp")
sequences = MessageSequenceManager()

plain = create_text_message("alice", "Hello, Bob!")
sealed = encrypt_message(key, plain, sequences.next_sequence())
opened = decrypt_message(key, sealed)
print(opened.content)  # Hello, Bob!
```

A `SessionKey` is either random (`generate`) or derived with SHA-256 from a
secret you supply (`from_shared_secret`). Keys count as expired after one
hour, and `SessionManager.cleanup_expired` drops them. Encrypted data is the
12-byte nonce followed by the ciphertext.

Decryption failures raise `CryptoError`. `IntegrityError` is raised by
`MessageSequenceManager.validate_sequence` for a repeated or older sequence
number, and by `verify_message_integrity` for a stale message or a sender
mismatch.

## TLS settings and transport

```python
from dpqchat.tls_config import P2PConfig, TlsConfig

config = P2PConfig().with_tls(TlsConfig.tls13_only()).with_max_connections(20)
config.validate()  # raises ConfigError when the settings are unusable
```

Only TLS 1.3 is accepted: `TlsConfig.with_tls_versions` always pins both ends
of the range to 1.3, and a configuration naming TLS 1.2 fails validation.

`dpqchat.tls.CertificateManager` generates a self-signed ECDSA P-256
certificate valid for one year and builds TLS 1.3 client and server
`ssl.SSLContext`s; the client context accepts any peer certificate.
`TlsListener.bind_tls` / `bind_plain` and `TlsConnection.connect_tls` /
`connect_plain` exchange newline-delimited text with `readline` and
`write_line`. `probe_tls_connection` and `probe_plain_connection` report
whether a connection can be made within a timeout.

## Running a node

```python
import asyncio

from dpqchat.discovery import Manual
from dpqchat.events import MessageReceived
from dpqchat.node import P2PNode, P2PNodeConfig


async def main():
    async with P2PNode(P2PNodeConfig(username="alice", discovery_methods=[Manual()])) as first:
        config = P2PNodeConfig(
            username="bob",
            discovery_methods=[Manual()],
            bootstrap_peers=[first.listen_addr()],
        )
        async with P2PNode(config) as second:
            await second.events.get()  # PeerConnected
            await second.send_chat_message("hi")
            while True:
                event = await asyncio.wait_for(first.events.get(), 5)
                if isinstance(event, MessageReceived):
                    print(event.message)  # bob: hi
                    break


asyncio.run(main())
```

A node listens (TLS by default), runs its discovery methods, dials its
bootstrap peers, routes incoming messages with a `MessageRouter`, drops peers
without a heartbeat for two minutes, and puts `PeerConnected`,
`PeerDisconnected`, `MessageReceived` and `PeersDiscovered` events on its
`events` queue. `get_stats` returns a `P2PStats` snapshot. The default
discovery methods are multicast on `239.255.42.99:8899` plus manual peers.

## Input checks and ports

`is_valid_username` accepts 1–32 bytes of letters, digits, `_` or `-`;
`is_valid_message_content` accepts non-blank text of at most 1024 bytes.
`find_available_port` tries port 40000, then 40001–40010, and raises
`OSError` when none is free. `HostOption` chooses between localhost, the local
network address and all interfaces.

## What this package does not do

- There is no command or interactive chat screen; it is a library to build
  one on.
- There are no long-term identity keys and no signed key-exchange handshake.
  Connected peers get a random temporary id and the username `Peer@<addr>`,
  and `SessionKey.from_shared_secret` expects the secret to come from
  elsewhere.
- Nothing answers the `PeerRequest` datagrams sent during bootstrap discovery;
  a bootstrap query only yields peers if some other program replies with a
  `PeerResponse`.

## Running the tests

Install the `test` extra and run `pytest` from the project root.