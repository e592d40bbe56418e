"""Peer discovery over UDP multicast and bootstrap peers."""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import ipaddress
import json
import logging
import socket
import struct
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

log = logging.getLogger(__name__)

DEFAULT_MULTICAST_ADDR = "239.255.42.99:8899"
PROTOCOL_VERSION = "1.0"
CHANNEL_CAPACITY = 100
ANNOUNCE_INTERVAL_SECS = 30.0
BOOTSTRAP_TIMEOUT_SECS = 5.0
MULTICAST_BUFFER_SIZE = 1024
BOOTSTRAP_BUFFER_SIZE = 4096


def _split_addr(addr: str) -> Tuple[str, int]:
    """Split a "host:port" (or "[v6]:port") socket address."""
    host, sep, port = addr.rpartition(":")
    if not sep or not port.isdigit() or int(port) > 65535:
        raise ValueError(f"not a socket address: {addr!r}")
    try:
        if host.startswith("[") and host.endswith("]"):
            host = host[1:-1]
            ipaddress.IPv6Address(host)
        else:
            ipaddress.IPv4Address(host)
    except ValueError:
        raise ValueError(f"not a socket address: {addr!r}") from None
    return host, int(port)


def _require(body: Any, key: str, kind: type) -> Any:
    if not isinstance(body, dict):
        raise ValueError("expected a JSON object")
    if key not in body:
        raise ValueError(f"missing field `{key}`")
    value = body[key]
    if kind is int and isinstance(value, bool) or not isinstance(value, kind):
        raise ValueError(f"field `{key}` has the wrong type")
    return value


def _uint64(body: Any, key: str) -> int:
    value = _require(body, key, int)
    if not 0 <= value < (1 << 64):
        raise ValueError(f"field `{key}` is out of range")
    return value


def _address(body: Any, key: str) -> str:
    value = _require(body, key, str)
    _split_addr(value)
    return value


def _now() -> int:
    return int(time.time())


@dataclass(frozen=True)
class Multicast:
    """Discover peers through announcements on a multicast group."""

    multicast_addr: str
    interface: Optional[str] = None


@dataclass(frozen=True)
class Bootstrap:
    """Ask known peers for the peers they know."""

    peers: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class Manual:
    """Peers are added by hand."""


DiscoveryMethod = Union[Multicast, Bootstrap, Manual]


@dataclass
class DiscoveredPeer:
    """A peer found by one of the discovery methods."""

    peer_id: str
    addr: str
    username: str
    last_seen: int
    protocol_version: str

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: Any) -> "DiscoveredPeer":
        return cls(
            peer_id=_require(data, "peer_id", str),
            addr=_address(data, "addr"),
            username=_require(data, "username", str),
            last_seen=_uint64(data, "last_seen"),
            protocol_version=_require(data, "protocol_version", str),
        )


@dataclass
class Announce:
    peer_id: str
    listen_addr: str
    username: str
    protocol_version: str
    timestamp: int

    @classmethod
    def _from_body(cls, body: Any) -> "Announce":
        return cls(
            _require(body, "peer_id", str),
            _address(body, "listen_addr"),
            _require(body, "username", str),
            _require(body, "protocol_version", str),
            _uint64(body, "timestamp"),
        )


@dataclass
class PeerRequest:
    peer_id: str
    timestamp: int

    @classmethod
    def _from_body(cls, body: Any) -> "PeerRequest":
        return cls(_require(body, "peer_id", str), _uint64(body, "timestamp"))


@dataclass
class PeerResponse:
    peer_id: str
    peers: List[DiscoveredPeer]
    timestamp: int

    @classmethod
    def _from_body(cls, body: Any) -> "PeerResponse":
        return cls(
            _require(body, "peer_id", str),
            [DiscoveredPeer.from_dict(p) for p in _require(body, "peers", list)],
            _uint64(body, "timestamp"),
        )


DiscoveryMessage = Union[Announce, PeerRequest, PeerResponse]

_VARIANTS = {cls.__name__: cls for cls in (Announce, PeerRequest, PeerResponse)}


def encode_discovery_message(message: DiscoveryMessage) -> bytes:
    """Encode a discovery message as compact JSON bytes."""
    name = type(message).__name__
    if _VARIANTS.get(name) is not type(message):
        raise TypeError(f"not a discovery message: {message!r}")
    body = dataclasses.asdict(message)
    return json.dumps({name: body}, separators=(",", ":")).encode("utf-8")


def decode_discovery_message(data: Union[bytes, str]) -> DiscoveryMessage:
    """Decode JSON into a discovery message; raises ValueError if malformed."""
    parsed = json.loads(data)
    if not isinstance(parsed, dict) or len(parsed) != 1:
        raise ValueError("expected exactly one message variant")
    (name, body), = parsed.items()
    variant = _VARIANTS.get(name)
    if variant is None:
        raise ValueError(f"unknown discovery message variant `{name}`")
    return variant._from_body(body)


class _Inbox(asyncio.DatagramProtocol):
    """Collects incoming datagrams and socket errors."""

    def __init__(self) -> None:
        self.queue: asyncio.Queue = asyncio.Queue()

    def datagram_received(self, data: bytes, addr) -> None:
        self.queue.put_nowait((data, addr))

    def error_received(self, exc: Exception) -> None:
        self.queue.put_nowait(exc)


def _multicast_socket(group: str) -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
    try:
        sock.setblocking(False)
        sock.bind(("0.0.0.0", 0))
        membership = struct.pack("4s4s", socket.inet_aton(group), socket.inet_aton("0.0.0.0"))
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, membership)
    except OSError:
        sock.close()
        raise
    return sock


class PeerDiscovery:
    """Runs the configured discovery methods and reports found peers."""

    def __init__(
        self,
        peer_id: str,
        username: str,
        listen_addr: str,
        discovery_methods: List[DiscoveryMethod],
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.peer_id = peer_id
        self.username = username
        self.listen_addr = listen_addr
        self.discovery_methods = list(discovery_methods)
        self.protocol_version = PROTOCOL_VERSION
        self.announce_interval = ANNOUNCE_INTERVAL_SECS
        self.bootstrap_timeout = BOOTSTRAP_TIMEOUT_SECS
        self._clock = clock
        self._discovered_peers: Dict[str, DiscoveredPeer] = {}
        self._running = False
        self._tasks: List[asyncio.Task] = []
        self._transports: List[asyncio.BaseTransport] = []

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> asyncio.Queue:
        """Start every discovery method; found peers arrive on the returned queue."""
        self._running = True
        found: asyncio.Queue = asyncio.Queue(maxsize=CHANNEL_CAPACITY)
        for method in self.discovery_methods:
            if isinstance(method, Multicast):
                await self._start_multicast_discovery(method, found)
            elif isinstance(method, Bootstrap):
                self._start_bootstrap_discovery(method.peers, found)
            elif isinstance(method, Manual):
                log.info("Manual discovery method enabled")
            else:
                raise TypeError(f"not a discovery method: {method!r}")
        return found

    async def stop(self) -> None:
        """Stop all discovery tasks and close their sockets."""
        log.info("Stopping peer discovery")
        self._running = False
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        transports, self._transports = self._transports, []
        for transport in transports:
            transport.close()

    async def _start_multicast_discovery(self, method: Multicast, found: asyncio.Queue) -> None:
        log.info("Starting multicast discovery on %s", method.multicast_addr)
        host, port = _split_addr(method.multicast_addr)
        group = str(ipaddress.IPv4Address(host))
        loop = asyncio.get_running_loop()

        listen_transport, inbox = await loop.create_datagram_endpoint(
            _Inbox, sock=_multicast_socket(group)
        )
        self._transports.append(listen_transport)
        announce_transport, _ = await loop.create_datagram_endpoint(
            _Inbox, sock=_multicast_socket(group)
        )
        self._transports.append(announce_transport)

        self._tasks.append(
            asyncio.create_task(self._announce_loop(announce_transport, (group, port)))
        )
        self._tasks.append(asyncio.create_task(self._listen_loop(inbox, found)))

    async def _announce_loop(self, transport: asyncio.DatagramTransport, target) -> None:
        while self._running:
            announcement = Announce(
                peer_id=self.peer_id,
                listen_addr=self.listen_addr,
                username=self.username,
                protocol_version=self.protocol_version,
                timestamp=_now(),
            )
            try:
                transport.sendto(encode_discovery_message(announcement), target)
            except OSError as exc:
                log.warning("Failed to send multicast announcement: %s", exc)
            else:
                log.debug("Sent multicast announcement")
            await asyncio.sleep(self.announce_interval)

    async def _listen_loop(self, inbox: _Inbox, found: asyncio.Queue) -> None:
        while self._running:
            item = await inbox.queue.get()
            if isinstance(item, Exception):
                log.warning("Failed to receive multicast message: %s", item)
                continue
            data, from_addr = item
            try:
                message = decode_discovery_message(data[:MULTICAST_BUFFER_SIZE])
            except ValueError:
                continue
            if not isinstance(message, Announce):
                log.debug("Received other discovery message from %s", from_addr)
                continue
            if message.peer_id == self.peer_id:
                continue
            peer = DiscoveredPeer(
                peer_id=message.peer_id,
                addr=message.listen_addr,
                username=message.username,
                last_seen=message.timestamp,
                protocol_version=message.protocol_version,
            )
            log.debug("Discovered peer via multicast: %r", peer)
            await found.put(peer)

    def _start_bootstrap_discovery(self, peers: List[str], found: asyncio.Queue) -> None:
        log.info("Starting bootstrap discovery with %d peers", len(peers))
        for addr in peers:
            self._tasks.append(asyncio.create_task(self._bootstrap_one(addr, found)))

    async def _bootstrap_one(self, addr: str, found: asyncio.Queue) -> None:
        try:
            peers = await self._query_bootstrap_peer(addr)
        except (OSError, ValueError) as exc:
            log.warning("Failed to query bootstrap peer %s: %s", addr, exc)
            return
        for peer in peers:
            await found.put(peer)

    async def _query_bootstrap_peer(self, addr: str) -> List[DiscoveredPeer]:
        log.debug("Querying bootstrap peer: %s", addr)
        host, port = _split_addr(addr)
        loop = asyncio.get_running_loop()
        transport, inbox = await loop.create_datagram_endpoint(
            _Inbox, local_addr=("0.0.0.0", 0)
        )
        try:
            request = PeerRequest(peer_id=self.peer_id, timestamp=_now())
            transport.sendto(encode_discovery_message(request), (host, port))
            try:
                item = await asyncio.wait_for(inbox.queue.get(), self.bootstrap_timeout)
            except asyncio.TimeoutError:
                log.warning("Timeout querying bootstrap peer %s", addr)
                return []
            if isinstance(item, Exception):
                raise item
            data, _ = item
            try:
                message = decode_discovery_message(data[:BOOTSTRAP_BUFFER_SIZE])
            except ValueError:
                return []
            if not isinstance(message, PeerResponse):
                return []
            log.debug("Received %d peers from bootstrap peer %s", len(message.peers), addr)
            return list(message.peers)
        finally:
            with contextlib.suppress(Exception):
                transport.close()

    def add_manual_peer(self, peer: DiscoveredPeer) -> None:
        log.info("Manually adding peer: %s at %s", peer.username, peer.addr)
        self._discovered_peers[peer.peer_id] = peer

    def get_discovered_peers(self) -> List[DiscoveredPeer]:
        return list(self._discovered_peers.values())

    def remove_peer(self, peer_id: str) -> None:
        if self._discovered_peers.pop(peer_id, None) is not None:
            log.info("Removed peer: %s", peer_id)

    def cleanup_old_peers(self, max_age_secs: int) -> None:
        """Forget peers not seen for more than max_age_secs."""
        now = int(self._clock())
        old = [
            peer_id
            for peer_id, peer in self._discovered_peers.items()
            if now - peer.last_seen > max_age_secs
        ]
        for peer_id in old:
            del self._discovered_peers[peer_id]
            log.debug("Removed old peer: %s", peer_id)


def default_discovery_methods() -> List[DiscoveryMethod]:
    """Multicast on the default group plus manual peers."""
    return [Multicast(multicast_addr=DEFAULT_MULTICAST_ADDR, interface=None), Manual()]