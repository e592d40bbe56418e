"""Connected peers, their connection tasks and the manager that tracks them."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from dpqchat.message import Disconnect, Heartbeat, P2PMessage, PeerInfo, decode_message, encode_message

log = logging.getLogger(__name__)

HEARTBEAT_INTERVAL_SECS = 30.0
OUTGOING_CAPACITY = 100
MESSAGE_CAPACITY = 1000
DISCONNECT_CAPACITY = 100


class PeerError(Exception):
    """Raised when a peer cannot be added or reached."""


def _now() -> int:
    return int(time.time())


@dataclass
class Peer:
    """A peer we hold a connection to."""

    peer_id: str
    addr: str
    username: str
    protocol_version: str
    connected_at: int = field(default_factory=_now)
    last_heartbeat: Optional[int] = None

    def __post_init__(self) -> None:
        if self.last_heartbeat is None:
            self.last_heartbeat = self.connected_at

    def update_heartbeat(self) -> None:
        self.last_heartbeat = _now()

    def is_alive(self, timeout_secs: int) -> bool:
        """True if a heartbeat was seen less than timeout_secs ago."""
        return _now() - self.last_heartbeat < timeout_secs

    def to_peer_info(self) -> PeerInfo:
        return PeerInfo(
            peer_id=self.peer_id,
            addr=self.addr,
            username=self.username,
            last_seen=self.last_heartbeat,
        )


class PeerConnection:
    """Pumps messages between one connection and the manager's queues."""

    def __init__(
        self,
        connection,
        peer: Peer,
        message_queue: asyncio.Queue,
        disconnect_queue: asyncio.Queue,
        heartbeat_interval: float = HEARTBEAT_INTERVAL_SECS,
    ) -> None:
        self.peer = peer
        self._connection = connection
        self._message_queue = message_queue
        self._disconnect_queue = disconnect_queue
        self._heartbeat_interval = heartbeat_interval
        self._outgoing: asyncio.Queue = asyncio.Queue(maxsize=OUTGOING_CAPACITY)
        self._task: Optional[asyncio.Task] = None

    @classmethod
    async def create(
        cls,
        connection,
        peer: Peer,
        message_queue: asyncio.Queue,
        disconnect_queue: asyncio.Queue,
    ) -> "PeerConnection":
        """Start serving the connection in a background task."""
        peer_connection = cls(connection, peer, message_queue, disconnect_queue)
        peer_connection._task = asyncio.create_task(peer_connection._run())
        return peer_connection

    @property
    def closed(self) -> bool:
        return self._task is None or self._task.done()

    async def _run(self) -> None:
        reader = asyncio.create_task(self._read_loop())
        writer = asyncio.create_task(self._write_loop())
        try:
            await asyncio.wait({reader, writer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (reader, writer):
                task.cancel()
            await asyncio.gather(reader, writer, return_exceptions=True)
            with contextlib.suppress(Exception):
                await self._connection.close()
        await self._disconnect_queue.put(self.peer.peer_id)

    async def _read_loop(self) -> None:
        peer_id = self.peer.peer_id
        while True:
            try:
                line = await self._connection.readline()
            except (OSError, ValueError, EOFError) as exc:
                log.error("Connection error with %s: %s", peer_id, exc)
                return
            if line is None:
                log.info("Connection closed by peer %s", peer_id)
                return
            try:
                message = decode_message(line)
            except ValueError as exc:
                log.warning("Failed to parse message from %s: %s", peer_id, exc)
                continue
            log.debug("Received message from %s: %r", peer_id, message)
            await self._message_queue.put((message, peer_id))

    async def _write_loop(self) -> None:
        loop = asyncio.get_running_loop()
        peer_id = self.peer.peer_id
        next_beat = loop.time()
        getter: Optional[asyncio.Task] = None
        try:
            while True:
                delay = next_beat - loop.time()
                if delay <= 0:
                    next_beat += self._heartbeat_interval
                    if not await self._write(Heartbeat(peer_id=peer_id, timestamp=_now())):
                        return
                    log.debug("Sent heartbeat to %s", peer_id)
                    continue
                if getter is None:
                    getter = asyncio.create_task(self._outgoing.get())
                done, _ = await asyncio.wait({getter}, timeout=delay)
                if getter in done:
                    message = getter.result()
                    getter = None
                    if not await self._write(message):
                        return
                    log.debug("Sent message to %s: %r", peer_id, message)
        finally:
            if getter is not None:
                getter.cancel()

    async def _write(self, message: P2PMessage) -> bool:
        try:
            line = encode_message(message)
        except TypeError as exc:
            log.error("Failed to serialize message for %s: %s", self.peer.peer_id, exc)
            return True
        try:
            await self._connection.write_line(line)
        except OSError as exc:
            log.error("Failed to send message to %s: %s", self.peer.peer_id, exc)
            return False
        return True

    async def send_message(self, message: P2PMessage) -> None:
        """Queue a message for this peer."""
        if self.closed:
            raise PeerError(f"Connection to {self.peer.peer_id} is closed")
        await self._outgoing.put(message)

    async def disconnect(self, reason: str) -> None:
        """Queue a disconnect notice, then stop the connection task."""
        try:
            self._outgoing.put_nowait(Disconnect(peer_id=self.peer.peer_id, reason=reason))
        except asyncio.QueueFull:
            log.warning("Failed to send disconnect message to %s", self.peer.peer_id)
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        with contextlib.suppress(Exception):
            await self._connection.close()


class PeerManager:
    """Tracks all peer connections; incoming traffic arrives on two queues.

    ``messages`` yields ``(message, peer_id)`` pairs and ``disconnects``
    yields the ids of peers whose connection ended.
    """

    def __init__(self, local_peer_id: str, local_username: str, max_connections: int) -> None:
        self.local_peer_id = local_peer_id
        self.local_username = local_username
        self.max_connections = max_connections
        self.messages: asyncio.Queue = asyncio.Queue(maxsize=MESSAGE_CAPACITY)
        self.disconnects: asyncio.Queue = asyncio.Queue(maxsize=DISCONNECT_CAPACITY)
        self._connections: Dict[str, PeerConnection] = {}
        self._lock = asyncio.Lock()

    async def add_peer(
        self, connection, peer_id: str, addr: str, username: str, protocol_version: str
    ) -> None:
        """Start serving a new connection; raises PeerError when full."""
        async with self._lock:
            if peer_id in self._connections:
                log.warning("Peer %s already connected", peer_id)
                with contextlib.suppress(Exception):
                    await connection.close()
                return
            if len(self._connections) >= self.max_connections:
                log.warning("Maximum connections reached, rejecting peer %s", peer_id)
                raise PeerError("Maximum connections reached")
            peer = Peer(peer_id, addr, username, protocol_version)
            self._connections[peer_id] = await PeerConnection.create(
                connection, peer, self.messages, self.disconnects
            )
            log.info("Added peer connection: %s (%s)", username, peer_id)

    async def remove_peer(self, peer_id: str, reason: str) -> None:
        async with self._lock:
            connection = self._connections.pop(peer_id, None)
            if connection is not None:
                await connection.disconnect(reason)
                log.info("Removed peer connection: %s", peer_id)

    async def disconnect_all_peers(self) -> None:
        async with self._lock:
            connections, self._connections = self._connections, {}
            log.info("Disconnecting all %d peers", len(connections))
            for peer_id, connection in connections.items():
                await connection.disconnect("Node shutting down")
                log.info("Disconnected peer: %s", peer_id)

    async def send_to_peer(self, peer_id: str, message: P2PMessage) -> None:
        connection = self._connections.get(peer_id)
        if connection is None:
            raise PeerError(f"Peer {peer_id} not found")
        await connection.send_message(message)

    async def broadcast_message(self, message: P2PMessage) -> None:
        for peer_id, connection in list(self._connections.items()):
            try:
                await connection.send_message(message)
            except PeerError as exc:
                log.warning("Failed to send message to %s: %s", peer_id, exc)

    def get_connected_peers(self) -> List[PeerInfo]:
        return [connection.peer.to_peer_info() for connection in self._connections.values()]

    def connection_count(self) -> int:
        return len(self._connections)

    def is_peer_connected(self, peer_id: str) -> bool:
        return peer_id in self._connections

    async def cleanup_dead_connections(self, timeout_secs: int) -> None:
        """Disconnect peers with no heartbeat within timeout_secs."""
        async with self._lock:
            dead: List[Tuple[str, PeerConnection]] = [
                (peer_id, connection)
                for peer_id, connection in self._connections.items()
                if not connection.peer.is_alive(timeout_secs)
            ]
            for peer_id, connection in dead:
                del self._connections[peer_id]
                await connection.disconnect("Connection timeout")
                log.warning("Removed dead peer connection: %s", peer_id)

    def update_peer_heartbeat(self, peer_id: str) -> None:
        connection = self._connections.get(peer_id)
        if connection is not None:
            connection.peer.update_heartbeat()
            log.debug("Updated heartbeat for peer %s", peer_id)