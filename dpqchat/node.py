"""The P2P node: listener, bootstrap connections, routing and background upkeep."""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import inspect
import logging
import ssl
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, List, Optional, Set

from dpqchat.discovery import DiscoveryMethod, PeerDiscovery, default_discovery_methods
from dpqchat.events import (
    MessageReceived,
    P2PEvent,
    P2PStats,
    PeerConnected,
    PeerDisconnected,
    PeersDiscovered,
)
from dpqchat.message import Disconnect, P2PMessage, PeerInfo
from dpqchat.peer import PeerError, PeerManager
from dpqchat.routing import (
    Deliver,
    ForwardAndDeliver,
    MessageRouter,
    Respond,
    UpdateHeartbeat,
)
from dpqchat.tls import CertificateManager, TlsConnection, TlsContext, TlsListener

log = logging.getLogger(__name__)

EVENT_CAPACITY = 1000
PROTOCOL_VERSION = "1.0"
SHUTDOWN_REASON = "Node shutting down"
CONNECTION_LOST = "Connection lost"
CLEANUP_INTERVAL_SECS = 60.0
DEAD_PEER_TIMEOUT_SECS = 120
STATS_INTERVAL_SECS = 10.0
DISCONNECT_GRACE_SECS = 0.1
CLEANUP_GRACE_SECS = 0.05


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


@dataclass
class P2PNodeConfig:
    """Settings for a P2P node."""

    listen_addr: str = "127.0.0.1:0"
    username: str = "Anonymous"
    enable_tls: bool = True
    max_connections: int = 50
    connection_timeout_secs: int = 30
    heartbeat_interval_secs: int = 30
    discovery_methods: List[DiscoveryMethod] = field(default_factory=default_discovery_methods)
    bootstrap_peers: List[str] = field(default_factory=list)


class P2PNode:
    """A chat node; events it produces arrive on the ``events`` queue."""

    def __init__(self, config: Optional[P2PNodeConfig] = None) -> None:
        self.config = config if config is not None else P2PNodeConfig()
        self.peer_id = str(uuid.uuid4())
        self.events: asyncio.Queue = asyncio.Queue(maxsize=EVENT_CAPACITY)

        self._tls_context: Optional[TlsContext] = None
        if self.config.enable_tls:
            cert_manager = CertificateManager(self.peer_id)
            cert_manager.generate_self_signed_cert()
            self._tls_context = TlsContext.create(cert_manager)

        self._peer_manager = PeerManager(
            self.peer_id, self.config.username, self.config.max_connections
        )
        self._router = MessageRouter(self.peer_id, self.config.username)
        self._discovery = PeerDiscovery(
            self.peer_id,
            self.config.username,
            self.config.listen_addr,
            self.config.discovery_methods,
        )
        self._stats = P2PStats()
        self._running = False
        self._actual_listen_addr: Optional[str] = None
        self._listener: Optional[TlsListener] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def username(self) -> str:
        return self.config.username

    @property
    def running(self) -> bool:
        return self._running

    def _spawn(self, coro: Awaitable) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _emit(self, event: P2PEvent) -> None:
        await self.events.put(event)

    async def start(self) -> None:
        """Listen, start discovery and background work, and dial bootstrap peers."""
        log.info("Starting P2P node %s with username: %s", self.peer_id, self.config.username)
        self._running = True
        await self._start_listener()
        await self._start_discovery()
        self._spawn(self._process_messages())
        self._spawn(self._process_disconnects())
        self._spawn(self._cleanup_loop())
        self._spawn(self._stats_loop())
        for addr in self.config.bootstrap_peers:
            self._spawn(self._connect_bootstrap(addr))
        log.info("P2P node started successfully")

    async def stop(self) -> None:
        """Tell peers we are leaving, then shut everything down."""
        log.info("Stopping P2P node %s", self.peer_id)
        self._running = False
        await self._peer_manager.broadcast_message(
            Disconnect(peer_id=self.peer_id, reason=SHUTDOWN_REASON)
        )
        await asyncio.sleep(DISCONNECT_GRACE_SECS)
        await self._discovery.stop()
        await self._peer_manager.disconnect_all_peers()

        tasks = [task for task in self._tasks if task is not asyncio.current_task()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        listener, self._listener = self._listener, None
        if listener is not None:
            await listener.close()
        await asyncio.sleep(CLEANUP_GRACE_SECS)
        log.info("P2P node stopped completely")

    async def __aenter__(self) -> "P2PNode":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    async def send_chat_message(self, content: str) -> None:
        """Broadcast a chat message to every connected peer."""
        message = await _resolve(self._router.create_chat_message(content))
        await self._peer_manager.broadcast_message(message)
        self._stats.total_messages_sent += 1

    def get_stats(self) -> P2PStats:
        """A snapshot of the node's counters."""
        return dataclasses.replace(
            self._stats, connected_peers=self._peer_manager.connection_count()
        )

    def get_connected_peers(self) -> List[PeerInfo]:
        return self._peer_manager.get_connected_peers()

    def listen_addr(self) -> str:
        """The bound address once listening, else the configured one."""
        return self._actual_listen_addr or self.config.listen_addr

    async def _start_listener(self) -> None:
        if self._tls_context is not None:
            listener = await TlsListener.bind_tls(
                self.config.listen_addr, self._tls_context.server_context
            )
        else:
            listener = await TlsListener.bind_plain(self.config.listen_addr)
        self._listener = listener
        self._actual_listen_addr = listener.local_addr()
        log.info("Listening for connections on %s", self._actual_listen_addr)
        self._spawn(self._accept_loop(listener))

    async def _accept_loop(self, listener: TlsListener) -> None:
        while self._running:
            try:
                connection, peer_addr = await listener.accept()
            except (OSError, ssl.SSLError) as exc:
                log.error("Failed to accept connection: %s", exc)
                continue
            log.info("Accepted connection from %s", peer_addr)
            self._spawn(self._handle_incoming(connection, peer_addr))

    async def _handle_incoming(self, connection: TlsConnection, peer_addr: str) -> None:
        try:
            await self._register(connection, peer_addr)
        except (PeerError, OSError) as exc:
            log.error("Failed to handle incoming connection from %s: %s", peer_addr, exc)
            with contextlib.suppress(Exception):
                await connection.close()

    async def _register(self, connection: TlsConnection, addr: str) -> None:
        temp_peer_id = str(uuid.uuid4())
        temp_username = f"Peer@{addr}"
        await self._peer_manager.add_peer(
            connection, temp_peer_id, addr, temp_username, PROTOCOL_VERSION
        )
        await self._emit(PeerConnected(peer_id=temp_peer_id, addr=addr, username=temp_username))

    async def _start_discovery(self) -> None:
        found = await self._discovery.start()
        self._spawn(self._discovery_loop(found))

    async def _discovery_loop(self, found: asyncio.Queue) -> None:
        while self._running:
            peer = await found.get()
            log.debug("Discovered peer: %r", peer)
            await self._emit(PeersDiscovered(peers=[peer.addr]))

    async def _process_messages(self) -> None:
        while self._running:
            message, from_peer = await self._peer_manager.messages.get()
            await self._handle_message(message, from_peer)

    async def _handle_message(self, message: P2PMessage, from_peer: str) -> None:
        action = await _resolve(self._router.process_message(message, from_peer))
        if isinstance(action, Deliver):
            await self._emit(MessageReceived(message=action.message, from_peer=from_peer))
        elif isinstance(action, ForwardAndDeliver):
            await self._emit(
                MessageReceived(message=action.original_message, from_peer=from_peer)
            )
            for peer_id in action.forward_to:
                try:
                    await self._peer_manager.send_to_peer(peer_id, action.forward_message)
                except PeerError as exc:
                    log.debug("Failed to forward message to %s: %s", peer_id, exc)
        elif isinstance(action, Respond):
            try:
                await self._peer_manager.send_to_peer(action.to_peer, action.message)
            except PeerError as exc:
                log.debug("Failed to send response to %s: %s", action.to_peer, exc)
        elif isinstance(action, UpdateHeartbeat):
            self._peer_manager.update_peer_heartbeat(action.peer_id)
        else:
            log.debug("Dropped message from %s", from_peer)

    async def _process_disconnects(self) -> None:
        while self._running:
            peer_id = await self._peer_manager.disconnects.get()
            await self._peer_manager.remove_peer(peer_id, CONNECTION_LOST)
            await self._emit(PeerDisconnected(peer_id=peer_id, reason=CONNECTION_LOST))

    async def _cleanup_loop(self) -> None:
        while self._running:
            await self._peer_manager.cleanup_dead_connections(DEAD_PEER_TIMEOUT_SECS)
            log.debug("Performed cleanup tasks")
            await asyncio.sleep(CLEANUP_INTERVAL_SECS)

    async def _stats_loop(self) -> None:
        loop = asyncio.get_running_loop()
        started = loop.time()
        while self._running:
            self._stats.uptime_secs = int(loop.time() - started)
            await asyncio.sleep(STATS_INTERVAL_SECS)

    async def _connect_bootstrap(self, addr: str) -> None:
        try:
            if self._tls_context is not None:
                connection = await TlsConnection.connect_tls(
                    addr, self._tls_context.client_context
                )
            else:
                connection = await TlsConnection.connect_plain(addr)
        except (OSError, ssl.SSLError, ValueError) as exc:
            log.warning("Failed to connect to bootstrap peer %s: %s", addr, exc)
            return
        try:
            await self._register(connection, addr)
        except PeerError as exc:
            log.warning("Failed to connect to bootstrap peer %s: %s", addr, exc)
            with contextlib.suppress(Exception):
                await connection.close()
            return
        log.info("Successfully connected to bootstrap peer: %s", addr)