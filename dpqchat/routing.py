"""Flood routing of chat messages with loop and duplicate suppression."""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Union

from dpqchat.message import (
    ChatMessage,
    Disconnect,
    Handshake,
    Heartbeat,
    P2PMessage,
    PeerAnnounce,
    PeerInfo,
    PeerListRequest,
    PeerListResponse,
)

log = logging.getLogger(__name__)

DEFAULT_TTL = 7
PROTOCOL_VERSION = "1.0"


@dataclass(frozen=True)
class Drop:
    """Ignore the message."""


@dataclass(frozen=True)
class Deliver:
    message: P2PMessage


@dataclass(frozen=True)
class ForwardAndDeliver:
    original_message: P2PMessage
    forward_message: P2PMessage
    forward_to: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class Respond:
    to_peer: str
    message: P2PMessage


@dataclass(frozen=True)
class UpdateHeartbeat:
    peer_id: str


RoutingAction = Union[Drop, Deliver, ForwardAndDeliver, Respond, UpdateHeartbeat]


@dataclass(frozen=True)
class NetworkStats:
    connected_peers: int
    cached_messages: int


class RoutingTable:
    """Known peers plus a time-stamped cache of seen message ids."""

    def __init__(self, local_peer_id: str, *, clock: Callable[[], float] = time.time) -> None:
        self.local_peer_id = local_peer_id
        self.max_cache_size = 10000
        self.cache_ttl_secs = 300
        self._clock = clock
        self._peers: Dict[str, PeerInfo] = {}
        self._message_cache: Dict[str, int] = {}

    def _now(self) -> int:
        return int(self._clock())

    def add_peer(self, peer_info: PeerInfo) -> None:
        self._peers[peer_info.peer_id] = peer_info
        log.info("Added peer to routing table: %s (%s)", peer_info.username, peer_info.peer_id)

    def remove_peer(self, peer_id: str) -> None:
        if self._peers.pop(peer_id, None) is not None:
            log.info("Removed peer from routing table: %s", peer_id)

    def get_peers(self) -> List[PeerInfo]:
        return list(self._peers.values())

    def has_seen_message(self, message_id: str) -> bool:
        return message_id in self._message_cache

    def mark_message_seen(self, message_id: str) -> None:
        now = self._now()
        self._message_cache[message_id] = now
        if len(self._message_cache) > self.max_cache_size:
            self._evict_before(now - self.cache_ttl_secs)

    def cleanup_message_cache(self) -> None:
        old_size = len(self._message_cache)
        self._evict_before(self._now() - self.cache_ttl_secs)
        if old_size != len(self._message_cache):
            log.debug(
                "Cleaned up message cache: %d -> %d entries", old_size, len(self._message_cache)
            )

    def _evict_before(self, cutoff: int) -> None:
        self._message_cache = {
            mid: stamp for mid, stamp in self._message_cache.items() if stamp > cutoff
        }

    def cached_message_count(self) -> int:
        return len(self._message_cache)

    def peer_count(self) -> int:
        return len(self._peers)


class MessageRouter:
    """Decides what to do with each incoming message."""

    def __init__(
        self,
        local_peer_id: str,
        local_username: str,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.local_peer_id = local_peer_id
        self.local_username = local_username
        self._clock = clock
        self.routing_table = RoutingTable(local_peer_id, clock=clock)

    def process_message(self, message: P2PMessage, from_peer_id: str) -> RoutingAction:
        if isinstance(message, ChatMessage):
            return self._route_chat(message, from_peer_id)
        if isinstance(message, PeerAnnounce):
            self.routing_table.add_peer(
                PeerInfo(
                    peer_id=message.peer_id,
                    addr=message.listen_addr,
                    username=message.username,
                    last_seen=int(self._clock()),
                )
            )
            return Deliver(message)
        if isinstance(message, PeerListRequest):
            return Respond(message.peer_id, PeerListResponse(self.routing_table.get_peers()))
        if isinstance(message, PeerListResponse):
            for peer in message.peers:
                self.routing_table.add_peer(peer)
            return Deliver(message)
        if isinstance(message, Handshake):
            return Deliver(message)
        if isinstance(message, Heartbeat):
            log.debug("Received heartbeat from %s", message.peer_id)
            return UpdateHeartbeat(message.peer_id)
        if isinstance(message, Disconnect):
            self.routing_table.remove_peer(message.peer_id)
            return Deliver(message)
        raise TypeError(f"not a P2P message: {message!r}")

    def _route_chat(self, message: ChatMessage, from_peer_id: str) -> RoutingAction:
        if self.routing_table.has_seen_message(message.message_id):
            log.debug("Ignoring duplicate message: %s", message.message_id)
            return Drop()
        if message.ttl == 0:
            log.debug("Dropping message with expired TTL: %s", message.message_id)
            return Drop()
        if self.local_peer_id in message.seen_by:
            log.debug("Ignoring message already seen by us: %s", message.message_id)
            return Drop()

        self.routing_table.mark_message_seen(message.message_id)
        seen_by = [*message.seen_by, self.local_peer_id]

        forward_message = ChatMessage(
            message_id=message.message_id,
            sender_id=message.sender_id,
            username=message.username,
            content=message.content,
            ttl=message.ttl - 1,
            seen_by=list(seen_by),
        )
        forward_to = [
            peer.peer_id
            for peer in self.routing_table.get_peers()
            if peer.peer_id not in (from_peer_id, message.sender_id)
            and peer.peer_id not in seen_by
        ]
        original = ChatMessage(
            message_id=message.message_id,
            sender_id=message.sender_id,
            username=message.username,
            content=message.content,
            ttl=message.ttl,
            seen_by=seen_by,
        )
        return ForwardAndDeliver(original, forward_message, forward_to)

    def create_chat_message(self, content: str) -> ChatMessage:
        return ChatMessage(
            message_id=str(uuid.uuid4()),
            sender_id=self.local_peer_id,
            username=self.local_username,
            content=content,
            ttl=DEFAULT_TTL,
            seen_by=[self.local_peer_id],
        )

    def create_peer_announce(self, listen_addr: str) -> PeerAnnounce:
        return PeerAnnounce(self.local_peer_id, listen_addr, self.local_username)

    def create_handshake(self) -> Handshake:
        return Handshake(self.local_peer_id, self.local_username, PROTOCOL_VERSION)

    def get_network_stats(self) -> NetworkStats:
        return NetworkStats(
            connected_peers=self.routing_table.peer_count(),
            cached_messages=self.routing_table.cached_message_count(),
        )