"""Events emitted by a P2P node and its running statistics."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Union

from dpqchat.message import P2PMessage, PeerInfo


@dataclass(frozen=True)
class PeerConnected:
    peer_id: str
    addr: str
    username: str


@dataclass(frozen=True)
class PeerDisconnected:
    peer_id: str
    reason: str


@dataclass(frozen=True)
class MessageReceived:
    message: P2PMessage
    from_peer: str


@dataclass(frozen=True)
class TopologyChanged:
    connected_peers: List[PeerInfo] = field(default_factory=list)


@dataclass(frozen=True)
class PeersDiscovered:
    peers: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class ErrorEvent:
    error: str
    peer_id: Optional[str] = None


P2PEvent = Union[
    PeerConnected, PeerDisconnected, MessageReceived, TopologyChanged, PeersDiscovered, ErrorEvent
]


@dataclass
class P2PStats:
    """Counters describing a node's activity."""

    connected_peers: int = 0
    total_messages_sent: int = 0
    total_messages_received: int = 0
    bytes_sent: int = 0
    bytes_received: int = 0
    uptime_secs: int = 0
    discovery_attempts: int = 0
    successful_connections: int = 0
    failed_connections: int = 0