"""Peer-to-peer wire messages and their line-oriented JSON encoding."""

from __future__ import annotations

import dataclasses
import ipaddress
import json
from dataclasses import dataclass, field
from typing import Any, List, Union


def _require(body: dict, key: str, kind: type) -> Any:
    if key not in body:
        raise ValueError(f"missing field `{key}`")
    value = body[key]
    if kind is int and isinstance(value, bool) or not isinstance(value, kind):
        raise ValueError(f"field `{key}` has the wrong type")
    return value


def _uint(body: dict, key: str, bits: int) -> int:
    value = _require(body, key, int)
    if not 0 <= value < (1 << bits):
        raise ValueError(f"field `{key}` is out of range")
    return value


def _str_list(body: dict, key: str) -> List[str]:
    values = _require(body, key, list)
    if not all(isinstance(v, str) for v in values):
        raise ValueError(f"field `{key}` must hold strings")
    return list(values)


def _address(body: dict, key: str) -> str:
    value = _require(body, key, str)
    host, sep, port = value.rpartition(":")
    try:
        if not sep or not port.isdigit() or int(port) > 65535:
            raise ValueError
        if host.startswith("[") and host.endswith("]"):
            ipaddress.IPv6Address(host[1:-1])
        else:
            ipaddress.IPv4Address(host)
    except ValueError:
        raise ValueError(f"field `{key}` is not a socket address: {value!r}") from None
    return value


def _body_of(data: Any) -> dict:
    if not isinstance(data, dict):
        raise ValueError("expected a JSON object")
    return data


@dataclass
class PeerInfo:
    """A peer known to the network."""

    peer_id: str
    addr: str
    username: str
    last_seen: int

    def to_dict(self) -> dict:
        return {
            "peer_id": self.peer_id,
            "addr": self.addr,
            "username": self.username,
            "last_seen": self.last_seen,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "PeerInfo":
        body = _body_of(data)
        return cls(
            peer_id=_require(body, "peer_id", str),
            addr=_address(body, "addr"),
            username=_require(body, "username", str),
            last_seen=_uint(body, "last_seen", 64),
        )


@dataclass
class PeerAnnounce:
    peer_id: str
    listen_addr: str
    username: str

    def __str__(self) -> str:
        return f"*** Peer {self.username} ({self.peer_id}) announced at {self.listen_addr}"

    @classmethod
    def _from_body(cls, body: dict) -> "PeerAnnounce":
        return cls(
            _require(body, "peer_id", str),
            _address(body, "listen_addr"),
            _require(body, "username", str),
        )


@dataclass
class PeerListRequest:
    peer_id: str

    def __str__(self) -> str:
        return f"*** Peer list requested by {self.peer_id}"

    @classmethod
    def _from_body(cls, body: dict) -> "PeerListRequest":
        return cls(_require(body, "peer_id", str))


@dataclass
class PeerListResponse:
    peers: List[PeerInfo] = field(default_factory=list)

    def __str__(self) -> str:
        return f"*** Peer list response with {len(self.peers)} peers"

    @classmethod
    def _from_body(cls, body: dict) -> "PeerListResponse":
        return cls([PeerInfo.from_dict(p) for p in _require(body, "peers", list)])


@dataclass
class ChatMessage:
    message_id: str
    sender_id: str
    username: str
    content: str
    ttl: int
    seen_by: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        return f"{self.username}: {self.content}"

    @classmethod
    def _from_body(cls, body: dict) -> "ChatMessage":
        return cls(
            _require(body, "message_id", str),
            _require(body, "sender_id", str),
            _require(body, "username", str),
            _require(body, "content", str),
            _uint(body, "ttl", 8),
            _str_list(body, "seen_by"),
        )


@dataclass
class Handshake:
    peer_id: str
    username: str
    protocol_version: str

    def __str__(self) -> str:
        return (
            f"*** Handshake from {self.username} ({self.peer_id}) "
            f"using protocol {self.protocol_version}"
        )

    @classmethod
    def _from_body(cls, body: dict) -> "Handshake":
        return cls(
            _require(body, "peer_id", str),
            _require(body, "username", str),
            _require(body, "protocol_version", str),
        )


@dataclass
class Heartbeat:
    peer_id: str
    timestamp: int

    def __str__(self) -> str:
        return f"*** Heartbeat from {self.peer_id}"

    @classmethod
    def _from_body(cls, body: dict) -> "Heartbeat":
        return cls(_require(body, "peer_id", str), _uint(body, "timestamp", 64))


@dataclass
class Disconnect:
    peer_id: str
    reason: str

    def __str__(self) -> str:
        return f"*** Peer {self.peer_id} disconnected: {self.reason}"

    @classmethod
    def _from_body(cls, body: dict) -> "Disconnect":
        return cls(_require(body, "peer_id", str), _require(body, "reason", str))


P2PMessage = Union[
    PeerAnnounce, PeerListRequest, PeerListResponse, ChatMessage, Handshake, Heartbeat, Disconnect
]

_VARIANTS = {
    cls.__name__: cls
    for cls in (
        PeerAnnounce,
        PeerListRequest,
        PeerListResponse,
        ChatMessage,
        Handshake,
        Heartbeat,
        Disconnect,
    )
}


def encode_message(message: P2PMessage) -> str:
    """Encode a message as a single compact JSON line (without newline)."""
    name = type(message).__name__
    if _VARIANTS.get(name) is not type(message):
        raise TypeError(f"not a P2P message: {message!r}")
    return json.dumps({name: dataclasses.asdict(message)}, separators=(",", ":"))


def decode_message(line: Union[str, bytes]) -> P2PMessage:
    """Decode one JSON line into a message; raises ValueError if malformed."""
    data = _body_of(json.loads(line))
    if len(data) != 1:
        raise ValueError("expected exactly one message variant")
    (name, body), = data.items()
    variant = _VARIANTS.get(name)
    if variant is None:
        raise ValueError(f"unknown message variant `{name}`")
    return variant._from_body(_body_of(body))