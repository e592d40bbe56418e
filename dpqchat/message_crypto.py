"""Encrypted chat payloads, message kinds and replay protection."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Any, Dict, Union

from dpqchat.session import SessionKey

TYPING_CONTENT = "typing..."


class IntegrityError(ValueError):
    """Raised when a message fails freshness, sender or sequence checks."""


@dataclass(frozen=True)
class TextType:
    """A regular text message."""


@dataclass(frozen=True)
class FileType:
    filename: str
    size: int


@dataclass(frozen=True)
class SystemType:
    """A system notice such as a join or leave."""


@dataclass(frozen=True)
class TypingType:
    """A typing indicator."""


@dataclass(frozen=True)
class AckType:
    message_id: int


MessageType = Union[TextType, FileType, SystemType, TypingType, AckType]

_UNIT_TYPES = {"Text": TextType, "System": SystemType, "Typing": TypingType}


def _uint(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value < 1 << 64:
        raise ValueError(f"field `{name}` must be an unsigned 64-bit integer")
    return value


def _string(value: Any, name: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"field `{name}` must be a string")
    return value


def _field(body: Any, name: str) -> Any:
    if not isinstance(body, dict):
        raise ValueError("expected a JSON object")
    if name not in body:
        raise ValueError(f"missing field `{name}`")
    return body[name]


def _type_to_json(message_type: MessageType) -> Any:
    if isinstance(message_type, FileType):
        return {"File": {"filename": message_type.filename, "size": message_type.size}}
    if isinstance(message_type, AckType):
        return {"Ack": {"message_id": message_type.message_id}}
    for name, cls in _UNIT_TYPES.items():
        if isinstance(message_type, cls):
            return name
    raise TypeError(f"not a message type: {message_type!r}")


def _type_from_json(data: Any) -> MessageType:
    if isinstance(data, str):
        if data not in _UNIT_TYPES:
            raise ValueError(f"unknown message type `{data}`")
        return _UNIT_TYPES[data]()
    if isinstance(data, dict) and len(data) == 1:
        (name, body), = data.items()
        if name == "File":
            return FileType(
                _string(_field(body, "filename"), "filename"),
                _uint(_field(body, "size"), "size"),
            )
        if name == "Ack":
            return AckType(_uint(_field(body, "message_id"), "message_id"))
        raise ValueError(f"unknown message type `{name}`")
    raise ValueError("malformed message type")


@dataclass
class PlainMessage:
    """A chat message before encryption."""

    content: str
    sender: str
    timestamp: int
    message_type: MessageType

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content": self.content,
            "sender": self.sender,
            "timestamp": self.timestamp,
            "message_type": _type_to_json(self.message_type),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "PlainMessage":
        return cls(
            content=_string(_field(data, "content"), "content"),
            sender=_string(_field(data, "sender"), "sender"),
            timestamp=_uint(_field(data, "timestamp"), "timestamp"),
            message_type=_type_from_json(_field(data, "message_type")),
        )


@dataclass
class EncryptedMessage:
    """An encrypted chat message as sent over the network."""

    sender_fingerprint: str
    encrypted_content: bytes
    timestamp: int
    message_type: MessageType
    sequence: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sender_fingerprint": self.sender_fingerprint,
            "encrypted_content": list(self.encrypted_content),
            "timestamp": self.timestamp,
            "message_type": _type_to_json(self.message_type),
            "sequence": self.sequence,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "EncryptedMessage":
        content = _field(data, "encrypted_content")
        if not isinstance(content, list):
            raise ValueError("field `encrypted_content` must be a list of bytes")
        try:
            raw = bytes(content)
        except (TypeError, ValueError) as exc:
            raise ValueError("field `encrypted_content` must be a list of bytes") from exc
        return cls(
            sender_fingerprint=_string(_field(data, "sender_fingerprint"), "sender_fingerprint"),
            encrypted_content=raw,
            timestamp=_uint(_field(data, "timestamp"), "timestamp"),
            message_type=_type_from_json(_field(data, "message_type")),
            sequence=_uint(_field(data, "sequence"), "sequence"),
        )


def _now() -> int:
    return int(time.time())


def encrypt_message(
    session_key: SessionKey, message: PlainMessage, sequence: int
) -> EncryptedMessage:
    """Serialise and encrypt a plain message with the session key."""
    payload = json.dumps(message.to_dict(), separators=(",", ":")).encode("utf-8")
    return EncryptedMessage(
        sender_fingerprint=session_key.peer_fingerprint,
        encrypted_content=session_key.encrypt(payload),
        timestamp=message.timestamp,
        message_type=message.message_type,
        sequence=sequence,
    )


def decrypt_message(session_key: SessionKey, encrypted_message: EncryptedMessage) -> PlainMessage:
    """Decrypt and parse an encrypted message."""
    payload = session_key.decrypt(encrypted_message.encrypted_content)
    return PlainMessage.from_dict(json.loads(payload))


def create_text_message(sender: str, content: str) -> PlainMessage:
    return PlainMessage(content, sender, _now(), TextType())


def create_system_message(sender: str, content: str) -> PlainMessage:
    return PlainMessage(content, sender, _now(), SystemType())


def create_typing_message(sender: str) -> PlainMessage:
    return PlainMessage(TYPING_CONTENT, sender, _now(), TypingType())


def verify_message_integrity(
    encrypted_message: EncryptedMessage, expected_sender: str, max_age_seconds: int
) -> None:
    """Reject stale messages and messages from an unexpected sender."""
    if _now() - encrypted_message.timestamp > max_age_seconds:
        raise IntegrityError("Message too old")
    if encrypted_message.sender_fingerprint != expected_sender:
        raise IntegrityError("Sender fingerprint mismatch")


class MessageSequenceManager:
    """Issues outgoing sequence numbers and rejects replayed incoming ones."""

    def __init__(self) -> None:
        self._peer_sequences: Dict[str, int] = {}
        self._our_sequence = 0

    def next_sequence(self) -> int:
        self._our_sequence += 1
        return self._our_sequence

    def validate_sequence(self, peer_fingerprint: str, sequence: int) -> None:
        last = self._peer_sequences.get(peer_fingerprint)
        if last is not None and sequence <= last:
            raise IntegrityError("Duplicate or old message sequence")
        self._peer_sequences[peer_fingerprint] = sequence

    def reset_peer_sequence(self, peer_fingerprint: str) -> None:
        self._peer_sequences.pop(peer_fingerprint, None)