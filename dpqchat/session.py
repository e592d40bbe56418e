"""Ephemeral AES-256-GCM session keys and a per-peer session registry."""

from __future__ import annotations

import hashlib
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

log = logging.getLogger(__name__)

KEY_SIZE = 32
NONCE_SIZE = 12
SESSION_LIFETIME_SECS = 3600
_DERIVATION_LABEL = b"dpq-chat-session-key"


class CryptoError(Exception):
    """Raised when encryption or decryption fails."""


def _now() -> int:
    return int(time.time())


@dataclass(frozen=True)
class SessionKey:
    """A symmetric key shared with one peer."""

    key: bytes = field(repr=False)
    peer_fingerprint: str
    created_at: int = field(default_factory=_now)

    def __post_init__(self) -> None:
        if len(self.key) != KEY_SIZE:
            raise ValueError(f"session key must be {KEY_SIZE} bytes, got {len(self.key)}")

    @classmethod
    def generate(cls, peer_fingerprint: str) -> "SessionKey":
        """Create a fresh random key for a peer."""
        return cls(key=os.urandom(KEY_SIZE), peer_fingerprint=peer_fingerprint)

    @classmethod
    def from_shared_secret(cls, shared_secret: bytes, peer_fingerprint: str) -> "SessionKey":
        """Derive a key from a key-exchange secret with SHA-256."""
        digest = hashlib.sha256(bytes(shared_secret) + _DERIVATION_LABEL).digest()
        return cls(key=digest, peer_fingerprint=peer_fingerprint)

    def is_expired(self) -> bool:
        """True once the key is more than an hour old."""
        return _now() - self.created_at > SESSION_LIFETIME_SECS

    def encrypt(self, plaintext: bytes) -> bytes:
        """Encrypt and return the random nonce followed by the ciphertext."""
        nonce = os.urandom(NONCE_SIZE)
        try:
            ciphertext = AESGCM(self.key).encrypt(nonce, bytes(plaintext), None)
        except (OverflowError, ValueError) as exc:
            raise CryptoError(f"Encryption failed: {exc}") from exc
        return nonce + ciphertext

    def decrypt(self, encrypted_data: bytes) -> bytes:
        """Decrypt data produced by :meth:`encrypt`."""
        if len(encrypted_data) < NONCE_SIZE:
            raise CryptoError("Invalid encrypted data: too short")
        nonce, ciphertext = encrypted_data[:NONCE_SIZE], encrypted_data[NONCE_SIZE:]
        try:
            return AESGCM(self.key).decrypt(bytes(nonce), bytes(ciphertext), None)
        except InvalidTag as exc:
            raise CryptoError("Decryption failed: authentication tag mismatch") from exc


class SessionManager:
    """Holds the active session key for each peer."""

    def __init__(self) -> None:
        self._sessions: Dict[str, SessionKey] = {}

    def add_session(self, peer_fingerprint: str, session_key: SessionKey) -> None:
        log.info("Adding session key for peer: %s", peer_fingerprint)
        self._sessions[peer_fingerprint] = session_key

    def get_session(self, peer_fingerprint: str) -> Optional[SessionKey]:
        return self._sessions.get(peer_fingerprint)

    def remove_session(self, peer_fingerprint: str) -> Optional[SessionKey]:
        log.info("Removing session key for peer: %s", peer_fingerprint)
        return self._sessions.pop(peer_fingerprint, None)

    def cleanup_expired(self) -> None:
        expired = [peer for peer, key in self._sessions.items() if key.is_expired()]
        for peer in expired:
            log.info("Removing expired session key for peer: %s", peer)
            del self._sessions[peer]

    def active_peers(self) -> List[str]:
        return list(self._sessions)

    def has_session(self, peer_fingerprint: str) -> bool:
        return peer_fingerprint in self._sessions

    def session_count(self) -> int:
        return len(self._sessions)


@dataclass
class SessionKeyExchange:
    """Key exchange data sent over the network."""

    ephemeral_public_key: bytes
    timestamp: int
    signature: bytes