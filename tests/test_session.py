import time

import pytest

from dpqchat.session import CryptoError, SessionKey, SessionKeyExchange, SessionManager


def test_session_key_generation():
    session_key = SessionKey.generate("test_peer")
    assert session_key.peer_fingerprint == "test_peer"
    assert not session_key.is_expired()
    assert len(session_key.key) == 32


def test_session_key_encryption():
    session_key = SessionKey.generate("test_peer")
    message = b"Hello, secure world!"
    encrypted = session_key.encrypt(message)
    assert session_key.decrypt(encrypted) == message


def test_session_manager():
    manager = SessionManager()
    session_key = SessionKey.generate("peer1")
    manager.add_session("peer1", session_key)
    assert manager.has_session("peer1")
    assert manager.session_count() == 1

    removed = manager.remove_session("peer1")
    assert removed is session_key
    assert not manager.has_session("peer1")
    assert manager.session_count() == 0


def test_encrypt_prepends_fresh_nonce():
    session_key = SessionKey.generate("peer")
    first = session_key.encrypt(b"same")
    second = session_key.encrypt(b"same")
    assert first[:12] != second[:12]
    assert session_key.decrypt(first) == session_key.decrypt(second) == b"same"


def test_decrypt_too_short_raises():
    session_key = SessionKey.generate("peer")
    with pytest.raises(CryptoError, match="too short"):
        session_key.decrypt(b"\x00" * 11)


def test_decrypt_tampered_raises():
    session_key = SessionKey.generate("peer")
    data = bytearray(session_key.encrypt(b"payload"))
    data[-1] ^= 0x01
    with pytest.raises(CryptoError):
        session_key.decrypt(bytes(data))


def test_decrypt_with_other_key_raises():
    encrypted = SessionKey.generate("a").encrypt(b"payload")
    with pytest.raises(CryptoError):
        SessionKey.generate("b").decrypt(encrypted)


def test_shared_secret_derivation_is_symmetric():
    shared_bytes = bytes([7]) * 32
    alice = SessionKey.from_shared_secret(shared_bytes, "bob_fp")
    bob = SessionKey.from_shared_secret(shared_bytes, "alice_fp")
    assert alice.key == bob.key
    assert bob.decrypt(alice.encrypt(b"hi bob")) == b"hi bob"


def test_shared_secret_derivation_differs_per_secret():
    first = SessionKey.from_shared_secret(b"one", "p")
    second = SessionKey.from_shared_secret(b"two", "p")
    assert first.key != second.key


def test_invalid_key_length_rejected():
    with pytest.raises(ValueError):
        SessionKey(key=b"short", peer_fingerprint="p")


def test_old_key_is_expired():
    old = SessionKey(key=bytes(32), peer_fingerprint="p", created_at=int(time.time()) - 3601)
    assert old.is_expired()


def test_cleanup_expired_keeps_fresh_sessions():
    manager = SessionManager()
    old = SessionKey(key=bytes(32), peer_fingerprint="old", created_at=int(time.time()) - 7200)
    manager.add_session("old", old)
    manager.add_session("new", SessionKey.generate("new"))
    manager.cleanup_expired()
    assert manager.active_peers() == ["new"]


def test_get_session_missing_returns_none_and_present_returns_key():
    manager = SessionManager()
    key = SessionKey.generate("p")
    manager.add_session("p", key)
    assert manager.get_session("p") is key
    assert manager.get_session("q") is None
    assert manager.remove_session("q") is None


def test_session_key_exchange_fields():
    exchange = SessionKeyExchange(ephemeral_public_key=b"\x01\x02", timestamp=5, signature=b"\x03")
    assert exchange.ephemeral_public_key == b"\x01\x02"
    assert exchange.timestamp == 5
    assert exchange.signature == b"\x03"