import json

import pytest

from dpqchat.message_crypto import (
    AckType,
    EncryptedMessage,
    FileType,
    IntegrityError,
    MessageSequenceManager,
    PlainMessage,
    SystemType,
    TextType,
    TypingType,
    create_system_message,
    create_text_message,
    create_typing_message,
    decrypt_message,
    encrypt_message,
    verify_message_integrity,
)
from dpqchat.session import CryptoError, SessionKey


def test_message_encryption_decryption():
    session_key = SessionKey.generate("test_peer")
    plain = create_text_message("alice", "Hello, Bob!")
    encrypted = encrypt_message(session_key, plain, 1)
    decrypted = decrypt_message(session_key, encrypted)
    assert decrypted.content == plain.content
    assert decrypted.sender == plain.sender
    assert decrypted == plain


def test_sequence_manager():
    manager = MessageSequenceManager()
    assert manager.next_sequence() == 1
    assert manager.next_sequence() == 2
    manager.validate_sequence("peer1", 1)
    manager.validate_sequence("peer1", 2)
    with pytest.raises(IntegrityError):
        manager.validate_sequence("peer1", 1)


def test_reset_peer_sequence_allows_restart():
    manager = MessageSequenceManager()
    manager.validate_sequence("peer1", 5)
    with pytest.raises(IntegrityError, match="Duplicate or old"):
        manager.validate_sequence("peer1", 5)
    manager.reset_peer_sequence("peer1")
    manager.validate_sequence("peer1", 1)
    with pytest.raises(IntegrityError):
        manager.validate_sequence("peer1", 1)


def test_encrypted_message_metadata():
    session_key = SessionKey.generate("test_peer")
    plain = create_system_message("alice", "joined")
    encrypted = encrypt_message(session_key, plain, 42)
    assert encrypted.sender_fingerprint == "test_peer"
    assert encrypted.sequence == 42
    assert encrypted.timestamp == plain.timestamp
    assert encrypted.message_type == SystemType()
    assert b"joined" not in encrypted.encrypted_content


def test_file_type_survives_encryption():
    session_key = SessionKey.generate("p")
    plain = PlainMessage("data", "alice", 100, FileType("notes.txt", 2048))
    decrypted = decrypt_message(session_key, encrypt_message(session_key, plain, 1))
    assert decrypted.message_type == FileType("notes.txt", 2048)


def test_decrypt_with_wrong_key_fails():
    encrypted = encrypt_message(SessionKey.generate("a"), create_text_message("a", "x"), 1)
    with pytest.raises(CryptoError):
        decrypt_message(SessionKey.generate("b"), encrypted)


def test_typing_message():
    message = create_typing_message("bob")
    assert message.content == "typing..."
    assert message.sender == "bob"
    assert message.message_type == TypingType()


def test_text_message_type():
    assert create_text_message("a", "b").message_type == TextType()


def test_message_type_wire_form():
    assert PlainMessage("c", "s", 1, TextType()).to_dict()["message_type"] == "Text"
    assert PlainMessage("c", "s", 1, AckType(9)).to_dict()["message_type"] == {
        "Ack": {"message_id": 9}
    }


def test_plain_message_dict_roundtrip():
    plain = PlainMessage("hello", "alice", 77, AckType(3))
    assert PlainMessage.from_dict(json.loads(json.dumps(plain.to_dict()))) == plain


def test_plain_message_from_dict_rejects_unknown_type():
    with pytest.raises(ValueError):
        PlainMessage.from_dict({"content": "c", "sender": "s", "timestamp": 1, "message_type": "Nope"})


def test_encrypted_message_dict_roundtrip():
    original = EncryptedMessage("fp", b"\x00\xff\x10", 12, FileType("a.bin", 3), 4)
    assert EncryptedMessage.from_dict(original.to_dict()) == original


def test_verify_rejects_old_message():
    old = EncryptedMessage("fp", b"", 0, TextType(), 1)
    with pytest.raises(IntegrityError, match="Message too old"):
        verify_message_integrity(old, "fp", 60)


def test_verify_rejects_wrong_sender():
    session_key = SessionKey.generate("fp")
    fresh = encrypt_message(session_key, create_text_message("a", "b"), 1)
    with pytest.raises(IntegrityError, match="Sender fingerprint mismatch"):
        verify_message_integrity(fresh, "other", 60)