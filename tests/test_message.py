import json

import pytest

from dpqchat.message import (
    ChatMessage,
    Disconnect,
    Handshake,
    Heartbeat,
    PeerAnnounce,
    PeerInfo,
    PeerListRequest,
    PeerListResponse,
    decode_message,
    encode_message,
)

PEER_A = PeerInfo("pa", "127.0.0.1:9000", "alice", 10)
PEER_B = PeerInfo("pb", "[::1]:9001", "bob", 20)

ALL_MESSAGES = [
    PeerAnnounce("p1", "127.0.0.1:9000", "alice"),
    PeerListRequest("p1"),
    PeerListResponse([PEER_A, PEER_B]),
    ChatMessage("m1", "p1", "alice", "hello", 7, ["p1", "p2"]),
    Handshake("p1", "alice", "1.0"),
    Heartbeat("p1", 123456),
    Disconnect("p1", "bye"),
]


@pytest.mark.parametrize("message", ALL_MESSAGES)
def test_round_trip(message):
    line = encode_message(message)
    assert "\n" not in line
    assert decode_message(line) == message


def test_heartbeat_wire_format():
    assert encode_message(Heartbeat("p1", 5)) == '{"Heartbeat":{"peer_id":"p1","timestamp":5}}'


def test_externally_tagged_shape():
    encoded = json.loads(encode_message(ALL_MESSAGES[2]))
    assert list(encoded) == ["PeerListResponse"]
    assert encoded["PeerListResponse"]["peers"][0] == PEER_A.to_dict()


def test_decode_handwritten_line():
    assert decode_message('{"PeerListRequest":{"peer_id":"p9"}}') == PeerListRequest("p9")


def test_display_chat():
    assert str(ChatMessage("m", "s", "alice", "hello", 7, [])) == "alice: hello"


def test_display_disconnect():
    assert str(Disconnect("p1", "bye")) == "*** Peer p1 disconnected: bye"


@pytest.mark.parametrize("message", [m for m in ALL_MESSAGES if not isinstance(m, ChatMessage)])
def test_display_system_messages_are_marked(message):
    decoded = decode_message(encode_message(message))
    assert str(decoded).startswith("***")


def test_peer_info_round_trip():
    assert PeerInfo.from_dict(PEER_B.to_dict()) == PEER_B


@pytest.mark.parametrize(
    "line",
    [
        "not json",
        "[]",
        '{"Unknown":{}}',
        '{"Heartbeat":{"peer_id":"p1"}}',
        '{"Heartbeat":{"peer_id":"p1","timestamp":-1}}',
        '{"Heartbeat":{"peer_id":"p1","timestamp":true}}',
        '{"ChatMessage":{"message_id":"m","sender_id":"s","username":"u","content":"c","ttl":300,"seen_by":[]}}',
        '{"PeerAnnounce":{"peer_id":"p","listen_addr":"nowhere","username":"u"}}',
        '{"Disconnect":{"peer_id":"p","reason":"r"},"Heartbeat":{"peer_id":"p","timestamp":1}}',
    ],
)
def test_decode_rejects_malformed(line):
    with pytest.raises(ValueError):
        decode_message(line)


def test_encode_rejects_non_message():
    with pytest.raises(TypeError):
        encode_message(PEER_A)