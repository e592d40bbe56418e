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
)
from dpqchat.routing import (
    Deliver,
    Drop,
    ForwardAndDeliver,
    MessageRouter,
    NetworkStats,
    Respond,
    RoutingTable,
    UpdateHeartbeat,
)


class FakeClock:
    def __init__(self, now=1000):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def router(clock):
    return MessageRouter("me", "alice", clock=clock)


def peer(peer_id):
    return PeerInfo(peer_id, "127.0.0.1:9000", peer_id, 0)


def test_create_chat_message(router):
    first = router.create_chat_message("hi")
    second = router.create_chat_message("hi")
    assert first.sender_id == "me"
    assert first.username == "alice"
    assert first.ttl == 7
    assert first.seen_by == ["me"]
    assert first.message_id != second.message_id


def test_create_handshake_and_announce(router):
    assert router.create_handshake() == Handshake("me", "alice", "1.0")
    assert router.create_peer_announce("127.0.0.1:5") == PeerAnnounce("me", "127.0.0.1:5", "alice")


def test_chat_is_forwarded_and_delivered(router):
    for pid in ("p1", "p2", "p3"):
        router.routing_table.add_peer(peer(pid))
    msg = ChatMessage("m1", "p2", "bob", "hello", 3, ["p2"])
    action = router.process_message(msg, "p1")
    assert isinstance(action, ForwardAndDeliver)
    assert action.forward_to == ["p3"]
    assert action.forward_message.ttl == 2
    assert action.forward_message.seen_by == ["p2", "me"]
    assert action.original_message.ttl == 3
    assert action.original_message.content == "hello"


def test_duplicate_chat_is_dropped(router):
    msg = ChatMessage("m1", "p2", "bob", "hello", 3, ["p2"])
    assert isinstance(router.process_message(msg, "p2"), ForwardAndDeliver)
    assert router.process_message(msg, "p2") == Drop()


def test_expired_ttl_is_dropped(router):
    msg = ChatMessage("m2", "p2", "bob", "x", 0, [])
    assert router.process_message(msg, "p2") == Drop()
    assert router.routing_table.has_seen_message("m2") is False


def test_already_seen_by_us_is_dropped(router):
    msg = ChatMessage("m3", "p2", "bob", "x", 5, ["p2", "me"])
    assert router.process_message(msg, "p2") == Drop()


def test_announce_adds_peer(router, clock):
    msg = PeerAnnounce("p9", "127.0.0.1:7000", "carol")
    assert router.process_message(msg, "p9") == Deliver(msg)
    assert router.routing_table.get_peers() == [PeerInfo("p9", "127.0.0.1:7000", "carol", clock.now)]


def test_peer_list_request_gets_response(router):
    router.routing_table.add_peer(peer("p1"))
    action = router.process_message(PeerListRequest("p5"), "p5")
    assert action == Respond("p5", PeerListResponse([peer("p1")]))


def test_peer_list_response_updates_table(router):
    msg = PeerListResponse([peer("p1"), peer("p2")])
    assert router.process_message(msg, "p1") == Deliver(msg)
    assert router.routing_table.peer_count() == 2


def test_heartbeat_handshake_disconnect(router):
    router.routing_table.add_peer(peer("p1"))
    assert router.process_message(Heartbeat("p1", 1), "p1") == UpdateHeartbeat("p1")
    hs = Handshake("p1", "bob", "1.0")
    assert router.process_message(hs, "p1") == Deliver(hs)
    bye = Disconnect("p1", "bye")
    assert router.process_message(bye, "p1") == Deliver(bye)
    assert router.routing_table.peer_count() == 0


def test_cache_cleanup_expires_old_entries(clock):
    table = RoutingTable("me", clock=clock)
    table.mark_message_seen("old")
    clock.now += 200
    table.mark_message_seen("new")
    clock.now += 150
    table.cleanup_message_cache()
    assert table.has_seen_message("old") is False
    assert table.has_seen_message("new") is True


def test_cache_evicts_when_over_capacity(clock):
    table = RoutingTable("me", clock=clock)
    table.max_cache_size = 2
    table.mark_message_seen("a")
    table.mark_message_seen("b")
    clock.now += 400
    table.mark_message_seen("c")
    assert [table.has_seen_message(m) for m in ("a", "b", "c")] == [False, False, True]


def test_remove_unknown_peer_is_harmless(clock):
    table = RoutingTable("me", clock=clock)
    table.add_peer(peer("p1"))
    table.remove_peer("nobody")
    assert table.peer_count() == 1


def test_network_stats(router):
    router.routing_table.add_peer(peer("p1"))
    router.process_message(ChatMessage("m1", "p1", "bob", "x", 2, []), "p1")
    assert router.get_network_stats() == NetworkStats(connected_peers=1, cached_messages=1)


def test_process_rejects_non_message(router):
    with pytest.raises(TypeError):
        router.process_message(peer("p1"), "p1")