import dataclasses

import pytest

from dpqchat.events import (
    ErrorEvent,
    MessageReceived,
    P2PStats,
    PeerConnected,
    PeerDisconnected,
    PeersDiscovered,
    TopologyChanged,
)
from dpqchat.message import Heartbeat, PeerInfo


def test_stats_start_at_zero():
    stats = P2PStats()
    assert all(value == 0 for value in dataclasses.astuple(stats))
    assert len(dataclasses.fields(stats)) == 9


def test_stats_are_mutable_counters():
    stats = P2PStats()
    stats.total_messages_sent += 2
    copy = dataclasses.replace(stats, connected_peers=3)
    assert copy.total_messages_sent == 2
    assert copy.connected_peers == 3
    assert stats.connected_peers == 0


def test_error_event_defaults_to_no_peer():
    event = ErrorEvent("boom")
    assert event.peer_id is None
    assert event == ErrorEvent("boom", None)
    assert event != ErrorEvent("boom", "p1")


def test_events_compare_by_value():
    message = Heartbeat("p1", 1)
    assert MessageReceived(message, "p1") == MessageReceived(Heartbeat("p1", 1), "p1")
    assert PeerConnected("p1", "127.0.0.1:1", "a") != PeerDisconnected("p1", "x")


def test_events_are_immutable():
    event = PeerDisconnected("p1", "gone")
    with pytest.raises(dataclasses.FrozenInstanceError):
        event.reason = "other"
    assert event.reason == "gone"


def test_collection_events_hold_their_items():
    peer = PeerInfo("p1", "127.0.0.1:1", "a", 0)
    assert TopologyChanged([peer]).connected_peers == [peer]
    assert PeersDiscovered().peers == []