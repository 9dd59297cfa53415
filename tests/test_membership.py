"""
Unit tests for peer membership tracking and the local mesh.
"""

import asyncio

import pytest

from communication.mesh import (
    LocalMesh,
    TransportEvent,
    WebSocketPeerTransport,
    PEER_CONNECTED,
    PEER_DISCONNECTED,
    MESSAGE,
)
from worker import events as job_events
from worker.events import EventChannel
from worker.membership import MembershipTracker, PeerStatus, Roster


class TestRoster:
    """Test roster bookkeeping."""

    def test_seeded_peers_start_disconnected(self):
        roster = Roster(["a", "b"])

        assert len(roster) == 2
        assert roster.status("a") == PeerStatus.DISCONNECTED
        assert roster.connected() == []

    def test_connect_and_disconnect(self):
        roster = Roster(["a"])
        roster.connect("b")
        roster.connect("a")
        roster.disconnect("a")

        assert roster.connected() == ["b"]
        assert roster.status("a") == PeerStatus.DISCONNECTED
        assert "b" in roster

    def test_disconnect_unknown_peer_ignored(self):
        roster = Roster()
        roster.disconnect("ghost")

        assert "ghost" not in roster

    def test_snapshot_is_a_copy(self):
        roster = Roster(["a"])
        snapshot = roster.snapshot()
        snapshot["a"] = PeerStatus.CONNECTED

        assert roster.status("a") == PeerStatus.DISCONNECTED


class TestMembershipTracker:
    """Test transport event handling."""

    @pytest.fixture
    def tracker(self):
        transport = LocalMesh().transport()
        tracker = MembershipTracker(transport, EventChannel(), worker_id="me")
        tracker.seed(["me", "peer"])
        return tracker

    def test_seed_excludes_self(self, tracker):
        assert "me" not in tracker.roster
        assert "peer" in tracker.roster

    @pytest.mark.asyncio
    async def test_handle_events(self, tracker):
        seen = []
        tracker.events.on(job_events.PEER_CONNECTED, lambda e: seen.append(("up", e.peer_id)))
        tracker.events.on(job_events.PEER_DISCONNECTED, lambda e: seen.append(("down", e.peer_id)))
        tracker.events.on(job_events.MESSAGE, lambda e: seen.append(("msg", e.payload)))

        await tracker.handle_event(TransportEvent(PEER_CONNECTED, "peer"))
        assert tracker.roster.status("peer") == PeerStatus.CONNECTED

        await tracker.handle_event(TransportEvent(MESSAGE, "peer", {"x": 1}))
        await tracker.handle_event(TransportEvent(PEER_DISCONNECTED, "peer"))

        assert tracker.roster.status("peer") == PeerStatus.DISCONNECTED
        assert seen == [("up", "peer"), ("msg", {"x": 1}), ("down", "peer")]

    @pytest.mark.asyncio
    async def test_own_events_ignored(self, tracker):
        await tracker.handle_event(TransportEvent(PEER_CONNECTED, "me"))

        assert "me" not in tracker.roster

    @pytest.mark.asyncio
    async def test_background_loop_survives_handler_errors(self, tracker):
        received = asyncio.Event()

        def failing_handler(event):
            raise RuntimeError("embedder bug")

        tracker.events.on(job_events.PEER_CONNECTED, failing_handler)
        tracker.events.on(job_events.PEER_DISCONNECTED, lambda e: received.set())

        await tracker.start()
        assert tracker.is_running()

        tracker.transport.events.put_nowait(TransportEvent(PEER_CONNECTED, "peer"))
        tracker.transport.events.put_nowait(TransportEvent(PEER_DISCONNECTED, "peer"))
        await asyncio.wait_for(received.wait(), timeout=1.0)

        status = tracker.get_status()
        assert status['total_events'] == 2

        await tracker.stop()
        assert not tracker.is_running()


class TestLocalMesh:
    """Test in-process transport behavior."""

    @pytest.mark.asyncio
    async def test_join_announces_both_sides(self):
        mesh = LocalMesh()
        a, b = mesh.transport(), mesh.transport()

        await a.connect_to_participants("a", "s", ["a", "b"])
        await b.connect_to_participants("b", "s", ["a", "b"])

        assert a.events.get_nowait() == TransportEvent(PEER_CONNECTED, "b")
        assert b.events.get_nowait() == TransportEvent(PEER_CONNECTED, "a")
        assert mesh.members("s") == {"a", "b"}

    @pytest.mark.asyncio
    async def test_non_participants_are_isolated(self):
        mesh = LocalMesh()
        a, outsider = mesh.transport(), mesh.transport()

        await a.connect_to_participants("a", "s", ["a", "b"])
        await outsider.connect_to_participants("x", "s", ["x"])

        assert a.events.empty()
        assert await outsider.send_to_participants("hi") == 0
        assert a.events.empty()

    @pytest.mark.asyncio
    async def test_leave_announces_disconnect(self):
        mesh = LocalMesh()
        a, b = mesh.transport(), mesh.transport()
        await a.connect_to_participants("a", "s", ["b"])
        await b.connect_to_participants("b", "s", ["a"])
        a.events.get_nowait()

        await b.disconnect_from_participants()

        assert a.events.get_nowait() == TransportEvent(PEER_DISCONNECTED, "b")
        assert b.is_connected is False


class TestWebSocketTransportMessages:
    """Test relay message translation."""

    def test_peer_events(self):
        transport = WebSocketPeerTransport("ws://localhost:8000")
        transport.worker_id = "me"

        transport.handle_message('{"event": "peer_connected", "worker_id": "peer"}')
        transport.handle_message('{"event": "peer_connected", "worker_id": "me"}')
        transport.handle_message('{"event": "message", "from": "peer", "payload": [1, 2]}')

        assert transport.events.get_nowait() == TransportEvent(PEER_CONNECTED, "peer")
        assert transport.events.get_nowait() == TransportEvent(MESSAGE, "peer", [1, 2])
        assert transport.events.empty()

    def test_invalid_messages_ignored(self):
        transport = WebSocketPeerTransport("ws://localhost:8000")

        transport.handle_message("not json")
        transport.handle_message('{"event": "model_updated", "version": 2}')

        assert transport.events.empty()
