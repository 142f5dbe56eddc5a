"""
Tests for the tracker mesh transport.

Tracker traffic is fed straight into the message handler and WebRTC
links are mocked.
"""

import asyncio
import hashlib
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from retrochat.errors import ErrorCode, TransportConnectError, TransportRuntimeError
from retrochat.transports import mesh
from retrochat.transports.base import SessionRole, TransportErrorKind
from retrochat.transports.mesh import MeshTransport, room_info_hash, tracker_peer_id

ROOM = "retrochat-AB3DEF"
TRACKER = "wss://tracker.example.org"
LOW = "a" * 20
HIGH = "f" * 20


class FakeTracker:
    """Tracker socket that replays a fixed list of messages."""

    def __init__(self, messages):
        self.messages = [json.dumps(m) for m in messages]

    def __aiter__(self):
        return self._replay()

    async def _replay(self):
        for raw in self.messages:
            yield raw


def _fake_link(remote_id: str = "", is_open: bool = True) -> MagicMock:
    link = MagicMock()
    link.remote_id = remote_id
    link.is_open = is_open
    link.send.return_value = is_open
    link.close = AsyncMock()
    link.accept_answer = AsyncMock()
    link.create_offer = AsyncMock(return_value={"type": "offer", "sdp": "v=0"})
    return link


def _attached(peer_id: str = LOW, max_peers: int = 1) -> MeshTransport:
    transport = MeshTransport(TRACKER, "local", max_peers=max_peers)
    transport._reset_state(ROOM, SessionRole.HOST)
    transport.info_hash = room_info_hash(ROOM)
    transport.peer_id = peer_id
    transport._send_tracker = AsyncMock()
    return transport


class TestSwarmIdentifiers:
    """Tests for info hash and tracker peer id derivation."""

    def test_room_info_hash(self):
        expected = hashlib.sha1(f"retrochat:{ROOM}".encode("utf-8")).hexdigest()[:20]
        assert room_info_hash(ROOM) == expected
        assert len(room_info_hash(ROOM)) == 20

    def test_rooms_hash_apart(self):
        assert room_info_hash(ROOM) != room_info_hash("retrochat-ZZZZZZ")

    def test_tracker_peer_id(self):
        assert tracker_peer_id("local") == hashlib.sha1(b"local").hexdigest()[:20]
        assert MeshTransport(TRACKER, "local").peer_id == tracker_peer_id("local")


@pytest.mark.asyncio
class TestDuplicateLinks:
    """Tests for resolving two links to the same peer."""

    async def test_first_link_kept(self):
        transport = _attached()
        link = _fake_link(HIGH)
        assert await transport._keep_link(HIGH, link, initiated=True)
        assert transport._links[HIGH] is link

    async def test_lower_id_prefers_own_offer(self):
        transport = _attached(peer_id=LOW)
        answered = _fake_link(HIGH)
        await transport._keep_link(HIGH, answered, initiated=False)

        offered = _fake_link(HIGH)
        assert await transport._keep_link(HIGH, offered, initiated=True)

        assert transport._links[HIGH] is offered
        answered.close.assert_awaited_once()

    async def test_higher_id_prefers_remote_offer(self):
        transport = _attached(peer_id=HIGH)
        answered = _fake_link(LOW)
        await transport._keep_link(LOW, answered, initiated=False)

        offered = _fake_link(LOW)
        assert not await transport._keep_link(LOW, offered, initiated=True)

        assert transport._links[LOW] is answered
        answered.close.assert_not_awaited()

    async def test_peer_limit(self):
        transport = _attached(max_peers=1)
        await transport._keep_link(HIGH, _fake_link(HIGH), initiated=True)
        assert not await transport._keep_link("b" * 20, _fake_link("b" * 20), initiated=True)
        assert list(transport._links) == [HIGH]

    async def test_answer_for_unknown_offer_ignored(self):
        transport = _attached()
        await transport._handle_answer(HIGH, "unknown-offer", {"type": "answer", "sdp": "v=0"})
        assert transport._links == {}

    async def test_answer_binds_pending_offer(self):
        transport = _attached()
        link = _fake_link()
        transport._offers["offer-1"] = link
        answer = {"type": "answer", "sdp": "v=0"}

        await transport._handle_answer(HIGH, "offer-1", answer)

        assert link.remote_id == HIGH
        assert transport._links[HIGH] is link
        link.accept_answer.assert_awaited_once_with(answer)
        assert transport._offers == {}


@pytest.mark.asyncio
class TestTrackerMessages:
    """Tests for tracker responses."""

    async def test_failure_before_ready(self):
        transport = _attached()
        transport._ready = asyncio.get_running_loop().create_future()

        await transport._handle_tracker_message({"failure reason": "invalid info_hash"})

        with pytest.raises(TransportConnectError) as exc_info:
            await transport._ready
        assert exc_info.value.code == ErrorCode.E301_ENDPOINT_UNREACHABLE

    async def test_failure_after_ready_reported(self):
        transport = _attached()
        errors = []
        transport.on_error = lambda kind, detail: errors.append((kind, detail))

        await transport._handle_tracker_message({"failure reason": "slow down"})

        assert errors == [(TransportErrorKind.SERVER_ERROR, "slow down")]

    async def test_announce_reply_marks_ready(self):
        transport = _attached()
        transport._ready = asyncio.get_running_loop().create_future()

        await transport._handle_tracker_message({"action": "announce", "info_hash": "someone-else"})
        assert not transport._ready.done()

        await transport._handle_tracker_message(
            {"action": "announce", "info_hash": transport.info_hash, "interval": 120}
        )
        assert transport._ready.done()

    async def test_own_offer_echo_ignored(self):
        transport = _attached()
        transport._handle_offer = AsyncMock()
        await transport._handle_tracker_message(
            {
                "action": "announce",
                "info_hash": transport.info_hash,
                "peer_id": transport.peer_id,
                "offer_id": "x",
                "offer": {"type": "offer", "sdp": "v=0"},
            }
        )
        transport._handle_offer.assert_not_awaited()

    async def test_offer_dispatched(self):
        transport = _attached()
        transport._handle_offer = AsyncMock()
        offer = {"type": "offer", "sdp": "v=0"}
        await transport._handle_tracker_message(
            {"action": "announce", "info_hash": transport.info_hash, "peer_id": HIGH, "offer_id": "x", "offer": offer}
        )
        transport._handle_offer.assert_awaited_once_with(HIGH, "x", offer)

    async def test_offer_refused_at_peer_limit(self):
        transport = _attached(max_peers=1)
        transport._links[HIGH] = _fake_link(HIGH)
        transport._new_link = MagicMock()

        await transport._handle_offer("b" * 20, "offer-2", {"type": "offer", "sdp": "v=0"})

        transport._new_link.assert_not_called()
        transport._send_tracker.assert_not_awaited()

    async def test_malformed_offer_then_valid_offer(self):
        transport = _attached()
        bad = _fake_link(HIGH, is_open=False)
        bad.accept_offer = AsyncMock(side_effect=TypeError("string indices must be integers"))
        good = _fake_link(HIGH)
        good.accept_offer = AsyncMock(return_value={"type": "answer", "sdp": "v=0"})
        transport._new_link = MagicMock(side_effect=[bad, good])
        base = {"action": "announce", "info_hash": transport.info_hash, "peer_id": HIGH}

        await transport._handle_tracker_message({**base, "offer_id": "x", "offer": "garbage"})
        bad.close.assert_awaited_once()
        assert transport._links == {}

        await transport._handle_tracker_message({**base, "offer_id": "y", "offer": {"type": "offer", "sdp": "v=0"}})
        assert transport._links[HIGH] is good
        reply = transport._send_tracker.await_args.args[0]
        assert reply["to_peer_id"] == HIGH
        assert reply["offer_id"] == "y"
        assert reply["answer"] == {"type": "answer", "sdp": "v=0"}

    async def test_malformed_answer_discards_offer(self):
        transport = _attached()
        link = _fake_link()
        link.accept_answer = AsyncMock(side_effect=TypeError("string indices must be integers"))
        transport._offers["offer-1"] = link

        await transport._handle_answer(HIGH, "offer-1", "garbage")

        link.close.assert_awaited_once()
        assert transport._links == {}
        assert transport._offers == {}

    async def test_unhashable_offer_id_ignored(self):
        transport = _attached()
        transport._handle_offer = AsyncMock()
        await transport._handle_tracker_message(
            {"action": "announce", "info_hash": transport.info_hash, "peer_id": HIGH, "offer_id": ["x"], "offer": {}}
        )
        transport._handle_offer.assert_awaited_once_with(HIGH, None, {})

    async def test_handler_error_does_not_stop_reader(self):
        transport = _attached()
        transport._ws = FakeTracker(
            [{"action": "announce", "info_hash": transport.info_hash}] * 2
        )
        transport._handle_tracker_message = AsyncMock(side_effect=[RuntimeError("boom"), None])
        transport._closed = True

        await transport._reader_loop()

        assert transport._handle_tracker_message.await_count == 2


@pytest.mark.asyncio
class TestAnnounce:
    """Tests for the offer pool."""

    async def test_pool_limited_by_free_slots(self):
        transport = _attached(max_peers=2)
        transport.offer_pool_size = 3
        transport._new_link = MagicMock(side_effect=lambda remote_id: _fake_link(remote_id))

        await transport._announce()

        message = transport._send_tracker.await_args.args[0]
        assert message["action"] == "announce"
        assert message["info_hash"] == transport.info_hash
        assert message["numwant"] == 2
        assert len(message["offers"]) == 2
        assert set(transport._offers) == {o["offer_id"] for o in message["offers"]}

    async def test_reannounce_replaces_pool(self):
        transport = _attached(max_peers=1)
        transport._new_link = MagicMock(side_effect=lambda remote_id: _fake_link(remote_id))

        await transport._announce()
        old = list(transport._offers.values())
        await transport._announce()

        old[0].close.assert_awaited_once()
        assert len(transport._offers) == 1

    async def test_full_mesh_announces_no_offers(self):
        transport = _attached(max_peers=1)
        transport._links[HIGH] = _fake_link(HIGH)
        transport._new_link = MagicMock()

        await transport._announce()

        message = transport._send_tracker.await_args.args[0]
        assert message["offers"] == []
        transport._new_link.assert_not_called()


@pytest.mark.asyncio
class TestMeshLinks:
    """Tests for link events, broadcast and teardown."""

    async def test_link_open_and_message(self):
        transport = _attached()
        link = _fake_link(HIGH)
        transport._links[HIGH] = link
        received = []
        transport.on_message = lambda frame, peer_id: received.append((frame, peer_id))

        transport._on_link_open(link)
        transport._on_link_message(link, b"frame")
        transport._on_link_open(_fake_link("stale"))

        assert transport.peers == {HIGH}
        assert received == [(b"frame", HIGH)]

    async def test_send_broadcasts(self):
        transport = _attached(max_peers=3)
        links = [_fake_link(HIGH), _fake_link(LOW), _fake_link("b" * 20, is_open=False)]
        for link in links:
            transport._links[link.remote_id] = link

        await transport.send(b"frame")

        links[0].send.assert_called_once_with(b"frame")
        links[1].send.assert_called_once_with(b"frame")
        links[2].send.assert_not_called()

    async def test_send_without_links(self):
        transport = _attached()
        with pytest.raises(TransportRuntimeError) as exc_info:
            await transport.send(b"frame")
        assert exc_info.value.code == ErrorCode.E403_NOT_CONNECTED

    async def test_close_after_tracker_loss(self):
        transport = _attached()
        link = _fake_link(HIGH)
        transport._links[HIGH] = link
        transport._on_link_open(link)
        transport._tracker_lost = True
        closed = []
        transport.on_close = lambda: closed.append(True)

        transport._on_link_close(link)

        assert closed == [True]
        assert transport._links == {}

    async def test_peer_leave_keeps_adapter(self):
        transport = _attached()
        link = _fake_link(HIGH)
        transport._links[HIGH] = link
        transport._on_link_open(link)
        left = []
        closed = []
        transport.on_peer_leave = left.append
        transport.on_close = lambda: closed.append(True)

        transport._on_link_close(link)

        assert left == [HIGH]
        assert closed == []

    async def test_leave_releases_links_and_offers(self):
        transport = _attached()
        link = _fake_link(HIGH)
        offer = _fake_link()
        transport._links[HIGH] = link
        transport._offers["offer-1"] = offer

        await transport.leave()

        link.close.assert_awaited_once()
        offer.close.assert_awaited_once()
        assert transport._links == {}
        assert transport._offers == {}


@pytest.mark.asyncio
async def test_unreachable_tracker(monkeypatch):
    async def refuse(url, **kwargs):
        raise OSError("connection refused")

    monkeypatch.setattr(mesh.websockets, "connect", refuse)
    transport = MeshTransport(TRACKER, "local")
    with pytest.raises(TransportConnectError) as exc_info:
        await transport.connect(ROOM, SessionRole.HOST)
    assert exc_info.value.code == ErrorCode.E301_ENDPOINT_UNREACHABLE

