"""
Tests for the signaling server transport.

The signaling socket is replaced by a scripted fake; WebRTC links are
mocked so no ICE gathering takes place.
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch
from urllib.parse import parse_qs, urlsplit

import pytest

from retrochat.errors import ErrorCode, TransportConnectError, TransportRuntimeError
from retrochat.transports import signaling
from retrochat.transports.base import SessionRole, TransportErrorKind
from retrochat.transports.signaling import SignalingTransport

ROOM = "retrochat-AB3DEF"
SERVER = "wss://signal.example.org/peerjs"


class FakeSocket:
    """Scripted signaling socket: feed() queues server messages, None ends the stream."""

    def __init__(self, *messages):
        self.queue: asyncio.Queue = asyncio.Queue()
        self.sent = []
        self.closed = False
        for message in messages:
            self.feed(message)

    def feed(self, message):
        self.queue.put_nowait(None if message is None else json.dumps(message))

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.queue.get()
        if item is None:
            raise StopAsyncIteration
        return item

    async def send(self, raw):
        self.sent.append(json.loads(raw))

    async def close(self):
        self.closed = True

    def sent_types(self):
        return [m["type"] for m in self.sent]


def _fake_link(remote_id: str, is_open: bool = True) -> MagicMock:
    link = MagicMock()
    link.remote_id = remote_id
    link.is_open = is_open
    link.send.return_value = is_open
    link.close = AsyncMock()
    link.accept_answer = AsyncMock()
    return link


def _attached(role: SessionRole = SessionRole.HOST):
    transport = SignalingTransport(SERVER, "local1")
    transport._reset_state(ROOM, role)
    transport._ws = FakeSocket()
    return transport


@pytest.fixture
def server(monkeypatch):
    """Patch websockets.connect to hand out a scripted socket."""
    state = {"socket": None, "urls": []}

    async def fake_connect(url, **kwargs):
        state["urls"].append(url)
        if state["socket"] is None:
            state["socket"] = FakeSocket({"type": "OPEN"})
        return state["socket"]

    monkeypatch.setattr(signaling.websockets, "connect", fake_connect)
    return state


class TestSignalingUrl:
    """Tests for registration URLs."""

    def test_build_url(self):
        transport = SignalingTransport(SERVER, "local1", key="retrokey")
        url = transport._build_url(ROOM)
        parts = urlsplit(url)
        query = parse_qs(parts.query)
        assert url.startswith(SERVER + "?")
        assert query["key"] == ["retrokey"]
        assert query["id"] == [ROOM]
        assert len(query["token"][0]) == 16

    def test_tokens_differ(self):
        transport = SignalingTransport(SERVER, "local1")
        assert transport._build_url(ROOM) != transport._build_url(ROOM)


@pytest.mark.asyncio
class TestSignalingConnect:
    """Tests for registration against the signaling server."""

    async def test_host_registers_room_id(self, server):
        transport = SignalingTransport(SERVER, "local1", heartbeat_interval=60)
        await transport.connect(ROOM, SessionRole.HOST)

        assert transport.peer_id == ROOM
        assert parse_qs(urlsplit(server["urls"][0]).query)["id"] == [ROOM]
        await transport.leave()
        assert server["socket"].closed

    async def test_guest_registers_and_dials(self, server):
        transport = SignalingTransport(SERVER, "local1", heartbeat_interval=60)
        transport._dial = AsyncMock()

        await transport.connect(ROOM, SessionRole.GUEST)

        assert transport.peer_id == f"{ROOM}-local1"
        transport._dial.assert_awaited_once_with(ROOM)
        await transport.leave()

    async def test_id_taken(self, server):
        server["socket"] = FakeSocket({"type": "ID-TAKEN"})
        transport = SignalingTransport(SERVER, "local1")
        with patch.object(signaling.logger, "warning") as warning:
            with pytest.raises(TransportConnectError) as exc_info:
                await transport.connect(ROOM, SessionRole.HOST)
        assert exc_info.value.code == ErrorCode.E304_ID_TAKEN
        assert f"Peer id {ROOM} is already registered" in warning.call_args.args[0]

    async def test_server_error(self, server):
        server["socket"] = FakeSocket({"type": "ERROR", "payload": {"msg": "Invalid key"}})
        transport = SignalingTransport(SERVER, "local1")
        with pytest.raises(TransportConnectError) as exc_info:
            await transport.connect(ROOM, SessionRole.HOST)
        assert exc_info.value.code == ErrorCode.E301_ENDPOINT_UNREACHABLE

    async def test_closed_before_open(self, server):
        server["socket"] = FakeSocket("not json", None)
        transport = SignalingTransport(SERVER, "local1")
        with pytest.raises(TransportConnectError) as exc_info:
            await transport.connect(ROOM, SessionRole.HOST)
        assert exc_info.value.code == ErrorCode.E301_ENDPOINT_UNREACHABLE

    async def test_unreachable(self, monkeypatch):
        async def refuse(url, **kwargs):
            raise OSError("connection refused")

        monkeypatch.setattr(signaling.websockets, "connect", refuse)
        transport = SignalingTransport(SERVER, "local1")
        with pytest.raises(TransportConnectError) as exc_info:
            await transport.connect(ROOM, SessionRole.HOST)
        assert exc_info.value.code == ErrorCode.E301_ENDPOINT_UNREACHABLE

    async def test_heartbeat(self, server):
        transport = SignalingTransport(SERVER, "local1", heartbeat_interval=0.01)
        await transport.connect(ROOM, SessionRole.HOST)
        for _ in range(100):
            if "HEARTBEAT" in server["socket"].sent_types():
                break
            await asyncio.sleep(0.01)
        assert "HEARTBEAT" in server["socket"].sent_types()
        await transport.leave()


@pytest.mark.asyncio
class TestSignalingMessages:
    """Tests for server messages after registration."""

    async def test_expire_fails_pending_dial(self):
        transport = _attached(SessionRole.GUEST)
        errors = []
        transport.on_error = lambda kind, detail: errors.append(kind)

        await transport._handle_message({"type": "EXPIRE", "src": ROOM})

        with pytest.raises(TransportConnectError) as exc_info:
            await transport.wait_for_peer()
        assert exc_info.value.code == ErrorCode.E303_PEER_UNAVAILABLE
        assert exc_info.value.message == "Session not found. Check code."
        assert errors == [TransportErrorKind.PEER_UNAVAILABLE]

    async def test_busy_host_refuses_second_offer(self):
        transport = _attached()
        transport._link = _fake_link("first-guest")

        await transport._handle_message(
            {"type": "OFFER", "src": "second-guest", "payload": {"sdp": {"type": "offer", "sdp": "v=0"}}}
        )

        assert transport._ws.sent == [{"type": "LEAVE", "dst": "second-guest"}]
        assert transport._link.remote_id == "first-guest"

    async def test_offer_without_sdp_ignored(self):
        transport = _attached()
        await transport._handle_message({"type": "OFFER", "src": "guest", "payload": {}})
        assert transport._link is None
        assert transport._ws.sent == []

    async def test_answer_applied_to_matching_link(self):
        transport = _attached(SessionRole.GUEST)
        link = _fake_link(ROOM)
        transport._link = link
        answer = {"type": "answer", "sdp": "v=0"}

        await transport._handle_message({"type": "ANSWER", "src": "someone-else", "payload": {"sdp": answer}})
        link.accept_answer.assert_not_awaited()

        await transport._handle_message({"type": "ANSWER", "src": ROOM, "payload": {"sdp": answer}})
        link.accept_answer.assert_awaited_once_with(answer)

    async def test_leave_from_peer(self):
        transport = _attached()
        link = _fake_link("guest")
        transport._link = link
        transport._on_link_open(link)
        left = []
        transport.on_peer_leave = left.append

        await transport._handle_message({"type": "LEAVE", "src": "guest"})

        link.close.assert_awaited_once()
        assert transport._link is None
        assert left == ["guest"]

    async def test_malformed_candidate_ignored(self):
        transport = _attached()
        transport._link = _fake_link("guest")
        await transport._handle_message(
            {"type": "CANDIDATE", "src": "guest", "payload": {"candidate": {"candidate": "garbage"}}}
        )
        assert transport._link is not None

    async def test_malformed_offer_then_valid_offer(self):
        transport = _attached()
        bad = _fake_link("intruder", is_open=False)
        bad.accept_offer = AsyncMock(side_effect=TypeError("string indices must be integers"))
        good = _fake_link("guest")
        good.accept_offer = AsyncMock(return_value={"type": "answer", "sdp": "v=0"})
        transport._new_link = MagicMock(side_effect=[bad, good])
        closed = []
        transport.on_close = lambda: closed.append(True)

        transport._ws.feed({"type": "OFFER", "src": "intruder", "payload": {"sdp": "garbage"}})
        transport._ws.feed(
            {
                "type": "OFFER",
                "src": "guest",
                "payload": {"sdp": {"type": "offer", "sdp": "v=0"}, "connectionId": "dc_1"},
            }
        )
        transport._ws.feed(None)
        await transport._reader_loop()

        bad.close.assert_awaited_once()
        assert transport._link is good
        assert transport._ws.sent == [
            {
                "type": "ANSWER",
                "dst": "guest",
                "payload": {"sdp": {"type": "answer", "sdp": "v=0"}, "type": "data", "connectionId": "dc_1"},
            }
        ]
        assert closed == []

    async def test_handler_error_does_not_stop_reader(self):
        transport = _attached()
        transport._handle_offer = AsyncMock(side_effect=[RuntimeError("boom"), None])

        transport._ws.feed({"type": "OFFER", "src": "a", "payload": {"sdp": {}}})
        transport._ws.feed({"type": "OFFER", "src": "b", "payload": {"sdp": {}}})
        transport._ws.feed(None)
        await transport._reader_loop()

        assert transport._handle_offer.await_count == 2

    async def test_non_dict_payload_ignored(self):
        transport = _attached()
        await transport._handle_message({"type": "OFFER", "src": "guest", "payload": "garbage"})
        assert transport._link is None
        assert transport._ws.sent == []

    async def test_malformed_answer_fails_dial(self):
        transport = _attached(SessionRole.GUEST)
        link = _fake_link(ROOM, is_open=False)
        link.accept_answer = AsyncMock(side_effect=KeyError("sdp"))
        transport._link = link

        await transport._handle_message({"type": "ANSWER", "src": ROOM, "payload": {"sdp": {"type": "answer"}}})

        link.close.assert_awaited_once()
        assert transport._link is None
        with pytest.raises(TransportConnectError) as exc_info:
            await transport.wait_for_peer()
        assert exc_info.value.code == ErrorCode.E303_PEER_UNAVAILABLE

    async def test_malformed_answer_keeps_open_link(self):
        transport = _attached(SessionRole.GUEST)
        link = _fake_link(ROOM)
        link.accept_answer = AsyncMock(side_effect=ValueError("bad sdp"))
        transport._link = link

        await transport._handle_message({"type": "ANSWER", "src": ROOM, "payload": {"sdp": "garbage"}})

        link.close.assert_not_awaited()
        assert transport._link is link


@pytest.mark.asyncio
class TestSignalingLinks:
    """Tests for data channel events and signaling loss."""

    async def test_link_events(self):
        transport = _attached()
        link = _fake_link("guest")
        transport._link = link
        received = []
        transport.on_message = lambda frame, peer_id: received.append((frame, peer_id))

        transport._on_link_open(link)
        transport._on_link_message(link, b"frame")
        transport._on_link_message(_fake_link("stale"), b"stale")

        assert transport.peers == {"guest"}
        assert received == [(b"frame", "guest")]

    async def test_signaling_loss_without_link_closes(self):
        transport = _attached()
        closed = []
        transport.on_close = lambda: closed.append(True)

        transport._ws.feed(None)
        await transport._reader_loop()

        assert closed == [True]

    async def test_signaling_loss_keeps_open_channel(self):
        transport = _attached()
        link = _fake_link("guest")
        transport._link = link
        transport._on_link_open(link)
        closed = []
        transport.on_close = lambda: closed.append(True)

        transport._ws.feed(None)
        await transport._reader_loop()
        assert closed == []

        transport._on_link_close(link)
        assert closed == [True]
        assert transport.peers == set()

    async def test_send(self):
        transport = _attached()
        with pytest.raises(TransportRuntimeError) as exc_info:
            await transport.send(b"frame")
        assert exc_info.value.code == ErrorCode.E403_NOT_CONNECTED

        transport._link = _fake_link("guest", is_open=False)
        with pytest.raises(TransportRuntimeError):
            await transport.send(b"frame")

        transport._link = _fake_link("guest")
        await transport.send(b"frame")
        transport._link.send.assert_called_once_with(b"frame")

    async def test_leave_notifies_link_peer(self):
        transport = _attached()
        link = _fake_link("guest")
        transport._link = link
        ws = transport._ws

        await transport.leave()

        assert ws.sent == [{"type": "LEAVE", "dst": "guest"}]
        link.close.assert_awaited_once()
        assert ws.closed
        assert transport._ws is None
