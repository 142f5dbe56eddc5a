"""
RetroChat - WebRTC transport through a central signaling server.

The host registers the room id as its own peer id on a PeerJS-compatible
signaling server and waits. The guest registers a throwaway id and dials
the room id directly. Once the data channel is open the signaling socket
is only needed for new inbound peers.

Server message types handled: OPEN, ID-TAKEN, ERROR, OFFER, ANSWER,
CANDIDATE, LEAVE, EXPIRE. A HEARTBEAT is sent periodically to keep the
registration alive.
"""

import asyncio
import contextlib
import json
import logging
import secrets
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import websockets
from aiortc.sdp import candidate_from_sdp
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..constants import (
    DATA_CHANNEL_LABEL,
    DEFAULT_ICE_SERVERS,
    SIGNALING_HEARTBEAT_INTERVAL,
    SIGNALING_KEY,
)
from ..errors import ErrorCode, TransportConnectError, TransportRuntimeError
from .base import SessionRole, TransportAdapter, TransportErrorKind
from .rtc import PeerLink

logger = logging.getLogger(__name__)


class SignalingTransport(TransportAdapter):
    """Single peer-to-peer data channel negotiated through a signaling server."""

    name = "signaling"

    def __init__(
        self,
        endpoint: str,
        local_id: str,
        ice_servers: Optional[List[str]] = None,
        key: str = SIGNALING_KEY,
        heartbeat_interval: float = SIGNALING_HEARTBEAT_INTERVAL,
    ):
        super().__init__(endpoint, local_id)
        self.ice_servers = list(ice_servers or DEFAULT_ICE_SERVERS)
        self.key = key
        self.heartbeat_interval = heartbeat_interval

        self.peer_id: Optional[str] = None
        self._ws = None
        self._link: Optional[PeerLink] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._signaling_lost = False

    def _build_url(self, peer_id: str) -> str:
        query = urlencode({"key": self.key, "id": peer_id, "token": secrets.token_hex(8)})
        return f"{self.endpoint}?{query}"

    async def connect(self, room_id: str, role: SessionRole) -> None:
        await self.leave()
        self._reset_state(room_id, role)
        self._signaling_lost = False

        # The host is reachable under the room id itself
        self.peer_id = room_id if role == SessionRole.HOST else f"{room_id}-{self.local_id}"

        try:
            self._ws = await websockets.connect(self._build_url(self.peer_id))
            await self._await_open()
        except TransportConnectError:
            await self.leave()
            raise
        except (OSError, WebSocketException, asyncio.TimeoutError) as e:
            await self.leave()
            raise TransportConnectError(
                ErrorCode.E301_ENDPOINT_UNREACHABLE,
                f"Signaling server unreachable: {e}",
                {"endpoint": self.endpoint},
            )

        logger.info(f"Registered on {self.endpoint} as {self.peer_id}")
        self._reader_task = asyncio.create_task(self._reader_loop())
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

        if role == SessionRole.GUEST:
            await self._dial(room_id)

    async def _await_open(self) -> None:
        """Wait for the server to confirm our registration."""
        async for raw in self._ws:
            message = self._decode(raw)
            if message is None:
                continue
            msg_type = message.get("type")
            if msg_type == "OPEN":
                return
            if msg_type == "ID-TAKEN":
                # The code may already be shared, so it is kept rather than regenerated
                logger.warning(
                    f"Peer id {self.peer_id} is already registered on {self.endpoint}; "
                    f"keeping the session code and trying the next server"
                )
                raise TransportConnectError(
                    ErrorCode.E304_ID_TAKEN,
                    f"Peer id {self.peer_id} is already registered",
                    {"endpoint": self.endpoint, "peer_id": self.peer_id},
                )
            if msg_type == "ERROR":
                raise TransportConnectError(
                    ErrorCode.E301_ENDPOINT_UNREACHABLE,
                    f"Signaling server refused registration: {message.get('payload')}",
                    {"endpoint": self.endpoint},
                )
        raise TransportConnectError(
            ErrorCode.E301_ENDPOINT_UNREACHABLE,
            "Signaling server closed the connection before OPEN",
            {"endpoint": self.endpoint},
        )

    def _decode(self, raw: Any) -> Optional[Dict[str, Any]]:
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.debug(f"Ignoring non-JSON signaling message: {raw!r}")
            return None
        return message if isinstance(message, dict) else None

    async def _signal(self, msg_type: str, dst: Optional[str] = None, payload: Optional[Dict] = None) -> None:
        if self._ws is None:
            return
        message: Dict[str, Any] = {"type": msg_type}
        if dst is not None:
            message["dst"] = dst
        if payload is not None:
            message["payload"] = payload
        try:
            await self._ws.send(json.dumps(message))
        except (ConnectionClosed, OSError) as e:
            logger.debug(f"Signaling send of {msg_type} failed: {e}")

    def _new_link(self, remote_id: str) -> PeerLink:
        link = PeerLink(remote_id, self.ice_servers)
        link.on_open = self._on_link_open
        link.on_message = self._on_link_message
        link.on_close = self._on_link_close
        return link

    async def _dial(self, target: str) -> None:
        link = self._new_link(target)
        self._link = link
        offer = await link.create_offer()
        await self._signal(
            "OFFER",
            dst=target,
            payload={
                "sdp": offer,
                "type": "data",
                "connectionId": f"dc_{secrets.token_hex(6)}",
                "label": DATA_CHANNEL_LABEL,
                "reliable": True,
                "serialization": "raw",
            },
        )
        logger.info(f"Dialing {target} via {self.endpoint}")

    async def _reader_loop(self) -> None:
        try:
            async for raw in self._ws:
                message = self._decode(raw)
                if message is None:
                    continue
                try:
                    await self._handle_message(message)
                except Exception as e:
                    logger.warning(f"Error handling signaling message {message.get('type')!r}: {e}")
        except asyncio.CancelledError:
            raise
        except (ConnectionClosed, OSError) as e:
            logger.debug(f"Signaling socket error: {e}")

        if self._closed:
            return

        self._signaling_lost = True
        if self._link is not None and self._link.is_open:
            # The data channel survives; the drop is reported when it closes
            logger.warning("Lost signaling server; keeping the open data channel")
            return
        self._emit_error(TransportErrorKind.NETWORK, "Lost connection to signaling server")
        self._emit_close()

    async def _handle_message(self, message: Dict[str, Any]) -> None:
        msg_type = message.get("type")
        src = message.get("src")
        payload = message.get("payload")
        if not isinstance(payload, dict):
            payload = {}

        if msg_type == "OFFER":
            await self._handle_offer(src, payload)
        elif msg_type == "ANSWER":
            await self._handle_answer(src, payload)
        elif msg_type == "CANDIDATE":
            await self._handle_candidate(src, payload)
        elif msg_type == "LEAVE":
            if self._link is not None and self._link.remote_id == src:
                link, self._link = self._link, None
                await link.close()
                self._emit_peer_leave(src)
        elif msg_type == "EXPIRE":
            # Our offer could not be delivered: nobody is registered under dst
            self._emit_error(TransportErrorKind.PEER_UNAVAILABLE, f"Session {src} not found")
            self._fail_dial(ErrorCode.E303_PEER_UNAVAILABLE, "Session not found. Check code.")
        elif msg_type == "ERROR":
            self._emit_error(TransportErrorKind.SERVER_ERROR, str(payload.get("msg", payload)))
        else:
            logger.debug(f"Unhandled signaling message type: {msg_type}")

    async def _handle_offer(self, src: Optional[str], payload: Dict[str, Any]) -> None:
        if not src or "sdp" not in payload:
            return
        if self._link is not None:
            # Only one chat partner: refuse anyone else
            logger.info(f"Busy, refusing connection from {src}")
            await self._signal("LEAVE", dst=src)
            return

        link = self._new_link(src)
        try:
            answer = await link.accept_offer(payload["sdp"])
        except (KeyError, TypeError, ValueError) as e:
            logger.info(f"Rejecting malformed offer from {src}: {e}")
            await link.close()
            return
        if self._link is not None:
            # Another offer won the race while this one was negotiated
            await link.close()
            await self._signal("LEAVE", dst=src)
            return

        self._link = link
        await self._signal(
            "ANSWER",
            dst=src,
            payload={"sdp": answer, "type": "data", "connectionId": payload.get("connectionId")},
        )

    async def _handle_answer(self, src: Optional[str], payload: Dict[str, Any]) -> None:
        link = self._link
        if link is None or link.remote_id != src:
            return
        try:
            await link.accept_answer(payload["sdp"])
        except (KeyError, TypeError, ValueError) as e:
            logger.info(f"Rejecting malformed answer from {src}: {e}")
            if link.is_open or self._link is not link:
                return
            self._link = None
            await link.close()
            if self.role == SessionRole.GUEST:
                self._fail_dial(ErrorCode.E303_PEER_UNAVAILABLE, "Peer sent an invalid answer")

    async def _handle_candidate(self, src: Optional[str], payload: Dict[str, Any]) -> None:
        candidate = payload.get("candidate")
        if self._link is None or self._link.remote_id != src or not candidate:
            return
        try:
            ice = candidate_from_sdp(candidate["candidate"].split(":", 1)[1])
            ice.sdpMid = candidate.get("sdpMid")
            ice.sdpMLineIndex = candidate.get("sdpMLineIndex")
            await self._link.pc.addIceCandidate(ice)
        except (AttributeError, KeyError, IndexError, TypeError, ValueError) as e:
            logger.debug(f"Ignoring malformed ICE candidate from {src}: {e}")

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            await self._signal("HEARTBEAT")

    def _on_link_open(self, link: PeerLink) -> None:
        if link is self._link:
            self._emit_peer_join(link.remote_id)

    def _on_link_message(self, link: PeerLink, data: bytes) -> None:
        if link is self._link:
            self._emit_message(data, link.remote_id)

    def _on_link_close(self, link: PeerLink) -> None:
        if link is not self._link:
            return
        self._link = None
        self._emit_peer_leave(link.remote_id)
        if self._signaling_lost:
            self._emit_close()

    async def send(self, frame: bytes) -> None:
        if self._link is None or not self._link.send(frame):
            raise TransportRuntimeError(
                ErrorCode.E403_NOT_CONNECTED, "No open data channel", {"endpoint": self.endpoint}
            )

    async def leave(self) -> None:
        self._closed = True

        for task in (self._reader_task, self._heartbeat_task):
            if task and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._reader_task = None
        self._heartbeat_task = None

        if self._link is not None:
            link, self._link = self._link, None
            await self._signal("LEAVE", dst=link.remote_id)
            await link.close()

        if self._ws is not None:
            ws, self._ws = self._ws, None
            try:
                await ws.close()
            except (ConnectionClosed, OSError) as e:
                logger.debug(f"Error closing signaling socket: {e}")

        self._peers.clear()
