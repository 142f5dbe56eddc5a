"""
RetroChat - Serverless mesh transport.

Peers find each other through public WebTorrent trackers: each one
announces the room's info hash together with a pool of WebRTC offers.
The tracker forwards offers to other peers in the swarm and routes their
answers back. After that the tracker is only used to find new peers;
chat frames travel over direct data channels.

Host and guest behave identically here: whoever announces second ends up
answering one of the first peer's offers.
"""

import asyncio
import contextlib
import hashlib
import json
import logging
import secrets
from typing import Any, Dict, List, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..constants import (
    DEFAULT_ICE_SERVERS,
    MESH_MAX_PEERS,
    ROOM_NAMESPACE,
    TRACKER_ANNOUNCE_INTERVAL,
    TRACKER_HASH_LENGTH,
    TRACKER_OFFER_POOL_SIZE,
)
from ..errors import ErrorCode, TransportConnectError, TransportRuntimeError
from .base import SessionRole, TransportAdapter, TransportErrorKind
from .rtc import PeerLink

logger = logging.getLogger(__name__)


def room_info_hash(room_id: str) -> str:
    """Swarm identifier a room is announced under."""
    digest = hashlib.sha1(f"{ROOM_NAMESPACE}:{room_id}".encode("utf-8")).hexdigest()
    return digest[:TRACKER_HASH_LENGTH]


def tracker_peer_id(local_id: str) -> str:
    return hashlib.sha1(local_id.encode("utf-8")).hexdigest()[:TRACKER_HASH_LENGTH]


class MeshTransport(TransportAdapter):
    """Direct WebRTC links to every peer announced in the room's swarm."""

    name = "mesh"

    def __init__(
        self,
        endpoint: str,
        local_id: str,
        ice_servers: Optional[List[str]] = None,
        offer_pool_size: int = TRACKER_OFFER_POOL_SIZE,
        announce_interval: float = TRACKER_ANNOUNCE_INTERVAL,
        max_peers: int = MESH_MAX_PEERS,
    ):
        super().__init__(endpoint, local_id)
        self.ice_servers = list(ice_servers or DEFAULT_ICE_SERVERS)
        self.offer_pool_size = offer_pool_size
        self.announce_interval = announce_interval
        self.max_peers = max_peers

        self.peer_id = tracker_peer_id(local_id)
        self.info_hash: Optional[str] = None

        self._ws = None
        self._ready: Optional[asyncio.Future] = None
        self._links: Dict[str, PeerLink] = {}  # remote peer id -> link
        self._initiated: Dict[str, bool] = {}  # remote peer id -> we sent the offer
        self._offers: Dict[str, PeerLink] = {}  # offer id -> unanswered link
        self._reader_task: Optional[asyncio.Task] = None
        self._announce_task: Optional[asyncio.Task] = None
        self._tracker_lost = False

    @property
    def open_links(self) -> List[PeerLink]:
        return [link for link in self._links.values() if link.is_open]

    async def connect(self, room_id: str, role: SessionRole) -> None:
        await self.leave()
        self._reset_state(room_id, role)
        self._tracker_lost = False
        self.info_hash = room_info_hash(room_id)

        try:
            self._ws = await websockets.connect(self.endpoint)
        except (OSError, WebSocketException, asyncio.TimeoutError) as e:
            await self.leave()
            raise TransportConnectError(
                ErrorCode.E301_ENDPOINT_UNREACHABLE,
                f"Tracker unreachable: {e}",
                {"endpoint": self.endpoint},
            )

        self._ready = asyncio.get_running_loop().create_future()
        self._reader_task = asyncio.create_task(self._reader_loop())

        try:
            await self._announce()
            await self._ready
        except TransportConnectError:
            await self.leave()
            raise

        logger.info(f"Announced {self.info_hash} on {self.endpoint} as {self.peer_id}")
        self._announce_task = asyncio.create_task(self._announce_loop())

    async def _send_tracker(self, message: Dict[str, Any]) -> None:
        if self._ws is None:
            return
        try:
            await self._ws.send(json.dumps(message))
        except (ConnectionClosed, OSError) as e:
            logger.debug(f"Tracker send failed: {e}")

    def _new_link(self, remote_id: str) -> PeerLink:
        link = PeerLink(remote_id, self.ice_servers)
        link.on_open = self._on_link_open
        link.on_message = self._on_link_message
        link.on_close = self._on_link_close
        return link

    async def _discard_offers(self) -> None:
        offers = list(self._offers.values())
        self._offers.clear()
        for link in offers:
            await link.close()

    async def _announce(self) -> None:
        """Replace the unanswered offer pool and announce it."""
        await self._discard_offers()

        wanted = max(self.max_peers - len(self._links), 0)
        pool = min(self.offer_pool_size, wanted) if wanted else 0

        links = [self._new_link("") for _ in range(pool)]
        descriptions = await asyncio.gather(*(link.create_offer() for link in links))

        offers = []
        for link, description in zip(links, descriptions):
            offer_id = secrets.token_hex(TRACKER_HASH_LENGTH // 2)
            self._offers[offer_id] = link
            offers.append({"offer_id": offer_id, "offer": description})

        await self._send_tracker(
            {
                "action": "announce",
                "info_hash": self.info_hash,
                "peer_id": self.peer_id,
                "numwant": len(offers),
                "uploaded": 0,
                "downloaded": 0,
                "offers": offers,
            }
        )

    async def _announce_loop(self) -> None:
        while True:
            await asyncio.sleep(self.announce_interval)
            if len(self.open_links) < self.max_peers:
                await self._announce()

    async def _reader_loop(self) -> None:
        try:
            async for raw in self._ws:
                try:
                    message = json.loads(raw)
                except (TypeError, ValueError):
                    logger.debug(f"Ignoring non-JSON tracker message: {raw!r}")
                    continue
                if not isinstance(message, dict):
                    continue
                try:
                    await self._handle_tracker_message(message)
                except Exception as e:
                    logger.warning(f"Error handling tracker message: {e}")
        except asyncio.CancelledError:
            raise
        except (ConnectionClosed, OSError) as e:
            logger.debug(f"Tracker socket error: {e}")

        if self._closed:
            return

        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(
                TransportConnectError(
                    ErrorCode.E301_ENDPOINT_UNREACHABLE,
                    "Tracker closed the connection before answering",
                    {"endpoint": self.endpoint},
                )
            )
            return

        self._tracker_lost = True
        if self.open_links:
            logger.warning("Lost tracker; keeping the open data channels")
            return
        self._emit_error(TransportErrorKind.NETWORK, "Lost connection to tracker")
        self._emit_close()

    async def _handle_tracker_message(self, message: Dict[str, Any]) -> None:
        failure = message.get("failure reason")
        if failure:
            if self._ready is not None and not self._ready.done():
                self._ready.set_exception(
                    TransportConnectError(
                        ErrorCode.E301_ENDPOINT_UNREACHABLE,
                        f"Tracker refused announce: {failure}",
                        {"endpoint": self.endpoint},
                    )
                )
            else:
                self._emit_error(TransportErrorKind.SERVER_ERROR, str(failure))
            return

        if message.get("action") != "announce" or message.get("info_hash") != self.info_hash:
            return

        if self._ready is not None and not self._ready.done():
            self._ready.set_result(None)

        src = message.get("peer_id")
        offer_id = message.get("offer_id")
        if not src or not isinstance(src, str) or src == self.peer_id:
            return
        if not isinstance(offer_id, str):
            offer_id = None

        if "offer" in message:
            await self._handle_offer(src, offer_id, message["offer"])
        elif "answer" in message:
            await self._handle_answer(src, offer_id, message["answer"])

    async def _keep_link(self, remote_id: str, link: PeerLink, initiated: bool) -> bool:
        """
        Register a link, resolving duplicates to one peer.

        When both peers answered each other's offers, both keep the link
        offered by the lower peer id.
        """
        existing = self._links.get(remote_id)
        if existing is not None:
            preferred = self.peer_id < remote_id
            if initiated != preferred or self._initiated.get(remote_id) == preferred:
                return False
            logger.debug(f"Replacing duplicate link to {remote_id}")
            self._links.pop(remote_id)
            await existing.close()
        elif len(self._links) >= self.max_peers:
            logger.debug(f"Peer limit reached, ignoring {remote_id}")
            return False

        self._links[remote_id] = link
        self._initiated[remote_id] = initiated
        return True

    async def _handle_offer(self, src: str, offer_id: Optional[str], offer: Dict[str, str]) -> None:
        if not offer_id or src in self._links or len(self._links) >= self.max_peers:
            return

        link = self._new_link(src)
        try:
            answer = await link.accept_offer(offer)
        except (KeyError, TypeError, ValueError) as e:
            logger.info(f"Rejecting malformed offer from {src}: {e}")
            await link.close()
            return
        if src in self._links or len(self._links) >= self.max_peers:
            await link.close()
            return

        self._links[src] = link
        self._initiated[src] = False

        await self._send_tracker(
            {
                "action": "announce",
                "info_hash": self.info_hash,
                "peer_id": self.peer_id,
                "to_peer_id": src,
                "offer_id": offer_id,
                "answer": answer,
            }
        )

    async def _handle_answer(self, src: str, offer_id: Optional[str], answer: Dict[str, str]) -> None:
        link = self._offers.pop(offer_id, None) if offer_id else None
        if link is None:
            return

        link.remote_id = src
        try:
            await link.accept_answer(answer)
        except (KeyError, TypeError, ValueError) as e:
            logger.info(f"Rejecting malformed answer from {src}: {e}")
            await link.close()
            return

        if not await self._keep_link(src, link, initiated=True):
            await link.close()

    def _on_link_open(self, link: PeerLink) -> None:
        if self._links.get(link.remote_id) is link:
            self._emit_peer_join(link.remote_id)

    def _on_link_message(self, link: PeerLink, data: bytes) -> None:
        if self._links.get(link.remote_id) is link:
            self._emit_message(data, link.remote_id)

    def _on_link_close(self, link: PeerLink) -> None:
        if self._links.get(link.remote_id) is not link:
            return
        self._links.pop(link.remote_id)
        self._initiated.pop(link.remote_id, None)
        self._emit_peer_leave(link.remote_id)
        if self._tracker_lost and not self._links:
            self._emit_close()

    async def send(self, frame: bytes) -> None:
        delivered = [link.send(frame) for link in self.open_links]
        if not any(delivered):
            raise TransportRuntimeError(
                ErrorCode.E403_NOT_CONNECTED, "No open data channel", {"endpoint": self.endpoint}
            )

    async def leave(self) -> None:
        self._closed = True

        for task in (self._announce_task, self._reader_task):
            if task and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._announce_task = None
        self._reader_task = None

        await self._discard_offers()
        links = list(self._links.values())
        self._links.clear()
        self._initiated.clear()
        for link in links:
            await link.close()

        if self._ws is not None:
            ws, self._ws = self._ws, None
            try:
                await ws.close()
            except (ConnectionClosed, OSError) as e:
                logger.debug(f"Error closing tracker socket: {e}")

        self._ready = None
        self._peers.clear()
