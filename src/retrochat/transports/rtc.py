"""
RetroChat - WebRTC data channel plumbing shared by the mesh and
signaling backends.

A PeerLink is one RTCPeerConnection carrying one ordered, reliable data
channel. ICE is non-trickle: aiortc gathers every candidate before the
local description is set, so one offer and one answer are exchanged and
nothing else.
"""

import logging
from typing import Callable, Dict, List, Optional

from aiortc import (
    RTCConfiguration,
    RTCDataChannel,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)

from ..constants import DATA_CHANNEL_LABEL

logger = logging.getLogger(__name__)


def build_rtc_configuration(ice_servers: List[str]) -> RTCConfiguration:
    """Build an aiortc configuration from a list of STUN/TURN urls."""
    return RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in ice_servers])


class PeerLink:
    """One WebRTC connection to a single remote peer."""

    def __init__(self, remote_id: str, ice_servers: List[str]):
        self.remote_id = remote_id
        self.pc = RTCPeerConnection(configuration=build_rtc_configuration(ice_servers))
        self.channel: Optional[RTCDataChannel] = None
        self._closed = False

        # Callbacks
        self.on_open: Optional[Callable[["PeerLink"], None]] = None
        self.on_message: Optional[Callable[["PeerLink", bytes], None]] = None
        self.on_close: Optional[Callable[["PeerLink"], None]] = None

        @self.pc.on("connectionstatechange")
        async def on_connectionstatechange():
            logger.debug(f"RTC link to {self.remote_id}: {self.pc.connectionState}")
            if self.pc.connectionState in ("failed", "closed"):
                self._handle_close()

        @self.pc.on("datachannel")
        def on_datachannel(channel: RTCDataChannel):
            if self.channel is not None:
                logger.debug(f"Extra data channel from {self.remote_id} ignored")
                return
            self._bind_channel(channel)

    @property
    def is_open(self) -> bool:
        return self.channel is not None and self.channel.readyState == "open"

    def _bind_channel(self, channel: RTCDataChannel) -> None:
        self.channel = channel

        @channel.on("open")
        def on_open():
            logger.info(f"Data channel open with {self.remote_id}")
            if self.on_open:
                self.on_open(self)

        @channel.on("message")
        def on_message(message):
            data = message.encode("utf-8") if isinstance(message, str) else bytes(message)
            if self.on_message:
                self.on_message(self, data)

        @channel.on("close")
        def on_close():
            self._handle_close()

        # Answerer side: the channel may already be open when it is announced
        if channel.readyState == "open" and self.on_open:
            self.on_open(self)

    def _handle_close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self.on_close:
            self.on_close(self)

    async def create_offer(self) -> Dict[str, str]:
        """Open the data channel and produce the local offer."""
        self._bind_channel(self.pc.createDataChannel(DATA_CHANNEL_LABEL, ordered=True))
        await self.pc.setLocalDescription(await self.pc.createOffer())
        return {"type": self.pc.localDescription.type, "sdp": self.pc.localDescription.sdp}

    async def accept_offer(self, offer: Dict[str, str]) -> Dict[str, str]:
        """Apply a remote offer and produce the answer."""
        await self.pc.setRemoteDescription(RTCSessionDescription(sdp=offer["sdp"], type="offer"))
        await self.pc.setLocalDescription(await self.pc.createAnswer())
        return {"type": self.pc.localDescription.type, "sdp": self.pc.localDescription.sdp}

    async def accept_answer(self, answer: Dict[str, str]) -> None:
        """Apply the remote answer to a pending offer."""
        await self.pc.setRemoteDescription(RTCSessionDescription(sdp=answer["sdp"], type="answer"))

    def send(self, frame: bytes) -> bool:
        """Send a frame if the channel is open. Returns False otherwise."""
        if not self.is_open:
            return False
        self.channel.send(frame)
        return True

    async def close(self) -> None:
        """Close the connection without firing on_close."""
        self._closed = True
        if self.channel is not None:
            try:
                self.channel.close()
            except Exception as e:
                logger.debug(f"Error closing data channel to {self.remote_id}: {e}")
        await self.pc.close()

    def __repr__(self) -> str:
        return f"PeerLink(remote={self.remote_id!r}, open={self.is_open})"
