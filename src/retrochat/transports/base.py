"""
RetroChat - Transport adapter contract.

Every network backend (WebRTC mesh, WebRTC via signaling server, MQTT
relay) implements TransportAdapter. The transport manager and session
controller only ever talk to this interface.

Events are plain attributes holding a callable, which may be a regular
function or a coroutine function:

- on_peer_join(peer_id)
- on_peer_leave(peer_id)
- on_message(frame: bytes, peer_id)
- on_error(kind: TransportErrorKind, detail: str)
- on_close()  -- unexpected loss only, never after leave()
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Callable, Optional, Set

from ..errors import ErrorCode, TransportConnectError

logger = logging.getLogger(__name__)


class SessionRole(str, Enum):
    """Which side of the session this client plays."""

    HOST = "host"
    GUEST = "guest"


class TransportErrorKind(str, Enum):
    """Error categories reported through on_error."""

    NETWORK = "network"
    PEER_UNAVAILABLE = "peer-unavailable"
    ID_TAKEN = "unavailable-id"
    SERVER_ERROR = "server-error"
    SEND_FAILED = "send-failed"
    PROTOCOL = "protocol"


class TransportAdapter(ABC):
    """
    Uniform connect/send/leave contract over one network backend.

    Subclasses report activity through the _emit_* helpers, which keep
    the peer set and the wait_for_peer() signal consistent.
    """

    name = "base"

    def __init__(self, endpoint: str, local_id: str):
        """
        Args:
            endpoint: Backend endpoint URL this adapter talks to
            local_id: Stable rendezvous id of this client for the session
        """
        self.endpoint = endpoint
        self.local_id = local_id
        self.room_id: Optional[str] = None
        self.role: Optional[SessionRole] = None

        self.on_peer_join: Optional[Callable] = None
        self.on_peer_leave: Optional[Callable] = None
        self.on_message: Optional[Callable] = None
        self.on_error: Optional[Callable] = None
        self.on_close: Optional[Callable] = None

        self._peers: Set[str] = set()
        self._peer_event = asyncio.Event()
        self._dial_failure: Optional[TransportConnectError] = None
        self._callback_tasks: Set[asyncio.Task] = set()
        self._closed = True

    @abstractmethod
    async def connect(self, room_id: str, role: SessionRole) -> None:
        """
        Connect to the backend for a room.

        Calling again while connected first tears down the old link.

        Raises:
            TransportConnectError: If the endpoint cannot be used
        """

    @abstractmethod
    async def send(self, frame: bytes) -> None:
        """
        Send a frame to the connected peer(s), best effort.

        Raises:
            TransportRuntimeError: If nothing can carry the frame
        """

    @abstractmethod
    async def leave(self) -> None:
        """Release every backend resource. Safe to call repeatedly."""

    async def wait_for_peer(self) -> str:
        """
        Wait until a remote peer link is open.

        Returns:
            The peer id

        Raises:
            TransportConnectError: If the backend reports the peer unreachable
        """
        await self._peer_event.wait()
        if self._dial_failure is not None:
            raise self._dial_failure
        return next(iter(self._peers))

    @property
    def peers(self) -> Set[str]:
        return set(self._peers)

    def is_linked(self) -> bool:
        """Check if at least one peer link is open."""
        return bool(self._peers)

    # Helpers for subclasses

    def _reset_state(self, room_id: str, role: SessionRole) -> None:
        self.room_id = room_id
        self.role = role
        self._peers.clear()
        self._peer_event = asyncio.Event()
        self._dial_failure = None
        self._closed = False

    def _dispatch(self, callback: Optional[Callable], *args) -> None:
        """Invoke a sync or async event callback."""
        if callback is None:
            return
        if asyncio.iscoroutinefunction(callback):
            task = asyncio.create_task(callback(*args))
            self._callback_tasks.add(task)
            task.add_done_callback(self._callback_tasks.discard)
        else:
            try:
                callback(*args)
            except Exception as e:
                logger.error(f"{self.name} transport callback error: {e}", exc_info=True)

    def _emit_peer_join(self, peer_id: str) -> None:
        new_peer = peer_id not in self._peers
        self._peers.add(peer_id)
        self._peer_event.set()
        if new_peer:
            logger.info(f"[{self.name}] peer joined: {peer_id}")
        self._dispatch(self.on_peer_join, peer_id)

    def _emit_peer_leave(self, peer_id: str) -> None:
        if peer_id not in self._peers:
            return
        self._peers.discard(peer_id)
        if not self._peers:
            self._peer_event.clear()
        logger.info(f"[{self.name}] peer left: {peer_id}")
        self._dispatch(self.on_peer_leave, peer_id)

    def _emit_message(self, frame: bytes, peer_id: str) -> None:
        self._dispatch(self.on_message, frame, peer_id)

    def _emit_error(self, kind: TransportErrorKind, detail: str) -> None:
        logger.warning(f"[{self.name}] {kind.value}: {detail}")
        self._dispatch(self.on_error, kind, detail)

    def _emit_close(self) -> None:
        """Report an unexpected loss of the backend link (at most once)."""
        if self._closed:
            return
        self._closed = True
        logger.warning(f"[{self.name}] link to {self.endpoint} closed unexpectedly")
        self._dispatch(self.on_close)

    def _fail_dial(self, code: ErrorCode, message: str) -> None:
        """Make a pending wait_for_peer() raise."""
        self._dial_failure = TransportConnectError(
            code, message, {"endpoint": self.endpoint, "room_id": self.room_id}
        )
        self._peer_event.set()

    def __repr__(self) -> str:
        return f"{type(self).__name__}(endpoint={self.endpoint!r}, peers={len(self._peers)})"
