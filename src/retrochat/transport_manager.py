"""
RetroChat - Transport manager.

Keeps one session connected over an ordered list of candidate endpoints
(brokers, signaling servers or trackers) of a single backend:

- each candidate gets a bounded attempt; failures advance to the next
  candidate with wrap-around
- after a full failed cycle the manager backs off exponentially and
  starts over; it never gives up on its own
- an unexpected drop of the active link schedules one debounced
  reconnect that resumes from the same candidate

At most one adapter is live at a time, plus the one being attempted.
Events from adapters that have been discarded are ignored.
"""

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Callable, List, Optional, Set

from .constants import (
    CONNECT_TIMEOUT,
    MAX_RECONNECT_DELAY,
    RECONNECT_BACKOFF_BASE,
    RECONNECT_BACKOFF_MULTIPLIER,
    RECONNECT_DELAY,
)
from .errors import ConfigError, ErrorCode, TransportConnectError, TransportRuntimeError
from .transports.base import SessionRole, TransportAdapter, TransportErrorKind
from .utils import endpoint_label, truncate_string

logger = logging.getLogger(__name__)


class StatusKind(str, Enum):
    """Progress notifications emitted while acquiring a link."""

    TRYING = "trying"
    NEXT_CANDIDATE = "next_candidate"
    CONNECTED = "connected"
    BACKOFF = "backoff"
    RECONNECTING = "reconnecting"
    PEER_LEFT = "peer_left"
    ERROR = "error"


@dataclass(frozen=True)
class StatusUpdate:
    """One human-readable status line plus where it came from."""

    kind: StatusKind
    candidate_index: int
    endpoint: Optional[str]
    text: str


class TransportManager:
    """
    Acquires and keeps an adapter connected to one room.

    Callbacks (sync or async):
        on_status(update: StatusUpdate)
        on_connected(endpoint)      -- a candidate succeeded
        on_link_lost()              -- a reconnect has been scheduled
        on_peer_join(peer_id)
        on_peer_leave(peer_id)      -- host side only; a guest reconnects instead
        on_message(frame, peer_id)
    """

    def __init__(
        self,
        candidates: List[str],
        factory: Callable[[str, str], TransportAdapter],
        local_id: str,
        connect_timeout: float = CONNECT_TIMEOUT,
        reconnect_delay: float = RECONNECT_DELAY,
        backoff_base: float = RECONNECT_BACKOFF_BASE,
        backoff_max: float = MAX_RECONNECT_DELAY,
    ):
        """
        Args:
            candidates: Ordered endpoint list, tried with wrap-around
            factory: Builds a fresh adapter for (endpoint, local_id)
            local_id: Rendezvous id shared by every adapter of this session
            connect_timeout: Seconds allowed per candidate attempt
            reconnect_delay: Debounce before resuming after a drop
            backoff_base: First delay after a full failed cycle
            backoff_max: Upper bound for the backoff delay
        """
        if not candidates:
            raise ConfigError(ErrorCode.E703_INVALID_CONFIG, "No transport candidates configured")

        self.candidates = list(candidates)
        self.factory = factory
        self.local_id = local_id
        self.connect_timeout = connect_timeout
        self.reconnect_delay = reconnect_delay
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max

        self.room_id: Optional[str] = None
        self.role: Optional[SessionRole] = None
        self.current_index = 0

        self._adapter: Optional[TransportAdapter] = None
        self._pending: Optional[TransportAdapter] = None
        self._task: Optional[asyncio.Task] = None
        self._callback_tasks: Set[asyncio.Task] = set()
        self._connected = asyncio.Event()
        self._stopped = True

        # Callbacks
        self.on_status: Optional[Callable] = None
        self.on_connected: Optional[Callable] = None
        self.on_link_lost: Optional[Callable] = None
        self.on_peer_join: Optional[Callable] = None
        self.on_peer_leave: Optional[Callable] = None
        self.on_message: Optional[Callable] = None

    @property
    def adapter(self) -> Optional[TransportAdapter]:
        return self._adapter

    @property
    def endpoint(self) -> Optional[str]:
        return self._adapter.endpoint if self._adapter else None

    def is_connected(self) -> bool:
        return self._connected.is_set()

    def start(self, room_id: str, role: SessionRole) -> None:
        """Begin acquiring a link in the background."""
        if not self._stopped:
            raise RuntimeError("TransportManager already started")
        self.room_id = room_id
        self.role = role
        self.current_index = 0
        self._stopped = False
        self._task = asyncio.create_task(self._cycle(0))

    async def wait_connected(self) -> None:
        """Wait until a candidate has been acquired."""
        await self._connected.wait()

    def backoff_delay(self, round_number: int) -> float:
        """Delay before the next cycle after round_number full failed cycles."""
        delay = self.backoff_base * (RECONNECT_BACKOFF_MULTIPLIER**round_number)
        return min(delay, self.backoff_max)

    async def _cycle(self, start_index: int) -> None:
        """Try candidates from start_index until one succeeds."""
        count = len(self.candidates)
        index = start_index % count
        round_number = 0

        while not self._stopped:
            for _ in range(count):
                if await self._attempt(index):
                    return
                index = (index + 1) % count

            delay = self.backoff_delay(round_number)
            round_number += 1
            self._emit_status(
                StatusKind.BACKOFF,
                index,
                f"All {count} servers failed. Retrying in {delay:.0f}s...",
            )
            await asyncio.sleep(delay)

    async def _establish(self, adapter: TransportAdapter) -> None:
        await adapter.connect(self.room_id, self.role)
        if self.role == SessionRole.GUEST:
            await adapter.wait_for_peer()

    async def _attempt(self, index: int) -> bool:
        endpoint = self.candidates[index]
        self.current_index = index
        self._emit_status(
            StatusKind.TRYING,
            index,
            f"Connecting via {endpoint_label(endpoint)} ({index + 1}/{len(self.candidates)})...",
        )

        adapter = self.factory(endpoint, self.local_id)
        self._bind(adapter)
        self._pending = adapter

        try:
            await asyncio.wait_for(self._establish(adapter), timeout=self.connect_timeout)
        except asyncio.TimeoutError:
            reason = f"timed out after {self.connect_timeout}s"
        except TransportConnectError as e:
            reason = e.message
        except Exception as e:
            logger.error(f"Unexpected error connecting via {endpoint}: {e}", exc_info=True)
            reason = str(e) or type(e).__name__
        else:
            self._pending = None
            self._adapter = adapter
            self._connected.set()
            logger.info(f"Transport acquired via {endpoint}")
            text = "Connected." if self.role == SessionRole.GUEST else "Waiting for peer..."
            self._emit_status(StatusKind.CONNECTED, index, text)
            self._dispatch(self.on_connected, endpoint)
            return True

        self._pending = None
        await self._release(adapter)
        logger.info(f"Candidate {endpoint} failed: {reason}")
        self._emit_status(
            StatusKind.NEXT_CANDIDATE,
            index,
            f"{endpoint_label(endpoint)} failed ({truncate_string(reason, 60)}), trying next...",
        )
        return False

    def _bind(self, adapter: TransportAdapter) -> None:
        adapter.on_peer_join = partial(self._handle_peer_join, adapter)
        adapter.on_peer_leave = partial(self._handle_peer_leave, adapter)
        adapter.on_message = partial(self._handle_message, adapter)
        adapter.on_error = partial(self._handle_error, adapter)
        adapter.on_close = partial(self._handle_close, adapter)

    def _is_current(self, adapter: TransportAdapter) -> bool:
        return adapter is self._adapter or adapter is self._pending

    async def _release(self, adapter: TransportAdapter) -> None:
        adapter.on_peer_join = None
        adapter.on_peer_leave = None
        adapter.on_message = None
        adapter.on_error = None
        adapter.on_close = None
        try:
            await adapter.leave()
        except Exception as e:
            logger.warning(f"Error releasing {adapter!r}: {e}")

    # Adapter events

    def _handle_peer_join(self, adapter: TransportAdapter, peer_id: str) -> None:
        if self._is_current(adapter):
            self._dispatch(self.on_peer_join, peer_id)

    def _handle_peer_leave(self, adapter: TransportAdapter, peer_id: str) -> None:
        if adapter is not self._adapter:
            return
        self._emit_status(StatusKind.PEER_LEFT, self.current_index, "Peer disconnected.")
        if self.role == SessionRole.GUEST:
            # The host may have moved to another candidate: dial again
            self._schedule_reconnect()
        else:
            self._dispatch(self.on_peer_leave, peer_id)

    def _handle_message(self, adapter: TransportAdapter, frame: bytes, peer_id: str) -> None:
        if self._is_current(adapter):
            self._dispatch(self.on_message, frame, peer_id)

    def _handle_error(self, adapter: TransportAdapter, kind: TransportErrorKind, detail: str) -> None:
        if self._is_current(adapter):
            self._emit_status(StatusKind.ERROR, self.current_index, f"Net Error: {kind.value} ({detail})")

    def _handle_close(self, adapter: TransportAdapter) -> None:
        if adapter is self._adapter:
            self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        """Resume cycling after a drop. Repeated signals coalesce."""
        if self._stopped or (self._task is not None and not self._task.done()):
            return
        self._connected.clear()
        self._emit_status(StatusKind.RECONNECTING, self.current_index, "Connection lost. Reconnecting...")
        self._dispatch(self.on_link_lost)
        self._task = asyncio.create_task(self._reconnect())

    async def _reconnect(self) -> None:
        await asyncio.sleep(self.reconnect_delay)
        adapter, self._adapter = self._adapter, None
        if adapter is not None:
            await self._release(adapter)
        await self._cycle(self.current_index)

    async def send(self, frame: bytes) -> bool:
        """
        Send a frame over the active adapter.

        Returns:
            True if the adapter accepted the frame
        """
        adapter = self._adapter
        if adapter is None:
            return False
        try:
            await adapter.send(frame)
        except TransportRuntimeError as e:
            logger.warning(f"Send via {adapter.endpoint} failed: {e.message}")
            if e.code == ErrorCode.E401_SEND_FAILED:
                self._schedule_reconnect()
            return False
        return True

    async def stop(self) -> None:
        """Cancel every pending task and release all adapters."""
        self._stopped = True
        self._connected.clear()

        if self._task is not None:
            task, self._task = self._task, None
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

        for adapter in (self._pending, self._adapter):
            if adapter is not None:
                await self._release(adapter)
        self._pending = None
        self._adapter = None

        current = asyncio.current_task()
        for task in list(self._callback_tasks):
            if task is not current:
                task.cancel()
        self._callback_tasks.clear()

    # Helpers

    def _emit_status(self, kind: StatusKind, index: int, text: str) -> None:
        endpoint = self.candidates[index] if 0 <= index < len(self.candidates) else None
        self._dispatch(self.on_status, StatusUpdate(kind, index, endpoint, text))

    def _dispatch(self, callback: Optional[Callable], *args) -> None:
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
                logger.error(f"Transport manager callback error: {e}", exc_info=True)

    def __repr__(self) -> str:
        return (
            f"TransportManager(candidates={len(self.candidates)}, "
            f"current={self.current_index}, connected={self.is_connected()})"
        )
