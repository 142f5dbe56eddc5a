"""
RetroChat - Session controller.

The controller is the boundary between a UI and the secure session core.
It turns a session code into a room and a key, drives the transport
manager, encrypts outbound chat, decrypts inbound frames into the message
log and tracks presence, typing and read receipts.

All handlers receive the SessionContext of the session they were bound
for; events arriving for a session that has since been left are dropped.
"""

import asyncio
import logging
import secrets
import time
from contextlib import AsyncExitStack
from dataclasses import dataclass
from functools import partial
from typing import Callable, Optional, Set

from . import session_code
from .config import Config
from .connection_fsm import SessionEvent, SessionState, SessionStateMachine
from .constants import (
    DECRYPTION_FAILED_TEXT,
    PEER_JOINED_NOTICE,
    UNKNOWN_SENDER,
)
from .crypto import DecryptionFailure, EncryptedPayload, decrypt, derive_key, encrypt
from .errors import CodecError, CryptoError, ProtocolError
from .message import Message, MessageLog, MessageStatus, new_message_id
from .protocol import (
    MessageType,
    NetworkMessage,
    create_chat,
    create_leave,
    create_read_receipt,
    create_system,
    create_typing,
)
from .session_code import RoomIdentity
from .transport_manager import StatusUpdate, TransportManager
from .transports import AdapterFactory, create_adapter_factory
from .transports.base import SessionRole

logger = logging.getLogger(__name__)

INVALID_CODE_TEXT = "Invalid Code Format."


@dataclass(frozen=True)
class SessionContext:
    """Everything a handler needs to know about the session it serves."""

    identity: RoomIdentity
    key: bytes
    username: str
    role: SessionRole
    local_id: str


class SessionController:
    """
    Orchestrates one chat session at a time.

    Observable state: state, messages, remote_typing, status_text,
    session_code. UI callbacks (all synchronous):

        on_state_change(old_state, new_state)
        on_message(message)          -- new log entry
        on_message_update(message)   -- a sent message was read
        on_typing_change(is_typing)
        on_status(text)
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        username: Optional[str] = None,
        backend: Optional[str] = None,
        factory: Optional[AdapterFactory] = None,
    ):
        """
        Args:
            config: Loaded configuration (defaults are used if omitted)
            username: Display name sent with every frame
            backend: Transport backend name, overrides the configured one
            factory: Adapter factory, overrides the one built for backend
        """
        self.config = config or Config()
        self.username = username or session_code.generate_random_name()
        self.backend = backend or self.config.get("transport", "backend")
        self._factory = factory

        self.fsm = SessionStateMachine()
        self.fsm.on_state_change = self._on_fsm_state_change

        self.messages = MessageLog()
        self.remote_typing = False
        self.status_text = "Offline"
        self.foreground = True

        self.typing_timeout = self.config.get("session", "typing_timeout")
        self.typing_throttle = self.config.get("session", "typing_throttle")
        self.receipt_window = self.config.get("session", "receipt_window")

        self._context: Optional[SessionContext] = None
        self._manager: Optional[TransportManager] = None
        self._stack: Optional[AsyncExitStack] = None
        self._typing_timer: Optional[asyncio.TimerHandle] = None
        self._last_typing_sent: Optional[float] = None
        self._send_tasks: Set[asyncio.Task] = set()
        self._generation = 0  # bumped whenever a session starts or ends
        self._clock: Callable[[], float] = time.monotonic

        # UI callbacks
        self.on_state_change: Optional[Callable[[SessionState, SessionState], None]] = None
        self.on_message: Optional[Callable[[Message], None]] = None
        self.on_message_update: Optional[Callable[[Message], None]] = None
        self.on_typing_change: Optional[Callable[[bool], None]] = None
        self.on_status: Optional[Callable[[str], None]] = None

    # Observable state

    @property
    def state(self) -> SessionState:
        return self.fsm.get_state()

    @property
    def context(self) -> Optional[SessionContext]:
        return self._context

    @property
    def session_code(self) -> Optional[str]:
        return self._context.identity.code if self._context else None

    @property
    def role(self) -> Optional[SessionRole]:
        return self._context.role if self._context else None

    def share_link(self, base_url: str) -> Optional[str]:
        """Shareable join link for the current session, if any."""
        code = self.session_code
        return session_code.build_share_link(base_url, code) if code else None

    # Session lifecycle

    async def create_session(self) -> str:
        """
        Host a new session under a freshly generated code.

        Returns:
            The session code to share with the peer
        """
        await self._begin()
        identity = session_code.parse(session_code.generate())
        await self._launch(identity, SessionRole.HOST)
        return identity.code

    async def join_session(self, text: str) -> bool:
        """
        Join a session from a code or share link.

        Returns:
            False if the code is malformed or the session was left before
            dialing started, True once dialing has started
        """
        await self._begin()
        try:
            identity = session_code.parse(text)
        except CodecError as e:
            logger.info(f"Rejected session code: {e.message}")
            self.fsm.transition(SessionEvent.CODEC_FAILED, INVALID_CODE_TEXT)
            self._set_status(INVALID_CODE_TEXT)
            return False

        return await self._launch(identity, SessionRole.GUEST)

    async def _begin(self) -> None:
        if self._stack is not None or self.fsm.is_active():
            await self.leave()
        self._generation += 1
        self.messages.clear()
        self.fsm.transition(SessionEvent.SESSION_REQUESTED)
        self._set_status("Initializing...")

    def _build_factory(self) -> AdapterFactory:
        if self._factory is not None:
            return self._factory
        return create_adapter_factory(self.backend, self.config)

    async def _launch(self, identity: RoomIdentity, role: SessionRole) -> bool:
        generation = self._generation
        key = await asyncio.get_running_loop().run_in_executor(None, derive_key, identity.key_seed)
        if generation != self._generation:
            logger.debug(f"Session for {identity.room_id} was superseded during key derivation")
            return False

        context = SessionContext(
            identity=identity,
            key=key,
            username=self.username,
            role=role,
            local_id=secrets.token_hex(8),
        )

        manager = TransportManager(
            self.config.backend_candidates(self.backend),
            self._build_factory(),
            context.local_id,
            connect_timeout=self.config.get("transport", "connect_timeout"),
            reconnect_delay=self.config.get("transport", "reconnect_delay"),
            backoff_base=self.config.get("transport", "backoff_base"),
            backoff_max=self.config.get("transport", "backoff_max"),
        )
        manager.on_status = self._on_transport_status
        manager.on_connected = partial(self._on_transport_connected, context)
        manager.on_link_lost = partial(self._on_link_lost, context)
        manager.on_peer_join = partial(self._on_peer_join, context)
        manager.on_peer_leave = partial(self._on_peer_leave, context)
        manager.on_message = partial(self._handle_frame, context)

        stack = AsyncExitStack()
        stack.push_async_callback(manager.stop)
        stack.callback(self._cancel_timers)

        self._context = context
        self._manager = manager
        self._stack = stack
        self._last_typing_sent = None

        logger.info(f"Starting {role.value} session in {identity.room_id} via {self.backend}")
        if role == SessionRole.GUEST:
            self.fsm.transition(SessionEvent.DIAL_STARTED)
            self._set_status("Connecting...")
        manager.start(identity.room_id, role)
        return True

    async def leave(self) -> None:
        """Leave the current session and release every resource."""
        self._generation += 1
        context = self._context
        if context is not None and self._manager is not None and self._manager.is_connected():
            # Best effort, the peer also notices the link going away
            await self._send(create_leave(context.username))

        stack, self._stack = self._stack, None
        self._context = None
        self._manager = None
        if stack is not None:
            await stack.aclose()

        self.fsm.transition(SessionEvent.LEAVE_REQUESTED)
        self._set_status("Offline")

    # Outbound

    async def send_chat_message(self, text: str) -> bool:
        """
        Echo a chat message locally, then encrypt and send it.

        Returns:
            True if the transport accepted the frame
        """
        if not text or not text.strip():
            return False

        context = self._context
        if context is None:
            logger.debug("send_chat_message without an active session")
            return False

        message = Message(sender=context.username, content=text, status=MessageStatus.SENT)
        self.messages.append(message)
        self._notify(self.on_message, message)

        try:
            payload = encrypt(text, context.key)
        except CryptoError as e:
            logger.error(f"Encryption failed: {e}")
            self._add_system("Encryption failed.")
            return False

        if not await self._send(create_chat(payload, context.username, message.message_id)):
            self._add_system("Message not delivered: no connection.")
            return False
        return True

    async def on_typing_input(self) -> bool:
        """
        Tell the peer we are typing, at most once per throttle window.

        Returns:
            True if a TYPING frame was sent
        """
        context = self._context
        if context is None or self.state != SessionState.CONNECTED:
            return False

        now = self._clock()
        if self._last_typing_sent is not None and now - self._last_typing_sent < self.typing_throttle:
            return False
        self._last_typing_sent = now
        return await self._send(create_typing(context.username))

    async def set_foreground(self, active: bool) -> None:
        """Track UI focus; on focus, acknowledge the latest inbound messages."""
        self.foreground = active
        context = self._context
        if not active or context is None:
            return
        for message in self.messages.recent_inbound(self.receipt_window):
            await self._send(create_read_receipt(message.message_id, context.username))

    async def _send(self, message: NetworkMessage) -> bool:
        manager = self._manager
        if manager is None:
            return False
        try:
            raw = message.encode()
        except ProtocolError as e:
            logger.warning(f"Refusing to send invalid frame: {e}")
            return False
        return await manager.send(raw)

    def _send_soon(self, context: SessionContext, message: NetworkMessage) -> None:
        """Schedule a send from a synchronous handler."""
        if context is not self._context:
            return
        task = asyncio.create_task(self._send(message))
        self._send_tasks.add(task)
        task.add_done_callback(self._send_tasks.discard)

    def _seal(self, context: SessionContext, text: str) -> Optional[EncryptedPayload]:
        try:
            return encrypt(text, context.key)
        except CryptoError as e:
            logger.error(f"Encryption failed: {e}")
            return None

    # Inbound

    def on_inbound_frame(self, frame: bytes, peer_id: Optional[str] = None) -> None:
        """Handle a raw frame for the current session."""
        if self._context is not None:
            self._handle_frame(self._context, frame, peer_id)

    def _handle_frame(self, context: SessionContext, frame: bytes, peer_id: Optional[str] = None) -> None:
        if context is not self._context:
            return

        try:
            message = NetworkMessage.decode(frame)
        except ProtocolError as e:
            logger.warning(f"Dropping frame from {peer_id}: {e}")
            return

        sender = message.sender or UNKNOWN_SENDER

        if message.type == MessageType.CHAT:
            text = self._open(context, message.payload, sender)
            entry = self.messages.append(
                Message(sender=sender, content=text, message_id=message.message_id or new_message_id())
            )
            self._cancel_typing_timer()
            self._set_remote_typing(False)
            self._notify(self.on_message, entry)
            if self.foreground and message.message_id:
                self._send_soon(context, create_read_receipt(message.message_id, context.username))

        elif message.type == MessageType.SYSTEM:
            text = self._open(context, message.payload, sender)
            self._add_system(text)
            if text == PEER_JOINED_NOTICE:
                self._peer_present()

        elif message.type == MessageType.JOIN:
            logger.info(f"{sender} announced presence")
            self._peer_present()

        elif message.type == MessageType.LEAVE:
            self._add_system(f"{sender} left the channel.")

        elif message.type == MessageType.TYPING:
            self._arm_typing_timer()
            self._set_remote_typing(True)

        elif message.type == MessageType.READ_RECEIPT:
            updated = self.messages.mark_read(message.message_id)
            if updated is not None:
                self._notify(self.on_message_update, updated)

    def _open(self, context: SessionContext, payload: EncryptedPayload, sender: str) -> str:
        result = decrypt(payload, context.key)
        if isinstance(result, DecryptionFailure):
            logger.warning(f"Could not decrypt frame from {sender}: {result.reason}")
            return DECRYPTION_FAILED_TEXT
        return result

    # Transport events

    def _on_transport_status(self, update: StatusUpdate) -> None:
        logger.debug(f"Transport status [{update.kind.value}] {update.text}")
        self._set_status(update.text)

    def _on_transport_connected(self, context: SessionContext, endpoint: str) -> None:
        if context is not self._context:
            return

        if context.role == SessionRole.HOST:
            if self.state == SessionState.RECONNECTING:
                self.fsm.transition(SessionEvent.LINK_RESUMED)
            else:
                self.fsm.transition(SessionEvent.TRANSPORT_READY)
            return

        self._peer_present()
        payload = self._seal(context, PEER_JOINED_NOTICE)
        if payload is not None:
            self._send_soon(context, create_system(payload, context.username))

    def _on_peer_join(self, context: SessionContext, peer_id: str) -> None:
        if context is self._context:
            self._peer_present()

    def _on_peer_leave(self, context: SessionContext, peer_id: str) -> None:
        if context is not self._context:
            return
        self._add_system("Peer disconnected.")
        self._cancel_typing_timer()
        self._set_remote_typing(False)
        self.fsm.transition(SessionEvent.LINK_LOST)
        self._set_status("Peer disconnected. Waiting...")

    def _on_link_lost(self, context: SessionContext) -> None:
        if context is not self._context:
            return
        self._cancel_typing_timer()
        self._set_remote_typing(False)
        self.fsm.transition(SessionEvent.LINK_LOST)

    def _peer_present(self) -> None:
        if self.state in (
            SessionState.WAITING_FOR_PEER,
            SessionState.CONNECTING,
            SessionState.RECONNECTING,
        ):
            if self.fsm.transition(SessionEvent.PEER_OPENED):
                self._set_status("Connected")

    # Typing timer

    def _arm_typing_timer(self) -> None:
        self._cancel_typing_timer()
        loop = asyncio.get_running_loop()
        self._typing_timer = loop.call_later(self.typing_timeout, self._typing_expired)

    def _cancel_typing_timer(self) -> None:
        if self._typing_timer is not None:
            self._typing_timer.cancel()
            self._typing_timer = None

    def _typing_expired(self) -> None:
        self._typing_timer = None
        self._set_remote_typing(False)

    def _set_remote_typing(self, typing: bool) -> None:
        if self.remote_typing == typing:
            return
        self.remote_typing = typing
        self._notify(self.on_typing_change, typing)

    def _cancel_timers(self) -> None:
        self._cancel_typing_timer()
        self._set_remote_typing(False)
        for task in list(self._send_tasks):
            task.cancel()
        self._send_tasks.clear()

    # Helpers

    def _add_system(self, content: str) -> Message:
        entry = self.messages.add_system(content)
        self._notify(self.on_message, entry)
        return entry

    def _set_status(self, text: str) -> None:
        self.status_text = text
        self._notify(self.on_status, text)

    def _on_fsm_state_change(self, old_state: SessionState, new_state: SessionState) -> None:
        self._notify(self.on_state_change, old_state, new_state)

    def _notify(self, callback: Optional[Callable], *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.error(f"UI callback error: {e}", exc_info=True)

    def __repr__(self) -> str:
        return f"SessionController(state={self.state.name}, backend={self.backend!r})"
