"""
RetroChat - Pub/sub relay transport (MQTT over secure WebSocket).

Both sides subscribe to one topic per room on a public broker. Every
publish is wrapped in a small JSON envelope:

    {"src": <local id>, "kind": "hello" | "welcome" | "data" | "bye",
     "frame": <wire frame, only for data>}

The envelope lets us drop our own echoes and gives the relay a notion of
presence: a hello is answered with welcome, and the broker publishes our
bye as the last will if the connection dies without a clean disconnect.
"""

import asyncio
import contextlib
import json
import logging
import ssl
from typing import Any, Optional
from urllib.parse import urlsplit

import aiomqtt

from ..constants import RELAY_KEEPALIVE, RELAY_QOS, RELAY_TOPIC_PREFIX
from ..errors import ErrorCode, TransportConnectError, TransportRuntimeError
from .base import SessionRole, TransportAdapter, TransportErrorKind

logger = logging.getLogger(__name__)

KIND_HELLO = "hello"
KIND_WELCOME = "welcome"
KIND_DATA = "data"
KIND_BYE = "bye"


class RelayTransport(TransportAdapter):
    """
    Chat link carried through an MQTT broker.

    Only the first remote client seen on the topic is accepted as the
    chat partner; anything else published there is ignored.
    """

    name = "relay"

    def __init__(
        self,
        endpoint: str,
        local_id: str,
        topic_prefix: str = RELAY_TOPIC_PREFIX,
        keepalive: int = RELAY_KEEPALIVE,
    ):
        super().__init__(endpoint, local_id)
        self.topic_prefix = topic_prefix
        self.keepalive = keepalive

        parsed = urlsplit(endpoint)
        self.secure = parsed.scheme == "wss"
        self.hostname = parsed.hostname or ""
        self.port = parsed.port or (443 if self.secure else 80)
        self.path = parsed.path or "/mqtt"

        self.topic: Optional[str] = None
        self.partner: Optional[str] = None
        self._client: Optional[aiomqtt.Client] = None
        self._ready: Optional[asyncio.Future] = None
        self._task: Optional[asyncio.Task] = None

    def _envelope(self, kind: str, frame: Optional[bytes] = None) -> bytes:
        envelope: dict = {"src": self.local_id, "kind": kind}
        if frame is not None:
            envelope["frame"] = frame.decode("utf-8")
        return json.dumps(envelope, separators=(",", ":")).encode("utf-8")

    def _build_client(self) -> aiomqtt.Client:
        return aiomqtt.Client(
            self.hostname,
            self.port,
            identifier=self.local_id,
            transport="websockets",
            websocket_path=self.path,
            tls_context=ssl.create_default_context() if self.secure else None,
            keepalive=self.keepalive,
            will=aiomqtt.Will(self.topic, self._envelope(KIND_BYE), qos=RELAY_QOS),
        )

    async def connect(self, room_id: str, role: SessionRole) -> None:
        await self.leave()
        self._reset_state(room_id, role)
        self.partner = None
        self.topic = f"{self.topic_prefix}/{room_id}"

        self._ready = asyncio.get_running_loop().create_future()
        self._client = self._build_client()
        self._task = asyncio.create_task(self._run())

        try:
            await self._ready
        except TransportConnectError:
            await self.leave()
            raise

        logger.info(f"Subscribed to {self.topic} on {self.hostname}:{self.port}")

    async def _run(self) -> None:
        """Own the broker connection for the adapter's lifetime."""
        try:
            async with self._client as client:
                await client.subscribe(self.topic, qos=RELAY_QOS)
                await self._publish(KIND_HELLO)
                if not self._ready.done():
                    self._ready.set_result(None)

                async for message in client.messages:
                    await self._handle_payload(message.payload)
        except aiomqtt.MqttError as e:
            if not self._ready.done():
                self._ready.set_exception(
                    TransportConnectError(
                        ErrorCode.E301_ENDPOINT_UNREACHABLE,
                        f"Broker unreachable: {e}",
                        {"endpoint": self.endpoint},
                    )
                )
                return
            if not self._closed:
                self._emit_error(TransportErrorKind.NETWORK, str(e))

        self._emit_close()

    async def _publish(self, kind: str, frame: Optional[bytes] = None) -> None:
        await self._client.publish(self.topic, self._envelope(kind, frame), qos=RELAY_QOS)

    async def _handle_payload(self, payload: Any) -> None:
        try:
            envelope = json.loads(payload)
            src = envelope["src"]
            kind = envelope["kind"]
        except (TypeError, ValueError, KeyError) as e:
            logger.debug(f"Ignoring malformed relay envelope: {e}")
            return

        if src == self.local_id:
            return

        if kind == KIND_HELLO:
            if self._adopt(src, rejoin=True):
                await self._publish(KIND_WELCOME)
        elif kind == KIND_WELCOME:
            self._adopt(src)
        elif kind == KIND_DATA:
            if self.partner is None:
                self._adopt(src)
            frame = envelope.get("frame")
            if src == self.partner and isinstance(frame, str):
                self._emit_message(frame.encode("utf-8"), src)
        elif kind == KIND_BYE:
            if src == self.partner:
                self.partner = None
                self._emit_peer_leave(src)
        else:
            logger.debug(f"Unknown relay envelope kind from {src}: {kind}")

    def _adopt(self, src: str, rejoin: bool = False) -> bool:
        """
        Accept src as the chat partner if there is none yet.

        Returns:
            True if src is (now) the partner
        """
        if self.partner is None:
            self.partner = src
            self._emit_peer_join(src)
            return True
        if self.partner == src:
            if rejoin:
                # The partner re-announced itself after reconnecting
                self._emit_peer_join(src)
            return True
        logger.debug(f"Ignoring third party {src} on {self.topic}")
        return False

    async def send(self, frame: bytes) -> None:
        if self._client is None or self._ready is None or not self._ready.done() or self._closed:
            raise TransportRuntimeError(
                ErrorCode.E403_NOT_CONNECTED, "Relay is not connected", {"endpoint": self.endpoint}
            )
        try:
            await self._publish(KIND_DATA, frame)
        except aiomqtt.MqttError as e:
            raise TransportRuntimeError(
                ErrorCode.E401_SEND_FAILED, f"Publish failed: {e}", {"endpoint": self.endpoint}
            )

    async def leave(self) -> None:
        was_open = not self._closed
        self._closed = True

        if was_open and self._ready is not None and self._ready.done() and not self._ready.cancelled():
            if self._ready.exception() is None:
                try:
                    await self._publish(KIND_BYE)
                except aiomqtt.MqttError as e:
                    logger.debug(f"Could not publish bye on {self.topic}: {e}")

        if self._task is not None:
            task, self._task = self._task, None
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

        self._client = None
        self._ready = None
        self.partner = None
        self._peers.clear()
