"""
RetroChat - Wire protocol definitions.

Every frame exchanged over a transport is a UTF-8 JSON object:

    {"type": "CHAT", "payload": {"iv": [...], "data": [...]},
     "sender": "NeonWave7", "messageId": "..."}

Only CHAT and SYSTEM frames carry an encrypted payload. TYPING and
READ_RECEIPT are control frames; JOIN and LEAVE announce presence.
The sender name travels in plaintext.
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from .constants import MAX_FRAME_SIZE
from .crypto import EncryptedPayload
from .errors import ErrorCode, ProtocolError


class MessageType(str, Enum):
    """Frame type tags."""

    CHAT = "CHAT"
    SYSTEM = "SYSTEM"
    JOIN = "JOIN"
    LEAVE = "LEAVE"
    TYPING = "TYPING"
    READ_RECEIPT = "READ_RECEIPT"


ENCRYPTED_TYPES = (MessageType.CHAT, MessageType.SYSTEM)


@dataclass(frozen=True)
class NetworkMessage:
    """One protocol frame."""

    type: MessageType
    payload: Optional[EncryptedPayload] = None
    sender: Optional[str] = None
    message_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the wire dictionary, omitting empty fields."""
        data: Dict[str, Any] = {"type": self.type.value}
        if self.payload is not None:
            data["payload"] = self.payload.to_dict()
        if self.sender is not None:
            data["sender"] = self.sender
        if self.message_id is not None:
            data["messageId"] = self.message_id
        return data

    def encode(self) -> bytes:
        """
        Serialize the frame for a transport.

        Raises:
            ProtocolError: If the frame is invalid or too large
        """
        validate_message(self)
        raw = json.dumps(self.to_dict(), separators=(",", ":")).encode("utf-8")
        if len(raw) > MAX_FRAME_SIZE:
            raise ProtocolError(
                ErrorCode.E503_FRAME_TOO_LARGE,
                f"Frame too large: {len(raw)} bytes",
                {"size": len(raw), "max_size": MAX_FRAME_SIZE},
            )
        return raw

    @staticmethod
    def decode(raw: bytes) -> "NetworkMessage":
        """
        Parse a frame received from a transport.

        Raises:
            ProtocolError: If the frame is malformed or of an unknown type
        """
        if len(raw) > MAX_FRAME_SIZE:
            raise ProtocolError(
                ErrorCode.E503_FRAME_TOO_LARGE,
                f"Frame too large: {len(raw)} bytes",
                {"size": len(raw), "max_size": MAX_FRAME_SIZE},
            )

        try:
            data = json.loads(raw.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ProtocolError(
                ErrorCode.E501_INVALID_FRAME, f"Failed to parse frame: {e}", {"error": str(e)}
            )

        if not isinstance(data, dict):
            raise ProtocolError(ErrorCode.E501_INVALID_FRAME, "Frame is not a JSON object")

        type_tag = data.get("type")
        try:
            msg_type = MessageType(type_tag)
        except ValueError:
            raise ProtocolError(
                ErrorCode.E502_UNKNOWN_FRAME_TYPE,
                f"Unknown frame type: {type_tag}",
                {"type": type_tag},
            )

        payload = None
        if data.get("payload") is not None:
            try:
                payload = EncryptedPayload.from_dict(data["payload"])
            except ValueError as e:
                raise ProtocolError(
                    ErrorCode.E501_INVALID_FRAME, str(e), {"type": msg_type.value}
                )

        message = NetworkMessage(
            type=msg_type,
            payload=payload,
            sender=_optional_str(data.get("sender")),
            message_id=_optional_str(data.get("messageId")),
        )
        validate_message(message)
        return message


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


def validate_message(message: NetworkMessage) -> None:
    """
    Check required fields for each frame type.

    Raises:
        ProtocolError: If a required field is missing
    """
    if message.type in ENCRYPTED_TYPES and message.payload is None:
        raise ProtocolError(
            ErrorCode.E504_MISSING_FIELD,
            f"{message.type.value} frame without payload",
            {"type": message.type.value, "field": "payload"},
        )

    if message.type == MessageType.READ_RECEIPT and not message.message_id:
        raise ProtocolError(
            ErrorCode.E504_MISSING_FIELD,
            "READ_RECEIPT frame without messageId",
            {"type": message.type.value, "field": "messageId"},
        )


def create_chat(payload: EncryptedPayload, sender: str, message_id: str) -> NetworkMessage:
    """Create a chat frame."""
    return NetworkMessage(MessageType.CHAT, payload=payload, sender=sender, message_id=message_id)


def create_system(payload: EncryptedPayload, sender: str) -> NetworkMessage:
    """Create a system notice frame."""
    return NetworkMessage(MessageType.SYSTEM, payload=payload, sender=sender)


def create_typing(sender: str) -> NetworkMessage:
    """Create typing indicator frame."""
    return NetworkMessage(MessageType.TYPING, sender=sender)


def create_read_receipt(message_id: str, sender: str) -> NetworkMessage:
    """Create a read receipt for a received message."""
    return NetworkMessage(MessageType.READ_RECEIPT, sender=sender, message_id=message_id)


def create_leave(sender: str) -> NetworkMessage:
    return NetworkMessage(MessageType.LEAVE, sender=sender)
