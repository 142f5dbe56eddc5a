"""
RetroChat - Chat log entries.

Holds the ordered, in-memory conversation log of one session. Entries
are created on send (local echo) or on a successful inbound CHAT, and
only ever change by flipping a sent message to read.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterator, List, Optional

from .constants import SYSTEM_SENDER

logger = logging.getLogger(__name__)


class MessageStatus(str, Enum):
    """Delivery status of a locally sent message."""

    SENT = "sent"
    READ = "read"


def new_message_id() -> str:
    """Message ids are unique per originating client."""
    return uuid.uuid4().hex


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Message:
    """Represents a message in the conversation."""

    sender: str
    content: str
    message_id: str = field(default_factory=new_message_id)
    timestamp: str = field(default_factory=_now)
    is_system: bool = False
    status: Optional[MessageStatus] = None  # None for inbound and system entries

    @property
    def is_outgoing(self) -> bool:
        return self.status is not None

    def mark_read(self) -> None:
        """Mark message as read by the peer."""
        self.status = MessageStatus.READ

    def to_dict(self) -> Dict[str, object]:
        """Convert message to dictionary for display layers."""
        return {
            "message_id": self.message_id,
            "sender": self.sender,
            "content": self.content,
            "timestamp": self.timestamp,
            "is_system": self.is_system,
            "status": self.status.value if self.status else None,
        }


class MessageLog:
    """Ordered chat log with lookup by message id."""

    def __init__(self):
        self._messages: List[Message] = []
        self._by_id: Dict[str, Message] = {}

    def append(self, message: Message) -> Message:
        # Duplicate ids (relay redelivery) are kept in order; lookups hit the first
        self._messages.append(message)
        self._by_id.setdefault(message.message_id, message)
        return message

    def add_system(self, content: str) -> Message:
        """Append a system notice."""
        return self.append(Message(sender=SYSTEM_SENDER, content=content, is_system=True))

    def get(self, message_id: str) -> Optional[Message]:
        return self._by_id.get(message_id)

    def mark_read(self, message_id: str) -> Optional[Message]:
        """
        Flip a locally sent message to read.

        Returns:
            The updated message, or None if the id is unknown or not outgoing
        """
        message = self._by_id.get(message_id)
        if message is None or not message.is_outgoing:
            logger.debug(f"Read receipt for unknown message id {message_id}")
            return None
        message.mark_read()
        return message

    def recent_inbound(self, limit: int) -> List[Message]:
        """Most recent inbound chat messages, oldest first."""
        inbound = [m for m in self._messages if not m.is_system and not m.is_outgoing]
        return inbound[-limit:] if limit > 0 else []

    def clear(self) -> None:
        self._messages.clear()
        self._by_id.clear()

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._messages))

    def __getitem__(self, index: int) -> Message:
        return self._messages[index]
