"""
RetroChat - Session State Machine.

This module implements a formal finite state machine for the chat session
lifecycle. Transitions are validated against a fixed table; anything not
in the table is rejected and logged.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional

from .constants import STATE_HISTORY_LIMIT

logger = logging.getLogger(__name__)


class SessionState(Enum):
    """Session states exposed to the UI layer."""

    OFFLINE = auto()  # No session
    INITIALIZING = auto()  # Decoding code, deriving key, acquiring transport
    WAITING_FOR_PEER = auto()  # Host registered, nobody connected yet
    CONNECTING = auto()  # Guest dialing the host
    CONNECTED = auto()  # Peer link open
    RECONNECTING = auto()  # Link lost, transport manager cycling candidates
    ERRORED = auto()  # Bad session code; terminal until the user retries


class SessionEvent(Enum):
    """Events that trigger state transitions."""

    SESSION_REQUESTED = auto()  # createSession / joinSession
    CODEC_FAILED = auto()  # Session code rejected
    TRANSPORT_READY = auto()  # Host registered on the backend
    DIAL_STARTED = auto()  # Guest started dialing
    PEER_OPENED = auto()  # Remote peer link opened / peer announced itself
    LINK_LOST = auto()  # Transport dropped unexpectedly
    LINK_RESUMED = auto()  # Host registration restored, no peer yet
    LEAVE_REQUESTED = auto()  # Deliberate leave


@dataclass
class StateTransition:
    """Represents a state transition."""

    from_state: SessionState
    event: SessionEvent
    to_state: SessionState
    timestamp: float = field(default_factory=time.time)


class SessionStateMachine:
    """
    Finite state machine for the chat session lifecycle.

    Enforces valid state transitions and keeps a bounded transition history.
    Reconnecting has no exit other than recovery or leave: retries never
    give up on their own.
    """

    TRANSITIONS: Dict[SessionState, Dict[SessionEvent, SessionState]] = {
        SessionState.OFFLINE: {
            SessionEvent.SESSION_REQUESTED: SessionState.INITIALIZING,
        },
        SessionState.ERRORED: {
            SessionEvent.SESSION_REQUESTED: SessionState.INITIALIZING,
            SessionEvent.LEAVE_REQUESTED: SessionState.OFFLINE,
        },
        SessionState.INITIALIZING: {
            SessionEvent.CODEC_FAILED: SessionState.ERRORED,
            SessionEvent.TRANSPORT_READY: SessionState.WAITING_FOR_PEER,
            SessionEvent.DIAL_STARTED: SessionState.CONNECTING,
            SessionEvent.LEAVE_REQUESTED: SessionState.OFFLINE,
        },
        SessionState.WAITING_FOR_PEER: {
            SessionEvent.PEER_OPENED: SessionState.CONNECTED,
            SessionEvent.LINK_LOST: SessionState.RECONNECTING,
            SessionEvent.LEAVE_REQUESTED: SessionState.OFFLINE,
        },
        SessionState.CONNECTING: {
            SessionEvent.PEER_OPENED: SessionState.CONNECTED,
            SessionEvent.LEAVE_REQUESTED: SessionState.OFFLINE,
        },
        SessionState.CONNECTED: {
            SessionEvent.LINK_LOST: SessionState.RECONNECTING,
            SessionEvent.LEAVE_REQUESTED: SessionState.OFFLINE,
        },
        SessionState.RECONNECTING: {
            SessionEvent.LINK_RESUMED: SessionState.WAITING_FOR_PEER,
            SessionEvent.PEER_OPENED: SessionState.CONNECTED,
            SessionEvent.LEAVE_REQUESTED: SessionState.OFFLINE,
        },
    }

    def __init__(self, initial_state: SessionState = SessionState.OFFLINE):
        """
        Initialize state machine.

        Args:
            initial_state: Initial state (default: OFFLINE)
        """
        self.current_state = initial_state
        self.previous_state: Optional[SessionState] = None
        self.state_entry_time = time.time()
        self.error_message: Optional[str] = None
        self.transition_history: List[StateTransition] = []
        self.max_history = STATE_HISTORY_LIMIT

        # Callbacks
        self.on_state_change: Optional[Callable[[SessionState, SessionState], None]] = None
        self.on_error: Optional[Callable[[str], None]] = None

        logger.debug(f"State machine initialized in state: {self.current_state.name}")

    def transition(self, event: SessionEvent, error_msg: Optional[str] = None) -> bool:
        """
        Attempt state transition based on event.

        Args:
            event: Event triggering transition
            error_msg: Error message if event is CODEC_FAILED

        Returns:
            True if transition successful, False otherwise
        """
        if not self.is_valid_transition(self.current_state, event):
            logger.debug(
                f"Ignored transition: {self.current_state.name} + "
                f"{event.name} (no valid target state)"
            )
            return False

        new_state = self.TRANSITIONS[self.current_state][event]

        if new_state == SessionState.ERRORED:
            self.error_message = error_msg or "Unknown error"
        elif new_state in (SessionState.CONNECTED, SessionState.INITIALIZING):
            self.error_message = None

        old_state = self.current_state
        self.previous_state = old_state
        self.current_state = new_state
        self.state_entry_time = time.time()

        self.transition_history.append(StateTransition(old_state, event, new_state))
        if len(self.transition_history) > self.max_history:
            self.transition_history = self.transition_history[-self.max_history :]

        logger.info(f"Session state: {old_state.name} -> {new_state.name} (event: {event.name})")

        if self.on_state_change:
            try:
                self.on_state_change(old_state, new_state)
            except Exception as e:
                logger.error(f"State change callback error: {e}")

        if new_state == SessionState.ERRORED and self.on_error:
            try:
                self.on_error(self.error_message or "Unknown error")
            except Exception as e:
                logger.error(f"Error callback error: {e}")

        return True

    def is_valid_transition(self, from_state: SessionState, event: SessionEvent) -> bool:
        """Check if a transition is valid."""
        return from_state in self.TRANSITIONS and event in self.TRANSITIONS[from_state]

    def get_state(self) -> SessionState:
        """Get current state."""
        return self.current_state

    def get_time_in_state(self) -> float:
        """Get time spent in current state (seconds)."""
        return time.time() - self.state_entry_time

    def is_connected(self) -> bool:
        return self.current_state == SessionState.CONNECTED

    def is_active(self) -> bool:
        """Check if a session is in progress (anything but Offline/Errored)."""
        return self.current_state not in (SessionState.OFFLINE, SessionState.ERRORED)

    def get_history(self, count: int = 10) -> List[StateTransition]:
        """
        Get recent transition history.

        Args:
            count: Number of recent transitions to return

        Returns:
            List of recent transitions
        """
        return self.transition_history[-count:]

    def get_statistics(self) -> Dict[str, Any]:
        """
        Get state machine statistics.

        Returns:
            Dictionary with statistics
        """
        event_counts: Dict[str, int] = {}
        for transition in self.transition_history:
            event_counts[transition.event.name] = event_counts.get(transition.event.name, 0) + 1

        return {
            "current_state": self.current_state.name,
            "previous_state": self.previous_state.name if self.previous_state else None,
            "time_in_state": self.get_time_in_state(),
            "error_message": self.error_message,
            "total_transitions": len(self.transition_history),
            "event_counts": event_counts,
        }

    def __repr__(self) -> str:
        return (
            f"SessionStateMachine(state={self.current_state.name}, "
            f"time_in_state={self.get_time_in_state():.1f}s)"
        )
