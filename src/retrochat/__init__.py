"""
RetroChat - Ephemeral End-to-End Encrypted Chat

A two-party chat where a single short session code names the room and
seeds the message key. Frames travel over interchangeable transports
(MQTT relay, WebRTC via signaling server, WebRTC via tracker mesh) and
nothing is persisted.

Author: retrochat contributors
Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
__author__ = "retrochat contributors"
__license__ = "MIT"

# Import core modules for easy access
from .config import Config
from .connection_fsm import SessionState
from .constants import APP_NAME, VERSION
from .errors import (
    CodecError,
    ConfigError,
    CryptoError,
    ErrorCode,
    ProtocolError,
    RetroChatError,
    TransportConnectError,
    TransportRuntimeError,
)
from .session import SessionController

__all__ = [
    "APP_NAME",
    "VERSION",
    "CodecError",
    "Config",
    "ConfigError",
    "CryptoError",
    "ErrorCode",
    "ProtocolError",
    "RetroChatError",
    "SessionController",
    "SessionState",
    "TransportConnectError",
    "TransportRuntimeError",
    "__author__",
    "__license__",
    "__version__",
]
