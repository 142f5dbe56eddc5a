"""
RetroChat - Custom Exception Classes and Error Codes

This module defines all custom exceptions and error codes used throughout
RetroChat. Each error has a unique code for logging and debugging.

Author: retrochat contributors
Version: 1.0.0
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Enumeration of all RetroChat error codes."""

    # General Errors (E001-E099)
    E001_UNKNOWN_ERROR = "E001"
    E002_INVALID_ARGUMENT = "E002"
    E005_OPERATION_FAILED = "E005"

    # Session Code Errors (E100-E199)
    E100_CODEC_ERROR = "E100"
    E101_INVALID_CODE_FORMAT = "E101"
    E102_CODE_TOO_SHORT = "E102"

    # Crypto Errors (E200-E299)
    E200_CRYPTO_ERROR = "E200"
    E201_ENCRYPTION_FAILED = "E201"
    E202_DECRYPTION_FAILED = "E202"
    E203_INVALID_KEY = "E203"
    E204_KEY_DERIVATION_FAILED = "E204"

    # Transport Connect Errors (E300-E399)
    E300_TRANSPORT_CONNECT_ERROR = "E300"
    E301_ENDPOINT_UNREACHABLE = "E301"
    E302_CONNECT_TIMEOUT = "E302"
    E303_PEER_UNAVAILABLE = "E303"
    E304_ID_TAKEN = "E304"
    E305_UNKNOWN_BACKEND = "E305"

    # Transport Runtime Errors (E400-E499)
    E400_TRANSPORT_RUNTIME_ERROR = "E400"
    E401_SEND_FAILED = "E401"
    E402_LINK_CLOSED = "E402"
    E403_NOT_CONNECTED = "E403"

    # Protocol Errors (E500-E599)
    E500_PROTOCOL_ERROR = "E500"
    E501_INVALID_FRAME = "E501"
    E502_UNKNOWN_FRAME_TYPE = "E502"
    E503_FRAME_TOO_LARGE = "E503"
    E504_MISSING_FIELD = "E504"

    # Config Errors (E700-E799)
    E700_CONFIG_ERROR = "E700"
    E701_CONFIG_LOAD_FAILED = "E701"
    E702_CONFIG_SAVE_FAILED = "E702"
    E703_INVALID_CONFIG = "E703"
    E704_CONFIG_PARSE_ERROR = "E704"


class RetroChatError(Exception):
    """Base exception class for all RetroChat errors.

    Attributes:
        code: Error code from ErrorCode enum
        message: Human-readable error message
        details: Additional error details (optional)
    """

    def __init__(self, code: ErrorCode, message: str, details: Optional[Dict[str, Any]] = None):
        """Initialize a RetroChat error.

        Args:
            code: Error code from ErrorCode enum
            message: Human-readable error message
            details: Additional error context (optional)
        """
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(f"[{code.value}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for serialization.

        Returns:
            Dictionary containing error information
        """
        return {"code": self.code.value, "message": self.message, "details": self.details}


class CodecError(RetroChatError):
    """Exception raised when a session code cannot be parsed.

    Recovered by prompting the user to re-enter the code.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E100_CODEC_ERROR,
        message: str = "Invalid session code",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class CryptoError(RetroChatError):
    """Exception raised for cryptographic operation failures.

    Decryption failures are reported as values, so this is raised for
    encryption and key derivation problems only.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E200_CRYPTO_ERROR,
        message: str = "Cryptographic operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class TransportConnectError(RetroChatError):
    """Exception raised when a candidate endpoint cannot be reached.

    The transport manager recovers by failing over to the next candidate.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E300_TRANSPORT_CONNECT_ERROR,
        message: str = "Transport connection failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class TransportRuntimeError(RetroChatError):
    """Exception raised for mid-session socket or channel failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E400_TRANSPORT_RUNTIME_ERROR,
        message: str = "Transport operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class ProtocolError(RetroChatError):
    """Exception raised for malformed or unrecognized wire frames.

    Protocol errors are logged and the frame is dropped.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E500_PROTOCOL_ERROR,
        message: str = "Protocol violation",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class ConfigError(RetroChatError):
    """Exception raised for configuration failures.

    This includes loading, parsing, and validating configuration files.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E700_CONFIG_ERROR,
        message: str = "Configuration operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)
