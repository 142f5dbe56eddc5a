"""
RetroChat - Message payload cryptography.

This module implements the symmetric layer shared by both peers:
- PBKDF2-HMAC-SHA256 key derivation from the session key seed
- AES-256-GCM authenticated encryption of every message body

Both peers derive the same key from the same seed, so no key exchange
round-trip is needed. The salt is a fixed application constant; this
trades resistance to cross-session precomputation for a handshake-free
setup (see DESIGN.md).

All cryptographic operations use the cryptography library
(Apache 2.0/BSD License).
"""

import functools
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .constants import IV_SIZE, KDF_ITERATIONS, KDF_SALT, KEY_SIZE, TAG_SIZE
from .errors import CryptoError, ErrorCode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EncryptedPayload:
    """IV plus ciphertext-with-tag, as carried in CHAT and SYSTEM frames."""

    iv: bytes
    data: bytes

    def to_dict(self) -> Dict[str, List[int]]:
        """Export as byte arrays for the JSON wire format."""
        return {"iv": list(self.iv), "data": list(self.data)}

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "EncryptedPayload":
        """
        Import from the JSON wire format.

        Raises:
            ValueError: If a field is missing or holds non-byte values
        """
        try:
            iv, blob = data["iv"], data["data"]
        except (KeyError, TypeError) as e:
            raise ValueError(f"Malformed encrypted payload: {e}") from e

        # bytes(int) would allocate that many zero bytes
        if not isinstance(iv, list) or not isinstance(blob, list):
            raise ValueError("Malformed encrypted payload: iv and data must be byte arrays")
        try:
            return EncryptedPayload(iv=bytes(iv), data=bytes(blob))
        except TypeError as e:
            raise ValueError(f"Malformed encrypted payload: {e}") from e


@dataclass(frozen=True)
class DecryptionFailure:
    """Returned instead of plaintext when a payload cannot be opened."""

    reason: str


@functools.lru_cache(maxsize=8)
def derive_key(key_seed: str) -> bytes:
    """
    Derive the 256-bit AES key for a session from its key seed.

    The seed is treated as password material for PBKDF2-HMAC-SHA256
    with KDF_ITERATIONS rounds. Identical seeds always yield identical
    keys, so results are memoized.

    Raises:
        CryptoError: If the seed is empty
    """
    if not key_seed:
        raise CryptoError(ErrorCode.E204_KEY_DERIVATION_FAILED, "Key seed is empty")

    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=KDF_SALT,
        iterations=KDF_ITERATIONS,
    )
    return kdf.derive(key_seed.encode("utf-8"))


def encrypt(plaintext: str, key: bytes) -> EncryptedPayload:
    """
    Encrypt a message body with AES-256-GCM under a fresh random IV.

    Raises:
        CryptoError: If the key is not a valid AES-256 key
    """
    if len(key) != KEY_SIZE:
        raise CryptoError(
            ErrorCode.E203_INVALID_KEY,
            f"Key must be {KEY_SIZE} bytes, got {len(key)}",
        )

    iv = os.urandom(IV_SIZE)
    try:
        data = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    except (ValueError, OverflowError) as e:
        raise CryptoError(ErrorCode.E201_ENCRYPTION_FAILED, f"Encryption failed: {e}")

    return EncryptedPayload(iv=iv, data=data)


def decrypt(payload: EncryptedPayload, key: bytes) -> Union[str, DecryptionFailure]:
    """
    Open an encrypted payload.

    Never raises: a wrong key, a tampered frame or a malformed payload
    comes back as a DecryptionFailure the caller can render.
    """
    if len(key) != KEY_SIZE:
        return DecryptionFailure("invalid key length")
    if len(payload.iv) != IV_SIZE:
        return DecryptionFailure(f"invalid IV length {len(payload.iv)}")
    if len(payload.data) < TAG_SIZE:
        return DecryptionFailure("ciphertext shorter than authentication tag")

    try:
        plaintext = AESGCM(key).decrypt(payload.iv, payload.data, None)
    except InvalidTag:
        logger.warning("Decryption failed - authentication tag mismatch (wrong key or corrupted frame)")
        return DecryptionFailure("authentication failed")

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError:
        return DecryptionFailure("plaintext is not valid UTF-8")
