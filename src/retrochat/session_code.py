"""
RetroChat - Session code generation and parsing.

A session code is the single short string a host shares with a guest.
It packs two fixed-width segments:

- ID segment (6 characters): names the room on the transport backend
- KEY segment (6 characters): seed for the symmetric message key

Codes use an alphabet without visually ambiguous characters
(no 0/O/o, 1/l/I) so they survive being read aloud or retyped.
"""

import logging
import re
import secrets
from dataclasses import dataclass
from typing import Optional
from urllib.parse import parse_qs, urlencode, urlsplit, urlunsplit

from .constants import (
    ROOM_NAMESPACE,
    SESSION_CODE_ALPHABET,
    SESSION_CODE_LENGTH,
    SESSION_ID_LENGTH,
    SHARE_LINK_PARAM,
)
from .errors import CodecError, ErrorCode

logger = logging.getLogger(__name__)

_NON_ALPHANUMERIC = re.compile(r"[^A-Za-z0-9]")

_NAME_ADJECTIVES = ["Rad", "Tubular", "Gnarly", "Neon", "Cyber", "Pixel", "Mega", "Hyper"]
_NAME_NOUNS = ["Surfer", "Hacker", "Glitch", "Wave", "Drive", "Net", "Bot", "User"]


@dataclass(frozen=True)
class RoomIdentity:
    """Room identifier and key seed decoded from a session code."""

    id_segment: str
    key_seed: str

    @property
    def room_id(self) -> str:
        """Namespaced room identifier used on the shared backends."""
        return f"{ROOM_NAMESPACE}-{self.id_segment}"

    @property
    def code(self) -> str:
        """The session code this identity was decoded from."""
        return self.id_segment + self.key_seed


def generate() -> str:
    """Generate a fresh random session code using a CSPRNG."""
    return "".join(secrets.choice(SESSION_CODE_ALPHABET) for _ in range(SESSION_CODE_LENGTH))


def _extract_from_link(text: str) -> str:
    """Pull the join parameter out of a pasted share link, if there is one."""
    if "?" not in text and "://" not in text:
        return text

    query = urlsplit(text).query if "://" in text else text.split("?", 1)[1]
    values = parse_qs(query).get(SHARE_LINK_PARAM)
    if not values:
        # The rest of a link is never a code
        raise CodecError(
            ErrorCode.E101_INVALID_CODE_FORMAT,
            f"Link has no '{SHARE_LINK_PARAM}' parameter",
        )
    return values[0]


def parse(text: Optional[str]) -> RoomIdentity:
    """
    Decode a session code into its room identity.

    Accepts a bare code or a full share link, ignores surrounding
    whitespace and any separator characters. Case is preserved.

    Args:
        text: User supplied code or link

    Returns:
        The decoded RoomIdentity

    Raises:
        CodecError: If fewer than SESSION_CODE_LENGTH usable characters remain
    """
    if not text or not text.strip():
        raise CodecError(ErrorCode.E101_INVALID_CODE_FORMAT, "Session code is empty")

    cleaned = _NON_ALPHANUMERIC.sub("", _extract_from_link(text.strip()))

    if len(cleaned) < SESSION_CODE_LENGTH:
        raise CodecError(
            ErrorCode.E102_CODE_TOO_SHORT,
            f"Session code must have {SESSION_CODE_LENGTH} characters, got {len(cleaned)}",
            {"length": len(cleaned), "expected": SESSION_CODE_LENGTH},
        )

    if len(cleaned) > SESSION_CODE_LENGTH:
        logger.debug(f"Ignoring {len(cleaned) - SESSION_CODE_LENGTH} trailing code characters")

    code = cleaned[:SESSION_CODE_LENGTH]
    return RoomIdentity(id_segment=code[:SESSION_ID_LENGTH], key_seed=code[SESSION_ID_LENGTH:])


def build_share_link(base_url: str, code: str) -> str:
    """
    Build the link a host hands to a guest.

    Any existing query parameters of base_url are kept; a stale join
    parameter is replaced.
    """
    scheme, netloc, path, query, fragment = urlsplit(base_url)
    params = {k: v[0] for k, v in parse_qs(query).items() if k != SHARE_LINK_PARAM}
    params[SHARE_LINK_PARAM] = code
    return urlunsplit((scheme, netloc, path, urlencode(params), fragment))


def generate_random_name() -> str:
    """Generate a throwaway display name such as 'NeonGlitch42'."""
    adjective = secrets.choice(_NAME_ADJECTIVES)
    noun = secrets.choice(_NAME_NOUNS)
    return f"{adjective}{noun}{secrets.randbelow(99)}"
