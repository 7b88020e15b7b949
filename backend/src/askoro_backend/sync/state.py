"""OAuth state codec.

The state token is ``base64url(JSON{"nonce", "rootFolderUrl"})``. The remote
provider echoes it back untouched, so it carries the user's chosen root
location across the authorize redirect.
"""

import base64
import binascii
import json
import secrets
from dataclasses import dataclass

import structlog

from ..core.errors import InvalidStateError

logger = structlog.get_logger(__name__)

NONCE_BYTES = 16


@dataclass(frozen=True)
class StatePayload:
    nonce: str
    root_folder_url: str


def generate_nonce() -> str:
    """Return 16 random bytes as lowercase hex."""
    return secrets.token_hex(NONCE_BYTES)


def encode_state(payload: StatePayload) -> str:
    raw = json.dumps(
        {"nonce": payload.nonce, "rootFolderUrl": payload.root_folder_url},
        separators=(",", ":"),
    ).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_state(state: str) -> StatePayload:
    """Decode a state token.

    Raises:
        InvalidStateError: If the token is not base64url JSON carrying a
            string ``nonce`` and a string ``rootFolderUrl``
    """
    try:
        padded = state + "=" * (-len(state) % 4)
        payload = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
    except (binascii.Error, UnicodeError, ValueError) as e:
        logger.warning("oauth_state_decode_failed", error=str(e))
        raise InvalidStateError() from e

    if (
        not isinstance(payload, dict)
        or not isinstance(payload.get("nonce"), str)
        or not isinstance(payload.get("rootFolderUrl"), str)
    ):
        logger.warning("oauth_state_payload_invalid")
        raise InvalidStateError()

    return StatePayload(nonce=payload["nonce"], root_folder_url=payload["rootFolderUrl"])
