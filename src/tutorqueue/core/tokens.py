"""Verification tokens handed out to students and tutors.

A token carries the guild it is valid for, a version tag, the TU and
Moodle IDs of its holder and the internal roles to grant. The payload is
encrypted and authenticated with Fernet under a key derived from
``TOKEN_SECRET``, so holders can neither read nor alter it.
"""

from __future__ import annotations

import base64
import hashlib
import logging

from cryptography.fernet import Fernet, InvalidToken
from pydantic import BaseModel

from tutorqueue.db.models import InternalRole

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_VERSION = "1"


class TokenData(BaseModel):
    """Decoded contents of a verification token."""

    server_id: str
    version_id: str = DEFAULT_TOKEN_VERSION
    tu_id: str = ""
    moodle_id: str = ""
    roles: list[InternalRole]


def token_cipher(secret: str) -> Fernet:
    """Fernet cipher keyed by the SHA-256 digest of ``secret``."""
    key = base64.urlsafe_b64encode(hashlib.sha256(secret.encode()).digest())
    return Fernet(key)


def parse_roles(raw: str) -> list[InternalRole]:
    """Parse a comma-separated role list, dropping names that are not internal roles."""
    roles: list[InternalRole] = []
    for part in raw.split(","):
        name = part.strip().lower()
        if name in InternalRole._value2member_map_:
            roles.append(InternalRole(name))
    return roles


def issue_token(
    secret: str,
    server_id: str,
    tu_id: str,
    moodle_id: str,
    roles: list[InternalRole],
    version_id: str = DEFAULT_TOKEN_VERSION,
) -> str:
    payload = "|".join([server_id, version_id, tu_id, moodle_id, ",".join(roles)])
    return token_cipher(secret).encrypt(payload.encode()).decode()


def read_token(secret: str, token: str) -> TokenData | None:
    """Decrypt and decode a token. Returns None for anything that is not a valid token."""
    try:
        payload = token_cipher(secret).decrypt(token.strip().encode()).decode()
    except (InvalidToken, UnicodeError):
        logger.debug("token_rejected")
        return None

    parts = payload.split("|")
    if len(parts) != 5:
        return None
    server_id, version_id, tu_id, moodle_id, raw_roles = parts
    roles = parse_roles(raw_roles)
    if not server_id or not roles:
        return None
    return TokenData(
        server_id=server_id,
        version_id=version_id,
        tu_id=tu_id,
        moodle_id=moodle_id,
        roles=roles,
    )
