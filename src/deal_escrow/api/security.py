"""Bearer token helpers.

Tokens are HS256 JWTs issued by the identity provider with ``sub`` set to the
user id. This module only issues tokens for tests and local tooling; the API
only ever verifies them.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta

from jose import JWTError, jwt

from deal_escrow.config import get_settings


def create_access_token(user_id: uuid.UUID, expires_minutes: int | None = None) -> str:
    settings = get_settings()
    minutes = expires_minutes or settings.jwt_expire_minutes
    payload = {
        "sub": str(user_id),
        "exp": datetime.now(UTC) + timedelta(minutes=minutes),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token_subject(token: str) -> uuid.UUID | None:
    """Return the user id carried by ``token``, or None if it is invalid or expired."""
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None
    subject = payload.get("sub")
    if not subject:
        return None
    try:
        return uuid.UUID(str(subject))
    except ValueError:
        return None
