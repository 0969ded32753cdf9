"""Password hashing and access tokens.

Hashes use passlib's ``pbkdf2_sha256`` scheme; tokens are HS256 JWTs via PyJWT
carrying the ``userId`` claim.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

import jwt
from passlib.context import CryptContext

JWT_ALGORITHM = "HS256"

_pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def hash_password(password: str) -> str:
    """Return a salted hash of ``password``."""
    return _pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    """True if ``password`` matches ``password_hash``. Malformed hashes never match."""
    try:
        return _pwd_context.verify(password, password_hash)
    except (ValueError, TypeError):
        return False


def create_access_token(
    user_id: int,
    *,
    secret: str,
    expires_minutes: int = 180,
    now: datetime | None = None,
) -> str:
    """Issue a signed access token for ``user_id``.

    Args:
        user_id: Subject of the token.
        secret: HMAC signing key.
        expires_minutes: Token lifetime (default: 3 hours).
        now: Issue time; defaults to the current UTC time.
    """
    issued = now or datetime.now(UTC)
    payload = {
        "userId": user_id,
        "iat": issued,
        "exp": issued + timedelta(minutes=expires_minutes),
    }
    return jwt.encode(payload, secret, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str, *, secret: str) -> dict[str, Any] | None:
    """Return the token's claims, or None if it is invalid or expired."""
    try:
        return jwt.decode(token, secret, algorithms=[JWT_ALGORITHM])
    except jwt.PyJWTError:
        return None
