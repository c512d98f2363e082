"""JWT helpers for the identity collaborator.

Tokens are minted by the identity service; this service only needs to read the
caller's user ID from them. ``create_access_token`` exists for tooling and
tests that need to act as a given user.
"""

from datetime import UTC, datetime, timedelta

import jwt
from jwt import exceptions as jwt_exceptions

from tenancy.core.config import get_settings

settings = get_settings()


def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    """Create a JWT access token.

    Args:
        data: Dictionary of claims to encode in the token
        expires_delta: Optional custom expiration time (default 30 minutes)

    Returns:
        Encoded JWT token string
    """
    to_encode = data.copy()
    expire = datetime.now(UTC) + (expires_delta or timedelta(minutes=30))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict | None:
    """Decode and validate a JWT token.

    Returns:
        Decoded token payload if valid, None otherwise
    """
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt_exceptions.PyJWTError:
        return None
