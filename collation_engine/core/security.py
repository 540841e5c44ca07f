"""
Bearer token verification.

Tokens are issued by the platform's auth service. The collation engine only
verifies the signature and reads the acting user from the ``sub`` claim.
"""

from typing import Any

from jose import JWTError, jwt

from collation_engine.core.config import settings
from collation_engine.core.logging_config import get_logger

logger = get_logger(__name__)


def decode_access_token(token: str) -> dict[str, Any] | None:
    """
    Decode and verify a JWT access token.

    Args:
        token: JWT token string

    Returns:
        Decoded token payload or None if invalid
    """
    try:
        payload = jwt.decode(
            token, settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM]
        )
        return payload
    except JWTError as e:
        logger.debug(f"Rejected access token: {e}")
        return None
