"""
Security Utilities

JWT handling for actor tokens. Tokens are issued by the upstream identity
service; this module verifies them and can mint tokens for local tooling.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from jose import JWTError, jwt
from structlog import get_logger

from ..config import get_config

logger = get_logger()

DEFAULT_TOKEN_LIFETIME = timedelta(hours=8)


def create_access_token(
    data: dict[str, Any],
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create a JWT access token.

    Args:
        data: Claims to encode (user_id, role, provider_id, ...)
        expires_delta: Token lifetime (defaults to eight hours)

    Returns:
        Encoded JWT token
    """
    config = get_config()
    to_encode = data.copy()

    expire = datetime.now(timezone.utc) + (expires_delta or DEFAULT_TOKEN_LIFETIME)
    to_encode.update({"exp": expire})

    return jwt.encode(
        to_encode,
        config.jwt_secret_key,
        algorithm=config.jwt_algorithm,
    )


def decode_access_token(token: str) -> Optional[dict[str, Any]]:
    """
    Decode and validate a JWT access token.

    Args:
        token: JWT token to decode

    Returns:
        Token payload if valid, None otherwise
    """
    config = get_config()
    try:
        payload = jwt.decode(
            token,
            config.jwt_secret_key,
            algorithms=[config.jwt_algorithm],
        )
        return payload
    except JWTError as e:
        logger.warning("jwt_decode_error", error=str(e))
        return None
