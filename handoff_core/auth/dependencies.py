"""
Authentication Dependencies

FastAPI dependencies for resolving the acting user from a bearer token.
"""

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import ValidationError
from structlog import get_logger

from .models import Actor, TokenPayload, UserRole
from .security import decode_access_token

logger = get_logger()

# HTTP Bearer token authentication
security = HTTPBearer()


async def get_current_actor(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Actor:
    """
    Get the acting user from a JWT token.

    Args:
        credentials: Bearer token from Authorization header

    Returns:
        Current actor

    Raises:
        HTTPException: If the token is invalid or its claims are incomplete
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    payload = decode_access_token(credentials.credentials)

    if not payload:
        logger.warning("invalid_token_decoded")
        raise credentials_exception

    try:
        claims = TokenPayload(**payload)
        actor = claims.to_actor()
    except ValidationError as e:
        logger.warning("invalid_token_payload", errors=e.errors(include_url=False))
        raise credentials_exception

    if actor.is_system():
        # Background identities never come in over HTTP
        logger.warning("system_token_rejected", user_id=actor.user_id)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="System identities cannot call the API",
        )

    logger.debug("actor_authenticated", user_id=actor.user_id, role=actor.role)

    return actor


def require_role(*allowed_roles: UserRole):
    """
    Dependency factory for requiring specific role(s).

    Example:
        @router.get("/audit", dependencies=[Depends(require_role(UserRole.ADMIN))])

    Args:
        allowed_roles: Roles permitted to call the endpoint

    Returns:
        Dependency function
    """

    async def role_checker(actor: Actor = Depends(get_current_actor)) -> Actor:
        """Check if actor has an allowed role."""
        if actor.role not in allowed_roles:
            logger.warning(
                "insufficient_permissions",
                user_id=actor.user_id,
                role=actor.role,
                allowed_roles=[r.value for r in allowed_roles],
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Insufficient permissions. Required role: {', '.join(r.value for r in allowed_roles)}",
            )
        return actor

    return role_checker
