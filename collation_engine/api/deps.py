"""API dependencies for authentication."""

from typing import Annotated, Any
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from collation_engine.core.security import decode_access_token

security = HTTPBearer()


def _unauthorized(detail: str = "Invalid authentication credentials") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
) -> dict[str, Any]:
    """
    Dependency to get the acting user.

    Validates the JWT and returns ``{"id", "role"}`` taken from its claims.
    Users are managed by the auth service, so no lookup happens here.
    """
    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise _unauthorized()

    user_id = payload.get("sub")
    if user_id is None:
        raise _unauthorized()

    try:
        user_id = str(UUID(str(user_id)))
    except ValueError:
        raise _unauthorized() from None

    return {"id": user_id, "role": payload.get("role")}
