"""FastAPI dependencies for authentication and DB sessions."""

import uuid
from typing import Annotated

from fastapi import Depends, HTTPException, Query, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy.ext.asyncio import AsyncSession

from analyst.core.database import get_session
from analyst.core.security import decode_jwt

# auto_error=False so the stream route can fall back to ?token=
bearer_scheme = HTTPBearer(auto_error=False)


class AuthContext:
    """Resolved identity carried through a request."""

    __slots__ = ("user_id",)

    def __init__(self, user_id: uuid.UUID) -> None:
        self.user_id = user_id


def _resolve_jwt(token: str) -> AuthContext:
    """Decode a JWT issued by the auth service and extract the user id."""
    try:
        payload = decode_jwt(token)
    except JWTError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired JWT",
        ) from exc

    try:
        return AuthContext(user_id=uuid.UUID(payload["sub"]))
    except (KeyError, ValueError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Malformed JWT payload",
        ) from exc


async def get_auth_context(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
) -> AuthContext:
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return _resolve_jwt(credentials.credentials)


async def get_stream_auth_context(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
    token: Annotated[str | None, Query()] = None,
) -> AuthContext:
    """Like get_auth_context, but EventSource clients cannot set headers."""
    if credentials is not None:
        return _resolve_jwt(credentials.credentials)
    if token:
        return _resolve_jwt(token)
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Not authenticated",
        headers={"WWW-Authenticate": "Bearer"},
    )


# Typed shorthand for use in route signatures
Auth = Annotated[AuthContext, Depends(get_auth_context)]
StreamAuth = Annotated[AuthContext, Depends(get_stream_auth_context)]
Session = Annotated[AsyncSession, Depends(get_session)]
