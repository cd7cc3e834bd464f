"""Shared dependencies for authentication and request context."""

from dataclasses import dataclass
from typing import Annotated, Optional
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

import models
import auth
from database import get_db
from utils.sessions import SessionContext


oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login")


@dataclass(frozen=True)
class Principal:
    """The authenticated caller, resolved once per request from the access token."""
    id: int
    email: str
    name: str
    home_id: Optional[int]
    is_admin: bool
    token_type: str
    session_id: Optional[str]


async def get_current_principal(
    token: Annotated[str, Depends(oauth2_scheme)],
    db: Session = Depends(get_db)
) -> Principal:
    """Get the current authenticated user from the JWT access token."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = auth.decode_access_token(token)
        user_id = int(payload.get("sub"))
    except (auth.JWTError, TypeError, ValueError):
        raise credentials_exception

    user = db.query(models.User).filter(models.User.id == user_id).first()
    if user is None:
        raise credentials_exception

    return Principal(
        id=user.id,
        email=user.email,
        name=user.name,
        home_id=user.home_id,
        is_admin=bool(user.is_admin),
        token_type=payload.get("typ", auth.TOKEN_TYPE_ACCESS),
        session_id=payload.get("sid"),
    )


def get_client_ip(request: Request) -> str:
    """
    Get the real client IP, respecting X-Forwarded-For if behind a proxy.
    Prioritize X-Forwarded-For > request.client.host
    """
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for and forwarded_for.strip():
        # X-Forwarded-For: <client>, <proxy1>, <proxy2>
        return forwarded_for.split(",")[0].strip()

    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def get_session_context(request: Request) -> SessionContext:
    return SessionContext(
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )


def extract_bearer_token(request: Request) -> str:
    """Read the raw token from the Authorization header (used for refresh tokens)."""
    raw = request.headers.get("Authorization")
    if not raw:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing refresh token")

    scheme, _, token = raw.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid refresh token")
    return token.strip()


CurrentPrincipal = Annotated[Principal, Depends(get_current_principal)]
