"""JWT validation and the per-request admin capability check."""

import os

import structlog
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from web.deps import get_db_path
from web.user_store import get_or_create_user, is_admin

logger = structlog.get_logger()

ALGORITHM = "HS256"

security = HTTPBearer()


def _get_jwt_secret() -> str:
    secret = os.getenv("TUNER_JWT_SECRET")
    if not secret:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="TUNER_JWT_SECRET not configured",
        )
    return secret


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> dict:
    """Decode JWT, extract user info, register the user on first sight."""
    token = credentials.credentials
    try:
        payload = jwt.decode(token, _get_jwt_secret(), algorithms=[ALGORITHM])
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: missing sub",
        )
    get_or_create_user(user_id, email=payload.get("email"), name=payload.get("name"), db_path=get_db_path())
    return {
        "id": user_id,
        "email": payload.get("email"),
        "name": payload.get("name"),
    }


async def get_admin_user(user: dict = Depends(get_current_user)) -> dict:
    """Require the admin capability, checked against stored state on every request."""
    if not is_admin(user, db_path=get_db_path()):
        logger.warning("auth.admin_denied", user_id=user["id"])
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Administrator access required",
        )
    return user
