"""FastAPI dependencies for authentication and channel lookup."""

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from appdrop.config import get_settings
from appdrop.db.database import get_db
from appdrop.db.models import ChannelDB, UserDB
from appdrop.services.auth_service import decode_token, ensure_default_user, get_user_by_id
from appdrop.services.identity import find_channel_by_slug

security = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> UserDB:
    """Validate JWT and return the current user.

    When auth is disabled, returns the persisted default owner.
    """
    settings = get_settings()

    if not settings.auth_enabled:
        return await ensure_default_user(db, settings.default_username)

    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )

    try:
        payload = decode_token(credentials.credentials, settings.effective_jwt_secret)
    except jwt.PyJWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )

    if payload.get("type") != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token type",
        )

    user = await get_user_by_id(db, payload["sub"])
    if not user or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found or inactive",
        )
    return user


async def get_channel(
    slug: str,
    user: UserDB = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> ChannelDB:
    """Channel addressed by the ``{slug}`` path parameter, or 404."""
    channel = await find_channel_by_slug(db, slug)
    if channel is None:
        raise HTTPException(status_code=404, detail=f"Channel '{slug}' not found")
    return channel
