"""Upload owner identity: JWT tokens, user queries and the default owner."""

import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
import jwt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from appdrop.db.models import UserDB
from appdrop.services.identity import find_or_create


# ---------- Password ----------

def hash_password(password: str) -> str:
    """Hash a password using bcrypt."""
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


# ---------- JWT ----------

def create_access_token(
    user_id: str,
    username: str,
    role: str,
    secret: str,
    expire_hours: int = 24,
) -> str:
    """Create a JWT access token."""
    payload = {
        "sub": user_id,
        "username": username,
        "role": role,
        "type": "access",
        "exp": datetime.now(timezone.utc) + timedelta(hours=expire_hours),
        "iat": datetime.now(timezone.utc),
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def decode_token(token: str, secret: str) -> dict:
    """Decode and validate a JWT token. Raises jwt.PyJWTError on failure."""
    return jwt.decode(token, secret, algorithms=["HS256"])


# ---------- User queries ----------

async def get_user_by_username(db: AsyncSession, username: str) -> Optional[UserDB]:
    """Look up a user by username."""
    result = await db.execute(select(UserDB).where(UserDB.username == username))
    return result.scalar_one_or_none()


async def get_user_by_id(db: AsyncSession, user_id: str) -> Optional[UserDB]:
    """Look up a user by ID."""
    result = await db.execute(select(UserDB).where(UserDB.id == user_id))
    return result.scalar_one_or_none()


async def ensure_default_user(db: AsyncSession, username: str) -> UserDB:
    """Owner of uploads while authentication is disabled.

    Created on first use with an unusable random password.
    """
    user, created = await find_or_create(
        db,
        lambda: get_user_by_username(db, username),
        lambda: UserDB(
            username=username,
            display_name=username.capitalize(),
            password_hash=hash_password(secrets.token_urlsafe(32)),
            role="admin",
        ),
        entity=f"user '{username}'",
    )
    if created:
        await db.commit()
    return user
