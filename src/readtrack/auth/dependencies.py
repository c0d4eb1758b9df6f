"""FastAPI authentication dependencies."""

from __future__ import annotations

import uuid
from dataclasses import dataclass

import jwt
from fastapi import Depends, HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from readtrack.auth.jwt import verify_token
from readtrack.database import get_session
from readtrack.db.models import User

_bearer = HTTPBearer()


@dataclass(frozen=True)
class CurrentUser:
    id: uuid.UUID
    username: str
    is_admin: bool = False


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Security(_bearer),
    db: AsyncSession = Depends(get_session),
) -> CurrentUser:
    """
    Extract and verify the bearer JWT, return the caller.

    Raises 401 for bad tokens or unknown users, 403 for deleted accounts.
    """
    try:
        payload = verify_token(credentials.credentials)
        user_id = uuid.UUID(str(payload["sub"]))
    except (jwt.InvalidTokenError, ValueError) as e:
        raise HTTPException(status_code=401, detail=str(e)) from e

    user = (await db.execute(select(User).where(User.id == user_id))).scalar_one_or_none()
    if user is None:
        raise HTTPException(status_code=401, detail="User not found")
    if user.deleted_at is not None:
        raise HTTPException(status_code=403, detail="Account is deleted")
    return CurrentUser(id=user.id, username=user.username, is_admin=bool(payload.get("is_admin")))


async def get_admin_user(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    """Same as get_current_user but requires the ``is_admin`` claim."""
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin privileges required")
    return user
