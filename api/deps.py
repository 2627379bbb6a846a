"""Shared FastAPI dependencies: bearer-token auth, ban check, admin gate, lifecycle services."""

import logging
import uuid

import jwt
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from db.database import get_db
from models.user import ADMIN_ROLES, User
from services.clock import utcnow
from services.errors import SubscriptionError

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> User:
    if not credentials or not credentials.credentials:
        raise HTTPException(status_code=401, detail="Access token required")

    try:
        payload = jwt.decode(
            credentials.credentials.strip(),
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("user_id") or payload.get("userId") or payload.get("sub")
    try:
        user_uuid = uuid.UUID(str(user_id))
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid token payload")

    user = (await db.execute(select(User).where(User.id == user_uuid))).scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=401, detail="User not found")

    if user.ban_status:
        release = user.ban_release_datetime
        if release and release <= utcnow():
            user.ban_status = False
            user.ban_release_datetime = None
            await db.commit()
            logger.info("Ban lifted for user %s (release time passed)", user.id)
        else:
            raise HTTPException(
                status_code=403,
                detail={
                    "success": False,
                    "message": "Account is banned",
                    "ban_release_datetime": release.isoformat() if release else None,
                },
            )

    return user


async def require_admin(user: User = Depends(get_current_user)) -> User:
    if user.role not in ADMIN_ROLES:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user


def get_lifecycle(request: Request):
    return request.app.state.lifecycle


def get_scheduler(request: Request):
    return request.app.state.scheduler


def http_error(exc: SubscriptionError) -> HTTPException:
    """Translate a lifecycle error into the HTTP response the routers return."""
    return HTTPException(status_code=exc.status_code, detail=exc.to_detail())
