"""Shared dependencies: caller identity, admin key check and app components."""
import secrets
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..models import User
from ..services.behavior import BehaviorTracker
from ..services.delivery import ScheduledDeliveryService
from ..services.dispatcher import Dispatcher


async def get_current_user(
    x_user_id: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Resolve the caller from the X-User-Id header set by the auth proxy."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")

    user = await db.get(User, x_user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return user


async def require_admin_key(
    request: Request,
    x_api_key: Optional[str] = Header(None),
):
    """Reject requests whose X-API-Key does not match the configured admin key."""
    expected = request.app.state.admin_api_key
    if not expected:
        raise HTTPException(status_code=403, detail="Admin API is not configured")
    if not x_api_key or not secrets.compare_digest(x_api_key, expected):
        raise HTTPException(status_code=401, detail="Invalid API key")


def get_dispatcher(request: Request) -> Dispatcher:
    return request.app.state.dispatcher


def get_tracker(request: Request) -> BehaviorTracker:
    return request.app.state.tracker


def get_delivery(request: Request) -> ScheduledDeliveryService:
    return request.app.state.delivery
