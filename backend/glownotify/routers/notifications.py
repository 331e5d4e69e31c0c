"""Notification API endpoints: preferences, devices, sends, open tracking and scheduling."""
import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..models import User
from ..schemas.notification import (
    DeliveryResultSchema,
    DeviceRegisterRequest,
    DeviceRegisterResponse,
    PreferencesResponse,
    PreferencesUpdate,
    ScheduledResponse,
    ScheduleRequest,
    SendRequest,
    SendResponse,
    TrackRequest,
    TrackResponse,
)
from ..services import preferences as prefs_service
from ..services.delivery import ScheduledDeliveryService, ScheduledNotFoundError, ScheduleStateError
from ..services.dispatcher import Dispatcher
from ..services.personalizer import RenderedButton, RenderedMessage
from ..services.preferences import TOKEN_FIELDS
from ..services.targeting import InvalidTargetError, NotificationTarget, UnknownUserError
from ..services.templates import Priority, TemplateNotFoundError
from .deps import get_current_user, get_delivery, get_dispatcher, require_admin_key

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


@router.get("/preferences", response_model=PreferencesResponse)
async def get_preferences(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Get the current user's preferences, creating the defaults on first access."""
    return await prefs_service.get_or_create_preferences(db, user.id)


@router.put("/preferences", response_model=PreferencesResponse)
async def update_preferences(
    update: PreferencesUpdate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Partially update the current user's preferences."""
    changes = update.model_dump(exclude_unset=True)
    return await prefs_service.update_preferences(db, user.id, changes)


@router.post("/devices", response_model=DeviceRegisterResponse)
async def register_device(
    request: DeviceRegisterRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Register a push token for the current user.

    The app should call this on every launch; known tokens are left as-is.
    """
    prefs = await prefs_service.register_device(db, user.id, request.token, request.platform)
    tokens = getattr(prefs, TOKEN_FIELDS[request.platform]) or []
    return DeviceRegisterResponse(
        success=True,
        platform=request.platform,
        device_count=len(tokens),
        message="Device registered successfully",
    )


@router.post("/send", response_model=SendResponse, dependencies=[Depends(require_admin_key)])
async def send_notification(
    request: SendRequest,
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    """Send an ad hoc payload or a catalog template to a target audience."""
    if request.template_id and request.payload:
        raise HTTPException(status_code=400, detail="Set either payload or template_id, not both")

    target = NotificationTarget(**request.target.model_dump())

    try:
        if request.template_id:
            results = await dispatcher.send_template(
                target, request.template_id, request.variables, request.priority
            )
        elif request.payload:
            payload = RenderedMessage(
                title=request.payload.title,
                body=request.payload.body,
                deep_link=request.payload.deep_link,
                image_url=request.payload.image_url,
                action_buttons=[RenderedButton(**b.model_dump()) for b in request.payload.action_buttons],
                data=dict(request.payload.data),
            )
            results = await dispatcher.send(target, payload, priority=request.priority or Priority.NORMAL)
        else:
            raise HTTPException(status_code=400, detail="Either payload or template_id is required")
    except InvalidTargetError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except TemplateNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    delivered = sum(1 for r in results if r.success)
    logger.info(f"Admin send {request.template_id or 'payload'}: {delivered}/{len(results)} device sends delivered")
    return SendResponse(
        delivered=delivered,
        failed=len(results) - delivered,
        results=[DeliveryResultSchema(**r.to_dict()) for r in results],
    )


@router.post("/track", response_model=TrackResponse)
async def track_notification(
    request: TrackRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Record that a notification was opened, and which action was taken."""
    sent = await prefs_service.track_open(db, request.notification_id, request.action, user_id=user.id)
    if sent is None:
        raise HTTPException(status_code=404, detail="Notification not found")
    return TrackResponse(success=True, notification_id=sent.id)


@router.post("/scheduled", response_model=ScheduledResponse, status_code=201)
async def schedule_notification(
    request: ScheduleRequest,
    user: User = Depends(get_current_user),
    delivery: ScheduledDeliveryService = Depends(get_delivery),
):
    """Schedule a catalog template for the current user."""
    try:
        return await delivery.schedule(
            user.id, request.template_id, request.scheduled_for, request.personalization
        )
    except TemplateNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except UnknownUserError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.delete("/scheduled/{notification_id}", response_model=ScheduledResponse)
async def cancel_scheduled_notification(
    notification_id: int,
    user: User = Depends(get_current_user),
    delivery: ScheduledDeliveryService = Depends(get_delivery),
):
    """Cancel a pending scheduled notification."""
    try:
        return await delivery.cancel(notification_id, user_id=user.id)
    except ScheduledNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ScheduleStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
