"""Behavior event ingestion endpoint for upstream domain systems."""
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException

from ..schemas.event import EventRequest, EventResponse
from ..services.behavior import BehaviorEvent, BehaviorTracker, UnknownEventError
from ..services.targeting import UnknownUserError
from .deps import get_tracker, require_admin_key

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/events", tags=["events"])


@router.post("", response_model=EventResponse, status_code=202, dependencies=[Depends(require_admin_key)])
async def record_event(
    request: EventRequest,
    background_tasks: BackgroundTasks,
    tracker: BehaviorTracker = Depends(get_tracker),
):
    """Record a behavior event.

    The state change is committed before responding; notifications it
    triggers are delivered in the background.
    """
    event = BehaviorEvent(user_id=request.user_id, kind=request.kind, payload=request.payload)
    try:
        requests = await tracker.record(event)
    except UnknownEventError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except UnknownUserError as e:
        raise HTTPException(status_code=404, detail=str(e))

    if requests:
        background_tasks.add_task(tracker.deliver, requests)

    return EventResponse(
        recorded=True,
        kind=request.kind,
        triggered=[r.template_id for r in requests],
    )
