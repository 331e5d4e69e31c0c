"""Behavior event schemas for API."""
from typing import Any, Dict, List

from pydantic import BaseModel, Field


class EventRequest(BaseModel):
    """A user activity event reported by an upstream system."""
    user_id: str = Field(..., min_length=1)
    kind: str  # login, routine_completed, booking_created, purchase, ...
    payload: Dict[str, Any] = {}


class EventResponse(BaseModel):
    """Result of recording an event. Triggered notifications are sent in the background."""
    recorded: bool
    kind: str
    triggered: List[str]  # template ids
