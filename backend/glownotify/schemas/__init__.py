"""Pydantic schemas for API request/response models."""
from .notification import (
    PreferencesResponse,
    PreferencesUpdate,
    DeviceRegisterRequest,
    DeviceRegisterResponse,
    TargetSchema,
    PayloadSchema,
    SendRequest,
    SendResponse,
    TrackRequest,
    TrackResponse,
    ScheduleRequest,
    ScheduledResponse,
)
from .event import (
    EventRequest,
    EventResponse,
)

__all__ = [
    "PreferencesResponse",
    "PreferencesUpdate",
    "DeviceRegisterRequest",
    "DeviceRegisterResponse",
    "TargetSchema",
    "PayloadSchema",
    "SendRequest",
    "SendResponse",
    "TrackRequest",
    "TrackResponse",
    "ScheduleRequest",
    "ScheduledResponse",
    "EventRequest",
    "EventResponse",
]
