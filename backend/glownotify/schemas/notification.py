"""Notification schemas for API."""
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from ..services.templates import Priority
from ..utils.timeutils import get_zone

HHMM_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"


class PreferencesResponse(BaseModel):
    """Schema for a user's notification preferences."""
    # Category toggles
    routine_reminders: bool
    gamification: bool
    behavioral_triggers: bool
    personalized_content: bool
    appointments: bool
    promotional: bool

    # Local times
    morning_time: str
    evening_time: str
    quiet_hours_start: Optional[str] = None
    quiet_hours_end: Optional[str] = None
    timezone: str

    # Frequency caps
    max_per_day: int
    max_per_week: int

    fcm_tokens: List[str] = []
    apns_tokens: List[str] = []

    class Config:
        from_attributes = True


class PreferencesUpdate(BaseModel):
    """Schema for a partial preferences update. Device tokens are not writable here."""
    routine_reminders: Optional[bool] = None
    gamification: Optional[bool] = None
    behavioral_triggers: Optional[bool] = None
    personalized_content: Optional[bool] = None
    appointments: Optional[bool] = None
    promotional: Optional[bool] = None
    morning_time: Optional[str] = Field(None, pattern=HHMM_PATTERN)
    evening_time: Optional[str] = Field(None, pattern=HHMM_PATTERN)
    quiet_hours_start: Optional[str] = Field(None, pattern=HHMM_PATTERN)  # null clears
    quiet_hours_end: Optional[str] = Field(None, pattern=HHMM_PATTERN)
    timezone: Optional[str] = None
    max_per_day: Optional[int] = Field(None, ge=0, le=100)
    max_per_week: Optional[int] = Field(None, ge=0, le=500)

    @field_validator(
        "routine_reminders",
        "gamification",
        "behavioral_triggers",
        "personalized_content",
        "appointments",
        "promotional",
        "morning_time",
        "evening_time",
        "timezone",
        "max_per_day",
        "max_per_week",
    )
    @classmethod
    def not_null(cls, value):
        # Only the quiet hours may be cleared
        if value is None:
            raise ValueError("May not be null")
        return value

    @field_validator("timezone")
    @classmethod
    def known_timezone(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and get_zone(value).key != value:
            raise ValueError(f"Unknown timezone: {value}")
        return value


class DeviceRegisterRequest(BaseModel):
    """Request to register a device for push notifications."""
    token: str = Field(..., min_length=1)
    platform: str = Field(..., pattern="^(android|ios)$")


class DeviceRegisterResponse(BaseModel):
    """Response after registering a device."""
    success: bool
    platform: str
    device_count: int
    message: str


class TargetSchema(BaseModel):
    """Who a send is addressed to. Set at most one of user_id / user_ids."""
    user_id: Optional[str] = None
    user_ids: Optional[List[str]] = None
    tiers: Optional[List[str]] = None
    skin_types: Optional[List[str]] = None
    skin_concerns: Optional[List[str]] = None
    last_active_within: Optional[float] = Field(None, ge=0)  # hours
    has_not_completed_routine_today: bool = False


class ActionButtonSchema(BaseModel):
    text: str
    action: str
    deep_link: Optional[str] = None


class PayloadSchema(BaseModel):
    """An ad hoc message. ``{firstName}`` is filled per recipient."""
    title: str = Field(..., min_length=1)
    body: str = Field(..., min_length=1)
    deep_link: Optional[str] = None
    image_url: Optional[str] = None
    action_buttons: List[ActionButtonSchema] = []
    data: Dict[str, str] = {}


class SendRequest(BaseModel):
    """Admin send: either an ad hoc payload or a catalog template."""
    target: TargetSchema
    payload: Optional[PayloadSchema] = None
    template_id: Optional[str] = None
    variables: Dict[str, str] = {}
    priority: Optional[Priority] = None


class DeliveryResultSchema(BaseModel):
    user_id: str
    platform: str
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    notification_id: Optional[int] = None


class SendResponse(BaseModel):
    """Summary of an admin send."""
    delivered: int
    failed: int
    results: List[DeliveryResultSchema]


class TrackRequest(BaseModel):
    """A notification was opened on a device."""
    notification_id: int
    action: Optional[str] = None


class TrackResponse(BaseModel):
    success: bool
    notification_id: int


class ScheduleRequest(BaseModel):
    """Schedule a catalog template for the current user."""
    template_id: str
    scheduled_for: datetime  # naive values are taken as UTC
    personalization: Dict[str, str] = {}


class ScheduledResponse(BaseModel):
    """Schema for a scheduled notification in API responses."""
    id: int
    user_id: str
    template_id: str
    scheduled_for: datetime
    timezone: str
    status: str
    attempt_count: int
    last_attempt_at: Optional[datetime] = None
    error_message: Optional[str] = None

    class Config:
        from_attributes = True
