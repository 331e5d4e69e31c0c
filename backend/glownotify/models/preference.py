"""NotificationPreference model - per-user delivery settings and device tokens."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, JSON
from sqlalchemy.orm import relationship

from ..database import Base


# Defaults applied when a user has never saved preferences
DEFAULT_PREFERENCES = {
    "routine_reminders": True,
    "gamification": True,
    "behavioral_triggers": True,
    "personalized_content": True,
    "appointments": True,
    "promotional": True,
    "morning_time": "07:30",
    "evening_time": "21:00",
    "quiet_hours_start": None,
    "quiet_hours_end": None,
    "timezone": "UTC",
    "max_per_day": 3,
    "max_per_week": 15,
}


class NotificationPreference(Base):
    """Category toggles, reminder times, quiet hours, caps and push tokens."""

    __tablename__ = "notification_preferences"

    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)

    # Category toggles
    routine_reminders = Column(Boolean, default=True, nullable=False)
    gamification = Column(Boolean, default=True, nullable=False)
    behavioral_triggers = Column(Boolean, default=True, nullable=False)
    personalized_content = Column(Boolean, default=True, nullable=False)
    appointments = Column(Boolean, default=True, nullable=False)
    promotional = Column(Boolean, default=True, nullable=False)

    # Local "HH:MM" times
    morning_time = Column(String(5), default="07:30", nullable=False)
    evening_time = Column(String(5), default="21:00", nullable=False)
    quiet_hours_start = Column(String(5), nullable=True)
    quiet_hours_end = Column(String(5), nullable=True)
    timezone = Column(String, default="UTC", nullable=False)  # IANA name

    max_per_day = Column(Integer, default=3, nullable=False)
    max_per_week = Column(Integer, default=15, nullable=False)

    # Append-only, deduplicated token lists
    fcm_tokens = Column(JSON, default=list)
    apns_tokens = Column(JSON, default=list)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="preferences")
