"""UserBehaviorRecord model - rolling per-user activity state."""
from sqlalchemy import Column, Integer, Float, String, DateTime, Boolean, ForeignKey, JSON
from sqlalchemy.orm import relationship

from ..database import Base


class UserBehaviorRecord(Base):
    """Activity timestamps, streaks and counters for one user.

    Created lazily on the first recorded event and written only by the
    behavior tracker.
    """

    __tablename__ = "user_behavior"

    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    last_login_at = Column(DateTime, nullable=True)
    last_routine_at = Column(DateTime, nullable=True)
    last_morning_routine_at = Column(DateTime, nullable=True)
    last_evening_routine_at = Column(DateTime, nullable=True)
    morning_routine_streak = Column(Integer, default=0, nullable=False)
    evening_routine_streak = Column(Integer, default=0, nullable=False)
    last_booking_at = Column(DateTime, nullable=True)
    last_purchase_at = Column(DateTime, nullable=True)
    preferred_categories = Column(JSON, default=list)
    last_post_at = Column(DateTime, nullable=True)
    total_routines_completed = Column(Integer, default=0, nullable=False)
    sessions_this_week = Column(Integer, default=0, nullable=False)
    notification_opt_out = Column(Boolean, default=False, nullable=False)
    avg_notification_response = Column(Float, default=0.5, nullable=False)  # 0..1
    device_type = Column(String, nullable=True)  # ios, android, web

    user = relationship("User", back_populates="behavior")
