"""SentNotification model - append-only log of every device send attempt."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey

from ..database import Base


class SentNotification(Base):
    """One row per (message, device token) attempt.

    All rows produced for the same user by one dispatch share a dispatch_id,
    which is what frequency caps count.
    """

    __tablename__ = "sent_notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    template_id = Column(String, nullable=False, default="manual")
    dispatch_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False)
    body = Column(String, nullable=False)
    image_url = Column(String, nullable=True)
    deep_link = Column(String, nullable=True)
    platform = Column(String, nullable=False)  # android, ios
    device_token = Column(String, nullable=False)
    delivered = Column(Boolean, default=False, nullable=False)
    error_message = Column(String, nullable=True)
    opened = Column(Boolean, default=False, nullable=False)
    action_taken = Column(String, nullable=True)
    sent_at = Column(DateTime, default=datetime.utcnow, index=True)
