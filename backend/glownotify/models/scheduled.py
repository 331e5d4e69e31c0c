"""ScheduledNotification model - deferred sends processed by the delivery sweep."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, JSON, Index

from ..database import Base


STATUS_PENDING = "PENDING"
STATUS_PROCESSING = "PROCESSING"  # claimed by a running sweep
STATUS_SENT = "SENT"
STATUS_FAILED = "FAILED"
STATUS_CANCELLED = "CANCELLED"

TERMINAL_STATUSES = (STATUS_SENT, STATUS_FAILED, STATUS_CANCELLED)


class ScheduledNotification(Base):
    """A persisted send request with bounded retry."""

    __tablename__ = "scheduled_notifications"
    __table_args__ = (
        Index("ix_scheduled_status_due", "status", "scheduled_for"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    template_id = Column(String, ForeignKey("notification_templates.id"), nullable=False)
    scheduled_for = Column(DateTime, nullable=False)
    timezone = Column(String, default="UTC", nullable=False)
    personalization = Column(JSON, nullable=True)
    status = Column(String, default=STATUS_PENDING, nullable=False)
    attempt_count = Column(Integer, default=0, nullable=False)
    last_attempt_at = Column(DateTime, nullable=True)
    error_message = Column(String, nullable=True)
    claim_token = Column(String, nullable=True)
    claimed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
