"""NotificationTemplate model - seeded copy of the static template catalog."""
from datetime import datetime
from sqlalchemy import Column, String, DateTime, JSON

from ..database import Base


class NotificationTemplate(Base):
    """Placeholder-parameterized message definition, read-only at runtime."""

    __tablename__ = "notification_templates"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    category = Column(String, nullable=False)  # ROUTINE_REMINDER, GAMIFICATION, ...
    priority = Column(String, nullable=False, default="NORMAL")  # LOW, NORMAL, HIGH, URGENT
    title = Column(String, nullable=False)
    body = Column(String, nullable=False)
    deep_link = Column(String, nullable=True)
    image_url = Column(String, nullable=True)
    action_buttons = Column(JSON, default=list)
    conditions = Column(JSON, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
