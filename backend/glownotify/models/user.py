"""User model - account and skincare profile owned by the identity provider."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, JSON
from sqlalchemy.orm import relationship

from ..database import Base


class User(Base):
    """A user with the profile fields used for targeting and personalization."""

    __tablename__ = "users"

    id = Column(String, primary_key=True)
    first_name = Column(String, nullable=True)
    skin_type = Column(String, nullable=True)  # oily, dry, combination, sensitive, normal
    skin_concerns = Column(JSON, default=list)  # ["acne", "dryness", ...]
    total_points = Column(Integer, default=0)
    loyalty_tier = Column(String, default="Glow Seeker")
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    behavior = relationship("UserBehaviorRecord", back_populates="user", uselist=False)
    preferences = relationship("NotificationPreference", back_populates="user", uselist=False)
