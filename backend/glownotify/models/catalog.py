"""Product and challenge models read by recommendation and challenge sweeps."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey

from ..database import Base


class Product(Base):
    """A shop product; featured products are eligible for recommendations."""

    __tablename__ = "products"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    category = Column(String, nullable=False, index=True)
    featured = Column(Boolean, default=False, nullable=False)
    image_url = Column(String, nullable=True)


class Challenge(Base):
    """A time-boxed gamification challenge."""

    __tablename__ = "challenges"

    id = Column(String, primary_key=True)
    title = Column(String, nullable=False)
    points = Column(Integer, default=0)
    active = Column(Boolean, default=True, nullable=False)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)


class UserChallenge(Base):
    """Membership of a user in a challenge."""

    __tablename__ = "user_challenges"

    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    challenge_id = Column(String, ForeignKey("challenges.id", ondelete="CASCADE"), primary_key=True)
    joined_at = Column(DateTime, default=datetime.utcnow)
