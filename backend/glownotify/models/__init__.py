"""Database models."""
from .user import User
from .behavior import UserBehaviorRecord
from .preference import NotificationPreference
from .template import NotificationTemplate
from .scheduled import ScheduledNotification
from .sent import SentNotification
from .catalog import Product, Challenge, UserChallenge

__all__ = [
    "User",
    "UserBehaviorRecord",
    "NotificationPreference",
    "NotificationTemplate",
    "ScheduledNotification",
    "SentNotification",
    "Product",
    "Challenge",
    "UserChallenge",
]
