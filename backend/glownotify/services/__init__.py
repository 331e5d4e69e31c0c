"""Services for targeting, policy, dispatch, behavior tracking and scheduling."""
from .templates import TemplateRegistry
from .dispatcher import Dispatcher
from .behavior import BehaviorTracker
from .delivery import ScheduledDeliveryService
from .scheduler import NotificationScheduler

__all__ = [
    "TemplateRegistry",
    "Dispatcher",
    "BehaviorTracker",
    "ScheduledDeliveryService",
    "NotificationScheduler",
]
