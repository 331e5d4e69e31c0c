"""Notification preference storage and device token registration."""
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import NotificationPreference, SentNotification, UserBehaviorRecord
from ..models.preference import DEFAULT_PREFERENCES
from ..utils.db_utils import retry_on_lock
from .push_sender import PLATFORM_ANDROID, PLATFORM_IOS

logger = logging.getLogger(__name__)

TOKEN_FIELDS = {
    PLATFORM_ANDROID: "fcm_tokens",
    PLATFORM_IOS: "apns_tokens",
}

# How much opening a notification moves the response score
OPEN_RESPONSE_STEP = 0.1


def default_preferences(user_id: str) -> NotificationPreference:
    """An unsaved preference row holding the defaults."""
    return NotificationPreference(
        user_id=user_id,
        fcm_tokens=[],
        apns_tokens=[],
        **DEFAULT_PREFERENCES,
    )


async def get_preferences(session: AsyncSession, user_id: str) -> Optional[NotificationPreference]:
    result = await session.execute(
        select(NotificationPreference).where(NotificationPreference.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def get_or_create_preferences(session: AsyncSession, user_id: str) -> NotificationPreference:
    """Return the user's preferences, persisting the defaults on first access."""
    prefs = await get_preferences(session, user_id)
    if prefs is not None:
        return prefs

    prefs = default_preferences(user_id)
    session.add(prefs)
    try:
        await retry_on_lock(session.commit)
    except IntegrityError:
        # Created concurrently by another request
        await session.rollback()
        prefs = await get_preferences(session, user_id)
    return prefs


async def update_preferences(
    session: AsyncSession,
    user_id: str,
    changes: dict,
) -> NotificationPreference:
    """Apply a partial update. Token lists are not writable here."""
    prefs = await get_or_create_preferences(session, user_id)
    for key, value in changes.items():
        if key in TOKEN_FIELDS.values() or key == "user_id":
            continue
        if hasattr(NotificationPreference, key):
            setattr(prefs, key, value)

    await retry_on_lock(session.commit)
    await session.refresh(prefs)
    logger.info(f"Preferences updated for user {user_id}: {sorted(changes)}")
    return prefs


async def register_device(
    session: AsyncSession,
    user_id: str,
    token: str,
    platform: str,
) -> NotificationPreference:
    """Append a device token for the platform unless it is already registered."""
    field_name = TOKEN_FIELDS.get(platform)
    if field_name is None:
        raise ValueError(f"Platform must be one of {sorted(TOKEN_FIELDS)}")

    prefs = await get_or_create_preferences(session, user_id)
    current = list(getattr(prefs, field_name) or [])

    if token in current:
        logger.debug(f"Device token already registered: {token[:16]}...")
        return prefs

    # Assign a new list so the JSON column is flagged dirty
    setattr(prefs, field_name, current + [token])
    await retry_on_lock(session.commit)
    await session.refresh(prefs)

    logger.info(f"New {platform} device registered for user {user_id}: {token[:16]}...")
    return prefs


async def track_open(
    session: AsyncSession,
    notification_id: int,
    action: Optional[str] = None,
    user_id: Optional[str] = None,
) -> Optional[SentNotification]:
    """Mark a sent notification opened and nudge the user's response score up.

    Returns None when the id is unknown or, with user_id, owned by someone else.
    """
    sent = await session.get(SentNotification, notification_id)
    if sent is None or (user_id is not None and sent.user_id != user_id):
        return None

    first_open = not sent.opened
    sent.opened = True
    if action:
        sent.action_taken = action

    # Only the first open counts toward the response score
    behavior = await session.get(UserBehaviorRecord, sent.user_id) if first_open else None
    if behavior is not None:
        behavior.avg_notification_response = min(
            1.0, (behavior.avg_notification_response or 0.0) + OPEN_RESPONSE_STEP
        )

    await retry_on_lock(session.commit)
    return sent
