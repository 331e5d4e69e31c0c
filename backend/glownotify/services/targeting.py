"""Expands a declarative target descriptor into concrete users."""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..models import User, UserBehaviorRecord
from ..utils.timeutils import Clock, local_day_start, utcnow

logger = logging.getLogger(__name__)


class InvalidTargetError(ValueError):
    """The descriptor names more than one identity mode."""


class UnknownUserError(LookupError):
    """A user id that does not exist in the store."""


@dataclass
class NotificationTarget:
    """Who to notify.

    At most one of ``user_id`` / ``user_ids`` may be set; with neither, the
    target is attribute-based over all users. Every other field is an
    optional filter ANDed onto the identity mode.
    """
    user_id: Optional[str] = None
    user_ids: Optional[List[str]] = None
    tiers: Optional[List[str]] = None
    skin_types: Optional[List[str]] = None
    skin_concerns: Optional[List[str]] = None
    last_active_within: Optional[float] = None  # hours
    has_not_completed_routine_today: bool = False

    def validate(self):
        if self.user_id is not None and self.user_ids is not None:
            raise InvalidTargetError("Target may set user_id or user_ids, not both")


def completed_routine_today(user: User, now: datetime) -> bool:
    """Whether the user logged any routine since their local midnight."""
    behavior = user.behavior
    if behavior is None or behavior.last_routine_at is None:
        return False
    tz_name = user.preferences.timezone if user.preferences else None
    return behavior.last_routine_at >= local_day_start(now, tz_name)


class TargetingResolver:
    """Read-only resolver; safe to call repeatedly."""

    def __init__(self, clock: Clock = utcnow):
        self.clock = clock

    async def resolve(self, session: AsyncSession, target: NotificationTarget) -> List[User]:
        target.validate()

        stmt = (
            select(User)
            .options(selectinload(User.behavior), selectinload(User.preferences))
            .order_by(User.id)
        )

        if target.user_id is not None:
            stmt = stmt.where(User.id == target.user_id)
        elif target.user_ids is not None:
            if not target.user_ids:
                return []
            stmt = stmt.where(User.id.in_(target.user_ids))

        if target.tiers:
            stmt = stmt.where(User.loyalty_tier.in_(target.tiers))

        if target.skin_types:
            stmt = stmt.where(User.skin_type.in_(target.skin_types))

        now = self.clock()

        if target.last_active_within is not None:
            cutoff = now - timedelta(hours=target.last_active_within)
            stmt = stmt.join(UserBehaviorRecord, UserBehaviorRecord.user_id == User.id).where(
                UserBehaviorRecord.last_login_at >= cutoff
            )

        result = await session.execute(stmt)
        users = list(result.scalars().all())

        # JSON list membership is filtered here to stay portable across SQLite and PostgreSQL
        if target.skin_concerns:
            wanted = {c.lower() for c in target.skin_concerns}
            users = [
                u for u in users
                if wanted.intersection(c.lower() for c in (u.skin_concerns or []))
            ]

        if target.has_not_completed_routine_today:
            users = [u for u in users if not completed_routine_today(u, now)]

        logger.debug(f"Target resolved to {len(users)} users")
        return users
