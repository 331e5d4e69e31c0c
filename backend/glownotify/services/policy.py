"""Per (user, message) allow/deny decision.

Rules, first match wins:
1. URGENT priority is always allowed.
2. Users who opted out are denied.
3. Local time inside the quiet-hours window (inclusive) is denied.
4. Reaching the daily or weekly cap is denied.
5. Everything else is allowed.

Caps count distinct delivered dispatches since the user's local midnight
(daily) and since local Monday 00:00 (weekly).
"""
import logging
from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy import select, func, distinct
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import NotificationPreference, SentNotification, User
from ..utils.timeutils import Clock, local_day_start, local_week_start, parse_hhmm, to_local, utcnow
from .templates import Priority

logger = logging.getLogger(__name__)


def _minutes(value: str) -> int:
    parsed = parse_hhmm(value)
    return parsed.hour * 60 + parsed.minute


def in_quiet_hours(local_now: datetime, start: Optional[str], end: Optional[str]) -> bool:
    """Whether local_now (to the minute) falls in [start, end].

    A window whose start is after its end wraps past midnight, e.g. 22:00-07:00.
    """
    if not start or not end:
        return False
    try:
        start_m, end_m = _minutes(start), _minutes(end)
    except ValueError:
        logger.warning(f"Ignoring malformed quiet hours {start!r}-{end!r}")
        return False

    now_m = local_now.hour * 60 + local_now.minute
    if start_m <= end_m:
        return start_m <= now_m <= end_m
    return now_m >= start_m or now_m <= end_m


def check_without_caps(
    opt_out: bool,
    prefs: NotificationPreference,
    priority: Priority,
    local_now: datetime,
) -> Optional[bool]:
    """Rules 1-3. Returns None when the caps have to decide."""
    if Priority(priority) == Priority.URGENT:
        return True
    if opt_out:
        return False
    if in_quiet_hours(local_now, prefs.quiet_hours_start, prefs.quiet_hours_end):
        return False
    return None


def within_caps(prefs: NotificationPreference, sent_today: int, sent_this_week: int) -> bool:
    """Rules 4-5."""
    if prefs.max_per_day is not None and sent_today >= prefs.max_per_day:
        return False
    if prefs.max_per_week is not None and sent_this_week >= prefs.max_per_week:
        return False
    return True


def evaluate(
    opt_out: bool,
    prefs: NotificationPreference,
    priority: Priority,
    local_now: datetime,
    sent_today: int = 0,
    sent_this_week: int = 0,
) -> bool:
    """The full rule chain over already-known counts."""
    early = check_without_caps(opt_out, prefs, priority, local_now)
    if early is not None:
        return early
    return within_caps(prefs, sent_today, sent_this_week)


class PolicyGate:
    """Evaluated once per candidate send, not per device."""

    def __init__(self, clock: Clock = utcnow):
        self.clock = clock

    async def _count_since(self, session: AsyncSession, user_id: str, since: datetime) -> int:
        result = await session.execute(
            select(func.count(distinct(SentNotification.dispatch_id))).where(
                SentNotification.user_id == user_id,
                SentNotification.delivered.is_(True),
                SentNotification.sent_at >= since,
            )
        )
        return result.scalar() or 0

    async def sent_counts(
        self,
        session: AsyncSession,
        user_id: str,
        tz_name: Optional[str],
    ) -> Tuple[int, int]:
        """Messages delivered to the user today and this week, in their local calendar."""
        now = self.clock()
        today = await self._count_since(session, user_id, local_day_start(now, tz_name))
        week = await self._count_since(session, user_id, local_week_start(now, tz_name))
        return today, week

    async def can_send(
        self,
        session: AsyncSession,
        user: User,
        prefs: NotificationPreference,
        priority: Priority,
    ) -> bool:
        opt_out = bool(user.behavior is not None and user.behavior.notification_opt_out)
        local_now = to_local(self.clock(), prefs.timezone)

        early = check_without_caps(opt_out, prefs, priority, local_now)
        if early is not None:
            if not early:
                logger.debug(f"Send to {user.id} denied by opt-out or quiet hours")
            return early

        sent_today, sent_this_week = await self.sent_counts(session, user.id, prefs.timezone)
        allowed = within_caps(prefs, sent_today, sent_this_week)
        if not allowed:
            logger.debug(
                f"Send to {user.id} denied by caps "
                f"({sent_today}/{prefs.max_per_day} today, {sent_this_week}/{prefs.max_per_week} week)"
            )
        return allowed
