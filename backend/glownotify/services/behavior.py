"""Behavior tracker - records user activity and turns it into notification requests.

Event ingestion is split in two steps. ``record`` persists the state change
and returns whatever notifications the new state triggers; ``deliver`` hands
those requests to the dispatcher. A failed store write propagates out of
``record``. A failed delivery is only logged and never undoes the write.

The population sweeps further down are driven by the scheduler and select
their audience from the stored behavior state rather than from an event.
"""
import asyncio
import logging
import random
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from ..models import (
    Challenge,
    NotificationPreference,
    Product,
    SentNotification,
    User,
    UserBehaviorRecord,
    UserChallenge,
)
from ..utils.db_utils import retry_on_lock
from ..utils.timeutils import Clock, hhmm, local_date, local_week_start, to_local, utcnow
from .dispatcher import Dispatcher
from .preferences import get_preferences
from .targeting import NotificationTarget, UnknownUserError, completed_routine_today
from .templates import Priority, TemplateRegistry
from .weather import WeatherClient

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    LOGIN = "login"
    ROUTINE_COMPLETED = "routine_completed"
    BOOKING_CREATED = "booking_created"
    PURCHASE = "purchase"
    POST_CREATED = "post_created"
    POINTS_AWARDED = "points_awarded"
    NOTIFICATION_OPT_OUT = "notification_opt_out"


class RoutineType(str, Enum):
    MORNING = "morning"
    EVENING = "evening"


# (streak counter, last completion timestamp) per routine type
ROUTINE_COLUMNS = {
    RoutineType.MORNING: (
        UserBehaviorRecord.morning_routine_streak,
        UserBehaviorRecord.last_morning_routine_at,
    ),
    RoutineType.EVENING: (
        UserBehaviorRecord.evening_routine_streak,
        UserBehaviorRecord.last_evening_routine_at,
    ),
}

# Highest threshold first
TIERS = [
    (2000, "VIP Goddess"),
    (1000, "Skincare Guru"),
    (500, "Beauty Enthusiast"),
    (0, "Glow Seeker"),
]

MILESTONE_STREAK = 7
STREAK_AT_RISK = 3
STREAK_PROTECTION_HOURS = (18, 20, 22)

REENGAGEMENT_GAP = timedelta(days=7)
INACTIVE_GAP = timedelta(days=3)
BOOKING_GAP = timedelta(weeks=6)

CHALLENGE_AUDIENCE_LIMIT = 50

SKIN_TIPS = {
    "acne": "Gentle cleansing twice daily with salicylic acid can help reduce breakouts",
    "dryness": "Layer a hydrating serum under your moisturizer for extra hydration",
    "aging": "Retinol at night and vitamin C in the morning are anti-aging powerhouses",
    "sensitivity": "Look for fragrance-free products with ceramides and niacinamide",
    "hyperpigmentation": "Consistent sunscreen use prevents dark spots from getting worse",
}
DEFAULT_SKIN_TIP = "Consistency is key to seeing results in your skincare routine"


class UnknownEventError(ValueError):
    """The event kind or one of its required fields is not recognised."""


@dataclass
class BehaviorEvent:
    user_id: str
    kind: str
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class NotificationRequest:
    """A template send for one user, produced by a trigger."""
    user_id: str
    template_id: str
    variables: Dict[str, Any] = field(default_factory=dict)
    priority: Optional[Priority] = None


def tier_for_points(points: int) -> str:
    for threshold, name in TIERS:
        if (points or 0) >= threshold:
            return name
    return TIERS[-1][1]


def tier_rank(name: Optional[str]) -> int:
    """Position of a tier from the bottom; unknown names rank lowest."""
    names = [tier for _, tier in reversed(TIERS)]
    return names.index(name) if name in names else 0


def skin_tip(concern: str) -> str:
    return SKIN_TIPS.get(concern.lower(), DEFAULT_SKIN_TIP)


class BehaviorTracker:
    """Owns the per-user behavior record and every trigger evaluated over it."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        dispatcher: Dispatcher,
        registry: TemplateRegistry,
        clock: Clock = utcnow,
        streak_reset_on_gap: bool = True,
        weather: Optional[WeatherClient] = None,
        uv_threshold: float = 6.0,
        rng: Optional[random.Random] = None,
    ):
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.registry = registry
        self.clock = clock
        self.streak_reset_on_gap = streak_reset_on_gap
        self.weather = weather
        self.uv_threshold = uv_threshold
        self.rng = rng or random.Random()
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_holders: Dict[str, int] = {}
        self._handlers = {
            EventKind.LOGIN: self._on_login,
            EventKind.ROUTINE_COMPLETED: self._on_routine_completed,
            EventKind.BOOKING_CREATED: self._on_booking_created,
            EventKind.PURCHASE: self._on_purchase,
            EventKind.POST_CREATED: self._on_post_created,
            EventKind.POINTS_AWARDED: self._on_points_awarded,
            EventKind.NOTIFICATION_OPT_OUT: self._on_opt_out,
        }

    # ------------------------------------------------------------------
    # Event ingestion
    # ------------------------------------------------------------------

    async def record(self, event: BehaviorEvent) -> List[NotificationRequest]:
        """Persist the event's state change and evaluate its triggers."""
        try:
            kind = EventKind(event.kind)
        except ValueError:
            raise UnknownEventError(f"Unknown event kind: {event.kind}")

        async with self._user_lock(event.user_id):
            async with self.session_factory() as session:
                user = await session.get(User, event.user_id)
                if user is None:
                    raise UnknownUserError(f"Unknown user: {event.user_id}")

                behavior = await self._get_or_create_behavior(session, event.user_id)
                requests = await self._handlers[kind](
                    session, user, behavior, event.payload or {}, self.clock()
                )
                await retry_on_lock(session.commit)

        requests = [r for r in requests if r is not None]
        logger.info(f"Recorded {kind.value} for user {event.user_id} ({len(requests)} triggered)")
        return requests

    async def deliver(self, requests: List[NotificationRequest]) -> int:
        """Dispatch triggered requests. Returns how many were handed off without error."""
        delivered = 0
        for request in requests:
            try:
                await self.dispatcher.send_template(
                    NotificationTarget(user_id=request.user_id),
                    request.template_id,
                    request.variables,
                    request.priority,
                )
                delivered += 1
            except Exception as e:
                logger.error(f"Failed to deliver {request.template_id} to {request.user_id}: {e}")
        return delivered

    async def ingest(self, event: BehaviorEvent) -> List[NotificationRequest]:
        requests = await self.record(event)
        await self.deliver(requests)
        return requests

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _user_lock(self, user_id: str):
        """Serialize writes per user. The entry is dropped once nobody holds or waits on it."""
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._lock_holders[user_id] = self._lock_holders.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_holders[user_id] -= 1
            if not self._lock_holders[user_id]:
                del self._lock_holders[user_id]
                del self._locks[user_id]

    async def _get_or_create_behavior(self, session: AsyncSession, user_id: str) -> UserBehaviorRecord:
        behavior = await session.get(UserBehaviorRecord, user_id)
        if behavior is None:
            behavior = UserBehaviorRecord(
                user_id=user_id,
                morning_routine_streak=0,
                evening_routine_streak=0,
                total_routines_completed=0,
                sessions_this_week=0,
                notification_opt_out=False,
                avg_notification_response=0.5,
                preferred_categories=[],
            )
            session.add(behavior)
            await session.flush()
        return behavior

    async def _apply(self, session: AsyncSession, behavior: UserBehaviorRecord, values: dict):
        """Write the changes as one UPDATE so counter increments happen in SQL."""
        await session.execute(
            update(UserBehaviorRecord)
            .where(UserBehaviorRecord.user_id == behavior.user_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await session.refresh(behavior)

    def _request(
        self,
        user_id: str,
        template_id: str,
        variables: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> Optional[NotificationRequest]:
        """A request for the template, or None when its trigger conditions do not hold."""
        template = self.registry.get(template_id)
        variables = variables or {}
        if not template.matches(context if context is not None else variables):
            return None
        return NotificationRequest(user_id=user_id, template_id=template_id, variables=variables)

    def _current_streak(
        self, behavior: UserBehaviorRecord, routine_type: RoutineType, now: datetime, tz_name: Optional[str]
    ) -> int:
        """Stored streak, or 0 when a missed day means the next completion restarts it."""
        streak_col, last_col = ROUTINE_COLUMNS[routine_type]
        streak = getattr(behavior, streak_col.key) or 0
        if not self.streak_reset_on_gap:
            return streak
        last = getattr(behavior, last_col.key)
        if last is None or (local_date(now, tz_name) - local_date(last, tz_name)).days > 1:
            return 0
        return streak

    async def _delivered_since(
        self, session: AsyncSession, user_id: str, template_id: str, since: datetime
    ) -> bool:
        result = await session.execute(
            select(SentNotification.id).where(
                SentNotification.user_id == user_id,
                SentNotification.template_id == template_id,
                SentNotification.delivered.is_(True),
                SentNotification.sent_at >= since,
            ).limit(1)
        )
        return result.first() is not None

    async def _check_tier(self, session: AsyncSession, user: User) -> List[NotificationRequest]:
        new_tier = tier_for_points(user.total_points or 0)
        if new_tier == user.loyalty_tier:
            return []

        upgraded = tier_rank(new_tier) > tier_rank(user.loyalty_tier)
        user.loyalty_tier = new_tier
        if not upgraded:
            logger.info(f"User {user.id} moved down to {new_tier}")
            return []

        logger.info(f"User {user.id} reached {new_tier}")
        return [self._request(
            user.id,
            "tier_upgrade",
            {"tier_name": new_tier},
            {"tier_upgrade": True},
        )]

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    async def _on_login(self, session, user, behavior, payload, now):
        previous = behavior.last_login_at
        prefs = await get_preferences(session, user.id)
        tz_name = prefs.timezone if prefs else None
        same_week = previous is not None and previous >= local_week_start(now, tz_name)

        values = {
            "last_login_at": now,
            "sessions_this_week": UserBehaviorRecord.sessions_this_week + 1 if same_week else 1,
        }
        if payload.get("device_type"):
            values["device_type"] = payload["device_type"]
        await self._apply(session, behavior, values)

        if previous is None or now - previous < REENGAGEMENT_GAP:
            return []
        if await self._delivered_since(session, user.id, "reengagement", previous):
            return []

        days_inactive = (now - previous).days
        return [self._request(user.id, "reengagement", {"days_inactive": days_inactive})]

    async def _on_routine_completed(self, session, user, behavior, payload, now):
        try:
            routine_type = RoutineType(payload.get("routine_type"))
        except ValueError:
            raise UnknownEventError(f"Unknown routine type: {payload.get('routine_type')!r}")

        streak_col, last_col = ROUTINE_COLUMNS[routine_type]
        previous = getattr(behavior, last_col.key)

        restart = False
        if self.streak_reset_on_gap and previous is not None:
            prefs = await get_preferences(session, user.id)
            tz_name = prefs.timezone if prefs else None
            restart = (local_date(now, tz_name) - local_date(previous, tz_name)).days > 1

        await self._apply(session, behavior, {
            streak_col.key: 1 if restart else streak_col + 1,
            last_col.key: now,
            "last_routine_at": now,
            "total_routines_completed": UserBehaviorRecord.total_routines_completed + 1,
        })

        streak = getattr(behavior, streak_col.key)
        if restart:
            logger.debug(f"User {user.id} {routine_type.value} streak restarted after a gap")

        requests = []
        if streak == MILESTONE_STREAK:
            requests.append(self._request(
                user.id,
                "streak_milestone",
                {"routine_type": routine_type.value, "streak_days": streak},
                {"streak_milestone": True},
            ))
        requests += await self._check_tier(session, user)
        return requests

    async def _on_booking_created(self, session, user, behavior, payload, now):
        await self._apply(session, behavior, {"last_booking_at": now})
        return []

    async def _on_purchase(self, session, user, behavior, payload, now):
        categories = [str(c) for c in (payload.get("categories") or [])]
        merged = list(behavior.preferred_categories or [])
        merged += [c for c in categories if c not in merged]
        await self._apply(session, behavior, {
            "last_purchase_at": now,
            "preferred_categories": merged,
        })

        if not categories:
            return []

        result = await session.execute(
            select(Product)
            .where(Product.featured.is_(True), Product.category.in_(categories))
            .order_by(Product.id)
            .limit(1)
        )
        product = result.scalar_one_or_none()
        if product is None:
            return []

        return [self._request(user.id, "product_recommendation", {
            "skin_type": user.skin_type or "your",
            "product_id": product.id,
            "product_name": product.name,
            "product_image": product.image_url,
        })]

    async def _on_post_created(self, session, user, behavior, payload, now):
        await self._apply(session, behavior, {"last_post_at": now})
        return []

    async def _on_points_awarded(self, session, user, behavior, payload, now):
        try:
            points = int(payload.get("points"))
        except (TypeError, ValueError):
            raise UnknownEventError(f"Invalid points value: {payload.get('points')!r}")

        await session.execute(
            update(User)
            .where(User.id == user.id)
            .values(total_points=func.coalesce(User.total_points, 0) + points)
            .execution_options(synchronize_session=False)
        )
        await session.refresh(user)
        return await self._check_tier(session, user)

    async def _on_opt_out(self, session, user, behavior, payload, now):
        await self._apply(session, behavior, {"notification_opt_out": bool(payload.get("opt_out", True))})
        return []

    # ------------------------------------------------------------------
    # Population sweeps
    # ------------------------------------------------------------------

    async def _load_users(self, session: AsyncSession, stmt) -> List[User]:
        result = await session.execute(
            stmt.options(selectinload(User.behavior), selectinload(User.preferences)).order_by(User.id)
        )
        return list(result.scalars().unique().all())

    async def check_routine_reminders(self) -> int:
        """Remind users whose local clock reads their morning or evening time."""
        now = self.clock()
        async with self.session_factory() as session:
            users = await self._load_users(
                session,
                select(User)
                .join(NotificationPreference, NotificationPreference.user_id == User.id)
                .where(NotificationPreference.routine_reminders.is_(True)),
            )

        requests = []
        for user in users:
            prefs = user.preferences
            local_time = hhmm(to_local(now, prefs.timezone))
            if local_time == prefs.morning_time:
                template_id = "morning_routine_basic"
            elif local_time == prefs.evening_time:
                template_id = "evening_routine_basic"
            else:
                continue
            if completed_routine_today(user, now):
                continue
            requests.append(self._request(user.id, template_id))

        return await self.deliver([r for r in requests if r])

    async def check_inactive_users(self) -> int:
        """Gently nudge users who have not logged in for a few days."""
        now = self.clock()
        requests = []
        async with self.session_factory() as session:
            users = await self._load_users(
                session,
                select(User)
                .join(UserBehaviorRecord, UserBehaviorRecord.user_id == User.id)
                .where(
                    UserBehaviorRecord.last_login_at < now - INACTIVE_GAP,
                    UserBehaviorRecord.notification_opt_out.is_(False),
                ),
            )
            for user in users:
                last_login = user.behavior.last_login_at
                if await self._delivered_since(session, user.id, "comeback_gentle", last_login):
                    continue
                requests.append(self._request(
                    user.id,
                    "comeback_gentle",
                    {"days_inactive": (now - last_login).days},
                ))

        return await self.deliver([r for r in requests if r])

    async def check_booking_reminders(self) -> int:
        """Suggest a visit to users whose last booking is six weeks old, or who never booked."""
        now = self.clock()
        cutoff = now - BOOKING_GAP
        async with self.session_factory() as session:
            users = await self._load_users(
                session,
                select(User)
                .outerjoin(UserBehaviorRecord, UserBehaviorRecord.user_id == User.id)
                .where(
                    (UserBehaviorRecord.last_booking_at.is_(None))
                    | (UserBehaviorRecord.last_booking_at < cutoff),
                    func.coalesce(UserBehaviorRecord.notification_opt_out, False).is_(False),
                ),
            )

        requests = []
        for user in users:
            since = user.behavior.last_booking_at if user.behavior else None
            # Never-booked users are measured from account creation
            since = since or user.created_at
            if since is None:
                continue
            weeks = (now - since).days // 7
            requests.append(self._request(user.id, "booking_reminder", {"weeks_since_last": weeks}))

        return await self.deliver([r for r in requests if r])

    async def send_personalized_tips(self) -> int:
        """One tip per user for a randomly picked skin concern."""
        async with self.session_factory() as session:
            users = await self._load_users(
                session,
                select(User)
                .join(NotificationPreference, NotificationPreference.user_id == User.id)
                .where(NotificationPreference.personalized_content.is_(True)),
            )

        requests = []
        for user in users:
            concerns = [c for c in (user.skin_concerns or []) if c]
            if not concerns:
                continue
            concern = self.rng.choice(concerns)
            requests.append(self._request(user.id, "skin_tip", {
                "skin_concern": concern,
                "tip": skin_tip(concern),
                "tip_id": f"tip-{concern.lower()}",
            }))

        return await self.deliver([r for r in requests if r])

    async def send_weather_advice(self) -> int:
        """Sun protection advice when today's UV index is high."""
        if self.weather is None:
            return 0

        uv = await self.weather.uv_index()
        if uv is None or uv < self.uv_threshold:
            logger.info(f"UV index {uv} below threshold, no weather advice today")
            return 0

        async with self.session_factory() as session:
            users = await self._load_users(
                session,
                select(User)
                .join(NotificationPreference, NotificationPreference.user_id == User.id)
                .where(NotificationPreference.personalized_content.is_(True)),
            )

        variables = {
            "weather_condition": "Sunny",
            "uv_index": f"{uv:g}",
            "skin_advice": "SPF protection",
        }
        return await self.deliver([
            r for r in (self._request(user.id, "weather_skincare", variables) for user in users) if r
        ])

    async def send_challenge_notifications(self) -> int:
        """Invite users who have not joined each currently running challenge."""
        now = self.clock()
        requests = []
        async with self.session_factory() as session:
            result = await session.execute(
                select(Challenge).where(
                    Challenge.active.is_(True),
                    Challenge.start_date <= now,
                    Challenge.end_date >= now,
                ).order_by(Challenge.id)
            )
            challenges = list(result.scalars().all())

            for challenge in challenges:
                joined = select(UserChallenge.user_id).where(UserChallenge.challenge_id == challenge.id)
                result = await session.execute(
                    select(User.id)
                    .join(NotificationPreference, NotificationPreference.user_id == User.id)
                    .where(
                        NotificationPreference.gamification.is_(True),
                        User.id.not_in(joined),
                    )
                    .order_by(User.id)
                    .limit(CHALLENGE_AUDIENCE_LIMIT)
                )
                for user_id in result.scalars().all():
                    requests.append(self._request(user_id, "challenge_available", {
                        "challenge_id": challenge.id,
                        "challenge_name": challenge.title,
                        "challenge_reward": f"{challenge.points} points",
                    }))

        return await self.deliver([r for r in requests if r])

    async def check_streak_protection(self) -> int:
        """Warn users in the evening window that an unlogged day will break their streak."""
        now = self.clock()
        async with self.session_factory() as session:
            users = await self._load_users(
                session,
                select(User)
                .join(UserBehaviorRecord, UserBehaviorRecord.user_id == User.id)
                .where(
                    (UserBehaviorRecord.morning_routine_streak >= STREAK_AT_RISK)
                    | (UserBehaviorRecord.evening_routine_streak >= STREAK_AT_RISK),
                    UserBehaviorRecord.notification_opt_out.is_(False),
                ),
            )

        requests = []
        for user in users:
            tz_name = user.preferences.timezone if user.preferences else None
            if to_local(now, tz_name).hour not in STREAK_PROTECTION_HOURS:
                continue
            if completed_routine_today(user, now):
                continue
            streak = max(
                self._current_streak(user.behavior, routine_type, now, tz_name)
                for routine_type in RoutineType
            )
            if streak < STREAK_AT_RISK:
                continue
            requests.append(self._request(user.id, "streak_protection", {"streak_days": streak}))

        return await self.deliver([r for r in requests if r])
