"""Pytest configuration and shared fixtures."""
import os
import tempfile

# Settings are read at import time
os.environ.setdefault("DATA_PATH", tempfile.mkdtemp(prefix="glownotify-"))
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["FCM_ENABLED"] = "false"
os.environ["APNS_ENABLED"] = "false"

from datetime import datetime, timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from glownotify import models  # noqa: F401
from glownotify.database import Base
from glownotify.models import NotificationPreference, User, UserBehaviorRecord
from glownotify.models.preference import DEFAULT_PREFERENCES
from glownotify.services.behavior import BehaviorTracker
from glownotify.services.delivery import ScheduledDeliveryService
from glownotify.services.dispatcher import Dispatcher
from glownotify.services.push_sender import PushDeliveryError
from glownotify.services.templates import TemplateRegistry

# A Wednesday
NOW = datetime(2024, 6, 12, 9, 0)


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)

    def set(self, now: datetime):
        self.now = now


class FakeTransport:
    """Records every send; tokens in ``failing`` (or everything with fail_all) raise."""

    def __init__(self):
        self.sent = []
        self.attempts = 0
        self.failing = set()
        self.fail_all = False

    async def send(self, platform: str, token: str, envelope: dict) -> str:
        self.attempts += 1
        if self.fail_all or token in self.failing:
            raise PushDeliveryError(f"Rejected token {token}")
        self.sent.append((platform, token, envelope))
        return f"msg-{len(self.sent)}"

    def titles(self):
        return [self._title(platform, envelope) for platform, _, envelope in self.sent]

    @staticmethod
    def _title(platform: str, envelope: dict) -> str:
        if platform == "android":
            return envelope["notification"]["title"]
        return envelope["aps"]["alert"]["title"]


class FakeWeather:
    def __init__(self, uv):
        self.uv = uv

    async def uv_index(self):
        return self.uv


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def registry():
    return TemplateRegistry()


@pytest.fixture
def dispatcher(session_factory, transport, registry, clock):
    return Dispatcher(session_factory, transport, registry, clock=clock)


@pytest.fixture
def tracker(session_factory, dispatcher, registry, clock):
    return BehaviorTracker(session_factory, dispatcher, registry, clock=clock)


@pytest.fixture
def delivery(session_factory, dispatcher, registry, clock):
    return ScheduledDeliveryService(session_factory, dispatcher, registry, clock=clock)


@pytest.fixture
def add_user(session_factory):
    """Insert a user with preferences and, optionally, a behavior record."""

    async def _add(
        user_id="u1",
        first_name="Ana",
        fcm_tokens=("fcm-token-u1",),
        apns_tokens=(),
        prefs=None,
        behavior=None,
        **user_fields,
    ):
        user_fields.setdefault("created_at", NOW - timedelta(days=365))
        async with session_factory() as session:
            session.add(User(id=user_id, first_name=first_name, **user_fields))
            session.add(NotificationPreference(
                user_id=user_id,
                fcm_tokens=list(fcm_tokens),
                apns_tokens=list(apns_tokens),
                **{**DEFAULT_PREFERENCES, **(prefs or {})},
            ))
            if behavior is not None:
                values = {
                    "morning_routine_streak": 0,
                    "evening_routine_streak": 0,
                    "total_routines_completed": 0,
                    "sessions_this_week": 0,
                    "notification_opt_out": False,
                    "avg_notification_response": 0.5,
                    "preferred_categories": [],
                }
                values.update(behavior)
                session.add(UserBehaviorRecord(user_id=user_id, **values))
            await session.commit()
        return user_id

    return _add
