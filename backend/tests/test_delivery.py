"""Tests for scheduled delivery: scheduling, cancellation, the sweep state machine and cleanup."""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from glownotify.models import ScheduledNotification, SentNotification
from glownotify.models.scheduled import (
    STATUS_CANCELLED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_PROCESSING,
    STATUS_SENT,
)
from glownotify.services.delivery import ScheduledNotFoundError, ScheduleStateError
from glownotify.services.targeting import UnknownUserError
from glownotify.services.templates import TemplateNotFoundError

from conftest import NOW


async def _row(session_factory, row_id):
    async with session_factory() as session:
        return await session.get(ScheduledNotification, row_id)


async def _insert(session_factory, **fields):
    values = dict(
        user_id="u1",
        template_id="morning_routine_basic",
        scheduled_for=NOW - timedelta(minutes=1),
        timezone="UTC",
        personalization={},
        status=STATUS_PENDING,
        attempt_count=0,
        created_at=NOW,
    )
    values.update(fields)
    async with session_factory() as session:
        row = ScheduledNotification(**values)
        session.add(row)
        await session.commit()
        return row.id


class TestSchedule:
    async def test_creates_pending_row_in_user_timezone(self, delivery, add_user):
        await add_user(prefs={"timezone": "Europe/Paris"})

        row = await delivery.schedule(
            "u1",
            "challenge_available",
            datetime(2024, 6, 13, 10, 0, tzinfo=timezone(timedelta(hours=2))),
            {"challenge_name": "Glow Week"},
        )

        assert row.id is not None
        assert row.status == STATUS_PENDING
        assert row.attempt_count == 0
        assert row.timezone == "Europe/Paris"
        assert row.scheduled_for == datetime(2024, 6, 13, 8, 0)
        assert row.personalization == {"challenge_name": "Glow Week"}

    async def test_unknown_template(self, delivery, add_user):
        await add_user()
        with pytest.raises(TemplateNotFoundError):
            await delivery.schedule("u1", "nope", NOW)

    async def test_unknown_user(self, delivery):
        with pytest.raises(UnknownUserError):
            await delivery.schedule("ghost", "morning_routine_basic", NOW)


class TestCancel:
    async def test_pending_can_be_cancelled_once(self, delivery, add_user, session_factory):
        await add_user()
        row_id = await _insert(session_factory)

        cancelled = await delivery.cancel(row_id)
        assert cancelled.status == STATUS_CANCELLED

        with pytest.raises(ScheduleStateError):
            await delivery.cancel(row_id)

    @pytest.mark.parametrize("status", [STATUS_PROCESSING, STATUS_SENT, STATUS_FAILED])
    async def test_non_pending_cannot_be_cancelled(self, delivery, add_user, session_factory, status):
        await add_user()
        row_id = await _insert(session_factory, status=status)

        with pytest.raises(ScheduleStateError):
            await delivery.cancel(row_id)
        assert (await _row(session_factory, row_id)).status == status

    async def test_unknown_or_foreign_id(self, delivery, add_user, session_factory):
        await add_user("u1")
        await add_user("u2", fcm_tokens=["t2"])
        row_id = await _insert(session_factory, user_id="u2")

        with pytest.raises(ScheduledNotFoundError):
            await delivery.cancel(9999)
        with pytest.raises(ScheduledNotFoundError):
            await delivery.cancel(row_id, user_id="u1")

    async def test_cancelled_rows_are_not_swept(self, delivery, transport, add_user, session_factory):
        await add_user()
        row_id = await _insert(session_factory)
        await delivery.cancel(row_id)

        await delivery.process_due()

        assert transport.attempts == 0
        assert (await _row(session_factory, row_id)).status == STATUS_CANCELLED


class TestSweep:
    async def test_due_row_is_sent_with_user_name(self, delivery, transport, add_user, session_factory):
        await add_user()
        row_id = await _insert(session_factory)
        future_id = await _insert(session_factory, scheduled_for=NOW + timedelta(hours=1))

        counts = await delivery.process_due()

        assert counts[STATUS_SENT] == 1
        assert transport.titles() == ["Good morning, Ana! ☀️"]
        row = await _row(session_factory, row_id)
        assert row.status == STATUS_SENT
        assert row.last_attempt_at == NOW
        assert row.claim_token is None
        assert (await _row(session_factory, future_id)).status == STATUS_PENDING

    async def test_stored_personalization_is_used(self, delivery, transport, add_user, session_factory):
        await add_user()
        await _insert(
            session_factory,
            template_id="challenge_available",
            personalization={"challenge_name": "Glow Week", "challenge_reward": "200 points", "challenge_id": "c1"},
        )

        await delivery.process_due()

        assert transport.titles() == ["New Challenge: Glow Week!"]

    async def test_failure_retries_then_fails(self, delivery, transport, add_user, session_factory, clock):
        await add_user()
        row_id = await _insert(session_factory)
        transport.fail_all = True

        await delivery.process_due()
        row = await _row(session_factory, row_id)
        assert (row.status, row.attempt_count) == (STATUS_PENDING, 1)
        assert "Rejected" in row.error_message

        clock.advance(minutes=5)
        await delivery.process_due()
        clock.advance(minutes=5)
        await delivery.process_due()
        row = await _row(session_factory, row_id)
        assert (row.status, row.attempt_count) == (STATUS_FAILED, 3)
        assert row.last_attempt_at == NOW + timedelta(minutes=10)

        # Terminal rows are never touched again
        attempts = transport.attempts
        clock.advance(minutes=5)
        await delivery.process_due()
        row = await _row(session_factory, row_id)
        assert (row.status, row.attempt_count) == (STATUS_FAILED, 3)
        assert transport.attempts == attempts

    async def test_third_failed_attempt_is_final(self, delivery, transport, add_user, session_factory):
        await add_user()
        row_id = await _insert(session_factory, attempt_count=2)
        transport.fail_all = True

        counts = await delivery.process_due()

        row = await _row(session_factory, row_id)
        assert (row.status, row.attempt_count) == (STATUS_FAILED, 3)
        assert counts[STATUS_FAILED] == 1

    async def test_partial_device_failure_counts_as_sent(self, delivery, transport, add_user, session_factory):
        await add_user(fcm_tokens=["bad", "good"])
        row_id = await _insert(session_factory)
        transport.failing.add("bad")

        await delivery.process_due()

        assert (await _row(session_factory, row_id)).status == STATUS_SENT

    async def test_policy_denial_counts_as_sent(self, delivery, transport, add_user, session_factory):
        await add_user(behavior={"notification_opt_out": True})
        row_id = await _insert(session_factory)

        await delivery.process_due()

        assert (await _row(session_factory, row_id)).status == STATUS_SENT
        assert transport.attempts == 0

    async def test_stale_claim_is_released(self, delivery, transport, add_user, session_factory):
        await add_user()
        stale_id = await _insert(
            session_factory, status=STATUS_PROCESSING, claim_token="old", claimed_at=NOW - timedelta(minutes=31)
        )
        live_id = await _insert(
            session_factory, status=STATUS_PROCESSING, claim_token="live", claimed_at=NOW - timedelta(minutes=5)
        )

        await delivery.process_due()

        assert (await _row(session_factory, stale_id)).status == STATUS_SENT
        live = await _row(session_factory, live_id)
        assert (live.status, live.claim_token) == (STATUS_PROCESSING, "live")

    async def test_batch_size_limits_claims(self, session_factory, dispatcher, registry, clock, add_user):
        from glownotify.services.delivery import ScheduledDeliveryService

        delivery = ScheduledDeliveryService(session_factory, dispatcher, registry, clock=clock, batch_size=2)
        await add_user(prefs={"max_per_day": 10})
        for n in range(3):
            await _insert(session_factory, scheduled_for=NOW - timedelta(minutes=10 - n))

        first = await delivery.process_due()
        second = await delivery.process_due()

        assert first[STATUS_SENT] == 2
        assert second[STATUS_SENT] == 1


class TestCleanup:
    async def test_removes_old_history_only(self, delivery, add_user, session_factory):
        await add_user()
        async with session_factory() as session:
            for dispatch_id, age in (("old", 31), ("new", 29)):
                session.add(SentNotification(
                    user_id="u1", template_id="manual", dispatch_id=dispatch_id, title="t", body="b",
                    platform="android", device_token="tok", delivered=True, sent_at=NOW - timedelta(days=age),
                ))
            await session.commit()
        old_sent = await _insert(session_factory, status=STATUS_SENT, created_at=NOW - timedelta(days=40))
        old_pending = await _insert(session_factory, status=STATUS_PENDING, created_at=NOW - timedelta(days=40),
                                    scheduled_for=NOW + timedelta(days=1))
        recent_failed = await _insert(session_factory, status=STATUS_FAILED, created_at=NOW - timedelta(days=2))

        removed = await delivery.cleanup()

        assert removed == (1, 1)
        async with session_factory() as session:
            sent = (await session.execute(select(SentNotification.dispatch_id))).scalars().all()
            scheduled = (await session.execute(select(ScheduledNotification.id))).scalars().all()
        assert sent == ["new"]
        assert sorted(scheduled) == sorted([old_pending, recent_failed])
        assert old_sent not in scheduled
