"""Tests for fan-out, audit logging and platform envelopes."""
from datetime import timedelta

from sqlalchemy import select

from glownotify.models import SentNotification
from glownotify.services.dispatcher import build_envelope
from glownotify.services.personalizer import RenderedButton, RenderedMessage
from glownotify.services.targeting import NotificationTarget
from glownotify.services.templates import Priority

from conftest import NOW


def _message(**overrides):
    fields = dict(title="Hi {firstName}", body="Time to glow", deep_link="app://routine")
    fields.update(overrides)
    return RenderedMessage(**fields)


async def _sent_rows(session_factory):
    async with session_factory() as session:
        result = await session.execute(select(SentNotification).order_by(SentNotification.id))
        return list(result.scalars().all())


class TestEnvelopes:
    def test_android(self):
        message = _message(
            image_url="https://cdn/img.png",
            action_buttons=[RenderedButton("Open", "open_app", "app://home")],
            template_id="skin_tip",
        )
        envelope = build_envelope("android", message)
        assert envelope["notification"] == {
            "title": "Hi {firstName}",
            "body": "Time to glow",
            "image": "https://cdn/img.png",
        }
        assert envelope["data"]["deepLink"] == "app://routine"
        assert envelope["data"]["templateId"] == "skin_tip"
        assert envelope["android"]["priority"] == "high"
        assert envelope["android"]["notification"]["channel_id"] == "skincare_reminders"
        assert envelope["android"]["notification"]["color"] == "#E91E63"
        assert envelope["android"]["notification"]["actions"] == [{"action": "open_app", "title": "Open"}]

    def test_ios(self):
        envelope = build_envelope("ios", _message(data={"campaign": "june"}))
        aps = envelope["aps"]
        assert aps["alert"] == {"title": "Hi {firstName}", "body": "Time to glow"}
        assert aps["badge"] == 1
        assert aps["sound"] == "default"
        assert aps["mutable-content"] == 1
        assert envelope["deepLink"] == "app://routine"
        assert envelope["campaign"] == "june"
        assert "imageUrl" not in envelope


class TestDispatch:
    async def test_fans_out_to_every_device(self, dispatcher, transport, add_user, session_factory):
        await add_user(fcm_tokens=["fcm-a", "fcm-b"], apns_tokens=["apns-a"])

        results = await dispatcher.send(NotificationTarget(user_id="u1"), _message())

        assert [r.token for r in results] == ["fcm-a", "fcm-b", "apns-a"]
        assert all(r.success for r in results)
        assert transport.titles() == ["Hi Ana"] * 3

        rows = await _sent_rows(session_factory)
        assert len(rows) == 3
        assert len({r.dispatch_id for r in rows}) == 1
        assert {r.platform for r in rows} == {"android", "ios"}
        assert all(r.delivered and r.template_id == "manual" for r in rows)
        assert [r.notification_id for r in results] == [r.id for r in rows]

    async def test_failed_token_does_not_abort_others(self, dispatcher, transport, add_user, session_factory):
        await add_user(fcm_tokens=["fcm-bad", "fcm-good"])
        transport.failing.add("fcm-bad")

        results = await dispatcher.send(NotificationTarget(user_id="u1"), _message())

        assert [r.success for r in results] == [False, True]
        assert "Rejected" in results[0].error
        rows = await _sent_rows(session_factory)
        assert [r.delivered for r in rows] == [False, True]
        assert rows[0].error_message

    async def test_each_user_gets_their_own_name(self, dispatcher, transport, add_user):
        await add_user("u1", first_name="Ana", fcm_tokens=["t1"])
        await add_user("u2", first_name=None, fcm_tokens=["t2"])

        await dispatcher.send(NotificationTarget(user_ids=["u1", "u2"]), _message())

        assert transport.titles() == ["Hi Ana", "Hi there"]

    async def test_template_send_personalizes_per_user(self, dispatcher, transport, add_user):
        await add_user("u1", first_name="Ana", fcm_tokens=["t1"])
        await add_user("u2", first_name="Mia", fcm_tokens=["t2"])

        await dispatcher.send_template(NotificationTarget(), "morning_routine_basic")

        assert transport.titles() == ["Good morning, Ana! ☀️", "Good morning, Mia! ☀️"]

    async def test_disabled_category_is_skipped(self, dispatcher, transport, add_user):
        await add_user(prefs={"promotional": False})

        results = await dispatcher.send_template(
            NotificationTarget(user_id="u1"), "flash_sale", {"discount": "20"}
        )

        assert results == []
        assert transport.sent == []

    async def test_urgent_ignores_toggles_and_quiet_hours(self, dispatcher, transport, add_user):
        await add_user(prefs={"appointments": False, "quiet_hours_start": "08:00", "quiet_hours_end": "10:00"})

        normal = await dispatcher.send(NotificationTarget(user_id="u1"), _message())
        urgent = await dispatcher.send_template(NotificationTarget(user_id="u1"), "appointment_reminder_2h")

        assert normal == []
        assert len(urgent) == 1 and urgent[0].success

    async def test_daily_cap_stops_further_sends(self, dispatcher, transport, add_user):
        await add_user(prefs={"max_per_day": 2})

        for _ in range(4):
            await dispatcher.send(NotificationTarget(user_id="u1"), _message())

        assert len(transport.sent) == 2

    async def test_user_without_devices(self, dispatcher, transport, add_user, session_factory):
        await add_user(fcm_tokens=[], apns_tokens=[])

        assert await dispatcher.send(NotificationTarget(user_id="u1"), _message()) == []
        assert await _sent_rows(session_factory) == []

    async def test_sent_at_comes_from_clock(self, dispatcher, add_user, session_factory, clock):
        await add_user()
        clock.advance(minutes=5)

        await dispatcher.send(NotificationTarget(user_id="u1"), _message(), priority=Priority.HIGH)

        rows = await _sent_rows(session_factory)
        assert rows[0].sent_at == NOW + timedelta(minutes=5)
