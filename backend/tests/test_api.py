"""API tests over the ASGI app with an in-memory store and fake push transport."""
from datetime import timedelta

import httpx
import pytest
from sqlalchemy import select

from glownotify.main import create_app
from glownotify.models import SentNotification, UserBehaviorRecord

from conftest import NOW

ADMIN = {"X-API-Key": "secret"}
ANA = {"X-User-Id": "u1"}


@pytest.fixture
async def client(session_factory, transport, clock):
    app = create_app(
        session_factory=session_factory,
        transport=transport,
        clock=clock,
        start_scheduler=False,
        admin_api_key="secret",
    )
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client


async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "scheduler": False}


class TestIdentity:
    async def test_missing_header(self, client):
        assert (await client.get("/api/notifications/preferences")).status_code == 401

    async def test_unknown_user(self, client):
        response = await client.get("/api/notifications/preferences", headers={"X-User-Id": "ghost"})
        assert response.status_code == 404


class TestPreferences:
    async def test_defaults(self, client, add_user):
        await add_user()
        response = await client.get("/api/notifications/preferences", headers=ANA)
        assert response.status_code == 200
        body = response.json()
        assert body["morning_time"] == "07:30"
        assert body["max_per_day"] == 3
        assert body["fcm_tokens"] == ["fcm-token-u1"]

    async def test_partial_update(self, client, add_user):
        await add_user()
        response = await client.put(
            "/api/notifications/preferences",
            headers=ANA,
            json={"quiet_hours_start": "22:00", "quiet_hours_end": "07:00", "promotional": False},
        )
        assert response.status_code == 200
        body = response.json()
        assert body["quiet_hours_start"] == "22:00"
        assert body["promotional"] is False
        assert body["gamification"] is True

        cleared = await client.put("/api/notifications/preferences", headers=ANA, json={"quiet_hours_start": None})
        assert cleared.json()["quiet_hours_start"] is None
        assert cleared.json()["quiet_hours_end"] == "07:00"

    @pytest.mark.parametrize("change", [
        {"morning_time": "25:00"},
        {"timezone": "Mars/Olympus_Mons"},
        {"max_per_day": -1},
        {"morning_time": None},
        {"promotional": None},
        {"timezone": None},
    ])
    async def test_invalid_update(self, client, add_user, change):
        await add_user()
        response = await client.put("/api/notifications/preferences", headers=ANA, json=change)
        assert response.status_code == 422


class TestDevices:
    async def test_register_is_deduplicated(self, client, add_user):
        await add_user(fcm_tokens=[])
        for _ in range(2):
            response = await client.post(
                "/api/notifications/devices", headers=ANA, json={"token": "apns-1", "platform": "ios"}
            )
            assert response.status_code == 200
            assert response.json()["device_count"] == 1

        prefs = (await client.get("/api/notifications/preferences", headers=ANA)).json()
        assert prefs["apns_tokens"] == ["apns-1"]

    async def test_unknown_platform(self, client, add_user):
        await add_user()
        response = await client.post(
            "/api/notifications/devices", headers=ANA, json={"token": "x", "platform": "web"}
        )
        assert response.status_code == 422


class TestSend:
    async def test_requires_api_key(self, client, add_user):
        await add_user()
        body = {"target": {"user_id": "u1"}, "payload": {"title": "Hi", "body": "There"}}
        assert (await client.post("/api/notifications/send", json=body)).status_code == 401
        assert (await client.post(
            "/api/notifications/send", json=body, headers={"X-API-Key": "wrong"}
        )).status_code == 401

    async def test_payload_send(self, client, add_user, transport):
        await add_user()
        response = await client.post(
            "/api/notifications/send",
            headers=ADMIN,
            json={"target": {"user_id": "u1"}, "payload": {"title": "Hi {firstName}", "body": "New drop"}},
        )
        assert response.status_code == 200
        body = response.json()
        assert (body["delivered"], body["failed"]) == (1, 0)
        assert body["results"][0]["notification_id"] is not None
        assert transport.titles() == ["Hi Ana"]

    async def test_template_send(self, client, add_user, transport):
        await add_user()
        response = await client.post(
            "/api/notifications/send",
            headers=ADMIN,
            json={"target": {"skin_types": ["oily"]}, "template_id": "weekend_treatment"},
        )
        assert response.json()["delivered"] == 0

        await add_user("u2", fcm_tokens=["t2"], skin_type="oily")
        response = await client.post(
            "/api/notifications/send",
            headers=ADMIN,
            json={"target": {"skin_types": ["oily"]}, "template_id": "weekend_treatment"},
        )
        assert response.json()["delivered"] == 1
        assert transport.sent[0][1] == "t2"

    async def test_invalid_requests(self, client, add_user):
        await add_user()
        both = {"target": {"user_id": "u1", "user_ids": ["u1"]}, "payload": {"title": "a", "body": "b"}}
        assert (await client.post("/api/notifications/send", headers=ADMIN, json=both)).status_code == 400

        unknown = {"target": {"user_id": "u1"}, "template_id": "nope"}
        assert (await client.post("/api/notifications/send", headers=ADMIN, json=unknown)).status_code == 404

        empty = {"target": {"user_id": "u1"}}
        assert (await client.post("/api/notifications/send", headers=ADMIN, json=empty)).status_code == 400

        ambiguous = {
            "target": {"user_id": "u1"},
            "template_id": "weekend_treatment",
            "payload": {"title": "a", "body": "b"},
        }
        assert (await client.post("/api/notifications/send", headers=ADMIN, json=ambiguous)).status_code == 400


class TestTrack:
    async def test_open_is_recorded(self, client, add_user, session_factory):
        await add_user(behavior={"avg_notification_response": 0.95})
        sent = await client.post(
            "/api/notifications/send",
            headers=ADMIN,
            json={"target": {"user_id": "u1"}, "payload": {"title": "Hi", "body": "There"}},
        )
        notification_id = sent.json()["results"][0]["notification_id"]

        response = await client.post(
            "/api/notifications/track", headers=ANA, json={"notification_id": notification_id, "action": "open_app"}
        )
        assert response.status_code == 200

        async with session_factory() as session:
            row = await session.get(SentNotification, notification_id)
            behavior = await session.get(UserBehaviorRecord, "u1")
        assert row.opened is True
        assert row.action_taken == "open_app"
        assert behavior.avg_notification_response == 1.0

    async def test_repeat_open_counts_once(self, client, add_user, session_factory):
        await add_user(behavior={"avg_notification_response": 0.5})
        sent = await client.post(
            "/api/notifications/send",
            headers=ADMIN,
            json={"target": {"user_id": "u1"}, "payload": {"title": "Hi", "body": "There"}},
        )
        notification_id = sent.json()["results"][0]["notification_id"]

        for _ in range(3):
            response = await client.post(
                "/api/notifications/track", headers=ANA, json={"notification_id": notification_id}
            )
            assert response.status_code == 200

        async with session_factory() as session:
            behavior = await session.get(UserBehaviorRecord, "u1")
        assert behavior.avg_notification_response == pytest.approx(0.6)

    async def test_unknown_notification(self, client, add_user):
        await add_user()
        response = await client.post("/api/notifications/track", headers=ANA, json={"notification_id": 404})
        assert response.status_code == 404


class TestScheduled:
    async def test_schedule_and_cancel(self, client, add_user):
        await add_user()
        response = await client.post(
            "/api/notifications/scheduled",
            headers=ANA,
            json={"template_id": "weekend_treatment", "scheduled_for": "2024-06-15T10:00:00Z"},
        )
        assert response.status_code == 201
        created = response.json()
        assert created["status"] == "PENDING"
        assert created["scheduled_for"].startswith("2024-06-15T10:00:00")

        url = f"/api/notifications/scheduled/{created['id']}"
        cancelled = await client.delete(url, headers=ANA)
        assert cancelled.status_code == 200
        assert cancelled.json()["status"] == "CANCELLED"

        assert (await client.delete(url, headers=ANA)).status_code == 409
        assert (await client.delete("/api/notifications/scheduled/999", headers=ANA)).status_code == 404

    async def test_unknown_template(self, client, add_user):
        await add_user()
        response = await client.post(
            "/api/notifications/scheduled",
            headers=ANA,
            json={"template_id": "nope", "scheduled_for": "2024-06-15T10:00:00Z"},
        )
        assert response.status_code == 404


class TestEvents:
    async def test_login_after_long_gap_triggers_reengagement(self, client, add_user, transport, session_factory):
        await add_user(behavior={"last_login_at": NOW - timedelta(days=14)})

        response = await client.post("/api/events", headers=ADMIN, json={"user_id": "u1", "kind": "login"})

        assert response.status_code == 202
        assert response.json() == {"recorded": True, "kind": "login", "triggered": ["reengagement"]}
        assert len(transport.sent) == 1
        async with session_factory() as session:
            result = await session.execute(select(SentNotification.template_id))
            assert result.scalars().all() == ["reengagement"]

    async def test_routine_event(self, client, add_user, session_factory):
        await add_user()
        response = await client.post(
            "/api/events",
            headers=ADMIN,
            json={"user_id": "u1", "kind": "routine_completed", "payload": {"routine_type": "morning"}},
        )
        assert response.status_code == 202
        async with session_factory() as session:
            behavior = await session.get(UserBehaviorRecord, "u1")
        assert behavior.morning_routine_streak == 1

    async def test_bad_events(self, client, add_user):
        await add_user()
        unknown_kind = await client.post("/api/events", headers=ADMIN, json={"user_id": "u1", "kind": "dance"})
        assert unknown_kind.status_code == 400

        unknown_user = await client.post("/api/events", headers=ADMIN, json={"user_id": "ghost", "kind": "login"})
        assert unknown_user.status_code == 404

        assert (await client.post("/api/events", json={"user_id": "u1", "kind": "login"})).status_code == 401
