"""
Tests for durable notification dispatch and the notification endpoints
"""
import json
import pytest

from app.modules.notifications.models import NotificationType, NotificationPriority
from app.modules.notifications.schemas import NotificationEvent
from app.modules.notifications.services import NotificationService


class FakeRedis:
    def __init__(self, fail=False):
        self.fail = fail
        self.published = []

    async def publish(self, channel, message):
        if self.fail:
            raise ConnectionError("redis unavailable")
        self.published.append((channel, message))


def event_for(user_id, title="Transfer sent") -> NotificationEvent:
    return NotificationEvent(
        user_id=user_id,
        type=NotificationType.TRANSACTION_COMPLETED,
        title=title,
        message="You sent $50.00 (fee $1.00).",
        related_entity_type="transaction",
        related_entity_id=1,
        data={"amount": "50.00"}
    )


def service_with(session_factory, redis=None) -> NotificationService:
    async def redis_getter():
        return redis

    return NotificationService(session_factory=session_factory, redis_getter=redis_getter)


class TestNotificationDispatch:

    @pytest.mark.unit
    async def test_stores_and_publishes(self, session_factory, db_session, alice):
        redis = FakeRedis()

        await service_with(session_factory, redis).notify(event_for(alice.user_id))

        notifications, total, unread = await NotificationService.get_user_notifications(db_session, alice.user_id)
        assert total == 1
        assert unread == 1
        assert notifications[0].extra_data == {"amount": "50.00"}
        assert notifications[0].priority == NotificationPriority.NORMAL

        channel, message = redis.published[0]
        assert channel == f"notifications:{alice.user_id}"
        assert json.loads(message)["title"] == "Transfer sent"

    @pytest.mark.unit
    async def test_without_redis(self, session_factory, db_session, alice):
        await service_with(session_factory, None).notify(event_for(alice.user_id))
        assert await NotificationService.get_unread_count(db_session, alice.user_id) == 1

    @pytest.mark.unit
    async def test_publish_failure_keeps_stored_row(self, session_factory, db_session, alice):
        await service_with(session_factory, FakeRedis(fail=True)).notify(event_for(alice.user_id))
        assert await NotificationService.get_unread_count(db_session, alice.user_id) == 1

    @pytest.mark.unit
    async def test_storage_failure_is_swallowed(self, alice):
        def broken_factory():
            raise RuntimeError("database unavailable")

        await service_with(broken_factory).notify(event_for(alice.user_id))


class TestNotificationReads:

    @pytest.mark.unit
    async def test_mark_read(self, session_factory, db_session, alice):
        service = service_with(session_factory)
        await service.notify(event_for(alice.user_id, "first"))
        await service.notify(event_for(alice.user_id, "second"))

        notifications, _, _ = await NotificationService.get_user_notifications(db_session, alice.user_id)
        read = await NotificationService.mark_as_read(db_session, alice.user_id, notifications[0].id)

        assert read.is_read is True
        assert read.read_at is not None
        assert await NotificationService.get_unread_count(db_session, alice.user_id) == 1
        assert await NotificationService.mark_as_read(db_session, alice.user_id + 100, notifications[1].id) is None

        assert await NotificationService.mark_all_as_read(db_session, alice.user_id) == 1
        assert await NotificationService.get_unread_count(db_session, alice.user_id) == 0

    @pytest.mark.unit
    async def test_endpoints(self, client, session_factory, alice, alice_headers):
        await service_with(session_factory).notify(event_for(alice.user_id))

        response = await client.get("/api/v1/notifications", headers=alice_headers)
        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["notifications"][0]["type"] == "transaction_completed"

        response = await client.get("/api/v1/notifications/unread-count", headers=alice_headers)
        assert response.json() == {"unread_count": 1}

        response = await client.post("/api/v1/notifications/read-all", headers=alice_headers)
        assert response.json() == {"updated": 1}

        response = await client.post("/api/v1/notifications/999/read", headers=alice_headers)
        assert response.status_code == 404
