"""
Tests for syncgate/api/sync_admin.py - operator endpoints behind X-Admin-Token.
"""
import uuid
from datetime import timedelta

import httpx
import pytest

from syncgate.models.sync_queue_item import SyncQueueItem
from syncgate.models.webhook_event import WebhookEvent
from syncgate.utils.timeutil import utcnow
from tests.helpers import make_queue_item, reload

ADMIN = {"X-Admin-Token": "admin_test_token"}


@pytest.fixture
async def client(session_factory):
    from syncgate.database import get_db
    from syncgate.main import app

    async def _get_db():
        async with session_factory() as session:
            yield session
            await session.commit()

    app.dependency_overrides[get_db] = _get_db
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


class TestAdminAuth:
    async def test_missing_token_401(self, client):
        response = await client.get("/api/v1/sync/stats")
        assert response.status_code == 401

    async def test_wrong_token_401(self, client):
        response = await client.get("/api/v1/sync/stats", headers={"X-Admin-Token": "nope"})
        assert response.status_code == 401

    async def test_disabled_without_configured_token(self, client, monkeypatch):
        from syncgate.config import get_settings

        monkeypatch.setenv("ADMIN_API_TOKEN", "")
        get_settings.cache_clear()
        response = await client.get("/api/v1/sync/stats", headers=ADMIN)
        assert response.status_code == 503


class TestAdminEndpoints:
    async def test_stats(self, client, db):
        db.add_all([make_queue_item(status="pending"), make_queue_item(status="pending", retry_count=2)])
        await db.commit()

        response = await client.get("/api/v1/sync/stats", headers=ADMIN)

        assert response.status_code == 200
        assert response.json() == [
            {"source": "shopify", "status": "pending", "count": 2, "avg_retry_count": 1.0},
        ]

    async def test_pipeline_health(self, client, db):
        db.add(make_queue_item(status="failed"))
        await db.commit()

        response = await client.get("/api/v1/sync/health?window_minutes=30", headers=ADMIN)

        assert response.status_code == 200
        data = response.json()
        assert data["window_minutes"] == 30
        assert data["dead_letters"] == 1
        assert data["sync_items"] == {"shopify": {"failed": 1}}

    async def test_pipeline_health_window_validated(self, client):
        response = await client.get("/api/v1/sync/health?window_minutes=0", headers=ADMIN)
        assert response.status_code == 422

    async def test_source_health(self, client, db):
        db.add(WebhookEvent(
            source="kajabi", event_type="person.created", payload={}, payload_hash="a" * 64,
            processing_status="completed",
        ))
        await db.commit()

        response = await client.get("/api/v1/sync/sources/kajabi/health", headers=ADMIN)

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["success_rate"] == 100.0

    async def test_list_dead_letters(self, client, db):
        now = utcnow()
        db.add_all([
            make_queue_item(status="failed", failure_kind="exhausted", error_message="timeout",
                            processed_at=now - timedelta(minutes=1)),
            make_queue_item(status="failed", source="kajabi", processed_at=now),
            make_queue_item(status="pending"),
        ])
        await db.commit()

        response = await client.get("/api/v1/sync/dead-letters?source=shopify", headers=ADMIN)

        assert response.status_code == 200
        data = response.json()
        assert len(data) == 1
        assert data[0]["failure_kind"] == "exhausted"
        assert data[0]["error_message"] == "timeout"

    async def test_requeue_dead_letter(self, client, db):
        item = make_queue_item(status="failed", retry_count=3, failure_kind="permanent")
        db.add(item)
        await db.commit()

        response = await client.post(f"/api/v1/sync/dead-letters/{item.id}/requeue", headers=ADMIN)

        assert response.status_code == 200
        assert response.json()["status"] == "pending"
        assert response.json()["retry_count"] == 0
        stored = await reload(db, SyncQueueItem, item.id)
        assert stored.status == "pending"

    async def test_requeue_pending_item_conflict(self, client, db):
        item = make_queue_item(status="pending")
        db.add(item)
        await db.commit()

        response = await client.post(f"/api/v1/sync/dead-letters/{item.id}/requeue", headers=ADMIN)
        assert response.status_code == 409

    async def test_requeue_missing_404(self, client):
        response = await client.post(f"/api/v1/sync/dead-letters/{uuid.uuid4()}/requeue", headers=ADMIN)
        assert response.status_code == 404

    async def test_requeue_bad_id_400(self, client):
        response = await client.post("/api/v1/sync/dead-letters/not-a-uuid/requeue", headers=ADMIN)
        assert response.status_code == 400


class TestEventLog:
    async def test_lists_most_recent_first(self, client, db):
        now = utcnow()
        db.add_all([
            WebhookEvent(
                source="clickup", event_type="taskCreated", payload={"task_id": "t1"},
                payload_hash="a" * 64, processing_status="completed",
                received_at=now - timedelta(minutes=5),
            ),
            WebhookEvent(
                source="clickup", event_type="taskUpdated", payload={"task_id": "t1"},
                payload_hash="b" * 64, processing_status="failed", error_message="bad payload",
                received_at=now,
            ),
            WebhookEvent(
                source="shopify", event_type="orders/create", payload={}, payload_hash="c" * 64,
                processing_status="completed", received_at=now,
            ),
        ])
        await db.commit()

        response = await client.get("/api/v1/sync/events?source=clickup", headers=ADMIN)

        assert response.status_code == 200
        data = response.json()
        assert [e["event_type"] for e in data] == ["taskUpdated", "taskCreated"]
        assert data[0]["error_message"] == "bad payload"
        assert data[0]["payload"] is None

    async def test_filters_by_status_with_payload(self, client, db):
        db.add_all([
            WebhookEvent(source="kajabi", event_type="person.created", payload={"id": 1},
                         payload_hash="a" * 64, processing_status="failed"),
            WebhookEvent(source="kajabi", event_type="person.created", payload={"id": 2},
                         payload_hash="b" * 64, processing_status="completed"),
        ])
        await db.commit()

        response = await client.get(
            "/api/v1/sync/events?status=failed&include_payload=true", headers=ADMIN,
        )

        assert response.status_code == 200
        data = response.json()
        assert len(data) == 1
        assert data[0]["payload"] == {"id": 1}

    async def test_unknown_status_400(self, client):
        response = await client.get("/api/v1/sync/events?status=exploded", headers=ADMIN)
        assert response.status_code == 400

    async def test_requires_admin_token(self, client):
        response = await client.get("/api/v1/sync/events")
        assert response.status_code == 401
