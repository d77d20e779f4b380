"""
Tests for syncgate/services/health_report.py - queue stats, source health
and the pipeline snapshot.
"""
from datetime import timedelta

from syncgate.models.webhook_event import WebhookEvent
from syncgate.services import health_report
from syncgate.utils.timeutil import utcnow
from tests.helpers import make_queue_item


def _event(source="shopify", status="completed", received_at=None, **fields):
    return WebhookEvent(
        source=source,
        event_type="customers/create",
        payload={},
        payload_hash="c" * 64,
        processing_status=status,
        received_at=received_at or utcnow(),
        **fields,
    )


class TestQueueStats:
    async def test_grouped_by_source_and_status(self, db):
        db.add_all([
            make_queue_item(source="shopify", status="pending", retry_count=0),
            make_queue_item(source="shopify", status="pending", retry_count=2),
            make_queue_item(source="shopify", status="failed", retry_count=3),
            make_queue_item(source="kajabi", status="completed"),
        ])
        await db.commit()

        stats = await health_report.get_sync_queue_stats(db)

        assert stats == [
            {"source": "kajabi", "status": "completed", "count": 1, "avg_retry_count": 0.0},
            {"source": "shopify", "status": "failed", "count": 1, "avg_retry_count": 3.0},
            {"source": "shopify", "status": "pending", "count": 2, "avg_retry_count": 1.0},
        ]

    async def test_empty_queue(self, db):
        assert await health_report.get_sync_queue_stats(db) == []


class TestSourceHealth:
    async def test_success_rate_excludes_duplicates(self, db):
        original = _event(status="completed")
        db.add(original)
        await db.flush()
        db.add_all([
            _event(status="completed"),
            _event(status="failed"),
            _event(status="processing"),
            _event(status="completed", duplicate_of_id=original.id),
            _event(source="kajabi", status="failed"),
        ])
        await db.commit()

        health = await health_report.source_health(db, "shopify")

        assert health["source"] == "shopify"
        assert health["total"] == 4
        assert health["successful"] == 2
        assert health["failed"] == 1
        assert health["success_rate"] == 50.0
        assert health["last_event_at"] is not None

    async def test_unknown_source(self, db):
        health = await health_report.source_health(db, "clickup")
        assert health["total"] == 0
        assert health["success_rate"] == 0.0
        assert health["last_event_at"] is None


class TestSnapshot:
    async def test_window_counts_and_rates(self, db):
        now = utcnow()
        db.add_all([
            _event(source="shopify", status="completed", received_at=now - timedelta(minutes=5)),
            _event(source="shopify", status="processing", received_at=now - timedelta(minutes=1)),
            _event(source="kajabi", status="failed", received_at=now - timedelta(minutes=10)),
            _event(source="kajabi", status="completed", received_at=now - timedelta(hours=3)),
            make_queue_item(
                source="shopify", status="completed",
                started_at=now - timedelta(seconds=10), processed_at=now - timedelta(seconds=8),
                updated_at=now - timedelta(seconds=8),
            ),
            make_queue_item(
                source="shopify", status="completed",
                started_at=now - timedelta(seconds=10), processed_at=now - timedelta(seconds=6),
                updated_at=now - timedelta(seconds=6),
            ),
            make_queue_item(source="kajabi", status="failed", updated_at=now - timedelta(minutes=2)),
            make_queue_item(source="kajabi", status="pending", updated_at=now - timedelta(minutes=2)),
            make_queue_item(source="kajabi", status="failed", updated_at=now - timedelta(days=2)),
        ])
        await db.commit()

        snap = await health_report.snapshot(db, window_minutes=60, now=now)

        assert snap["window_minutes"] == 60
        assert snap["webhook_events"] == {
            "shopify": {"completed": 1, "processing": 1},
            "kajabi": {"failed": 1},
        }
        assert snap["sync_items"] == {
            "shopify": {"completed": 2},
            "kajabi": {"failed": 1, "pending": 1},
        }
        assert snap["success_rate"] == round(2 / 3 * 100, 2)
        assert snap["avg_processing_duration_seconds"] == 3.0
        assert snap["queue_depth"] == 1
        assert snap["dead_letters"] == 2

    async def test_empty_window(self, db):
        snap = await health_report.snapshot(db, window_minutes=5)
        assert snap["webhook_events"] == {}
        assert snap["sync_items"] == {}
        assert snap["success_rate"] == 0.0
        assert snap["avg_processing_duration_seconds"] is None
