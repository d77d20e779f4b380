"""
Tests for the background workers: sync worker pool, stale claim sweeper and
retention pruner.
"""
from datetime import timedelta
from unittest.mock import AsyncMock, patch

from sqlalchemy import select

from syncgate.errors import ClaimLostError
from syncgate.models.sync_queue_item import SyncQueueItem
from syncgate.models.synced_entity import SyncedEntity
from syncgate.models.webhook_event import WebhookEvent
from syncgate.services.ingestion import ingest_webhook
from syncgate.services.sync_processor import SyncResult
from syncgate.utils.timeutil import utcnow
from syncgate.workers import event_retention, stale_claim_sweeper, sync_worker
from tests.helpers import encode, make_queue_item, reload, sign_base64


async def _event_with_item(db, **item_fields):
    event = WebhookEvent(
        source="shopify", event_type="customers/create", payload={}, payload_hash="d" * 64,
        processing_status="processing",
    )
    db.add(event)
    await db.flush()
    item = make_queue_item(webhook_event_id=event.id, **item_fields)
    db.add(item)
    await db.commit()
    return event, item


class TestProcessOne:
    async def test_empty_queue(self, session_factory):
        assert await sync_worker.process_one("w1", session_factory) is None

    async def test_success_completes_item_and_settles_event(self, db, session_factory):
        event, item = await _event_with_item(db)

        result = await sync_worker.process_one("w1", session_factory)

        assert result.ok
        stored = await reload(db, SyncQueueItem, item.id)
        assert stored.status == "completed"
        assert stored.claimed_by == "w1"
        stored_event = await reload(db, WebhookEvent, event.id)
        assert stored_event.processing_status == "completed"
        entities = (await db.execute(select(SyncedEntity))).scalars().all()
        assert len(entities) == 1

    async def test_retryable_failure_reschedules(self, db, session_factory):
        event, item = await _event_with_item(db)
        retry = SyncResult(SyncResult.RETRYABLE, "downstream unavailable")

        with patch("syncgate.services.sync_processor.process", new=AsyncMock(return_value=retry)):
            result = await sync_worker.process_one("w1", session_factory)

        assert result.outcome == SyncResult.RETRYABLE
        stored = await reload(db, SyncQueueItem, item.id)
        assert stored.status == "pending"
        assert stored.retry_count == 1
        assert stored.error_message == "downstream unavailable"
        stored_event = await reload(db, WebhookEvent, event.id)
        assert stored_event.processing_status == "processing"

    async def test_permanent_failure_dead_letters_and_alerts(self, db, session_factory):
        event, item = await _event_with_item(db)
        permanent = SyncResult(SyncResult.PERMANENT, "unknown customer reference")

        with patch("syncgate.services.sync_processor.process", new=AsyncMock(return_value=permanent)), \
                patch("syncgate.utils.alerting.send_alert", new_callable=AsyncMock) as alert:
            await sync_worker.process_one("w1", session_factory)

        stored = await reload(db, SyncQueueItem, item.id)
        assert stored.status == "failed"
        assert stored.failure_kind == "permanent"
        stored_event = await reload(db, WebhookEvent, event.id)
        assert stored_event.processing_status == "failed"
        assert stored_event.error_message == "1 of 1 sync items failed"

        alert.assert_awaited_once()
        assert alert.await_args.args[0] == "dead_letter_permanent"
        assert alert.await_args.kwargs["cooldown_key"] == "shopify"

    async def test_exhausted_budget_alerts(self, db, session_factory):
        _, item = await _event_with_item(db, retry_count=2, max_retries=3)
        retry = SyncResult(SyncResult.RETRYABLE, "timeout")

        with patch("syncgate.services.sync_processor.process", new=AsyncMock(return_value=retry)), \
                patch("syncgate.utils.alerting.send_alert", new_callable=AsyncMock) as alert:
            await sync_worker.process_one("w1", session_factory)

        stored = await reload(db, SyncQueueItem, item.id)
        assert stored.status == "failed"
        assert stored.failure_kind == "exhausted"
        assert alert.await_args.args[0] == "dead_letter_exhausted"

    async def test_claim_lost_discards_apply(self, db, session_factory):
        _, item = await _event_with_item(db)

        with patch("syncgate.services.sync_queue.complete", new=AsyncMock(side_effect=ClaimLostError("gone"))):
            result = await sync_worker.process_one("w1", session_factory)

        assert result.ok
        entities = (await db.execute(select(SyncedEntity))).scalars().all()
        assert entities == []
        stored = await reload(db, SyncQueueItem, item.id)
        assert stored.status == "processing"

    async def test_ingested_webhook_flows_to_entity(self, db, session_factory):
        payload = {"id": 7001, "email": "jane@example.com", "first_name": "Jane"}
        body = encode(payload)
        headers = {
            "X-Shopify-Hmac-Sha256": sign_base64("shopify_test_secret", body),
            "X-Shopify-Topic": "customers/create",
            "X-Shopify-Webhook-Id": "wh-e2e",
        }
        ingested = await ingest_webhook(db, "shopify", headers, body, payload)

        assert await sync_worker.process_one("w1", session_factory) is not None
        assert await sync_worker.process_one("w1", session_factory) is None

        event = await reload(db, WebhookEvent, ingested.event_id)
        assert event.processing_status == "completed"
        entity = (await db.execute(select(SyncedEntity))).scalar_one()
        assert entity.match_key == "email:jane@example.com"
        assert entity.attributes["first_name"] == "Jane"


class TestWorkerLoop:
    def test_worker_identity(self):
        identity = sync_worker.worker_identity(2)
        host, pid, index = identity.rsplit(":", 2)
        assert host
        assert pid.isdigit()
        assert index == "2"
        assert sync_worker.heartbeat_name(2) == "sync_worker_2"

    async def test_process_available_drains_until_empty(self):
        ok = SyncResult(SyncResult.SUCCESS)
        with patch("syncgate.workers.sync_worker.process_one", new=AsyncMock(side_effect=[ok, ok, None])) as one:
            assert await sync_worker.process_available("w1") == 2
        assert one.await_count == 3

    async def test_process_available_respects_cap(self):
        ok = SyncResult(SyncResult.SUCCESS)
        with patch("syncgate.workers.sync_worker.process_one", new=AsyncMock(return_value=ok)):
            assert await sync_worker.process_available("w1", max_items=5) == 5

    async def test_wait_for_work_uses_brpop(self, mock_redis):
        with patch("syncgate.workers.sync_worker.get_redis", new=AsyncMock(return_value=mock_redis)):
            await sync_worker._wait_for_work(5)
        mock_redis.brpop.assert_awaited_once_with("syncgate:sync_notify", timeout=5)

    async def test_wait_for_work_falls_back_to_sleep(self):
        with patch("syncgate.workers.sync_worker.get_redis", new=AsyncMock(side_effect=ConnectionError("down"))), \
                patch("syncgate.workers.sync_worker.asyncio.sleep", new_callable=AsyncMock) as sleep:
            await sync_worker._wait_for_work(5)
        sleep.assert_awaited_once_with(5)


class TestStaleClaimSweeper:
    async def test_releases_old_claims(self, db, session_factory):
        old = utcnow() - timedelta(hours=1)
        stuck = make_queue_item(status="processing", claim_token="t1", claimed_by="dead:1:0", claimed_at=old)
        fresh = make_queue_item(status="processing", claim_token="t2", claimed_by="live:1:0", claimed_at=utcnow())
        db.add_all([stuck, fresh])
        await db.commit()

        with patch("syncgate.utils.alerting.send_alert", new_callable=AsyncMock) as alert, \
                patch("syncgate.services.sync_queue.notify_workers", new_callable=AsyncMock) as notify:
            released = await stale_claim_sweeper.sweep_stale_claims(session_factory)

        assert released == 1
        assert (await reload(db, SyncQueueItem, stuck.id)).status == "pending"
        assert (await reload(db, SyncQueueItem, fresh.id)).status == "processing"
        alert.assert_awaited_once()
        assert alert.await_args.kwargs["severity"] == "warning"
        notify.assert_awaited_once_with(1)

    async def test_nothing_stale(self, session_factory):
        with patch("syncgate.utils.alerting.send_alert", new_callable=AsyncMock) as alert:
            assert await stale_claim_sweeper.sweep_stale_claims(session_factory) == 0
        alert.assert_not_awaited()


class TestEventRetention:
    async def test_prunes_expired_rows(self, db, session_factory):
        now = utcnow()
        old_event = WebhookEvent(
            source="shopify", event_type="x", payload={}, payload_hash="e" * 64,
            processing_status="completed", received_at=now - timedelta(days=40),
        )
        referenced_event = WebhookEvent(
            source="shopify", event_type="x", payload={}, payload_hash="f" * 64,
            processing_status="failed", received_at=now - timedelta(days=40),
        )
        open_event = WebhookEvent(
            source="shopify", event_type="x", payload={}, payload_hash="0" * 64,
            processing_status="processing", received_at=now - timedelta(days=40),
        )
        db.add_all([old_event, referenced_event, open_event])
        await db.flush()
        old_completed = make_queue_item(status="completed", processed_at=now - timedelta(days=31))
        recent_completed = make_queue_item(status="completed", processed_at=now - timedelta(days=1))
        old_dead = make_queue_item(status="failed", processed_at=now - timedelta(days=91))
        kept_dead = make_queue_item(
            status="failed", processed_at=now - timedelta(days=40), webhook_event_id=referenced_event.id,
        )
        db.add_all([old_completed, recent_completed, old_dead, kept_dead])
        await db.commit()

        counts = await event_retention.prune_cycle(session_factory, now=now)

        assert counts == {"completed_items": 1, "dead_letters": 1, "webhook_events": 1}
        remaining_items = set((await db.execute(select(SyncQueueItem.id))).scalars().all())
        assert remaining_items == {recent_completed.id, kept_dead.id}
        remaining_events = set((await db.execute(select(WebhookEvent.id))).scalars().all())
        assert remaining_events == {referenced_event.id, open_event.id}
