"""
Tests for syncgate/services/event_store.py - webhook audit log and settlement.
"""
import uuid

from sqlalchemy import select, func

from syncgate.models.webhook_event import WebhookEvent
from syncgate.services import event_store
from tests.helpers import make_queue_item, reload


async def _record(db, **overrides):
    fields = {
        "source": "shopify",
        "event_type": "customers/create",
        "payload": {"id": 1},
        "payload_hash": "a" * 64,
        "external_event_id": "wh-1",
    }
    fields.update(overrides)
    return await event_store.record_event(db, **fields)


class TestIdempotencyKey:
    def test_prefers_external_event_id(self):
        key = event_store.build_idempotency_key("shopify", "orders/create", "wh-9", "f" * 64)
        assert key == "shopify:wh-9"

    def test_falls_back_to_content_hash(self):
        key = event_store.build_idempotency_key("facebook", "user", None, "f" * 64)
        assert key == "facebook:user:" + "f" * 64


class TestRecordEvent:
    async def test_first_delivery_gets_key(self, db):
        event, original = await _record(db)
        await db.commit()

        assert original is None
        assert event.idempotency_key == "shopify:wh-1"
        assert event.processing_status == "received"
        assert event.trust_level == "high"

    async def test_duplicate_delivery_points_at_original(self, db):
        first, _ = await _record(db)
        await db.commit()

        duplicate, original = await _record(db, payload={"id": 1, "again": True})
        await db.commit()

        assert original.id == first.id
        assert duplicate.id != first.id
        assert duplicate.duplicate_of_id == first.id
        assert duplicate.idempotency_key is None
        assert duplicate.processing_status == "completed"

        total = (await db.execute(select(func.count(WebhookEvent.id)))).scalar()
        assert total == 2

    async def test_same_content_without_event_id_is_duplicate(self, db):
        await _record(db, source="facebook", event_type="user", external_event_id=None)
        await db.commit()
        _, original = await _record(db, source="facebook", event_type="user", external_event_id=None)
        assert original is not None

    async def test_rejected_event_takes_no_key(self, db):
        rejected = await event_store.record_rejected_event(
            db, "shopify", "customers/create", {"id": 1}, "a" * 64,
            error_message="invalid_signature: bad", external_event_id="wh-1",
        )
        await db.commit()
        assert rejected.processing_status == "failed"
        assert rejected.trust_level == "low"
        assert rejected.idempotency_key is None

        # A later authentic delivery of the same event is still accepted
        event, original = await _record(db)
        assert original is None
        assert event.idempotency_key == "shopify:wh-1"


class TestSettleEvent:
    async def _event_with_items(self, db, statuses):
        event, _ = await _record(db, external_event_id=uuid.uuid4().hex)
        event.processing_status = "processing"
        for status in statuses:
            db.add(make_queue_item(webhook_event_id=event.id, status=status))
        await db.commit()
        return event

    async def test_all_completed(self, db):
        event = await self._event_with_items(db, ["completed", "completed"])
        assert await event_store.settle_event(db, event.id) == "completed"
        await db.commit()
        stored = await reload(db, WebhookEvent, event.id)
        assert stored.processing_status == "completed"
        assert stored.processed_at is not None

    async def test_any_failed(self, db):
        event = await self._event_with_items(db, ["completed", "failed"])
        assert await event_store.settle_event(db, event.id) == "failed"
        assert event.error_message == "1 of 2 sync items failed"

    async def test_in_flight_items_leave_event_open(self, db):
        event = await self._event_with_items(db, ["completed", "pending"])
        assert await event_store.settle_event(db, event.id) is None
        assert event.processing_status == "processing"

    async def test_already_terminal_event_untouched(self, db):
        event = await self._event_with_items(db, ["completed"])
        event.processing_status = "completed"
        await db.commit()
        assert await event_store.settle_event(db, event.id) is None

    async def test_retried_event_settles(self, db):
        event = await self._event_with_items(db, ["completed"])
        await event_store.mark_event_retried(db, event.id)
        assert event.processing_status == "retried"
        assert event.retry_count == 1
        assert await event_store.settle_event(db, event.id) == "completed"


class TestSanitizePayload:
    def test_strips_credentials_at_any_depth(self):
        payload = {
            "id": 7,
            "Password": "hunter2",
            "customer": {"email": "a@example.com", "API_KEY": "k", "token": "t"},
            "credentials": [{"secret": "s", "name": "primary"}],
        }

        assert event_store.sanitize_payload(payload) == {
            "id": 7,
            "customer": {"email": "a@example.com"},
            "credentials": [{"name": "primary"}],
        }

    def test_leaves_input_untouched(self):
        payload = {"token": "t", "id": 1}
        event_store.sanitize_payload(payload)
        assert payload == {"token": "t", "id": 1}

    def test_similar_keys_kept(self):
        payload = {"token_type": "bearer", "secret_santa": True}
        assert event_store.sanitize_payload(payload) == payload

    async def test_stored_event_payload_is_sanitized(self, db):
        event, _ = await _record(db, payload={"id": 1, "data": {"password": "pw", "email": "b@example.com"}})
        await db.commit()

        stored = await reload(db, WebhookEvent, event.id)
        assert stored.payload == {"id": 1, "data": {"email": "b@example.com"}}

    async def test_rejected_event_payload_is_sanitized(self, db):
        event = await event_store.record_rejected_event(
            db, "n8n", "customer.sync", {"event": "customer.sync", "token": "leaked"}, "d" * 64,
            error_message="invalid_signature: bad token",
        )
        await db.commit()

        stored = await reload(db, WebhookEvent, event.id)
        assert stored.payload == {"event": "customer.sync"}
