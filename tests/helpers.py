"""
Helpers shared by test modules: signing, payload encoding, queue item factory.
"""
import base64
import hashlib
import hmac
import json
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from syncgate.models.sync_queue_item import SyncQueueItem


def sign_hex(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def sign_base64(secret: str, body: bytes) -> str:
    return base64.b64encode(hmac.new(secret.encode(), body, hashlib.sha256).digest()).decode()


def encode(payload: dict) -> bytes:
    return json.dumps(payload).encode()


def make_queue_item(**overrides) -> SyncQueueItem:
    """A due, pending queue item carrying a valid customer record."""
    now = datetime.now(timezone.utc)
    external_id = overrides.pop("entity_id", uuid.uuid4().hex[:10])
    fields = {
        "source": "shopify",
        "action": "upsert",
        "entity_type": "customer",
        "entity_id": external_id,
        "payload": {
            "entity_type": "customer",
            "external_id": external_id,
            "email": f"{external_id}@example.com",
        },
        "priority": 1,
        "status": "pending",
        "retry_count": 0,
        "max_retries": 3,
        "scheduled_for": now - timedelta(seconds=1),
        "created_at": now,
        "updated_at": now,
    }
    fields.update(overrides)
    return SyncQueueItem(**fields)


async def reload(db: AsyncSession, model, obj_id):
    """Fresh read that bypasses the identity map."""
    result = await db.execute(
        select(model).where(model.id == obj_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()
