"""
Event store - append-only audit log of every webhook delivery.

Every delivery gets a row, including ones that fail verification and
duplicate re-deliveries. Only first deliveries carry an idempotency key;
duplicates point at the original through duplicate_of_id.
"""
import logging
import uuid
from typing import Optional

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from syncgate.models.webhook_event import WebhookEvent
from syncgate.models.sync_queue_item import SyncQueueItem, TERMINAL_QUEUE_STATUSES
from syncgate.utils.logging import get_correlation_id
from syncgate.utils.timeutil import utcnow

logger = logging.getLogger(__name__)

UNPROCESSED_MESSAGE = "acknowledged but not processed"

# Keys dropped from stored payloads, matched case-insensitively at any depth
SENSITIVE_KEYS = frozenset({"password", "secret", "token", "api_key"})


def sanitize_payload(data):
    """Copy of data without credential-like keys. Routing still sees the raw payload."""
    if isinstance(data, dict):
        return {
            key: sanitize_payload(value)
            for key, value in data.items()
            if not (isinstance(key, str) and key.lower() in SENSITIVE_KEYS)
        }
    if isinstance(data, list):
        return [sanitize_payload(value) for value in data]
    return data


def build_idempotency_key(
    source: str,
    event_type: str,
    external_event_id: Optional[str],
    payload_hash: str,
) -> str:
    """Stable per-delivery key: source event id when sent, else the content hash."""
    if external_event_id:
        return f"{source}:{external_event_id}"
    return f"{source}:{event_type}:{payload_hash}"


async def find_by_idempotency_key(db: AsyncSession, key: str) -> Optional[WebhookEvent]:
    result = await db.execute(
        select(WebhookEvent).where(WebhookEvent.idempotency_key == key)
    )
    return result.scalar_one_or_none()


def _new_event(
    source: str,
    event_type: str,
    payload: dict,
    payload_hash: str,
    external_event_id: Optional[str],
    trust_level: str,
    client_ip: Optional[str],
    **kwargs,
) -> WebhookEvent:
    return WebhookEvent(
        source=source,
        event_type=event_type,
        external_event_id=external_event_id,
        payload=sanitize_payload(payload),
        payload_hash=payload_hash,
        trust_level=trust_level,
        client_ip=client_ip,
        correlation_id=get_correlation_id(),
        **kwargs,
    )


async def record_duplicate(
    db: AsyncSession,
    original: WebhookEvent,
    payload: dict,
    payload_hash: str,
    trust_level: str = "high",
    client_ip: Optional[str] = None,
) -> WebhookEvent:
    """Log a re-delivery of an event that is already stored. Never enqueued."""
    event = _new_event(
        original.source, original.event_type, payload, payload_hash,
        original.external_event_id, trust_level, client_ip,
        duplicate_of_id=original.id,
        processing_status="completed",
        error_message=f"duplicate of {original.id}",
        processed_at=utcnow(),
    )
    db.add(event)
    await db.flush()
    logger.info(
        "Duplicate webhook: source=%s type=%s original=%s",
        original.source, original.event_type, str(original.id)[:8],
    )
    return event


async def record_event(
    db: AsyncSession,
    source: str,
    event_type: str,
    payload: dict,
    payload_hash: str,
    external_event_id: Optional[str] = None,
    trust_level: str = "high",
    client_ip: Optional[str] = None,
) -> tuple[WebhookEvent, Optional[WebhookEvent]]:
    """
    Append a verified delivery to the log.

    Returns (event, original). When original is not None the delivery is a
    duplicate: event is the logged duplicate row and nothing should be
    enqueued for it.
    """
    key = build_idempotency_key(source, event_type, external_event_id, payload_hash)

    original = await find_by_idempotency_key(db, key)
    if original is not None:
        duplicate = await record_duplicate(db, original, payload, payload_hash, trust_level, client_ip)
        return duplicate, original

    event = _new_event(
        source, event_type, payload, payload_hash, external_event_id, trust_level, client_ip,
        idempotency_key=key,
        processing_status="received",
    )
    try:
        async with db.begin_nested():
            db.add(event)
            await db.flush()
    except IntegrityError:
        # Concurrent delivery of the same event won the insert
        original = await find_by_idempotency_key(db, key)
        if original is None:
            raise
        duplicate = await record_duplicate(db, original, payload, payload_hash, trust_level, client_ip)
        return duplicate, original

    return event, None


async def record_rejected_event(
    db: AsyncSession,
    source: str,
    event_type: str,
    payload: dict,
    payload_hash: str,
    error_message: str,
    external_event_id: Optional[str] = None,
    client_ip: Optional[str] = None,
) -> WebhookEvent:
    """
    Log a delivery that failed verification. It takes no idempotency key,
    so a later authentic delivery of the same event is still accepted.
    """
    event = _new_event(
        source, event_type, payload, payload_hash, external_event_id, "low", client_ip,
        processing_status="failed",
        error_message=error_message,
        processed_at=utcnow(),
    )
    db.add(event)
    await db.flush()
    return event


def complete_event(
    event: WebhookEvent,
    status: str = "completed",
    error_message: Optional[str] = None,
) -> None:
    """Move an event to a terminal status."""
    event.processing_status = status
    event.error_message = error_message
    event.processed_at = utcnow()


async def settle_event(db: AsyncSession, event_id: uuid.UUID) -> Optional[str]:
    """
    Settle an event once all of its queue items are terminal:
    completed when every item completed, failed otherwise.
    Returns the new status, or None while items are still in flight.
    """
    event = await db.get(WebhookEvent, event_id)
    if event is None or event.processing_status not in ("processing", "retried"):
        return None

    result = await db.execute(
        select(SyncQueueItem.status, func.count())
        .where(SyncQueueItem.webhook_event_id == event_id)
        .group_by(SyncQueueItem.status)
    )
    counts = {status: count for status, count in result.all()}
    if not counts or any(s not in TERMINAL_QUEUE_STATUSES for s in counts):
        return None

    failed = counts.get("failed", 0)
    if failed:
        complete_event(event, "failed", f"{failed} of {sum(counts.values())} sync items failed")
    else:
        complete_event(event, "completed")
    logger.info(
        "Webhook event settled: id=%s status=%s",
        str(event_id)[:8], event.processing_status,
    )
    return event.processing_status


async def mark_event_retried(db: AsyncSession, event_id: uuid.UUID) -> None:
    """Operator re-drove one of this event's dead letters."""
    event = await db.get(WebhookEvent, event_id)
    if event is None:
        return
    event.processing_status = "retried"
    event.retry_count = (event.retry_count or 0) + 1
    event.processed_at = None


async def list_events(
    db: AsyncSession,
    source: Optional[str] = None,
    status: Optional[str] = None,
    event_type: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> list[WebhookEvent]:
    """Event log, most recent first."""
    query = select(WebhookEvent)
    if source:
        query = query.where(WebhookEvent.source == source)
    if status:
        query = query.where(WebhookEvent.processing_status == status)
    if event_type:
        query = query.where(WebhookEvent.event_type == event_type)
    query = query.order_by(WebhookEvent.received_at.desc()).limit(limit).offset(offset)
    result = await db.execute(query)
    return list(result.scalars().all())
