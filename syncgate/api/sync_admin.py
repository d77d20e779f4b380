"""
Operational sync API - queue statistics, pipeline health and dead-letter
handling for operators. All endpoints require the X-Admin-Token header.
"""
import hmac
import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from syncgate.database import get_db
from syncgate.models.webhook_event import EVENT_STATUSES
from syncgate.schemas.api_responses import (
    DeadLetterItem,
    QueueStatRow,
    RequeueResponse,
    SourceHealthResponse,
    WebhookEventItem,
)
from syncgate.services import event_store, health_report, sync_queue

logger = logging.getLogger(__name__)


async def require_admin_token(x_admin_token: Optional[str] = Header(default=None)) -> None:
    """Dependency that requires a valid X-Admin-Token header."""
    from syncgate.config import get_settings
    expected = get_settings().admin_api_token
    if not expected:
        raise HTTPException(status_code=503, detail="Admin API disabled (ADMIN_API_TOKEN not set)")
    if not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        raise HTTPException(status_code=401, detail="Invalid admin token")


router = APIRouter(
    prefix="/api/v1/sync",
    tags=["sync-admin"],
    dependencies=[Depends(require_admin_token)],
)


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


@router.get("/stats", response_model=list[QueueStatRow])
async def queue_stats(db: AsyncSession = Depends(get_db)):
    """Queue items by source and status."""
    return await health_report.get_sync_queue_stats(db)


@router.get("/health")
async def pipeline_health(
    window_minutes: int = Query(default=60, ge=1, le=7 * 24 * 60),
    db: AsyncSession = Depends(get_db),
):
    """Pipeline snapshot over a trailing window."""
    return await health_report.snapshot(db, window_minutes=window_minutes)


@router.get("/sources/{source}/health", response_model=SourceHealthResponse)
async def source_health(source: str, db: AsyncSession = Depends(get_db)):
    return await health_report.source_health(db, source)


@router.get("/events", response_model=list[WebhookEventItem])
async def webhook_events(
    source: Optional[str] = None,
    status: Optional[str] = None,
    event_type: Optional[str] = None,
    include_payload: bool = False,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    """Webhook event log, most recent first. Stored payloads have credentials stripped."""
    if status is not None and status not in EVENT_STATUSES:
        raise HTTPException(status_code=400, detail=f"Unknown status '{status}'")
    events = await event_store.list_events(
        db, source=source, status=status, event_type=event_type, limit=limit, offset=offset,
    )
    return [
        WebhookEventItem(
            id=str(event.id),
            source=event.source,
            event_type=event.event_type,
            external_event_id=event.external_event_id,
            processing_status=event.processing_status,
            trust_level=event.trust_level,
            retry_count=event.retry_count,
            error_message=event.error_message,
            duplicate_of_id=str(event.duplicate_of_id) if event.duplicate_of_id else None,
            correlation_id=event.correlation_id,
            received_at=_iso(event.received_at),
            processed_at=_iso(event.processed_at),
            payload=event.payload if include_payload else None,
        )
        for event in events
    ]


@router.get("/dead-letters", response_model=list[DeadLetterItem])
async def dead_letters(
    source: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    """Dead-lettered sync items, most recent first."""
    items = await sync_queue.list_dead_letters(db, source=source, limit=limit, offset=offset)
    return [
        DeadLetterItem(
            id=str(item.id),
            webhook_event_id=str(item.webhook_event_id) if item.webhook_event_id else None,
            source=item.source,
            action=item.action,
            entity_type=item.entity_type,
            entity_id=item.entity_id,
            priority=item.priority,
            retry_count=item.retry_count,
            max_retries=item.max_retries,
            failure_kind=item.failure_kind,
            error_message=item.error_message,
            processed_at=_iso(item.processed_at),
            created_at=_iso(item.created_at),
        )
        for item in items
    ]


@router.post("/dead-letters/{item_id}/requeue", response_model=RequeueResponse)
async def requeue_dead_letter(item_id: str, db: AsyncSession = Depends(get_db)):
    """Send a dead letter back to the queue with a fresh retry budget."""
    try:
        item_uuid = uuid.UUID(item_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid item id")

    try:
        item = await sync_queue.requeue_dead_letter(db, item_uuid)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if item is None:
        raise HTTPException(status_code=404, detail="Sync item not found")

    await db.commit()
    await sync_queue.notify_workers(1)
    logger.info("Operator requeued dead letter %s", item_id[:8])

    return RequeueResponse(
        id=str(item.id),
        status=item.status,
        retry_count=item.retry_count,
        scheduled_for=item.scheduled_for.isoformat(),
    )
