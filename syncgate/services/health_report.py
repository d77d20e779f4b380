"""
Health and queue metrics - read-only queries over webhook events and sync
queue items. Nothing here writes.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from syncgate.models.sync_queue_item import SyncQueueItem
from syncgate.models.webhook_event import WebhookEvent
from syncgate.utils.timeutil import ensure_utc, utcnow

logger = logging.getLogger(__name__)


def _rate(successful: int, total: int) -> float:
    if not total:
        return 0.0
    return round(successful / total * 100, 2)


async def get_sync_queue_stats(db: AsyncSession) -> list[dict]:
    """Queue items grouped by source and status, with average retry count."""
    result = await db.execute(
        select(
            SyncQueueItem.source,
            SyncQueueItem.status,
            func.count(SyncQueueItem.id),
            func.avg(SyncQueueItem.retry_count),
        )
        .group_by(SyncQueueItem.source, SyncQueueItem.status)
        .order_by(SyncQueueItem.source, SyncQueueItem.status)
    )
    return [
        {
            "source": source,
            "status": status,
            "count": count,
            "avg_retry_count": round(float(avg_retry or 0), 2),
        }
        for source, status, count, avg_retry in result.all()
    ]


async def source_health(db: AsyncSession, source: str) -> dict:
    """Delivery health for one source: totals, success rate, last event time."""
    result = await db.execute(
        select(WebhookEvent.processing_status, func.count(WebhookEvent.id))
        .where(and_(
            WebhookEvent.source == source,
            WebhookEvent.duplicate_of_id.is_(None),
        ))
        .group_by(WebhookEvent.processing_status)
    )
    counts = {status: count for status, count in result.all()}
    total = sum(counts.values())
    successful = counts.get("completed", 0)

    last_event_at = (await db.execute(
        select(func.max(WebhookEvent.received_at)).where(WebhookEvent.source == source)
    )).scalar()

    return {
        "source": source,
        "total": total,
        "successful": successful,
        "failed": counts.get("failed", 0),
        "success_rate": _rate(successful, total),
        "last_event_at": ensure_utc(last_event_at).isoformat() if last_event_at else None,
    }


async def snapshot(
    db: AsyncSession,
    window_minutes: int = 60,
    now: Optional[datetime] = None,
) -> dict:
    """
    Pipeline health over a trailing window:
    per-source status counts for events and sync items, sync success rate,
    and average processing duration of completed items.
    """
    now = now or utcnow()
    cutoff = now - timedelta(minutes=window_minutes)

    events = await db.execute(
        select(WebhookEvent.source, WebhookEvent.processing_status, func.count(WebhookEvent.id))
        .where(WebhookEvent.received_at >= cutoff)
        .group_by(WebhookEvent.source, WebhookEvent.processing_status)
    )
    event_counts: dict[str, dict[str, int]] = {}
    for source, status, count in events.all():
        event_counts.setdefault(source, {})[status] = count

    items = await db.execute(
        select(SyncQueueItem.source, SyncQueueItem.status, func.count(SyncQueueItem.id))
        .where(SyncQueueItem.updated_at >= cutoff)
        .group_by(SyncQueueItem.source, SyncQueueItem.status)
    )
    item_counts: dict[str, dict[str, int]] = {}
    for source, status, count in items.all():
        item_counts.setdefault(source, {})[status] = count

    completed = sum(c.get("completed", 0) for c in item_counts.values())
    failed = sum(c.get("failed", 0) for c in item_counts.values())

    durations = await db.execute(
        select(SyncQueueItem.started_at, SyncQueueItem.processed_at)
        .where(and_(
            SyncQueueItem.status == "completed",
            SyncQueueItem.processed_at >= cutoff,
            SyncQueueItem.started_at.is_not(None),
        ))
    )
    seconds = [
        (ensure_utc(done) - ensure_utc(started)).total_seconds()
        for started, done in durations.all()
    ]
    avg_duration = round(sum(seconds) / len(seconds), 3) if seconds else None

    pending = (await db.execute(
        select(func.count(SyncQueueItem.id)).where(SyncQueueItem.status == "pending")
    )).scalar() or 0
    dead_letters = (await db.execute(
        select(func.count(SyncQueueItem.id)).where(SyncQueueItem.status == "failed")
    )).scalar() or 0

    return {
        "window_minutes": window_minutes,
        "generated_at": now.isoformat(),
        "webhook_events": event_counts,
        "sync_items": item_counts,
        "success_rate": _rate(completed, completed + failed),
        "avg_processing_duration_seconds": avg_duration,
        "queue_depth": pending,
        "dead_letters": dead_letters,
    }
