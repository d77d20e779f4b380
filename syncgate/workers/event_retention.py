"""
Retention pruner - deletes old terminal rows.
Runs daily. Completed queue items and webhook events go after 30 days,
dead letters after 90. Events still referenced by a queue item are kept.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, and_, exists

from syncgate.database import async_session_factory
from syncgate.models.sync_queue_item import SyncQueueItem
from syncgate.models.webhook_event import WebhookEvent, TERMINAL_EVENT_STATUSES
from syncgate.utils.redis_client import heartbeat
from syncgate.utils.timeutil import utcnow

logger = logging.getLogger(__name__)

HEARTBEAT_NAME = "event_retention"


async def prune_cycle(session_factory=async_session_factory, now: Optional[datetime] = None) -> dict:
    """Delete expired rows. Returns counts per category."""
    from syncgate.config import get_settings
    settings = get_settings()
    now = now or utcnow()

    completed_cutoff = now - timedelta(days=settings.completed_item_retention_days)
    dead_letter_cutoff = now - timedelta(days=settings.dead_letter_retention_days)
    event_cutoff = now - timedelta(days=settings.webhook_event_retention_days)

    async with session_factory() as db:
        completed = await db.execute(
            delete(SyncQueueItem)
            .where(and_(
                SyncQueueItem.status == "completed",
                SyncQueueItem.processed_at < completed_cutoff,
            ))
            .execution_options(synchronize_session=False)
        )
        dead = await db.execute(
            delete(SyncQueueItem)
            .where(and_(
                SyncQueueItem.status == "failed",
                SyncQueueItem.processed_at < dead_letter_cutoff,
            ))
            .execution_options(synchronize_session=False)
        )
        referenced = exists().where(SyncQueueItem.webhook_event_id == WebhookEvent.id)
        events = await db.execute(
            delete(WebhookEvent)
            .where(and_(
                WebhookEvent.processing_status.in_(TERMINAL_EVENT_STATUSES),
                WebhookEvent.received_at < event_cutoff,
                ~referenced,
            ))
            .execution_options(synchronize_session=False)
        )
        await db.commit()

    counts = {
        "completed_items": completed.rowcount or 0,
        "dead_letters": dead.rowcount or 0,
        "webhook_events": events.rowcount or 0,
    }
    if any(counts.values()):
        logger.info(
            "Retention pruned: %d completed items, %d dead letters, %d webhook events",
            counts["completed_items"], counts["dead_letters"], counts["webhook_events"],
        )
    return counts


async def run_event_retention() -> None:
    """Main loop - prune once per RETENTION_INTERVAL_SECONDS."""
    from syncgate.config import get_settings
    settings = get_settings()
    logger.info("Retention pruner started (every %ds)", settings.retention_interval_seconds)

    while True:
        try:
            await prune_cycle()
        except Exception as e:
            logger.error("Retention pruner error: %s", str(e), exc_info=True)

        await heartbeat(HEARTBEAT_NAME, ttl_seconds=settings.retention_interval_seconds * 2)
        await asyncio.sleep(settings.retention_interval_seconds)
