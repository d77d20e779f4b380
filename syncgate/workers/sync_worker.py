"""
Sync worker pool - claims queue items and runs them through the sync processor.

Each worker: claim (own transaction) -> apply + complete (one transaction)
-> on failure, rollback and record the failed attempt in a fresh transaction.
The owning webhook event is settled once all of its items are terminal.

Uses BRPOP on a Redis notification key for near-instant wake on new items,
falling back to a DB poll every SYNC_POLL_INTERVAL_SECONDS.
"""
import asyncio
import logging
import os
import socket
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from syncgate.database import async_session_factory
from syncgate.errors import ClaimLostError
from syncgate.services import event_store, sync_processor, sync_queue
from syncgate.services.sync_processor import SyncResult
from syncgate.services.sync_queue import SYNC_NOTIFY_KEY
from syncgate.utils.logging import generate_correlation_id, set_correlation_id
from syncgate.utils.redis_client import get_redis, heartbeat

logger = logging.getLogger(__name__)

MAX_ITEMS_PER_CYCLE = 50


def worker_identity(index: int) -> str:
    """Claim owner recorded on queue items: host:pid:index."""
    return f"{socket.gethostname()}:{os.getpid()}:{index}"


def heartbeat_name(index: int) -> str:
    return f"sync_worker_{index}"


async def process_one(worker_id: str, session_factory=async_session_factory) -> Optional[SyncResult]:
    """Claim and process a single item. Returns None when the queue has nothing due."""
    from syncgate.config import get_settings
    settings = get_settings()

    async with session_factory() as db:
        item = await sync_queue.claim_next(db, worker_id)
    if item is None:
        return None

    set_correlation_id(generate_correlation_id())
    log_extra = {"item_id": str(item.id), "worker_id": worker_id, "source": item.source}

    async with session_factory() as db:
        result = await sync_processor.process(db, item, timeout=settings.sync_apply_timeout_seconds)

        if result.ok:
            try:
                await sync_queue.complete(db, item.id, item.claim_token)
                await db.commit()
            except ClaimLostError:
                await db.rollback()
                logger.warning(
                    "Claim lost before completion, apply discarded: item=%s worker=%s",
                    str(item.id)[:8], worker_id, extra=log_extra,
                )
                return result
            except SQLAlchemyError as e:
                await db.rollback()
                result = SyncResult(SyncResult.RETRYABLE, f"commit failed: {e}")

        terminal = result.ok
        if not result.ok:
            await db.rollback()
            try:
                failed_item = await sync_queue.fail(
                    db, item.id, item.claim_token, result.message or "sync failed",
                    permanent=result.permanent,
                )
                await db.commit()
            except ClaimLostError:
                await db.rollback()
                logger.warning(
                    "Claim lost before failure was recorded: item=%s worker=%s",
                    str(item.id)[:8], worker_id, extra=log_extra,
                )
                return result
            terminal = failed_item.status == "failed"
            if terminal:
                await _alert_dead_letter(failed_item)

        if terminal and item.webhook_event_id:
            await event_store.settle_event(db, item.webhook_event_id)
            await db.commit()

    return result


async def _alert_dead_letter(item) -> None:
    from syncgate.utils.alerting import send_alert, AlertType

    alert_type = (
        AlertType.DEAD_LETTER_PERMANENT if item.failure_kind == "permanent"
        else AlertType.DEAD_LETTER_EXHAUSTED
    )
    await send_alert(
        alert_type,
        f"Sync item dead-lettered: {item.action} {item.entity_type}:{item.entity_id} "
        f"from {item.source} after {item.retry_count} attempt(s): {item.error_message}",
        extra={"item_id": str(item.id), "source": item.source},
        cooldown_key=item.source,
    )


async def process_available(worker_id: str, max_items: int = MAX_ITEMS_PER_CYCLE) -> int:
    """Drain due items until the queue is empty or the cycle cap is hit."""
    processed = 0
    while processed < max_items:
        result = await process_one(worker_id)
        if result is None:
            break
        processed += 1
    return processed


async def _wait_for_work(timeout_seconds: int) -> None:
    """Block until an enqueue notification arrives or the poll interval passes."""
    try:
        redis = await get_redis()
        await redis.brpop(SYNC_NOTIFY_KEY, timeout=timeout_seconds)
    except Exception as e:
        logger.debug("Redis BRPOP unavailable, falling back to sleep: %s", str(e))
        await asyncio.sleep(timeout_seconds)


async def run_sync_worker(index: int) -> None:
    """Main loop for one worker in the pool."""
    from syncgate.config import get_settings
    settings = get_settings()
    worker_id = worker_identity(index)
    logger.info(
        "Sync worker started: %s (poll every %ds)",
        worker_id, settings.sync_poll_interval_seconds,
    )

    while True:
        processed = 0
        try:
            processed = await process_available(worker_id)
            if processed:
                logger.info("Sync worker %s processed %d items", worker_id, processed)
        except Exception as e:
            logger.error("Sync worker %s cycle error: %s", worker_id, str(e), exc_info=True)

        await heartbeat(heartbeat_name(index), ttl_seconds=max(120, settings.sync_poll_interval_seconds * 4))

        if processed < MAX_ITEMS_PER_CYCLE:
            await _wait_for_work(settings.sync_poll_interval_seconds)


def start_sync_workers(count: int) -> list[asyncio.Task]:
    """Spawn the worker pool as asyncio tasks."""
    return [asyncio.create_task(run_sync_worker(i)) for i in range(count)]
