"""
Stale claim sweeper - returns abandoned claims to the queue.
A claim older than SYNC_CLAIM_TIMEOUT_SECONDS means its worker crashed or
hung; the item goes back to pending with its retry budget untouched.
"""
import asyncio
import logging

from syncgate.database import async_session_factory
from syncgate.services import sync_queue
from syncgate.utils.redis_client import heartbeat

logger = logging.getLogger(__name__)

HEARTBEAT_NAME = "stale_claim_sweeper"


async def sweep_stale_claims(session_factory=async_session_factory) -> int:
    """Release stale claims. Returns the number of items returned to pending."""
    from syncgate.config import get_settings
    settings = get_settings()

    async with session_factory() as db:
        released = await sync_queue.release_stale_claims(db, settings.sync_claim_timeout_seconds)
        await db.commit()

    if released:
        logger.warning(
            "Released %d stale sync claims (timeout=%ds)",
            released, settings.sync_claim_timeout_seconds,
        )
        from syncgate.utils.alerting import send_alert, AlertType
        await send_alert(
            AlertType.STALE_CLAIMS_RELEASED,
            f"{released} sync item claim(s) exceeded {settings.sync_claim_timeout_seconds}s and were released",
            severity="warning",
        )
        await sync_queue.notify_workers(released)
    return released


async def run_stale_claim_sweeper() -> None:
    """Main sweeper loop."""
    from syncgate.config import get_settings
    settings = get_settings()
    logger.info("Stale claim sweeper started (every %ds)", settings.sync_sweep_interval_seconds)

    while True:
        try:
            await sweep_stale_claims()
        except Exception as e:
            logger.error("Stale claim sweeper error: %s", str(e), exc_info=True)

        await heartbeat(HEARTBEAT_NAME, ttl_seconds=settings.sync_sweep_interval_seconds * 5)
        await asyncio.sleep(settings.sync_sweep_interval_seconds)
