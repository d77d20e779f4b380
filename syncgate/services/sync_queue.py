"""
Retry queue engine - the only writer of sync queue item state.

State machine:
    pending -> processing -> completed
    pending -> processing -> pending   (retry, rescheduled with backoff)
    pending -> processing -> failed    (dead letter: permanent or exhausted)

Claims are a compare-and-swap on status, so at most one worker holds an item.
Enqueue pushes a best-effort Redis notification so idle workers wake via
BRPOP instead of waiting for the next poll.
"""
import logging
import random
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from sqlalchemy import select, update, and_, or_, exists
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from syncgate.errors import ClaimLostError
from syncgate.models.sync_queue_item import SyncQueueItem
from syncgate.utils.timeutil import utcnow

logger = logging.getLogger(__name__)

SYNC_NOTIFY_KEY = "syncgate:sync_notify"
CLAIM_CANDIDATES = 10
MAX_BACKOFF_EXPONENT = 32


@dataclass(frozen=True)
class BackoffPolicy:
    """delay(n) = min(cap, base * 2**n) plus uniform jitter in [0, ratio * delay]."""
    base_seconds: float = 30.0
    cap_seconds: float = 3600.0
    jitter_ratio: float = 0.2

    def delay(self, retry_count: int, rng: Optional[random.Random] = None) -> float:
        exponent = min(max(retry_count, 0), MAX_BACKOFF_EXPONENT)
        delay = min(self.cap_seconds, self.base_seconds * (2 ** exponent))
        jitter = (rng or random).uniform(0, self.jitter_ratio * delay) if self.jitter_ratio > 0 else 0.0
        return delay + jitter

    @classmethod
    def from_settings(cls, settings) -> "BackoffPolicy":
        return cls(
            base_seconds=settings.sync_backoff_base_seconds,
            cap_seconds=settings.sync_backoff_cap_seconds,
            jitter_ratio=settings.sync_backoff_jitter_ratio,
        )


# --- Enqueue ---

async def enqueue_items(
    db: AsyncSession,
    routed_items: Iterable,
    webhook_event_id: Optional[uuid.UUID] = None,
) -> list[SyncQueueItem]:
    """
    Persist routed items as pending queue rows. Flushes but does not commit;
    the caller commits them together with the owning event.
    """
    items = []
    for routed in routed_items:
        now = utcnow()
        item = SyncQueueItem(
            webhook_event_id=webhook_event_id,
            source=routed.source,
            action=routed.action,
            entity_type=routed.entity_type,
            entity_id=routed.entity_id,
            payload=routed.payload,
            priority=routed.priority,
            max_retries=routed.max_retries,
            scheduled_for=routed.scheduled_for,
            status="pending",
            retry_count=0,
            created_at=now,
            updated_at=now,
        )
        db.add(item)
        items.append(item)
    if items:
        await db.flush()
        logger.info(
            "Sync items enqueued: count=%d event=%s",
            len(items), str(webhook_event_id)[:8] if webhook_event_id else "-",
        )
    return items


async def notify_workers(count: int = 1) -> None:
    """Wake idle workers (non-blocking, best-effort)."""
    if count <= 0:
        return
    try:
        from syncgate.utils.redis_client import get_redis
        redis = await get_redis()
        await redis.lpush(SYNC_NOTIFY_KEY, *(["1"] * min(count, 100)))
    except Exception as e:
        logger.debug("Failed to notify sync workers: %s", str(e))


# --- Claim ---

def _entity_blocked():
    """
    Another item on the same entity key is in flight, or is older and still
    pending (possibly waiting out a backoff). Only the oldest unfinished item
    of an entity may be claimed, so per-entity order survives retries.
    Correlates against the outer SyncQueueItem row in both SELECT and UPDATE.
    """
    other = aliased(SyncQueueItem)
    older = or_(
        other.created_at < SyncQueueItem.created_at,
        and_(other.created_at == SyncQueueItem.created_at, other.id < SyncQueueItem.id),
    )
    return exists().where(
        and_(
            other.source == SyncQueueItem.source,
            other.entity_type == SyncQueueItem.entity_type,
            other.entity_id == SyncQueueItem.entity_id,
            other.id != SyncQueueItem.id,
            or_(
                other.status == "processing",
                and_(other.status == "pending", older),
            ),
        )
    )


def _claimable(now: datetime):
    return and_(
        SyncQueueItem.status == "pending",
        SyncQueueItem.scheduled_for <= now,
        ~_entity_blocked(),
    )


async def _try_claim(
    db: AsyncSession,
    item_id: uuid.UUID,
    worker_id: str,
    now: datetime,
) -> Optional[str]:
    """
    Compare-and-swap one item from pending to processing. The entity check is
    repeated in the UPDATE so two workers never hold items of one entity.
    Returns the claim token.
    """
    token = uuid.uuid4().hex
    result = await db.execute(
        update(SyncQueueItem)
        .where(and_(
            SyncQueueItem.id == item_id,
            SyncQueueItem.status == "pending",
            ~_entity_blocked(),
        ))
        .values(
            status="processing",
            claim_token=token,
            claimed_by=worker_id,
            claimed_at=now,
            started_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return None
    return token


async def claim_next(
    db: AsyncSession,
    worker_id: str,
    now: Optional[datetime] = None,
) -> Optional[SyncQueueItem]:
    """
    Claim the next due item: highest priority, then earliest scheduled_for,
    then earliest created_at. Commits the claim. Returns None when nothing
    is claimable.
    """
    now = now or utcnow()
    result = await db.execute(
        select(SyncQueueItem.id)
        .where(_claimable(now))
        .order_by(
            SyncQueueItem.priority.asc(),
            SyncQueueItem.scheduled_for.asc(),
            SyncQueueItem.created_at.asc(),
        )
        .limit(CLAIM_CANDIDATES)
        .with_for_update(skip_locked=True)
    )
    candidate_ids = result.scalars().all()

    for item_id in candidate_ids:
        token = await _try_claim(db, item_id, worker_id, now)
        if token is None:
            continue
        await db.commit()
        item = (await db.execute(
            select(SyncQueueItem)
            .where(SyncQueueItem.id == item_id)
            .execution_options(populate_existing=True)
        )).scalar_one()
        logger.info(
            "Sync item claimed: id=%s worker=%s %s %s:%s",
            str(item.id)[:8], worker_id, item.action, item.entity_type, item.entity_id,
        )
        return item

    # Release row locks / read snapshot taken by the candidate select
    await db.rollback()
    return None


# --- Ack / nack ---

def _owned(item_id: uuid.UUID, claim_token: str):
    return and_(
        SyncQueueItem.id == item_id,
        SyncQueueItem.status == "processing",
        SyncQueueItem.claim_token == claim_token,
    )


async def complete(
    db: AsyncSession,
    item_id: uuid.UUID,
    claim_token: str,
    now: Optional[datetime] = None,
) -> None:
    """
    Mark a claimed item completed. Does not commit, so it can share a
    transaction with the apply. Raises ClaimLostError if the claim is gone.
    """
    now = now or utcnow()
    result = await db.execute(
        update(SyncQueueItem)
        .where(_owned(item_id, claim_token))
        .values(
            status="completed",
            processed_at=now,
            updated_at=now,
            error_message=None,
            failure_kind=None,
            claim_token=None,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ClaimLostError(f"Claim lost on sync item {item_id}")


async def fail(
    db: AsyncSession,
    item_id: uuid.UUID,
    claim_token: str,
    error_message: str,
    permanent: bool = False,
    policy: Optional[BackoffPolicy] = None,
    now: Optional[datetime] = None,
    rng: Optional[random.Random] = None,
) -> SyncQueueItem:
    """
    Record a failed attempt. Retryable failures go back to pending with
    backoff until the budget is spent; permanent ones dead-letter at once.
    Does not commit. Raises ClaimLostError if the claim is gone.
    """
    now = now or utcnow()
    result = await db.execute(
        select(SyncQueueItem.retry_count, SyncQueueItem.max_retries)
        .where(_owned(item_id, claim_token))
    )
    row = result.first()
    if row is None:
        raise ClaimLostError(f"Claim lost on sync item {item_id}")

    retry_count = row.retry_count + 1
    values = {
        "retry_count": retry_count,
        "error_message": (error_message or "")[:2000],
        "claim_token": None,
        "updated_at": now,
    }
    if permanent:
        values.update(status="failed", failure_kind="permanent", processed_at=now)
    elif retry_count < row.max_retries:
        policy = policy or _default_policy()
        delay = policy.delay(retry_count, rng)
        values.update(
            status="pending",
            failure_kind="retryable",
            scheduled_for=now + timedelta(seconds=delay),
            claimed_by=None,
            claimed_at=None,
        )
    else:
        values.update(status="failed", failure_kind="exhausted", processed_at=now)

    result = await db.execute(
        update(SyncQueueItem)
        .where(_owned(item_id, claim_token))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ClaimLostError(f"Claim lost on sync item {item_id}")

    item = (await db.execute(
        select(SyncQueueItem)
        .where(SyncQueueItem.id == item_id)
        .execution_options(populate_existing=True)
    )).scalar_one()

    if item.status == "failed":
        logger.error(
            "Sync item dead-lettered (%s): id=%s retries=%d/%d error=%s",
            item.failure_kind, str(item.id)[:8], item.retry_count, item.max_retries, error_message,
        )
    else:
        logger.warning(
            "Sync item retry %d/%d: id=%s next_at=%s error=%s",
            item.retry_count, item.max_retries, str(item.id)[:8],
            item.scheduled_for.isoformat(), error_message,
        )
    return item


def _default_policy() -> BackoffPolicy:
    from syncgate.config import get_settings
    return BackoffPolicy.from_settings(get_settings())


# --- Liveness ---

async def release_stale_claims(
    db: AsyncSession,
    timeout_seconds: int,
    now: Optional[datetime] = None,
) -> int:
    """
    Return items whose claim outlived the liveness timeout to pending.
    retry_count is left alone: a crashed worker is not a failed attempt.
    Does not commit.
    """
    now = now or utcnow()
    cutoff = now - timedelta(seconds=timeout_seconds)
    result = await db.execute(
        update(SyncQueueItem)
        .where(and_(
            SyncQueueItem.status == "processing",
            SyncQueueItem.claimed_at < cutoff,
        ))
        .values(
            status="pending",
            claim_token=None,
            claimed_by=None,
            claimed_at=None,
            started_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


# --- Operator actions ---

async def list_dead_letters(
    db: AsyncSession,
    source: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> list[SyncQueueItem]:
    query = select(SyncQueueItem).where(SyncQueueItem.status == "failed")
    if source:
        query = query.where(SyncQueueItem.source == source)
    query = query.order_by(SyncQueueItem.processed_at.desc()).limit(limit).offset(offset)
    result = await db.execute(query)
    return list(result.scalars().all())


async def requeue_dead_letter(
    db: AsyncSession,
    item_id: uuid.UUID,
    now: Optional[datetime] = None,
) -> Optional[SyncQueueItem]:
    """
    Re-drive a dead letter: budget reset, pending, due now, owning event
    marked retried. Returns None if the item does not exist; raises
    ValueError if it is not dead-lettered. Does not commit.
    """
    from syncgate.services.event_store import mark_event_retried

    now = now or utcnow()
    item = await db.get(SyncQueueItem, item_id)
    if item is None:
        return None
    if item.status != "failed":
        raise ValueError(f"Sync item {item_id} is {item.status}, not dead-lettered")

    item.status = "pending"
    item.retry_count = 0
    item.scheduled_for = now
    item.failure_kind = None
    item.processed_at = None
    item.claim_token = None
    item.claimed_by = None
    item.claimed_at = None
    item.started_at = None
    item.updated_at = now

    if item.webhook_event_id:
        await mark_event_retried(db, item.webhook_event_id)

    await db.flush()
    logger.info("Dead letter requeued: id=%s", str(item.id)[:8])
    return item
