"""
Sync processor - applies one claimed queue item to the unified entity model.

Apply is idempotent: the last applied payload hash is kept per
(entity, source), and a replay of it changes nothing. Entity writes are a
compare-and-swap on synced_entities.version; sync_version on the per-source
status row is bumped the same way. Conflicts are resolved by policy and
recorded, never surfaced as item failures.

process() does not commit; the caller completes the queue item in the same
transaction so the apply and the completion land together.
"""
import asyncio
import hashlib
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from pydantic import ValidationError
from sqlalchemy import select, update, and_
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from syncgate.errors import (
    ConflictError,
    PermanentProcessingError,
    RetryableProcessingError,
)
from syncgate.models.entity_sync_status import EntitySyncStatus, MAX_RECORDED_CONFLICTS
from syncgate.models.sync_queue_item import SyncQueueItem
from syncgate.models.synced_entity import SyncedEntity
from syncgate.schemas.sync_records import parse_sync_record
from syncgate.services import conflict_policy
from syncgate.utils.timeutil import ensure_utc, utcnow

logger = logging.getLogger(__name__)

MAX_CAS_ATTEMPTS = 3
CUSTOMER_REFERENCING_TYPES = ("order", "purchase")


@dataclass
class SyncResult:
    SUCCESS = "success"
    RETRYABLE = "retryable_error"
    PERMANENT = "permanent_error"

    outcome: str
    message: Optional[str] = None
    entity_id: Optional[uuid.UUID] = None
    conflicts: int = 0

    @property
    def ok(self) -> bool:
        return self.outcome == self.SUCCESS

    @property
    def permanent(self) -> bool:
        return self.outcome == self.PERMANENT


def compute_item_hash(item: SyncQueueItem) -> str:
    """Content hash of what an item would apply (action + typed record)."""
    canonical = json.dumps(
        {"action": item.action, "payload": item.payload},
        sort_keys=True,
        default=str,
        separators=(",", ":"),
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


async def process(
    db: AsyncSession,
    item: SyncQueueItem,
    policy: Optional[str] = None,
    timeout: Optional[float] = None,
) -> SyncResult:
    """
    Apply a queue item and classify the outcome.
    Timeouts and database availability errors are retryable; malformed
    records and integrity violations are permanent.
    """
    policy = policy or conflict_policy.get_conflict_policy()
    try:
        return await asyncio.wait_for(_apply(db, item, policy), timeout)
    except RetryableProcessingError as e:
        return SyncResult(SyncResult.RETRYABLE, str(e))
    except PermanentProcessingError as e:
        return SyncResult(SyncResult.PERMANENT, str(e))
    except ValidationError as e:
        return SyncResult(SyncResult.PERMANENT, f"malformed {item.entity_type} record: {e.errors()[0]['msg']}")
    except asyncio.TimeoutError:
        return SyncResult(SyncResult.RETRYABLE, f"apply timed out after {timeout}s")
    except OperationalError as e:
        return SyncResult(SyncResult.RETRYABLE, f"database unavailable: {e.orig}")
    except IntegrityError as e:
        return SyncResult(SyncResult.PERMANENT, f"constraint violation: {e.orig}")
    except Exception as e:
        logger.error(
            "Unexpected sync apply error: item=%s error=%s",
            str(item.id)[:8], str(e), exc_info=True,
        )
        return SyncResult(SyncResult.RETRYABLE, f"{type(e).__name__}: {e}")


async def _find_status(
    db: AsyncSession, source: str, entity_type: str, external_id: str,
) -> Optional[EntitySyncStatus]:
    result = await db.execute(
        select(EntitySyncStatus).where(and_(
            EntitySyncStatus.source == source,
            EntitySyncStatus.entity_type == entity_type,
            EntitySyncStatus.external_id == external_id,
        ))
    )
    return result.scalar_one_or_none()


async def _find_entity(db: AsyncSession, entity_type: str, match_key: str) -> Optional[SyncedEntity]:
    result = await db.execute(
        select(SyncedEntity).where(and_(
            SyncedEntity.entity_type == entity_type,
            SyncedEntity.match_key == match_key,
        ))
    )
    return result.scalar_one_or_none()


async def _reload_entity(db: AsyncSession, entity_id: uuid.UUID) -> Optional[SyncedEntity]:
    result = await db.execute(
        select(SyncedEntity)
        .where(SyncedEntity.id == entity_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _resolve_customer(db: AsyncSession, source: str, record) -> uuid.UUID:
    if not record.customer_external_id:
        raise PermanentProcessingError(
            f"{record.entity_type} {record.external_id} has no customer id"
        )
    status = await _find_status(db, source, "customer", record.customer_external_id)
    if status is None:
        raise PermanentProcessingError(
            f"unknown customer reference {source}:{record.customer_external_id}"
        )
    return status.entity_id


async def _create_entity(db: AsyncSession, entity_type: str, match_key: str) -> SyncedEntity:
    now = utcnow()
    entity = SyncedEntity(
        entity_type=entity_type,
        match_key=match_key,
        attributes={},
        status="active",
        version=1,
        created_at=now,
        updated_at=now,
    )
    db.add(entity)
    try:
        await db.flush()
    except IntegrityError as e:
        raise RetryableProcessingError(f"{entity_type} {match_key} created concurrently") from e
    return entity


async def _link_status(db: AsyncSession, entity: SyncedEntity, item: SyncQueueItem) -> EntitySyncStatus:
    result = await db.execute(
        select(EntitySyncStatus).where(and_(
            EntitySyncStatus.entity_id == entity.id,
            EntitySyncStatus.source == item.source,
        ))
    )
    linked = result.scalar_one_or_none()
    if linked is not None:
        raise PermanentProcessingError(
            f"{entity.entity_type} {entity.match_key} already linked to "
            f"{item.source}:{linked.external_id}"
        )

    now = utcnow()
    status = EntitySyncStatus(
        entity_id=entity.id,
        source=item.source,
        entity_type=item.entity_type,
        external_id=item.entity_id,
        sync_version=0,
        is_sync_enabled=True,
        sync_conflicts=[],
        created_at=now,
        updated_at=now,
    )
    db.add(status)
    try:
        await db.flush()
    except IntegrityError as e:
        raise RetryableProcessingError(
            f"sync status for {item.source}:{item.entity_id} created concurrently"
        ) from e
    return status


async def _write_entity(db: AsyncSession, entity: SyncedEntity, values: dict) -> None:
    """Compare-and-swap on entity.version. Raises ConflictError when it lost."""
    expected = entity.version
    result = await db.execute(
        update(SyncedEntity)
        .where(and_(SyncedEntity.id == entity.id, SyncedEntity.version == expected))
        .values(version=expected + 1, updated_at=utcnow(), **values)
    )
    if result.rowcount != 1:
        raise ConflictError(
            f"{entity.entity_type} {str(entity.id)[:8]} changed concurrently",
            expected_version=expected,
        )


def _detect_conflict(item: SyncQueueItem, record, status: EntitySyncStatus, entity: SyncedEntity) -> Optional[str]:
    incoming = record.source_updated_at
    if conflict_policy.is_older(incoming, status.last_source_updated_at):
        return conflict_policy.OUT_OF_ORDER
    if (
        entity.updated_by_source
        and entity.updated_by_source != item.source
        and conflict_policy.is_older(incoming, entity.source_updated_at)
    ):
        return conflict_policy.CROSS_SOURCE
    return None


async def _apply(db: AsyncSession, item: SyncQueueItem, policy: str) -> SyncResult:
    record = parse_sync_record(item.payload)
    if record.entity_type != item.entity_type:
        raise PermanentProcessingError(
            f"payload is a {record.entity_type} record, item is {item.entity_type}"
        )

    payload_hash = compute_item_hash(item)
    status = await _find_status(db, item.source, item.entity_type, item.entity_id)

    if status is not None:
        if not status.is_sync_enabled:
            return SyncResult(SyncResult.SUCCESS, "sync disabled for entity", status.entity_id)
        if status.last_payload_hash == payload_hash:
            return SyncResult(SyncResult.SUCCESS, "already applied", status.entity_id)

    incoming_attrs = record.attributes()
    if item.action != "delete" and item.entity_type in CUSTOMER_REFERENCING_TYPES:
        customer_id = await _resolve_customer(db, item.source, record)
        incoming_attrs["customer_entity_id"] = str(customer_id)

    if status is not None:
        entity = await db.get(SyncedEntity, status.entity_id)
    else:
        entity = await _find_entity(db, item.entity_type, record.match_key(item.source))

    if entity is None:
        if item.action == "delete":
            return SyncResult(SyncResult.SUCCESS, "entity unknown, nothing to delete")
        entity = await _create_entity(db, item.entity_type, record.match_key(item.source))

    if status is None:
        status = await _link_status(db, entity, item)

    now = utcnow()
    incoming_ts = record.source_updated_at
    conflicts: list[dict] = []

    for _attempt in range(MAX_CAS_ATTEMPTS):
        if item.action == "delete":
            values = {"status": "deleted", "deleted_at": now, "updated_by_source": item.source}
        else:
            kind = _detect_conflict(item, record, status, entity)
            resolution = conflict_policy.resolve(
                policy, entity.attributes, incoming_attrs, incoming_is_older=kind is not None,
            )
            values = {"attributes": resolution.attributes}
            if kind is None:
                values.update(
                    status="active",
                    deleted_at=None,
                    updated_by_source=item.source,
                    source_updated_at=incoming_ts or entity.source_updated_at,
                )
            else:
                conflicts.append(conflict_policy.conflict_descriptor(
                    kind, policy, resolution.winner, item.source,
                    item_id=item.id,
                    incoming_updated_at=incoming_ts,
                    current_updated_at=(
                        status.last_source_updated_at if kind == conflict_policy.OUT_OF_ORDER
                        else entity.source_updated_at
                    ),
                    current_source=entity.updated_by_source,
                ))
                logger.warning(
                    "Sync conflict (%s) resolved by %s -> %s: item=%s entity=%s",
                    kind, policy, resolution.winner, str(item.id)[:8], str(entity.id)[:8],
                )
        try:
            await _write_entity(db, entity, values)
            break
        except ConflictError as e:
            conflicts.append(conflict_policy.conflict_descriptor(
                conflict_policy.VERSION_MISMATCH, policy, "reresolved", item.source,
                item_id=item.id, expected_version=e.expected_version,
            ))
            logger.info("Entity version conflict, re-resolving: item=%s %s", str(item.id)[:8], str(e))
            entity = await _reload_entity(db, entity.id)
            if entity is None:
                raise RetryableProcessingError("entity removed during apply") from e
    else:
        raise RetryableProcessingError(
            f"entity version conflict persisted after {MAX_CAS_ATTEMPTS} attempts"
        )

    last_ts = status.last_source_updated_at
    if incoming_ts is not None and (last_ts is None or ensure_utc(incoming_ts) > ensure_utc(last_ts)):
        last_ts = incoming_ts

    recorded = list(status.sync_conflicts or []) + conflicts
    result = await db.execute(
        update(EntitySyncStatus)
        .where(and_(
            EntitySyncStatus.id == status.id,
            EntitySyncStatus.sync_version == status.sync_version,
        ))
        .values(
            sync_version=status.sync_version + 1,
            last_synced_at=now,
            last_source_updated_at=last_ts,
            last_payload_hash=payload_hash,
            sync_conflicts=recorded[-MAX_RECORDED_CONFLICTS:],
            updated_at=now,
        )
    )
    if result.rowcount != 1:
        raise RetryableProcessingError(
            f"sync status for {item.source}:{item.entity_id} changed concurrently"
        )

    logger.info(
        "Sync applied: item=%s %s %s:%s entity=%s conflicts=%d",
        str(item.id)[:8], item.action, item.entity_type, item.entity_id,
        str(entity.id)[:8], len(conflicts),
    )
    return SyncResult(
        SyncResult.SUCCESS,
        "deleted" if item.action == "delete" else "applied",
        entity.id,
        conflicts=len(conflicts),
    )
