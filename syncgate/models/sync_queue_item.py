"""
SyncQueueItem model - durable priority retry queue for downstream entity sync.
Supports delayed/scheduled items, claim tokens for at-most-one processing,
retries with exponential backoff, and dead-lettering.

Only syncgate.services.sync_queue writes status, scheduled_for, retry_count
and the claim columns.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Integer, Text, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from syncgate.database import Base

SYNC_ACTIONS = ("create", "update", "delete", "upsert")
ENTITY_TYPES = ("customer", "order", "purchase", "social_profile", "task")
QUEUE_STATUSES = ("pending", "processing", "completed", "failed")
TERMINAL_QUEUE_STATUSES = ("completed", "failed")


class SyncQueueItem(Base):
    __tablename__ = "sync_queue_items"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    webhook_event_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("webhook_events.id", ondelete="SET NULL"), index=True
    )

    source: Mapped[str] = mapped_column(String(50), nullable=False)
    action: Mapped[str] = mapped_column(String(10), nullable=False)  # create, update, delete, upsert
    entity_type: Mapped[str] = mapped_column(String(30), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(255), nullable=False)  # external id, per source
    payload: Mapped[dict] = mapped_column(JSONB, nullable=False)

    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=2)  # 1=high, 2=medium, 3=low
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending", server_default="pending"
    )  # pending, processing, completed, failed

    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    scheduled_for: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc)
    )

    # Claim bookkeeping
    claim_token: Mapped[Optional[str]] = mapped_column(String(64))
    claimed_by: Mapped[Optional[str]] = mapped_column(String(100))
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    failure_kind: Mapped[Optional[str]] = mapped_column(String(20))  # retryable, permanent, exhausted

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_sync_queue_claim", "status", "priority", "scheduled_for", "created_at"),
        Index("ix_sync_queue_entity", "source", "entity_type", "entity_id"),
        Index("ix_sync_queue_claimed_at", "status", "claimed_at"),
    )

    @property
    def is_dead_letter(self) -> bool:
        return self.status == "failed"

    def __repr__(self) -> str:
        return f"<SyncQueueItem {self.action} {self.entity_type}:{self.entity_id} ({self.status})>"
