"""
Per-entity, per-source sync bookkeeping: last successful sync point,
monotonic sync_version, and the list of unresolved conflicts.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Integer, Boolean, DateTime, ForeignKey, Index, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from syncgate.database import Base

MAX_RECORDED_CONFLICTS = 50


class EntitySyncStatus(Base):
    __tablename__ = "entity_sync_status"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    entity_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("synced_entities.id", ondelete="CASCADE"), nullable=False
    )
    source: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(30), nullable=False)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)

    last_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_source_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_payload_hash: Mapped[Optional[str]] = mapped_column(String(64))
    sync_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_sync_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sync_conflicts: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        UniqueConstraint("entity_id", "source", name="uq_entity_sync_status_entity_source"),
        Index("ix_entity_sync_status_external", "source", "entity_type", "external_id", unique=True),
    )

    def __repr__(self) -> str:
        return f"<EntitySyncStatus {self.source}:{self.external_id} v{self.sync_version}>"
