"""
Unified entity record - the downstream target the sync processor applies to.
Customers from different sources unify on e-mail; all other entities are keyed
by source and external id.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Integer, DateTime, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from syncgate.database import Base


class SyncedEntity(Base):
    __tablename__ = "synced_entities"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    entity_type: Mapped[str] = mapped_column(String(30), nullable=False)
    match_key: Mapped[str] = mapped_column(String(320), nullable=False)  # email:<addr> or <source>:<external_id>

    attributes: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")  # active, deleted

    # Optimistic concurrency counter, bumped by compare-and-swap on every write
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    source_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    updated_by_source: Mapped[Optional[str]] = mapped_column(String(50))
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        UniqueConstraint("entity_type", "match_key", name="uq_synced_entities_type_match_key"),
    )

    def __repr__(self) -> str:
        return f"<SyncedEntity {self.entity_type}:{self.match_key} v{self.version}>"
