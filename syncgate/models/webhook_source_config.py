"""
Per-source webhook configuration overrides. Read once at startup and merged
with environment settings into the source registry.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Integer, Boolean, DateTime, Text
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from syncgate.database import Base


class WebhookSourceConfig(Base):
    __tablename__ = "webhook_source_configs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    source: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    webhook_secret: Mapped[Optional[str]] = mapped_column(Text)  # None = use env setting
    sync_frequency_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    allowed_event_types: Mapped[Optional[list]] = mapped_column(JSONB)  # None = all routed types

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    def __repr__(self) -> str:
        return f"<WebhookSourceConfig {self.source} enabled={self.is_enabled}>"
