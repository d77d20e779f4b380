"""
Webhook event audit trail - every incoming webhook is recorded before processing,
including deliveries that fail verification and duplicate re-deliveries.
Enables debugging, replay, and idempotency checks.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Integer, DateTime, Text, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from syncgate.database import Base

# received -> processing -> completed | failed -> retried
EVENT_STATUSES = ("received", "processing", "completed", "failed", "retried")
TERMINAL_EVENT_STATUSES = ("completed", "failed")


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    source: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)

    # Source-provided delivery id (Shopify X-Shopify-Webhook-Id, etc.)
    external_event_id: Mapped[Optional[str]] = mapped_column(String(255))
    # "{source}:{external_event_id}" or "{source}:{event_type}:{payload_hash}".
    # NULL on duplicate rows so the unique index only guards first deliveries.
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(400), unique=True)
    duplicate_of_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("webhook_events.id", ondelete="SET NULL")
    )

    payload: Mapped[dict] = mapped_column(JSONB, nullable=False)
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    processing_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="received", server_default="received"
    )
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    error_message: Mapped[Optional[str]] = mapped_column(Text)

    trust_level: Mapped[str] = mapped_column(
        String(10), nullable=False, default="high", server_default="high"
    )  # high, low
    client_ip: Mapped[Optional[str]] = mapped_column(String(64))
    correlation_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_webhook_events_received_at", "received_at"),
        Index("ix_webhook_events_source_status", "source", "processing_status"),
    )

    def __repr__(self) -> str:
        return f"<WebhookEvent {self.source}/{self.event_type} ({self.processing_status})>"
