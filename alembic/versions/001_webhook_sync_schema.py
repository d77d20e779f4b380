"""Webhook event log, sync queue, unified entities and per-source config

Revision ID: 001
Revises:
Create Date: 2026-10-18
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Webhook audit trail - every delivery, including rejected and duplicate ones
    op.create_table(
        "webhook_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("source", sa.String(50), nullable=False),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("external_event_id", sa.String(255), nullable=True),
        sa.Column("idempotency_key", sa.String(400), nullable=True, unique=True),
        sa.Column(
            "duplicate_of_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("webhook_events.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column("payload", postgresql.JSONB, nullable=False),
        sa.Column("payload_hash", sa.String(64), nullable=False),
        sa.Column("processing_status", sa.String(20), nullable=False, server_default="received"),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("trust_level", sa.String(10), nullable=False, server_default="high"),
        sa.Column("client_ip", sa.String(64), nullable=True),
        sa.Column("correlation_id", sa.String(64), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "processing_status IN ('received', 'processing', 'completed', 'failed', 'retried')",
            name="ck_webhook_events_status",
        ),
        sa.CheckConstraint("retry_count >= 0", name="ck_webhook_events_retry_count"),
    )
    op.create_index("ix_webhook_events_source", "webhook_events", ["source"])
    op.create_index("ix_webhook_events_payload_hash", "webhook_events", ["payload_hash"])
    op.create_index("ix_webhook_events_correlation_id", "webhook_events", ["correlation_id"])
    op.create_index("ix_webhook_events_received_at", "webhook_events", ["received_at"])
    op.create_index("ix_webhook_events_source_status", "webhook_events", ["source", "processing_status"])

    # Durable priority retry queue
    op.create_table(
        "sync_queue_items",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "webhook_event_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("webhook_events.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column("source", sa.String(50), nullable=False),
        sa.Column("action", sa.String(10), nullable=False),
        sa.Column("entity_type", sa.String(30), nullable=False),
        sa.Column("entity_id", sa.String(255), nullable=False),
        sa.Column("payload", postgresql.JSONB, nullable=False),
        sa.Column("priority", sa.Integer, nullable=False, server_default="2"),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer, nullable=False, server_default="3"),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("claim_token", sa.String(64), nullable=True),
        sa.Column("claimed_by", sa.String(100), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("failure_kind", sa.String(20), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "action IN ('create', 'update', 'delete', 'upsert')", name="ck_sync_queue_action",
        ),
        sa.CheckConstraint(
            "entity_type IN ('customer', 'order', 'purchase', 'social_profile', 'task')",
            name="ck_sync_queue_entity_type",
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')", name="ck_sync_queue_status",
        ),
        sa.CheckConstraint("priority BETWEEN 1 AND 3", name="ck_sync_queue_priority"),
        sa.CheckConstraint(
            "retry_count >= 0 AND retry_count <= max_retries", name="ck_sync_queue_retry_budget",
        ),
    )
    op.create_index("ix_sync_queue_items_webhook_event_id", "sync_queue_items", ["webhook_event_id"])
    op.create_index(
        "ix_sync_queue_claim", "sync_queue_items",
        ["status", "priority", "scheduled_for", "created_at"],
    )
    op.create_index("ix_sync_queue_entity", "sync_queue_items", ["source", "entity_type", "entity_id"])
    op.create_index("ix_sync_queue_claimed_at", "sync_queue_items", ["status", "claimed_at"])

    # Unified entity model
    op.create_table(
        "synced_entities",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("entity_type", sa.String(30), nullable=False),
        sa.Column("match_key", sa.String(320), nullable=False),
        sa.Column("attributes", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("source_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_by_source", sa.String(50), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("entity_type", "match_key", name="uq_synced_entities_type_match_key"),
    )

    # Per-entity, per-source sync bookkeeping
    op.create_table(
        "entity_sync_status",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "entity_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("synced_entities.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("source", sa.String(50), nullable=False),
        sa.Column("entity_type", sa.String(30), nullable=False),
        sa.Column("external_id", sa.String(255), nullable=False),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_source_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_payload_hash", sa.String(64), nullable=True),
        sa.Column("sync_version", sa.Integer, nullable=False, server_default="0"),
        sa.Column("is_sync_enabled", sa.Boolean, nullable=False, server_default=sa.text("true")),
        sa.Column("sync_conflicts", postgresql.JSONB, nullable=False, server_default="[]"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("entity_id", "source", name="uq_entity_sync_status_entity_source"),
    )
    op.create_index(
        "ix_entity_sync_status_external", "entity_sync_status",
        ["source", "entity_type", "external_id"], unique=True,
    )

    # Per-source overrides, read once at startup
    op.create_table(
        "webhook_source_configs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("source", sa.String(50), nullable=False, unique=True),
        sa.Column("is_enabled", sa.Boolean, nullable=False, server_default=sa.text("true")),
        sa.Column("webhook_secret", sa.Text, nullable=True),
        sa.Column("sync_frequency_seconds", sa.Integer, nullable=False, server_default="0"),
        sa.Column("allowed_event_types", postgresql.JSONB, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True, server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("webhook_source_configs")
    op.drop_index("ix_entity_sync_status_external", table_name="entity_sync_status")
    op.drop_table("entity_sync_status")
    op.drop_table("synced_entities")
    op.drop_index("ix_sync_queue_claimed_at", table_name="sync_queue_items")
    op.drop_index("ix_sync_queue_entity", table_name="sync_queue_items")
    op.drop_index("ix_sync_queue_claim", table_name="sync_queue_items")
    op.drop_index("ix_sync_queue_items_webhook_event_id", table_name="sync_queue_items")
    op.drop_table("sync_queue_items")
    op.drop_index("ix_webhook_events_source_status", table_name="webhook_events")
    op.drop_index("ix_webhook_events_received_at", table_name="webhook_events")
    op.drop_index("ix_webhook_events_correlation_id", table_name="webhook_events")
    op.drop_index("ix_webhook_events_payload_hash", table_name="webhook_events")
    op.drop_index("ix_webhook_events_source", table_name="webhook_events")
    op.drop_table("webhook_events")
