"""Allow workflow_execution sync items (n8n execution lifecycle)

Revision ID: 002
Revises: 001
Create Date: 2026-10-18
"""
from alembic import op

revision = "002"
down_revision = "001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.drop_constraint("ck_sync_queue_entity_type", "sync_queue_items", type_="check")
    op.create_check_constraint(
        "ck_sync_queue_entity_type",
        "sync_queue_items",
        "entity_type IN ('customer', 'order', 'purchase', 'social_profile', 'task', 'workflow_execution')",
    )


def downgrade() -> None:
    op.execute("DELETE FROM sync_queue_items WHERE entity_type = 'workflow_execution'")
    op.drop_constraint("ck_sync_queue_entity_type", "sync_queue_items", type_="check")
    op.create_check_constraint(
        "ck_sync_queue_entity_type",
        "sync_queue_items",
        "entity_type IN ('customer', 'order', 'purchase', 'social_profile', 'task')",
    )
