"""
Database models - import all models here so Alembic can discover them.
"""
from syncgate.models.webhook_event import WebhookEvent
from syncgate.models.sync_queue_item import SyncQueueItem
from syncgate.models.synced_entity import SyncedEntity
from syncgate.models.entity_sync_status import EntitySyncStatus
from syncgate.models.webhook_source_config import WebhookSourceConfig

__all__ = [
    "WebhookEvent",
    "SyncQueueItem",
    "SyncedEntity",
    "EntitySyncStatus",
    "WebhookSourceConfig",
]
