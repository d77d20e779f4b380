"""
API response schemas.
"""
from typing import Optional
from pydantic import BaseModel


class WebhookAckResponse(BaseModel):
    """Standard webhook acknowledgement."""
    status: str = "accepted"  # accepted, duplicate, acknowledged, invalid_payload
    event_id: Optional[str] = None
    queued: int = 0
    message: Optional[str] = None


class QueueStatRow(BaseModel):
    source: str
    status: str
    count: int
    avg_retry_count: float


class SourceHealthResponse(BaseModel):
    source: str
    total: int
    successful: int
    failed: int
    success_rate: float
    last_event_at: Optional[str] = None


class DeadLetterItem(BaseModel):
    id: str
    webhook_event_id: Optional[str] = None
    source: str
    action: str
    entity_type: str
    entity_id: str
    priority: int
    retry_count: int
    max_retries: int
    failure_kind: Optional[str] = None
    error_message: Optional[str] = None
    processed_at: Optional[str] = None
    created_at: Optional[str] = None


class RequeueResponse(BaseModel):
    id: str
    status: str
    retry_count: int
    scheduled_for: str


class WebhookEventItem(BaseModel):
    id: str
    source: str
    event_type: str
    external_event_id: Optional[str] = None
    processing_status: str
    trust_level: str
    retry_count: int
    error_message: Optional[str] = None
    duplicate_of_id: Optional[str] = None
    correlation_id: Optional[str] = None
    received_at: Optional[str] = None
    processed_at: Optional[str] = None
    payload: Optional[dict] = None
