"""
Source-specific webhook payload parsers.
Each function normalizes a raw payload into typed sync records for the router.
Parsers raise pydantic.ValidationError or ValueError on malformed input; the
router turns both into PayloadValidationError.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from syncgate.schemas.sync_records import (
    CustomerRecord,
    OrderRecord,
    PurchaseRecord,
    SocialProfileRecord,
    TaskRecord,
    WorkflowExecutionRecord,
)
from syncgate.schemas.webhook_payloads import (
    ShopifyCustomerPayload,
    ShopifyOrderPayload,
    ShopifyDeletePayload,
    KajabiEnvelope,
    KajabiPersonPayload,
    KajabiPurchasePayload,
    MetaWebhookPayload,
    TwitterFollowPayload,
    ClickUpTaskPayload,
    JobEnvelope,
    CustomerSyncData,
    WorkflowExecutionData,
)

logger = logging.getLogger(__name__)


def _from_epoch(value: Optional[str | int], millis: bool = False) -> Optional[datetime]:
    if value in (None, ""):
        return None
    seconds = int(value) / 1000 if millis else int(value)
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


# --- Shopify ---

def parse_shopify_customer(payload: dict) -> list[CustomerRecord]:
    p = ShopifyCustomerPayload.model_validate(payload)
    return [CustomerRecord(
        external_id=p.id,
        email=p.email,
        first_name=p.first_name,
        last_name=p.last_name,
        phone=p.phone,
        orders_count=p.orders_count or 0,
        total_spent=p.total_spent or "0",
        tags=p.tags or "",
        source_updated_at=p.updated_at or p.created_at,
    )]


def parse_shopify_customer_delete(payload: dict) -> list[CustomerRecord]:
    p = ShopifyDeletePayload.model_validate(payload)
    return [CustomerRecord(external_id=p.id)]


def parse_shopify_order(payload: dict) -> list[OrderRecord]:
    p = ShopifyOrderPayload.model_validate(payload)
    return [OrderRecord(
        external_id=p.id,
        customer_external_id=p.customer.id if p.customer else None,
        total_price=p.total_price,
        currency=p.currency,
        financial_status=p.financial_status,
        source_updated_at=p.updated_at,
    )]


# --- Kajabi ---

def _kajabi_data(payload: dict) -> dict:
    return KajabiEnvelope.model_validate(payload).data


def parse_kajabi_person(payload: dict) -> list[CustomerRecord]:
    p = KajabiPersonPayload.model_validate(_kajabi_data(payload))
    return [CustomerRecord(
        external_id=p.id,
        email=p.email,
        first_name=p.first_name,
        last_name=p.last_name,
        phone=p.phone,
        orders_count=p.purchases_count or 0,
        total_spent=str(p.total_spent or 0),
        tags=p.tags or [],
        source_updated_at=p.updated_at,
    )]


def parse_kajabi_person_delete(payload: dict) -> list[CustomerRecord]:
    p = KajabiPersonPayload.model_validate(_kajabi_data(payload))
    return [CustomerRecord(external_id=p.id)]


def parse_kajabi_purchase(payload: dict) -> list[PurchaseRecord]:
    p = KajabiPurchasePayload.model_validate(_kajabi_data(payload))
    return [PurchaseRecord(
        external_id=p.id,
        customer_external_id=p.person.id if p.person else None,
        amount=str(p.amount) if p.amount is not None else None,
        offer_title=p.offer.title if p.offer else None,
        source_updated_at=p.updated_at,
    )]


# --- Meta ---

def _parse_meta_users(payload: dict, platform: str) -> list[SocialProfileRecord]:
    p = MetaWebhookPayload.model_validate(payload)
    records = []
    for entry in p.entry:
        for change in entry.changes:
            value = change.value
            profile_id = value.get("id") or entry.id
            records.append(SocialProfileRecord(
                external_id=str(profile_id),
                platform=platform,
                username=value.get("username"),
                display_name=value.get("name"),
                follower_count=value.get("followers_count"),
                following_count=value.get("following_count") or value.get("follows_count"),
                source_updated_at=_from_epoch(entry.time),
            ))
    if not records:
        raise ValueError("Meta user webhook contained no profile changes")
    return records


def parse_facebook_user(payload: dict) -> list[SocialProfileRecord]:
    return _parse_meta_users(payload, "facebook")


def parse_instagram_user(payload: dict) -> list[SocialProfileRecord]:
    return _parse_meta_users(payload, "instagram")


# --- Twitter / X ---

def parse_twitter_follows(payload: dict) -> list[SocialProfileRecord]:
    """One social profile record per follower in the batch."""
    p = TwitterFollowPayload.model_validate(payload)
    records = []
    for event in p.follow_events:
        if event.type != "follow":
            continue
        follower = event.source
        records.append(SocialProfileRecord(
            external_id=follower.id,
            platform="twitter",
            username=follower.screen_name,
            display_name=follower.name,
            follower_count=follower.followers_count,
            following_count=follower.friends_count,
            source_updated_at=_from_epoch(event.created_timestamp, millis=True),
        ))
    return records


# --- ClickUp ---

def parse_clickup_task(payload: dict) -> list[TaskRecord]:
    p = ClickUpTaskPayload.model_validate(payload)
    last_change = p.history_items[-1].date if p.history_items else None
    task = p.task
    status = None
    if task and task.status is not None:
        status = task.status.get("status") if isinstance(task.status, dict) else task.status
    return [TaskRecord(
        external_id=p.task_id,
        name=task.name if task else None,
        status=status,
        list_id=str(task.task_list.get("id")) if task and task.task_list and task.task_list.get("id") else None,
        assignees=[str(a.get("id")) for a in task.assignees if a.get("id")] if task and task.assignees else None,
        source_updated_at=_from_epoch(last_change, millis=True),
    )]


def parse_clickup_task_delete(payload: dict) -> list[TaskRecord]:
    p = ClickUpTaskPayload.model_validate(payload)
    return [TaskRecord(external_id=p.task_id)]


# --- n8n / internal ---

def parse_job_customer(payload: dict) -> list[CustomerRecord]:
    envelope = JobEnvelope.model_validate(payload)
    d = CustomerSyncData.model_validate(envelope.data)
    return [CustomerRecord(
        external_id=d.id,
        email=d.email,
        first_name=d.first_name,
        last_name=d.last_name,
        phone=d.phone,
        tags=d.tags,
        source_updated_at=d.updated_at,
    )]


def parse_job_customer_delete(payload: dict) -> list[CustomerRecord]:
    envelope = JobEnvelope.model_validate(payload)
    d = CustomerSyncData.model_validate(envelope.data)
    return [CustomerRecord(external_id=d.id)]


EXECUTION_STATUSES = {
    "execution_started": "running",
    "execution_completed": "completed",
    "execution_failed": "failed",
}


def parse_workflow_execution(payload: dict) -> list[WorkflowExecutionRecord]:
    """n8n execution lifecycle events. The execution id may sit on the envelope or in data."""
    envelope = JobEnvelope.model_validate(payload)
    status = EXECUTION_STATUSES.get(envelope.event)
    if status is None:
        raise ValueError(f"not an execution event: {envelope.event}")
    d = WorkflowExecutionData.model_validate(envelope.data)
    execution_id = str(envelope.execution_id) if envelope.execution_id is not None else d.execution_id
    if not execution_id:
        raise ValueError("execution event without execution_id")

    error_message = None
    if d.error is not None:
        error_message = d.error.get("message", str(d.error)) if isinstance(d.error, dict) else d.error
    completed_at = d.finished_at if status != "running" else None
    return [WorkflowExecutionRecord(
        external_id=execution_id,
        workflow_id=d.workflow_id,
        workflow_name=d.workflow_name,
        status=status,
        started_at=d.started_at,
        completed_at=completed_at,
        error_message=error_message,
        source_updated_at=completed_at or d.started_at,
    )]
