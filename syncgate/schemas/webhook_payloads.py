"""
Webhook payload schemas - raw input from each source.
Each route normalizes its payload into typed sync records before enqueueing.
Unknown fields are ignored so providers can add fields without breaking intake.
"""
from datetime import datetime
from typing import Optional, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator


class _Lenient(BaseModel):
    model_config = ConfigDict(extra="ignore")


# --- Shopify (resource is the body; topic in X-Shopify-Topic) ---

class ShopifyCustomerPayload(_Lenient):
    id: Union[int, str]
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    orders_count: Optional[int] = None
    total_spent: Optional[str] = None
    tags: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ShopifyOrderCustomer(_Lenient):
    id: Union[int, str]


class ShopifyOrderPayload(_Lenient):
    id: Union[int, str]
    customer: Optional[ShopifyOrderCustomer] = None
    total_price: Optional[str] = None
    currency: Optional[str] = None
    financial_status: Optional[str] = None
    updated_at: Optional[datetime] = None


class ShopifyDeletePayload(_Lenient):
    id: Union[int, str]


# --- Kajabi ({"id", "event", "data"} envelope) ---

class KajabiEnvelope(_Lenient):
    id: Optional[str] = None
    event: str
    data: dict


class KajabiPersonPayload(_Lenient):
    id: Union[int, str]
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    purchases_count: Optional[int] = None
    total_spent: Optional[Union[float, str]] = None
    tags: Optional[list[str]] = None
    updated_at: Optional[datetime] = None


class KajabiPurchasePerson(_Lenient):
    id: Union[int, str]


class KajabiPurchaseOffer(_Lenient):
    title: Optional[str] = None


class KajabiPurchasePayload(_Lenient):
    id: Union[int, str]
    person: Optional[KajabiPurchasePerson] = None
    amount: Optional[Union[float, str]] = None
    offer: Optional[KajabiPurchaseOffer] = None
    updated_at: Optional[datetime] = None


# --- Meta (Facebook / Instagram Graph webhooks) ---

class MetaChange(_Lenient):
    field: Optional[str] = None
    value: dict


class MetaEntry(_Lenient):
    id: str
    time: Optional[int] = None  # epoch seconds
    changes: list[MetaChange] = []


class MetaWebhookPayload(_Lenient):
    object: str
    entry: list[MetaEntry]


# --- Twitter / X Account Activity ---

class TwitterUser(_Lenient):
    id: str
    screen_name: Optional[str] = None
    name: Optional[str] = None
    followers_count: Optional[int] = None
    friends_count: Optional[int] = None


class TwitterFollowEvent(_Lenient):
    type: str  # follow, unfollow
    created_timestamp: Optional[str] = None  # epoch milliseconds as string
    source: TwitterUser
    target: Optional[TwitterUser] = None


class TwitterFollowPayload(_Lenient):
    for_user_id: Optional[str] = None
    follow_events: list[TwitterFollowEvent]


# --- ClickUp ---

class ClickUpHistoryItem(_Lenient):
    id: str
    date: Optional[str] = None  # epoch milliseconds as string


class ClickUpTask(_Lenient):
    name: Optional[str] = None
    status: Optional[Union[str, dict]] = None
    task_list: Optional[dict] = Field(default=None, alias="list")
    assignees: Optional[list[dict]] = None


class ClickUpTaskPayload(_Lenient):
    event: str
    task_id: str
    webhook_id: Optional[str] = None
    history_items: list[ClickUpHistoryItem] = []
    task: Optional[ClickUpTask] = None


# --- n8n / internal jobs ({"event", "data"} envelope) ---

class CustomerSyncData(_Lenient):
    id: Union[int, str]
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    tags: Optional[list[str]] = None
    updated_at: Optional[datetime] = None


class JobEnvelope(_Lenient):
    event: str
    id: Optional[str] = None
    execution_id: Optional[Union[int, str]] = None
    data: dict


class WorkflowExecutionData(_Lenient):
    execution_id: Optional[str] = None
    workflow_id: Optional[str] = None
    workflow_name: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[Union[str, dict]] = None

    @field_validator("execution_id", "workflow_id", mode="before")
    @classmethod
    def _coerce_id(cls, v):
        # n8n execution ids are numeric
        if isinstance(v, int):
            return str(v)
        return v
