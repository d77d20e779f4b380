"""
Typed sync records - the internal, strongly-typed form of every entity payload.
Webhook parsers convert loosely-typed source payloads into one of these before
anything is enqueued; the sync processor re-validates them on the way out.
"""
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Literal, Optional, Union
from pydantic import BaseModel, Field, TypeAdapter, field_validator


class _SyncRecordBase(BaseModel):
    external_id: str = Field(..., min_length=1)
    source_updated_at: Optional[datetime] = None

    @field_validator("external_id", mode="before")
    @classmethod
    def _coerce_external_id(cls, v):
        # Shopify/Kajabi send numeric ids
        if isinstance(v, int):
            return str(v)
        return v

    def match_key(self, source: str) -> str:
        """Key used to unify this record with an existing entity."""
        return f"{source}:{self.external_id}"

    def attributes(self) -> dict:
        """Entity attributes carried by this record (ids and timestamps excluded)."""
        return self.model_dump(
            mode="json",
            exclude={"entity_type", "external_id", "source_updated_at"},
            exclude_none=True,
        )


class CustomerRecord(_SyncRecordBase):
    entity_type: Literal["customer"] = "customer"
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    orders_count: Optional[int] = None
    total_spent: Optional[Decimal] = None
    tags: Optional[list[str]] = None

    @field_validator("email", mode="before")
    @classmethod
    def _normalize_email(cls, v):
        if isinstance(v, str):
            v = v.strip().lower()
            return v or None
        return v

    @field_validator("tags", mode="before")
    @classmethod
    def _split_tags(cls, v):
        # Shopify sends "vip, newsletter"; Kajabi sends a list
        if isinstance(v, str):
            return [t.strip() for t in v.split(",") if t.strip()]
        return v

    def match_key(self, source: str) -> str:
        if self.email:
            return f"email:{self.email}"
        return super().match_key(source)


class OrderRecord(_SyncRecordBase):
    entity_type: Literal["order"] = "order"
    customer_external_id: Optional[str] = None
    total_price: Optional[Decimal] = None
    currency: Optional[str] = None
    financial_status: Optional[str] = None

    @field_validator("customer_external_id", mode="before")
    @classmethod
    def _coerce_customer_id(cls, v):
        if isinstance(v, int):
            return str(v)
        return v


class PurchaseRecord(_SyncRecordBase):
    entity_type: Literal["purchase"] = "purchase"
    customer_external_id: Optional[str] = None
    amount: Optional[Decimal] = None
    offer_title: Optional[str] = None

    @field_validator("customer_external_id", mode="before")
    @classmethod
    def _coerce_customer_id(cls, v):
        if isinstance(v, int):
            return str(v)
        return v


class SocialProfileRecord(_SyncRecordBase):
    entity_type: Literal["social_profile"] = "social_profile"
    platform: str
    username: Optional[str] = None
    display_name: Optional[str] = None
    follower_count: Optional[int] = None
    following_count: Optional[int] = None


class TaskRecord(_SyncRecordBase):
    entity_type: Literal["task"] = "task"
    name: Optional[str] = None
    status: Optional[str] = None
    list_id: Optional[str] = None
    assignees: Optional[list[str]] = None


class WorkflowExecutionRecord(_SyncRecordBase):
    entity_type: Literal["workflow_execution"] = "workflow_execution"
    workflow_id: Optional[str] = None
    workflow_name: Optional[str] = None
    status: Literal["running", "completed", "failed"]
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None


SyncRecord = Annotated[
    Union[
        CustomerRecord, OrderRecord, PurchaseRecord, SocialProfileRecord, TaskRecord, WorkflowExecutionRecord,
    ],
    Field(discriminator="entity_type"),
]

_sync_record_adapter = TypeAdapter(SyncRecord)


def parse_sync_record(data: dict) -> _SyncRecordBase:
    """Validate a stored queue payload back into its typed record."""
    return _sync_record_adapter.validate_python(data)
