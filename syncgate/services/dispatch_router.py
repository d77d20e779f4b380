"""
Dispatch router - maps a verified webhook event to sync queue work.

The routing table is data: (source, event_type) -> [RouteRule]. Each rule
names the sync action, entity type, priority and retry budget, plus the
parser that turns the raw payload into typed records. route() is a pure
function of the table; persisting the result is the ingestion service's job.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Sequence

from pydantic import ValidationError

from syncgate.api import webhook_sources as parsers
from syncgate.errors import PayloadValidationError
from syncgate.utils.timeutil import utcnow

logger = logging.getLogger(__name__)

Parser = Callable[[dict], list]


@dataclass(frozen=True)
class RouteRule:
    action: Optional[str]  # None = acknowledge without work
    entity_type: Optional[str] = None
    priority: int = 2
    max_retries: int = 3
    parser: Optional[Parser] = None

    @property
    def ack_only(self) -> bool:
        return self.action is None


@dataclass(frozen=True)
class RoutedItem:
    """A unit of downstream work, not yet persisted."""
    source: str
    action: str
    entity_type: str
    entity_id: str
    payload: dict
    priority: int
    max_retries: int
    scheduled_for: datetime


@dataclass(frozen=True)
class RouteResult:
    items: list[RoutedItem]
    matched: bool  # False = no rule for (source, event_type)


ACK_ONLY = RouteRule(action=None)


class RoutingTable:
    """Injectable mapping of (source, event_type) to rules."""

    def __init__(self, rules: Optional[dict[tuple[str, str], Sequence[RouteRule]]] = None):
        self._rules: dict[tuple[str, str], list[RouteRule]] = {}
        for (source, event_type), rule_list in (rules or {}).items():
            for rule in rule_list:
                self.add(source, event_type, rule)

    def add(self, source: str, event_type: str, rule: RouteRule) -> None:
        self._rules.setdefault((source, event_type), []).append(rule)

    def rules_for(self, source: str, event_type: str) -> Optional[list[RouteRule]]:
        return self._rules.get((source, event_type))

    def event_types(self, source: str) -> list[str]:
        return sorted(et for (s, et) in self._rules if s == source)


def _add_many(table: RoutingTable, sources, event_types, rule: RouteRule) -> None:
    for source in sources:
        for event_type in event_types:
            table.add(source, event_type, rule)


def build_default_routing_table(max_retries: int = 3) -> RoutingTable:
    table = RoutingTable()

    def rule(action, entity_type, priority, parser):
        return RouteRule(action, entity_type, priority, max_retries, parser)

    # Shopify
    _add_many(table, ["shopify"], ["customers/create", "customers/update"],
              rule("upsert", "customer", 1, parsers.parse_shopify_customer))
    _add_many(table, ["shopify"], ["customers/delete"],
              rule("delete", "customer", 1, parsers.parse_shopify_customer_delete))
    _add_many(table, ["shopify"], ["orders/create", "orders/updated"],
              rule("upsert", "order", 1, parsers.parse_shopify_order))

    # Kajabi
    _add_many(table, ["kajabi"], ["person.created", "person.updated"],
              rule("upsert", "customer", 1, parsers.parse_kajabi_person))
    _add_many(table, ["kajabi"], ["person.deleted"],
              rule("delete", "customer", 1, parsers.parse_kajabi_person_delete))
    _add_many(table, ["kajabi"], ["purchase.created", "purchase.updated"],
              rule("upsert", "purchase", 1, parsers.parse_kajabi_purchase))

    # Meta
    table.add("facebook", "user", rule("upsert", "social_profile", 2, parsers.parse_facebook_user))
    table.add("instagram", "user", rule("upsert", "social_profile", 2, parsers.parse_instagram_user))
    _add_many(table, ["facebook", "instagram"], ["page"], ACK_ONLY)

    # Twitter / X
    table.add("twitter", "follow_events",
              rule("upsert", "social_profile", 2, parsers.parse_twitter_follows))
    table.add("twitter", "tweet_create_events", ACK_ONLY)

    # ClickUp
    _add_many(table, ["clickup"], ["taskCreated", "taskUpdated"],
              rule("upsert", "task", 3, parsers.parse_clickup_task))
    table.add("clickup", "taskDeleted", rule("delete", "task", 3, parsers.parse_clickup_task_delete))

    # n8n / internal jobs
    table.add("n8n", "customer.sync", rule("upsert", "customer", 2, parsers.parse_job_customer))
    _add_many(table, ["n8n"], sorted(parsers.EXECUTION_STATUSES),
              rule("upsert", "workflow_execution", 3, parsers.parse_workflow_execution))
    table.add("n8n", "workflow_updated", ACK_ONLY)
    table.add("internal", "customer.upsert", rule("upsert", "customer", 2, parsers.parse_job_customer))
    table.add("internal", "customer.delete",
              rule("delete", "customer", 2, parsers.parse_job_customer_delete))

    return table


def route(
    table: RoutingTable,
    source: str,
    event_type: str,
    payload: dict,
    delay_seconds: int = 0,
    now: Optional[datetime] = None,
) -> RouteResult:
    """
    Turn one verified event into queue items, one per record per matching rule.
    Raises PayloadValidationError when a parser rejects the payload.
    """
    rules = table.rules_for(source, event_type)
    if rules is None:
        return RouteResult(items=[], matched=False)

    scheduled_for = (now or utcnow()) + timedelta(seconds=max(delay_seconds, 0))
    items: list[RoutedItem] = []
    for rule in rules:
        if rule.ack_only:
            continue
        try:
            records = rule.parser(payload)
        except ValidationError as e:
            raise PayloadValidationError(
                f"{source}/{event_type}: {e.error_count()} validation error(s): {e.errors()[0]['msg']}"
            ) from e
        except (ValueError, TypeError, KeyError) as e:
            raise PayloadValidationError(f"{source}/{event_type}: {e}") from e

        for record in records:
            items.append(RoutedItem(
                source=source,
                action=rule.action,
                entity_type=rule.entity_type,
                entity_id=record.external_id,
                payload=record.model_dump(mode="json"),
                priority=rule.priority,
                max_retries=rule.max_retries,
                scheduled_for=scheduled_for,
            ))

    return RouteResult(items=items, matched=True)


_default_table: Optional[RoutingTable] = None


def get_routing_table() -> RoutingTable:
    global _default_table
    if _default_table is None:
        from syncgate.config import get_settings
        _default_table = build_default_routing_table(get_settings().sync_default_max_retries)
    return _default_table
