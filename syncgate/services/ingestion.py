"""
Webhook ingestion - the inbound half of the pipeline.

verify -> log -> route -> enqueue, inside one transaction: the event row,
its queue items and the received -> processing transition commit together.
Workers are notified only after the commit.
"""
import logging
from dataclasses import dataclass
from typing import Optional
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from syncgate.errors import AuthError, PayloadValidationError
from syncgate.services import event_store, sync_queue
from syncgate.services.dispatch_router import RoutingTable, get_routing_table, route
from syncgate.services.source_registry import SourceRegistry, get_registry
from syncgate.utils.webhook_signatures import compute_payload_hash, verify_webhook

logger = logging.getLogger(__name__)

UNKNOWN_EVENT_TYPE = "unknown"

SIGNATURE_FAILURES = ("invalid_signature", "missing_signature")


@dataclass
class IngestResult:
    status: str  # accepted, duplicate, acknowledged, invalid_payload, unauthorized
    event_id: Optional[uuid.UUID] = None
    queued: int = 0
    message: Optional[str] = None


async def ingest_webhook(
    db: AsyncSession,
    source: str,
    headers,
    body: bytes,
    payload: dict,
    client_ip: Optional[str] = None,
    registry: Optional[SourceRegistry] = None,
    table: Optional[RoutingTable] = None,
) -> IngestResult:
    """
    Accept one webhook delivery. Raises UnsupportedSourceError for unknown
    or disabled sources; every other outcome is logged and returned.
    """
    registry = registry or get_registry()
    table = table or get_routing_table()

    definition = registry.get(source)
    payload_hash = compute_payload_hash(body)
    event_type = definition.extract_event_type(headers, payload) or UNKNOWN_EVENT_TYPE
    external_event_id = definition.extract_event_id(headers, payload, event_type)

    try:
        trust_level = verify_webhook(definition, headers, body, client_ip)
    except AuthError as e:
        event = await event_store.record_rejected_event(
            db, source, event_type, payload, payload_hash,
            error_message=f"{e.reason}: {e}",
            external_event_id=external_event_id,
            client_ip=client_ip,
        )
        await db.commit()
        logger.warning(
            "Webhook rejected: source=%s reason=%s ip=%s event=%s",
            source, e.reason, client_ip, str(event.id)[:8],
        )
        await _alert_rejected(source, e, client_ip, event.id)
        return IngestResult(status="unauthorized", event_id=event.id, message=e.reason)

    event, original = await event_store.record_event(
        db, source, event_type, payload, payload_hash,
        external_event_id=external_event_id,
        trust_level=trust_level,
        client_ip=client_ip,
    )
    if original is not None:
        await db.commit()
        return IngestResult(status="duplicate", event_id=original.id, message="duplicate delivery")

    if not definition.allows_event_type(event_type):
        event_store.complete_event(event, "completed", event_store.UNPROCESSED_MESSAGE)
        await db.commit()
        logger.info("Event type not enabled: source=%s type=%s", source, event_type)
        return IngestResult(status="acknowledged", event_id=event.id, message=event_store.UNPROCESSED_MESSAGE)

    try:
        result = route(
            table, source, event_type, payload,
            delay_seconds=definition.sync_frequency_seconds,
        )
    except PayloadValidationError as e:
        event_store.complete_event(event, "failed", str(e))
        await db.commit()
        logger.warning("Invalid webhook payload: source=%s type=%s error=%s", source, event_type, str(e))
        return IngestResult(status="invalid_payload", event_id=event.id, message=str(e))

    if not result.matched or not result.items:
        message = event_store.UNPROCESSED_MESSAGE if not result.matched else "acknowledged, no sync work"
        event_store.complete_event(event, "completed", message)
        await db.commit()
        logger.info("Webhook acknowledged without work: source=%s type=%s", source, event_type)
        return IngestResult(status="acknowledged", event_id=event.id, message=message)

    await sync_queue.enqueue_items(db, result.items, webhook_event_id=event.id)
    event.processing_status = "processing"
    await db.commit()

    logger.info(
        "Webhook accepted: source=%s type=%s event=%s items=%d",
        source, event_type, str(event.id)[:8], len(result.items),
    )
    if definition.sync_frequency_seconds <= 0:
        await sync_queue.notify_workers(len(result.items))

    return IngestResult(status="accepted", event_id=event.id, queued=len(result.items))


async def _alert_rejected(source: str, error: AuthError, client_ip: Optional[str], event_id: uuid.UUID) -> None:
    if error.reason not in SIGNATURE_FAILURES:
        return
    from syncgate.utils.alerting import send_alert, AlertType

    await send_alert(
        AlertType.WEBHOOK_SIGNATURE_INVALID,
        f"Webhook from {source} failed verification ({error.reason}) from {client_ip}: {error}",
        severity="warning",
        extra={"event_id": str(event_id), "source": source, "client_ip": client_ip},
        cooldown_key=source,
    )
