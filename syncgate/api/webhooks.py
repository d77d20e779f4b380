"""
Webhook intake - one endpoint for every registered source.

Security layers (in order):
1. Rate limiting (per source + client IP)
2. Source lookup (unknown/disabled -> 404, nothing stored)
3. JSON parsing (malformed -> 400, nothing stored)
4. Verification, audit trail, routing and enqueue (ingestion service)

Senders only ever see the fast acknowledgement or a boundary rejection;
downstream sync failures are tracked on the queue.
"""
import json
import logging

from fastapi import APIRouter, Request, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from syncgate.database import get_db
from syncgate.errors import UnsupportedSourceError
from syncgate.schemas.api_responses import WebhookAckResponse
from syncgate.services.ingestion import ingest_webhook
from syncgate.services.source_registry import get_registry
from syncgate.utils.rate_limiter import check_webhook_rate_limit

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


async def _enforce_rate_limit(request: Request, source: str) -> None:
    """Check rate limits and raise 429 if exceeded."""
    client_ip = request.client.host if request.client else "unknown"
    allowed, retry_after = await check_webhook_rate_limit(source, client_ip)
    if not allowed:
        raise HTTPException(
            status_code=429,
            detail="Rate limit exceeded",
            headers={"Retry-After": str(retry_after or 60)},
        )


def _parse_json(body: bytes) -> dict:
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=400, detail="Invalid JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="JSON body must be an object")
    return payload


@router.post("/{source}", response_model=WebhookAckResponse)
async def receive_webhook(
    source: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """Receive a webhook from any registered source."""
    await _enforce_rate_limit(request, source)

    registry = get_registry()
    try:
        registry.get(source)
    except UnsupportedSourceError as e:
        logger.warning("Webhook for unsupported source rejected: %s", source)
        raise HTTPException(status_code=404, detail=str(e))

    body = await request.body()
    payload = _parse_json(body)
    client_ip = request.client.host if request.client else None

    result = await ingest_webhook(
        db, source, request.headers, body, payload,
        client_ip=client_ip,
        registry=registry,
    )

    if result.status == "unauthorized":
        # The rejected delivery is already committed to the audit trail
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    return WebhookAckResponse(
        status=result.status,
        event_id=str(result.event_id) if result.event_id else None,
        queued=result.queued,
        message=result.message,
    )
