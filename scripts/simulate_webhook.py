"""
Send a signed sample webhook to a running SyncGate instance.

Usage:
    python scripts/simulate_webhook.py
    python scripts/simulate_webhook.py --source kajabi --secret kajabi_test_secret
    python scripts/simulate_webhook.py --source shopify --repeat 2   # duplicate delivery
"""
import argparse
import asyncio
import json
import logging
import time
import uuid

import httpx

from syncgate.utils.webhook_signatures import compute_hmac_sha256

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

BASE_URL = "http://localhost:8000"


def _shopify(secret: str) -> tuple[dict, dict]:
    payload = {
        "id": 820982911946154508,
        "email": "jon@example.com",
        "first_name": "Jon",
        "last_name": "Snow",
        "orders_count": 2,
        "total_spent": "199.65",
        "tags": "vip, newsletter",
        "updated_at": "2026-10-18T10:00:00Z",
    }
    body = json.dumps(payload).encode()
    headers = {
        "X-Shopify-Topic": "customers/update",
        "X-Shopify-Webhook-Id": str(uuid.uuid4()),
        "X-Shopify-Hmac-Sha256": compute_hmac_sha256(secret, body, "base64"),
    }
    return payload, headers


def _kajabi(secret: str) -> tuple[dict, dict]:
    payload = {
        "id": f"evt_{uuid.uuid4().hex[:12]}",
        "event": "person.updated",
        "data": {
            "id": 4417,
            "email": "jon@example.com",
            "first_name": "Jon",
            "tags": ["course-buyer"],
            "updated_at": "2026-10-18T10:05:00Z",
        },
    }
    body = json.dumps(payload).encode()
    headers = {"X-Kajabi-Signature": compute_hmac_sha256(secret, body, "hex")}
    return payload, headers


def _clickup(secret: str) -> tuple[dict, dict]:
    now_ms = str(int(time.time() * 1000))
    payload = {
        "event": "taskUpdated",
        "task_id": "86a1b2c3",
        "webhook_id": "wh_test",
        "history_items": [{"id": str(uuid.uuid4().int)[:19], "date": now_ms}],
        "task": {"name": "Onboard Jon", "status": {"status": "in progress"}},
    }
    body = json.dumps(payload).encode()
    headers = {"X-Signature": compute_hmac_sha256(secret, body, "hex")}
    return payload, headers


BUILDERS = {
    "shopify": _shopify,
    "kajabi": _kajabi,
    "clickup": _clickup,
}


async def send(source: str, secret: str, repeat: int, base_url: str = BASE_URL) -> None:
    payload, headers = BUILDERS[source](secret)
    body = json.dumps(payload).encode()
    headers["Content-Type"] = "application/json"
    async with httpx.AsyncClient(timeout=30) as client:
        for attempt in range(repeat):
            resp = await client.post(f"{base_url}/api/webhooks/{source}", content=body, headers=headers)
            logger.info("%s delivery %d: %s %s", source, attempt + 1, resp.status_code, resp.text)


async def main():
    parser = argparse.ArgumentParser(description="Simulate signed source webhooks")
    parser.add_argument("--source", default="shopify", choices=sorted(BUILDERS))
    parser.add_argument("--secret", default="test_secret")
    parser.add_argument("--repeat", type=int, default=1)
    parser.add_argument("--base-url", default=BASE_URL)
    args = parser.parse_args()

    await send(args.source, args.secret, args.repeat, args.base_url)


if __name__ == "__main__":
    asyncio.run(main())
