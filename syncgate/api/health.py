"""
Health check endpoints - used by load balancers, Docker healthcheck, and monitoring.

- GET /health       - basic liveness (always 200 if app running)
- GET /health/ready - readiness check (DB + Redis)
- GET /health/deep  - deep check (DB + Redis + sync worker heartbeats + queue backlog)
"""
import logging
from datetime import datetime, timezone
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text, select, func
from syncgate.database import get_db

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])

APP_VERSION = "1.0.0"


@router.get("/health")
async def health_check():
    """Basic liveness check - returns 200 if the app is running."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": APP_VERSION,
    }


@router.get("/health/ready")
async def readiness_check(
    db: AsyncSession = Depends(get_db),
):
    """
    Readiness check - verifies database and Redis connectivity.
    Redis only degrades readiness; the queue works without it.
    """
    checks = {
        "database": (await _check_database(db))["healthy"],
        "redis": (await _check_redis())["healthy"],
    }
    all_healthy = all(checks.values())
    return {
        "status": "ready" if all_healthy else "degraded",
        "checks": checks,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/health/deep")
async def deep_health_check(
    db: AsyncSession = Depends(get_db),
):
    """
    Deep health check - database, Redis, worker heartbeats and queue backlog.
    """
    now = datetime.now(timezone.utc)
    checks = {
        "database": await _check_database(db),
        "redis": await _check_redis(),
        "workers": await _check_workers(),
    }
    if checks["database"]["healthy"]:
        checks["queue"] = await _check_queue(db)

    critical_healthy = checks["database"]["healthy"]
    all_healthy = all(c.get("healthy", False) for c in checks.values())

    if all_healthy:
        status = "healthy"
    elif critical_healthy:
        status = "degraded"
    else:
        status = "unhealthy"
        await _alert_unhealthy(checks)

    return {
        "status": status,
        "checks": checks,
        "timestamp": now.isoformat(),
        "version": APP_VERSION,
    }


async def _check_database(db: AsyncSession) -> dict:
    """Check database connectivity."""
    try:
        result = await db.execute(text("SELECT 1"))
        result.scalar()
        return {"healthy": True}
    except Exception as e:
        logger.error("Health: database check failed: %s", str(e))
        return {"healthy": False, "error": str(e)}


async def _check_redis() -> dict:
    """Check Redis connectivity."""
    try:
        from syncgate.utils.redis_client import get_redis
        redis = await get_redis()
        await redis.ping()
        return {"healthy": True}
    except Exception as e:
        logger.warning("Health: Redis check failed: %s", str(e))
        return {"healthy": False, "error": str(e)}


def _expected_workers() -> list[str]:
    from syncgate.config import get_settings
    from syncgate.workers.sync_worker import heartbeat_name
    from syncgate.workers.stale_claim_sweeper import HEARTBEAT_NAME as SWEEPER
    from syncgate.workers.event_retention import HEARTBEAT_NAME as RETENTION

    names = [heartbeat_name(i) for i in range(get_settings().sync_worker_count)]
    return names + [SWEEPER, RETENTION]


async def _check_workers() -> dict:
    """Check worker heartbeat timestamps in Redis."""
    try:
        from syncgate.utils.redis_client import get_redis, HEARTBEAT_KEY_PREFIX
        redis = await get_redis()

        workers = {}
        for name in _expected_workers():
            beat = await redis.get(f"{HEARTBEAT_KEY_PREFIX}{name}")
            workers[name] = {
                "healthy": beat is not None,
                "last_heartbeat": beat,
            }

        all_healthy = all(w["healthy"] for w in workers.values())
        return {"healthy": all_healthy, "workers": workers}
    except Exception as e:
        logger.debug("Health: worker heartbeat check failed: %s", str(e))
        return {"healthy": True, "note": "Unable to check worker heartbeats"}


async def _check_queue(db: AsyncSession) -> dict:
    """Overdue pending items and dead letters."""
    from syncgate.models.sync_queue_item import SyncQueueItem

    now = datetime.now(timezone.utc)
    overdue = (await db.execute(
        select(func.count(SyncQueueItem.id)).where(
            SyncQueueItem.status == "pending",
            SyncQueueItem.scheduled_for <= now,
        )
    )).scalar() or 0
    dead_letters = (await db.execute(
        select(func.count(SyncQueueItem.id)).where(SyncQueueItem.status == "failed")
    )).scalar() or 0
    from syncgate.config import get_settings
    threshold = get_settings().sync_queue_backlog_threshold
    healthy = overdue < threshold
    if not healthy:
        from syncgate.utils.alerting import send_alert, AlertType
        await send_alert(
            AlertType.SYNC_QUEUE_BACKLOG,
            f"Sync queue backlog: {overdue} items overdue (threshold {threshold})",
            severity="warning",
            extra={"due_pending": overdue, "dead_letters": dead_letters},
        )
    return {
        "healthy": healthy,
        "due_pending": overdue,
        "dead_letters": dead_letters,
    }


async def _alert_unhealthy(checks: dict) -> None:
    from syncgate.utils.alerting import send_alert, AlertType

    failing = sorted(name for name, check in checks.items() if not check.get("healthy", False))
    await send_alert(
        AlertType.HEALTH_CHECK_FAILED,
        f"Deep health check unhealthy: {', '.join(failing)} failing",
        severity="critical",
        extra={name: checks[name].get("error", "unhealthy") for name in failing},
    )
