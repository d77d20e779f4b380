"""
SyncGate - webhook ingestion and retry-queue synchronization engine.
Main FastAPI application entry point.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from syncgate.config import get_settings
from syncgate.api.router import api_router
from syncgate.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger("syncgate")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Injects a correlation ID into every request context and response header."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("X-Correlation-ID") or generate_correlation_id()
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response


async def _load_source_registry() -> None:
    """Merge per-source DB overrides into the registry, once per process."""
    from syncgate.database import async_session_factory
    from syncgate.services.source_registry import load_registry

    try:
        async with async_session_factory() as db:
            await load_registry(db)
    except Exception as e:
        logger.warning(
            "Failed to load webhook source overrides, using environment settings only: %s",
            str(e),
        )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    settings = get_settings()
    logger.info("SyncGate starting up (env=%s)", settings.app_env)

    if settings.app_env == "production" and settings.allow_unsigned_webhooks:
        logger.warning(
            "ALLOW_UNSIGNED_WEBHOOKS=true in production - sources without secrets "
            "are accepted at low trust."
        )
    if not settings.admin_api_token:
        logger.warning("ADMIN_API_TOKEN not set - operational sync API is disabled.")

    # Initialize Sentry if configured
    if settings.sentry_dsn:
        try:
            import sentry_sdk
            sentry_sdk.init(
                dsn=settings.sentry_dsn,
                traces_sample_rate=0.1,
                environment=settings.app_env,
            )
            logger.info("Sentry initialized")
        except Exception as e:
            logger.warning("Sentry initialization failed: %s", str(e))

    await _load_source_registry()

    worker_tasks: list[asyncio.Task] = []

    if settings.sync_workers_enabled:
        from syncgate.workers.sync_worker import start_sync_workers
        worker_tasks.extend(start_sync_workers(settings.sync_worker_count))
        logger.info("Sync worker pool started (%d workers)", settings.sync_worker_count)

        from syncgate.workers.stale_claim_sweeper import run_stale_claim_sweeper
        worker_tasks.append(asyncio.create_task(run_stale_claim_sweeper()))
        logger.info("Stale claim sweeper started")

        from syncgate.workers.event_retention import run_event_retention
        worker_tasks.append(asyncio.create_task(run_event_retention()))
        logger.info("Retention pruner started")
    else:
        logger.info("Sync workers disabled (SYNC_WORKERS_ENABLED=false)")

    yield

    # Graceful shutdown - give workers time to finish current work
    logger.info("SyncGate shutting down - stopping %d workers...", len(worker_tasks))
    for task in worker_tasks:
        task.cancel()
    if worker_tasks:
        done, pending = await asyncio.wait(worker_tasks, timeout=10.0)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    from syncgate.utils.redis_client import close_redis
    from syncgate.database import dispose_engine
    await close_redis()
    await dispose_engine()
    logger.info("SyncGate shutdown complete - all %d workers stopped", len(worker_tasks))


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    # Configure structured JSON logging with correlation IDs
    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="SyncGate",
        description="Webhook ingestion and retry-queue synchronization engine",
        version="1.0.0",
        lifespan=lifespan,
    )

    application.add_middleware(CorrelationIdMiddleware)
    application.include_router(api_router)

    return application


app = create_app()
