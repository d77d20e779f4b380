"""
API router - aggregates all route modules.
"""
from fastapi import APIRouter
from syncgate.api.webhooks import router as webhooks_router
from syncgate.api.sync_admin import router as sync_admin_router
from syncgate.api.health import router as health_router

api_router = APIRouter()
api_router.include_router(webhooks_router)
api_router.include_router(sync_admin_router)
api_router.include_router(health_router)
