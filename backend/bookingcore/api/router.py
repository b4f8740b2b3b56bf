"""
Central API router that aggregates all route modules.
"""

from fastapi import APIRouter
from bookingcore.api.routes import bookings, cron, notifications, webhooks

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(webhooks.router)
api_router.include_router(notifications.router)
api_router.include_router(bookings.router)
api_router.include_router(cron.router)
