"""
Admin broadcast, device subscriptions and restaurant notification preferences.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from bookingcore.api.deps import get_services
from bookingcore.core.config import get_settings
from bookingcore.core.logging import get_logger
from bookingcore.core.security import get_current_user_id, require_admin
from bookingcore.db.session import get_db
from bookingcore.schemas.notification import (
    BroadcastRequest,
    BroadcastResponse,
    PreferenceResponse,
    PreferenceUpdate,
    SubscribeRequest,
    SubscribeResponse,
    UnsubscribeRequest,
)
from bookingcore.services.channel_factory import CoreServices
from bookingcore.services.outbox_service import broadcast

logger = get_logger(__name__)
router = APIRouter(tags=["Notifications"])


@router.post("/admin/notifications/send", response_model=BroadcastResponse)
async def send_broadcast(
    body: BroadcastRequest,
    admin_id: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    services: CoreServices = Depends(get_services),
):
    """
    Queue an admin message for a user selection.
    Nothing is delivered here; the outbox worker picks the entries up.
    """
    result = await broadcast(db, body, get_settings(), services.channels)
    logger.info("broadcast_requested", admin_id=admin_id, queue_items=result.queue_items)
    return BroadcastResponse(
        recipients=result.recipients,
        notifications=result.notifications,
        queue_items=result.queue_items,
        scheduled=result.scheduled,
    )


@router.post("/notifications/subscribe", response_model=SubscribeResponse)
async def subscribe(
    body: SubscribeRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    services: CoreServices = Depends(get_services),
):
    device = body.device_info
    subscription = await services.registry.register(
        db,
        endpoint=body.subscription.endpoint,
        p256dh=body.subscription.keys.p256dh,
        auth=body.subscription.keys.auth,
        user_id=user_id,
        restaurant_id=body.restaurant_id,
        browser=device.browser if device else None,
        device_type=device.device if device else None,
    )
    return SubscribeResponse(subscription_id=subscription.id, is_active=subscription.is_active)


@router.delete("/notifications/subscribe")
async def unsubscribe(
    body: UnsubscribeRequest,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    services: CoreServices = Depends(get_services),
):
    await services.registry.deactivate(db, body.endpoint, user_id=user_id)
    return {"success": True}


@router.get("/notifications/preferences/{restaurant_id}", response_model=PreferenceResponse)
async def get_preferences(
    restaurant_id: str,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    services: CoreServices = Depends(get_services),
):
    prefs = await services.registry.preferences_for(db, restaurant_id)
    return PreferenceResponse(**prefs.to_dict())


@router.put("/notifications/preferences/{restaurant_id}", response_model=PreferenceResponse)
async def update_preferences(
    restaurant_id: str,
    body: PreferenceUpdate,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    services: CoreServices = Depends(get_services),
):
    """Only the fields present in the body change."""
    prefs = await services.registry.update_preferences(
        db, restaurant_id, body.model_dump(exclude_unset=True)
    )
    return PreferenceResponse(**prefs.to_dict())
