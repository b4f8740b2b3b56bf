"""
Signed domain-event ingestion from the booking front end.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from bookingcore.api.deps import get_services
from bookingcore.core.errors import ValidationError
from bookingcore.db.session import get_db
from bookingcore.schemas.webhook import WebhookResponse
from bookingcore.services.channel_factory import CoreServices

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/bookings", response_model=WebhookResponse)
async def receive_booking_event(
    request: Request,
    x_webhook_signature: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_db),
    services: CoreServices = Depends(get_services),
):
    """
    Apply one booking event: {"event": "booking.<name>", "data": {...}}.

    The state change is committed before side effects run. A side effect
    that fails is reported in `side_effects` with `partial: true`; the
    response is still 200. Replays come back with `duplicate: true`.
    """
    try:
        body = await request.json()
    except ValueError:
        body = None
    if not isinstance(body, dict):
        services.dispatcher.verify(x_webhook_signature)
        raise ValidationError("Body must be a JSON object with 'event' and 'data'")

    result = await services.dispatcher.handle(
        db,
        x_webhook_signature,
        str(body.get("event") or ""),
        body.get("data"),
    )
    return result.to_response()
