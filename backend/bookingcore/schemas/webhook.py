"""
Pydantic schemas for signed booking domain events.

Each event names the `data` fields it cannot be handled without; anything
else in `data` is carried along and ignored.
"""

import enum
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class CancelledBy(str, enum.Enum):
    USER = "user"
    RESTAURANT = "restaurant"


class EventData(BaseModel):
    model_config = ConfigDict(extra="allow")

    booking_id: str = Field(..., min_length=1)


class BookingCreatedData(EventData):
    restaurant_id: str
    party_size: int = Field(..., gt=0)
    user_id: Optional[str] = None


class BookingConfirmedData(EventData):
    user_id: str


class BookingCancelledData(EventData):
    restaurant_id: str
    user_id: str
    cancelled_by: CancelledBy


class BookingCompletedData(EventData):
    restaurant_id: str
    user_id: str
    party_size: int = Field(..., gt=0)
    booking_time: datetime


class BookingNoShowData(EventData):
    restaurant_id: str
    user_id: str


class WebhookEnvelope(BaseModel):
    event: str
    data: dict[str, Any]


class SideEffectOut(BaseModel):
    name: str
    ok: bool
    skipped: bool = False
    error: Optional[str] = None
    detail: Optional[dict[str, Any]] = None


class WebhookResponse(BaseModel):
    success: bool = True
    event: str
    booking_id: str
    duplicate: bool = False
    partial: bool = False
    side_effects: list[SideEffectOut] = []
