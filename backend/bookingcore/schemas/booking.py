"""
Pydantic schemas for booking creation, transitions and history.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class BookingCreate(BaseModel):
    restaurant_id: str
    party_size: int = Field(..., gt=0, le=100)
    booking_time: datetime
    user_id: Optional[str] = None
    guest_name: Optional[str] = Field(None, max_length=100)
    guest_email: Optional[str] = Field(None, max_length=255)
    guest_phone: Optional[str] = Field(None, max_length=40)
    instant_book: bool = False
    turn_time_minutes: Optional[int] = Field(None, gt=0, le=600)
    applied_offer_id: Optional[str] = None
    table_ids: list[str] = []


class BookingResponse(BaseModel):
    id: str
    restaurant_id: str
    user_id: Optional[str]
    guest_name: Optional[str]
    party_size: int
    booking_time: datetime
    turn_time_minutes: int
    status: str
    confirmation_code: str
    applied_offer_id: Optional[str]
    request_expires_at: Optional[datetime]
    version: int
    created_at: datetime

    model_config = {"from_attributes": True}


class TransitionRequest(BaseModel):
    status: str
    reason: Optional[str] = Field(None, max_length=500)
    metadata: Optional[dict[str, Any]] = None


class TransitionResponse(BaseModel):
    booking_id: str
    old_status: str
    new_status: str
    history_id: str
    partial: bool = False
    side_effects: list[dict[str, Any]] = []


class StatusHistoryResponse(BaseModel):
    id: str
    booking_id: str
    old_status: Optional[str]
    new_status: str
    changed_by: Optional[str]
    reason: Optional[str]
    metadata: Optional[dict[str, Any]] = Field(None, validation_alias="metadata_")
    changed_at: datetime

    model_config = {"from_attributes": True}


class ExpiryResponse(BaseModel):
    success: bool = True
    expired: int
    skipped: int
    booking_ids: list[str] = []
