"""
Pydantic schemas for broadcast sends, device registration and preferences.
"""

import enum
import re
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

_HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


class TargetType(str, enum.Enum):
    ALL_USERS = "all_users"
    RESTAURANT_USERS = "restaurant_users"
    SPECIFIC_USERS = "specific_users"


class Priority(str, enum.Enum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


class BroadcastTarget(BaseModel):
    type: TargetType
    restaurant_ids: Optional[list[str]] = None
    user_ids: Optional[list[str]] = None


class BroadcastScheduling(BaseModel):
    send_at: Optional[datetime] = None
    timezone: str = "UTC"


class BroadcastRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    body: str = Field(..., min_length=1)
    channels: list[str] = Field(..., min_length=1)
    priority: Priority = Priority.NORMAL
    target: BroadcastTarget
    scheduling: Optional[BroadcastScheduling] = None


class BroadcastResponse(BaseModel):
    success: bool = True
    recipients: int
    notifications: int
    queue_items: int
    scheduled: bool


class SubscriptionKeys(BaseModel):
    p256dh: str = Field(..., min_length=1)
    auth: str = Field(..., min_length=1)


class PushSubscriptionData(BaseModel):
    endpoint: str = Field(..., min_length=1)
    keys: SubscriptionKeys


class DeviceInfo(BaseModel):
    browser: Optional[str] = None
    device: Optional[str] = None


class SubscribeRequest(BaseModel):
    subscription: PushSubscriptionData
    restaurant_id: Optional[str] = None
    device_info: Optional[DeviceInfo] = None


class UnsubscribeRequest(BaseModel):
    endpoint: str = Field(..., min_length=1)


class PreferenceUpdate(BaseModel):
    quiet_hours_start: Optional[str] = None
    quiet_hours_end: Optional[str] = None
    new_bookings: Optional[bool] = None
    cancellations: Optional[bool] = None
    modifications: Optional[bool] = None
    waitlist_updates: Optional[bool] = None
    table_ready: Optional[bool] = None
    order_updates: Optional[bool] = None

    @field_validator("quiet_hours_start", "quiet_hours_end")
    @classmethod
    def check_hhmm(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not _HHMM.match(v):
            raise ValueError("must be HH:MM")
        return v

    @field_validator(
        "new_bookings", "cancellations", "modifications", "waitlist_updates", "table_ready", "order_updates"
    )
    @classmethod
    def check_not_null(cls, v: Optional[bool]) -> bool:
        # Omit a toggle to keep it; null is not a third state
        if v is None:
            raise ValueError("must be true or false")
        return v


class PreferenceResponse(BaseModel):
    restaurant_id: str
    quiet_hours_start: Optional[str]
    quiet_hours_end: Optional[str]
    new_bookings: bool
    cancellations: bool
    modifications: bool
    waitlist_updates: bool
    table_ready: bool
    order_updates: bool


class DrainResponse(BaseModel):
    success: bool = True
    processed: int
    sent: int
    failed: int
    requeued: int
    suppressed: int


class SubscribeResponse(BaseModel):
    success: bool = True
    subscription_id: str
    is_active: bool


class TaskRunResponse(BaseModel):
    success: bool = True
    processed: int
    done: int
    retried: int
    failed: int
