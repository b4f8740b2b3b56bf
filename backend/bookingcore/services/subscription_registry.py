"""
Device subscription registry and restaurant notification preferences.

Endpoints are globally unique. Registering a known endpoint updates the row
in place (new keys, new owner, reactivated) instead of inserting a second
one, and a unique-endpoint race between two registrations is retried once
as an update.

Preferences are read through PreferenceCache; a missing row means
everything enabled and no quiet hours.
"""

import dataclasses
from dataclasses import dataclass
from datetime import datetime, time
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from bookingcore.core.config import Settings
from bookingcore.core.errors import NotFoundError, ValidationError
from bookingcore.core.logging import get_logger
from bookingcore.core.metrics import subscription_deactivations
from bookingcore.db.base import utcnow
from bookingcore.models.notification import NotificationPreference, PushSubscription
from bookingcore.services.cache_service import PreferenceCache

logger = get_logger(__name__)

# Notification type -> preference flag that can switch it off.
# Types not listed here are never suppressed by category.
CATEGORY_FLAGS = {
    "new_booking": "new_bookings",
    "booking_cancelled": "cancellations",
    "booking_modified": "modifications",
    "waitlist_update": "waitlist_updates",
    "table_ready": "table_ready",
    "order_update": "order_updates",
}


@dataclass(frozen=True)
class PreferenceSettings:
    restaurant_id: str
    quiet_hours_start: Optional[str] = None
    quiet_hours_end: Optional[str] = None
    new_bookings: bool = True
    cancellations: bool = True
    modifications: bool = True
    waitlist_updates: bool = True
    table_ready: bool = True
    order_updates: bool = True

    @classmethod
    def of(cls, row: NotificationPreference) -> "PreferenceSettings":
        return cls(**{f.name: getattr(row, f.name) for f in dataclasses.fields(cls)})

    def to_dict(self) -> dict:
        return dataclasses.asdict(self)


def _parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


def is_quiet_time(start: Optional[str], end: Optional[str], at: time) -> bool:
    """
    Same-day window: start <= at < end.
    Overnight window (start > end): at >= start or at < end.
    An unset bound or start == end means no quiet window.
    """
    if not start or not end:
        return False
    start_t, end_t = _parse_hhmm(start), _parse_hhmm(end)
    if start_t == end_t:
        return False
    if start_t < end_t:
        return start_t <= at < end_t
    return at >= start_t or at < end_t


def suppression_reason(
    prefs: PreferenceSettings,
    notification_type: str,
    priority: str,
    at: datetime,
    tz: str = "UTC",
) -> Optional[str]:
    """Why a notification should not go out right now, or None to send it."""
    flag = CATEGORY_FLAGS.get(notification_type)
    if flag and not getattr(prefs, flag):
        return "category_disabled"
    if priority != "high":
        local = at.astimezone(ZoneInfo(tz)).time().replace(second=0, microsecond=0)
        if is_quiet_time(prefs.quiet_hours_start, prefs.quiet_hours_end, local):
            return "quiet_hours"
    return None


class SubscriptionRegistry:
    def __init__(self, cache: Optional[PreferenceCache], settings: Settings):
        self.cache = cache or PreferenceCache(None)
        self.settings = settings

    async def register(
        self,
        db: AsyncSession,
        endpoint: str,
        p256dh: str,
        auth: str,
        user_id: str,
        restaurant_id: Optional[str] = None,
        browser: Optional[str] = None,
        device_type: Optional[str] = None,
    ) -> PushSubscription:
        if not endpoint or not p256dh or not auth:
            raise ValidationError("Invalid subscription data")

        values = {
            "p256dh": p256dh,
            "auth": auth,
            "user_id": user_id,
            "restaurant_id": restaurant_id,
            "browser": browser or "unknown",
            "device_type": device_type or "unknown",
        }

        for attempt in range(2):
            result = await db.execute(
                select(PushSubscription)
                .where(PushSubscription.endpoint == endpoint)
                .execution_options(populate_existing=True)
            )
            subscription = result.scalar_one_or_none()
            now = utcnow()

            if subscription is not None:
                for key, value in values.items():
                    setattr(subscription, key, value)
                subscription.is_active = True
                subscription.last_used_at = now
                await db.flush()
                logger.info(
                    "subscription_updated",
                    subscription_id=subscription.id,
                    user_id=user_id,
                    restaurant_id=restaurant_id,
                )
                return subscription

            subscription = PushSubscription(endpoint=endpoint, is_active=True, last_used_at=now, **values)
            db.add(subscription)
            try:
                await db.flush()
            except IntegrityError:
                # Another registration inserted the same endpoint first
                await db.rollback()
                logger.info("subscription_register_race", attempt=attempt)
                continue

            logger.info(
                "subscription_created",
                subscription_id=subscription.id,
                user_id=user_id,
                restaurant_id=restaurant_id,
            )
            return subscription

        raise ValidationError("Could not register subscription")

    async def deactivate(
        self, db: AsyncSession, endpoint: str, user_id: Optional[str] = None
    ) -> PushSubscription:
        """Soft-deactivate by endpoint. With user_id, only that user's device matches."""
        query = select(PushSubscription).where(PushSubscription.endpoint == endpoint)
        if user_id is not None:
            query = query.where(PushSubscription.user_id == user_id)
        result = await db.execute(query)
        subscription = result.scalar_one_or_none()
        if subscription is None:
            raise NotFoundError("Subscription not found")
        subscription.is_active = False
        await db.flush()
        logger.info("subscription_deactivated", subscription_id=subscription.id)
        return subscription

    async def deactivate_by_ids(self, db: AsyncSession, subscription_ids: Iterable[str]) -> int:
        """Bulk soft-deactivation after permanent delivery failures."""
        ids = list(subscription_ids)
        if not ids:
            return 0
        result = await db.execute(
            update(PushSubscription)
            .where(PushSubscription.id.in_(ids))
            .values(is_active=False, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        subscription_deactivations.inc(result.rowcount)
        logger.info("subscriptions_deactivated", count=result.rowcount)
        return result.rowcount

    async def touch(self, db: AsyncSession, subscription_ids: Iterable[str], at: datetime) -> None:
        ids = list(subscription_ids)
        if not ids:
            return
        await db.execute(
            update(PushSubscription)
            .where(PushSubscription.id.in_(ids))
            .values(last_used_at=at)
            .execution_options(synchronize_session=False)
        )

    async def active_subscriptions_for(
        self,
        db: AsyncSession,
        user_ids: Optional[list[str]],
        restaurant_id: Optional[str] = None,
    ) -> list[PushSubscription]:
        """user_ids=None selects every active device of the restaurant."""
        query = select(PushSubscription).where(PushSubscription.is_active.is_(True))
        if user_ids is None:
            if not restaurant_id:
                return []
            query = query.where(PushSubscription.restaurant_id == restaurant_id)
        else:
            query = query.where(PushSubscription.user_id.in_(user_ids))
        result = await db.execute(query.order_by(PushSubscription.created_at.asc()))
        return list(result.scalars().all())

    async def preferences_for(self, db: AsyncSession, restaurant_id: str) -> PreferenceSettings:
        cached = await self.cache.get(restaurant_id)
        if cached is not None:
            return PreferenceSettings(**cached)

        result = await db.execute(
            select(NotificationPreference).where(NotificationPreference.restaurant_id == restaurant_id)
        )
        row = result.scalar_one_or_none()
        prefs = PreferenceSettings.of(row) if row else PreferenceSettings(restaurant_id=restaurant_id)
        await self.cache.set(restaurant_id, prefs.to_dict())
        return prefs

    async def update_preferences(
        self, db: AsyncSession, restaurant_id: str, changes: dict
    ) -> PreferenceSettings:
        """Apply the given fields; fields left out keep their stored value."""
        nulled = sorted(key for key in CATEGORY_FLAGS.values() if key in changes and changes[key] is None)
        if nulled:
            raise ValidationError(f"Preference flags cannot be null: {', '.join(nulled)}")

        result = await db.execute(
            select(NotificationPreference).where(NotificationPreference.restaurant_id == restaurant_id)
        )
        row = result.scalar_one_or_none()
        if row is None:
            row = NotificationPreference(restaurant_id=restaurant_id)
            db.add(row)
        for key, value in changes.items():
            setattr(row, key, value)
        await db.flush()

        await self.cache.invalidate(restaurant_id)
        logger.info("preferences_updated", restaurant_id=restaurant_id, fields=sorted(changes))
        return PreferenceSettings.of(row)
