"""
Best-effort follow-ups to a committed booking transition.

EXECUTION MODEL
===============
The transition is committed before anything here runs. Each step then runs
in its own unit of work:

  1. run the step against the session
  2. commit on success
  3. on CoreError / SQLAlchemyError: roll back that step only, log it,
     count it, and report it as a failed SideEffectResult

A failed step never undoes the transition and never stops later steps.
Notifications always go last and are skipped once the request deadline has
passed, so a slow request still returns with the state change applied.

Steps work from BookingSnapshot values, not ORM rows: a rollback expires
every loaded instance in the session.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from bookingcore.core.errors import CoreError, ValidationError
from bookingcore.core.logging import get_logger
from bookingcore.core.metrics import side_effect_failures
from bookingcore.db.base import utcnow
from bookingcore.models.booking import BookingTable, OfferRedemption, ProcessedEvent
from bookingcore.models.user import FlaggedUser, RestaurantStats, UserRestaurantStats
from bookingcore.services.booking_state_machine import (
    Command,
    NotifyParty,
    ReleaseTables,
    ReverseOfferRedemption,
)
from bookingcore.services.outbox_service import enqueue_notification

logger = get_logger(__name__)

STAT_FIELDS = frozenset({"total_bookings", "completed_bookings", "cancelled_bookings", "no_show_bookings"})

AUDIENCE_CHANNELS = {
    "user": ("in_app", "push"),
    "restaurant": ("push",),
}


@dataclass
class SideEffectResult:
    name: str
    ok: bool
    error: Optional[str] = None
    skipped: bool = False
    detail: Optional[dict[str, Any]] = None


class Deadline:
    """Monotonic request deadline. seconds=None never expires."""

    def __init__(self, seconds: Optional[float] = None):
        self._expires_at = time.monotonic() + seconds if seconds is not None else None

    def expired(self) -> bool:
        return self._expires_at is not None and time.monotonic() >= self._expires_at


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------


async def release_tables(db: AsyncSession, booking_id: str) -> dict:
    result = await db.execute(delete(BookingTable).where(BookingTable.booking_id == booking_id))
    return {"released": result.rowcount}


async def reverse_offer_redemption(db: AsyncSession, booking_id: str, offer_id: str) -> dict:
    result = await db.execute(
        update(OfferRedemption)
        .where(
            OfferRedemption.booking_id == booking_id,
            OfferRedemption.offer_id == offer_id,
            OfferRedemption.status == "redeemed",
        )
        .values(status="reversed", reversed_at=utcnow(), updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return {"reversed": result.rowcount}


async def increment_restaurant_stat(db: AsyncSession, restaurant_id: str, field_name: str) -> dict:
    if field_name not in STAT_FIELDS:
        raise ValidationError(f"Unknown restaurant stat '{field_name}'")

    column = getattr(RestaurantStats, field_name)
    result = await db.execute(
        update(RestaurantStats)
        .where(RestaurantStats.restaurant_id == restaurant_id)
        .values({field_name: column + 1, "updated_at": utcnow()})
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.add(RestaurantStats(restaurant_id=restaurant_id, **{field_name: 1}))
        await db.flush()
    return {"stat": field_name}


def created_event_key(booking_id: str) -> str:
    return f"booking.created:{booking_id}"


async def record_new_booking(db: AsyncSession, booking_id: str, restaurant_id: str) -> dict:
    """Count the booking once; the receipt commits with the stats bump."""
    db.add(ProcessedEvent(event_key=created_event_key(booking_id), booking_id=booking_id))
    await db.flush()
    return await increment_restaurant_stat(db, restaurant_id, "total_bookings")


async def record_no_show(db: AsyncSession, user_id: str, restaurant_id: str, threshold: int) -> dict:
    """
    Bump the diner's no-show count at this restaurant and flag them once the
    count reaches the threshold. Later no-shows update the same flag.
    """
    result = await db.execute(
        select(UserRestaurantStats).where(
            UserRestaurantStats.user_id == user_id,
            UserRestaurantStats.restaurant_id == restaurant_id,
        )
    )
    stats = result.scalar_one_or_none()
    if stats is None:
        stats = UserRestaurantStats(user_id=user_id, restaurant_id=restaurant_id, no_show_count=0)
        db.add(stats)
    stats.no_show_count = (stats.no_show_count or 0) + 1
    count = stats.no_show_count

    flagged = False
    if count >= threshold:
        result = await db.execute(
            select(FlaggedUser).where(
                FlaggedUser.user_id == user_id,
                FlaggedUser.restaurant_id == restaurant_id,
                FlaggedUser.reason == "excessive_no_shows",
            )
        )
        flag = result.scalar_one_or_none()
        if flag is None:
            db.add(FlaggedUser(
                user_id=user_id,
                restaurant_id=restaurant_id,
                reason="excessive_no_shows",
                flag_count=count,
                status="pending_review",
            ))
            logger.warning("user_flagged", user_id=user_id, restaurant_id=restaurant_id, no_show_count=count)
        else:
            flag.flag_count = count
        flagged = True

    await db.flush()
    return {"no_show_count": count, "flagged": flagged}


async def notify_party(db: AsyncSession, command: NotifyParty) -> dict:
    """Queue the notification on every channel the audience is reachable on."""
    user_id = command.user_id if command.audience == "user" else None
    payload = {
        "booking_id": command.booking_id,
        "restaurant_id": command.restaurant_id,
        "type": command.type,
    }
    queued = 0
    for channel in AUDIENCE_CHANNELS[command.audience]:
        _, created = await enqueue_notification(
            db,
            channel=channel,
            title=command.title,
            body=command.body,
            user_id=user_id,
            restaurant_id=command.restaurant_id,
            type=command.type,
            payload=payload,
            priority=command.priority,
            idempotency_key=f"{command.type}:{command.booking_id}:{channel}",
        )
        queued += int(created)
    return {"queued": queued}


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class SideEffectRunner:
    def __init__(self, db: AsyncSession, deadline: Optional[Deadline] = None):
        self.db = db
        self.deadline = deadline or Deadline()
        self.results: list[SideEffectResult] = []

    async def run(
        self, name: str, step: Callable[..., Awaitable[Optional[dict]]], *args: Any, **kwargs: Any
    ) -> SideEffectResult:
        try:
            detail = await step(self.db, *args, **kwargs)
            await self.db.commit()
        except (CoreError, SQLAlchemyError) as e:
            await self.db.rollback()
            side_effect_failures.labels(name=name).inc()
            logger.error("side_effect_failed", side_effect=name, error=str(e))
            result = SideEffectResult(name=name, ok=False, error=str(e))
        else:
            result = SideEffectResult(name=name, ok=True, detail=detail)
        self.results.append(result)
        return result

    def skip(self, name: str, reason: str) -> SideEffectResult:
        logger.warning("side_effect_skipped", side_effect=name, reason=reason)
        result = SideEffectResult(name=name, ok=False, skipped=True, error=reason)
        self.results.append(result)
        return result

    async def apply_commands(self, commands: Iterable[Command]) -> None:
        """Run everything except notifications, in order."""
        for command in commands:
            if isinstance(command, ReleaseTables):
                await self.run("release_tables", release_tables, command.booking_id)
            elif isinstance(command, ReverseOfferRedemption):
                await self.run(
                    "reverse_offer_redemption",
                    reverse_offer_redemption,
                    command.booking_id,
                    command.offer_id,
                )

    async def send_notifications(self, commands: Iterable[Command]) -> None:
        for command in commands:
            if isinstance(command, NotifyParty):
                await self.notify(command)

    async def notify(self, command: NotifyParty) -> SideEffectResult:
        name = f"notify_{command.audience}"
        if self.deadline.expired():
            return self.skip(name, "skipped_deadline")
        return await self.run(name, notify_party, command)

    @property
    def partial(self) -> bool:
        return any(not result.ok for result in self.results)
