"""
Booking persistence with concurrency-safe status transitions.

CONCURRENCY STRATEGY: Optimistic Locking with Retry
====================================================

Problem:
  Staff confirm a request on one tablet while the guest cancels it from the
  app. Both read status='pending', both write. Result: a booking that is
  "confirmed" with a cancellation history row, or the reverse.

Solution:
  Compare-and-swap on (status, version):

  1. Read the booking's current status and version
  2. Validate the edge current -> new against the transition table
  3. UPDATE bookings SET status = :new, version = version + 1
     WHERE id = :id AND status = :current AND version = :version
  4. If rows_affected == 0, someone else moved the booking -> re-read and
     retry. The re-read re-validates the edge, so a booking that meanwhile
     reached a terminal state fails with ConflictError instead of retrying.

  The history row is written in the same transaction as the update, so a
  transition and its audit entry are committed together or not at all.
  Different bookings never contend: there is no lock beyond the row itself.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from bookingcore.core.config import Settings, get_settings
from bookingcore.core.errors import ConflictError, NotFoundError, ValidationError
from bookingcore.core.logging import get_logger
from bookingcore.core.metrics import record_transition, transition_latency
from bookingcore.db.base import utcnow
from bookingcore.models.booking import (
    Booking,
    BookingStatus,
    BookingStatusHistory,
    BookingTable,
    OfferRedemption,
)
from bookingcore.services.booking_state_machine import (
    BookingSnapshot,
    TransitionResult,
    plan_transition,
)
from bookingcore.services.side_effects import SideEffectRunner

logger = get_logger(__name__)


async def get_booking(db: AsyncSession, booking_id: str) -> Booking:
    result = await db.execute(
        select(Booking)
        .where(Booking.id == booking_id)
        .execution_options(populate_existing=True)
    )
    booking = result.scalar_one_or_none()
    if not booking:
        raise NotFoundError(f"Booking {booking_id} not found")
    return booking


async def create_booking(
    db: AsyncSession,
    restaurant_id: str,
    party_size: int,
    booking_time: datetime,
    user_id: Optional[str] = None,
    guest_name: Optional[str] = None,
    guest_email: Optional[str] = None,
    guest_phone: Optional[str] = None,
    instant_book: bool = False,
    turn_time_minutes: Optional[int] = None,
    applied_offer_id: Optional[str] = None,
    table_ids: Iterable[str] = (),
    actor_id: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> Booking:
    """
    Create a booking in its initial state and write the creation history row.

    instant_book is the restaurant's policy, decided by the caller: when set
    the booking starts confirmed, otherwise it is a pending request that
    expires after BOOKING_REQUEST_TTL_MINUTES.
    """
    settings = settings or get_settings()
    if party_size <= 0:
        raise ValidationError("Party size must be at least 1")
    if not user_id and not guest_name:
        raise ValidationError("A booking needs a registered user or a guest name")

    now = utcnow()
    status = BookingStatus.CONFIRMED if instant_book else BookingStatus.PENDING
    booking = Booking(
        restaurant_id=restaurant_id,
        user_id=user_id,
        guest_name=guest_name,
        guest_email=guest_email,
        guest_phone=guest_phone,
        party_size=party_size,
        booking_time=booking_time,
        turn_time_minutes=turn_time_minutes or settings.DEFAULT_TURN_TIME_MINUTES,
        status=status.value,
        applied_offer_id=applied_offer_id,
        request_expires_at=(
            None if instant_book else now + timedelta(minutes=settings.BOOKING_REQUEST_TTL_MINUTES)
        ),
    )
    db.add(booking)
    await db.flush()

    db.add(BookingStatusHistory(
        booking_id=booking.id,
        old_status=None,
        new_status=status.value,
        changed_by=actor_id,
        reason="instant_book" if instant_book else "booking_request",
        changed_at=now,
    ))
    for table_id in table_ids:
        db.add(BookingTable(booking_id=booking.id, table_id=table_id))
    if applied_offer_id:
        db.add(OfferRedemption(booking_id=booking.id, offer_id=applied_offer_id, user_id=user_id))
    await db.flush()

    logger.info(
        "booking_created",
        booking_id=booking.id,
        restaurant_id=restaurant_id,
        status=status.value,
        party_size=party_size,
    )
    return booking


async def transition_booking(
    db: AsyncSession,
    booking_id: str,
    new_status: str,
    actor_id: Optional[str] = None,
    reason: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
    max_attempts: Optional[int] = None,
) -> TransitionResult:
    """
    Move a booking along one edge of the transition graph.
    Retries up to TRANSITION_MAX_RETRIES on version conflicts.

    The update and history row are flushed, not committed; the caller owns
    the commit so it can decide what else belongs to the same unit of work.
    """
    max_attempts = max_attempts or get_settings().TRANSITION_MAX_RETRIES

    with transition_latency.time():
        for attempt in range(1, max_attempts + 1):
            # Step 1: Read current booking state
            booking = await get_booking(db, booking_id)
            snapshot = BookingSnapshot.of(booking)

            # Step 2: Validate the edge; an invalid edge is never retried
            try:
                commands = plan_transition(snapshot, new_status)
            except ConflictError:
                record_transition("conflict")
                logger.info(
                    "transition_rejected",
                    booking_id=booking_id,
                    current=snapshot.status,
                    requested=new_status,
                )
                raise

            # Step 3: Optimistic lock - update only if status and version still match
            now = utcnow()
            values = {
                "status": new_status,
                "version": Booking.version + 1,
                "updated_at": now,
            }
            if snapshot.status == BookingStatus.PENDING.value:
                values["request_expires_at"] = None

            update_result = await db.execute(
                update(Booking)
                .where(
                    Booking.id == booking_id,
                    Booking.status == snapshot.status,
                    Booking.version == snapshot.version,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )

            if update_result.rowcount == 0:
                # Version conflict - another transaction moved this booking
                record_transition("retry")
                logger.info(
                    "transition_retry",
                    booking_id=booking_id,
                    attempt=attempt,
                    reason="version_conflict",
                )
                await db.rollback()
                continue

            # Step 4: Audit row in the same transaction
            history = BookingStatusHistory(
                booking_id=booking_id,
                old_status=snapshot.status,
                new_status=new_status,
                changed_by=actor_id,
                reason=reason,
                metadata_=metadata,
                changed_at=now,
            )
            db.add(history)
            await db.flush()

            record_transition("success")
            logger.info(
                "booking_transitioned",
                booking_id=booking_id,
                old_status=snapshot.status,
                new_status=new_status,
                actor_id=actor_id,
                attempt=attempt,
            )
            return TransitionResult(
                booking=replace(snapshot, status=new_status, version=snapshot.version + 1),
                old_status=snapshot.status,
                new_status=new_status,
                history_id=history.id,
                commands=commands,
            )

    record_transition("conflict")
    raise ConflictError("Booking was modified concurrently. Please try again.")


async def get_booking_history(db: AsyncSession, booking_id: str) -> list[BookingStatusHistory]:
    await get_booking(db, booking_id)
    result = await db.execute(
        select(BookingStatusHistory)
        .where(BookingStatusHistory.booking_id == booking_id)
        .order_by(BookingStatusHistory.changed_at.asc())
    )
    return list(result.scalars().all())


async def find_expired_requests(db: AsyncSession, now: datetime, limit: int = 500) -> list[str]:
    """Pending requests whose acceptance window has closed. Uses ix_bookings_status_expiry."""
    result = await db.execute(
        select(Booking.id)
        .where(
            Booking.status == BookingStatus.PENDING.value,
            Booking.request_expires_at.is_not(None),
            Booking.request_expires_at <= now,
        )
        .order_by(Booking.request_expires_at.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


@dataclass
class ExpiryReport:
    expired: int = 0
    skipped: int = 0
    booking_ids: list[str] = field(default_factory=list)


async def expire_pending_requests(
    db: AsyncSession,
    now: Optional[datetime] = None,
    limit: int = 500,
) -> ExpiryReport:
    """
    Decline every pending request whose acceptance window has closed.

    Each booking goes through the state machine on its own: one booking
    that was confirmed or cancelled in the meantime is skipped, not fatal.
    """
    now = now or utcnow()
    report = ExpiryReport()

    for booking_id in await find_expired_requests(db, now, limit):
        try:
            result = await transition_booking(
                db,
                booking_id,
                BookingStatus.DECLINED_BY_RESTAURANT.value,
                actor_id=None,
                reason="request_expired",
            )
        except ConflictError:
            await db.rollback()
            report.skipped += 1
            continue
        await db.commit()

        runner = SideEffectRunner(db)
        await runner.apply_commands(result.commands)
        await runner.send_notifications(result.commands)
        report.expired += 1
        report.booking_ids.append(booking_id)

    logger.info("pending_requests_expired", expired=report.expired, skipped=report.skipped)
    return report
