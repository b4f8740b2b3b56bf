"""
Booking creation and staff-driven status transitions.
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from bookingcore.core.security import get_current_user_id
from bookingcore.core.logging import get_logger
from bookingcore.db.session import get_db
from bookingcore.schemas.booking import (
    BookingCreate,
    BookingResponse,
    StatusHistoryResponse,
    TransitionRequest,
    TransitionResponse,
)
from bookingcore.services.booking_service import (
    create_booking,
    get_booking,
    get_booking_history,
    transition_booking,
)
from bookingcore.services.booking_state_machine import parse_status
from bookingcore.services.side_effects import SideEffectRunner

logger = get_logger(__name__)
router = APIRouter(prefix="/bookings", tags=["Bookings"])


@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking_endpoint(
    body: BookingCreate,
    actor_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """
    Create a booking request, or a confirmed booking when instant_book is set.
    Pending requests expire after BOOKING_REQUEST_TTL_MINUTES.
    """
    booking = await create_booking(
        db,
        restaurant_id=body.restaurant_id,
        party_size=body.party_size,
        booking_time=body.booking_time,
        user_id=body.user_id,
        guest_name=body.guest_name,
        guest_email=body.guest_email,
        guest_phone=body.guest_phone,
        instant_book=body.instant_book,
        turn_time_minutes=body.turn_time_minutes,
        applied_offer_id=body.applied_offer_id,
        table_ids=body.table_ids,
        actor_id=actor_id,
    )
    await db.commit()
    return booking


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking_endpoint(
    booking_id: str,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    return await get_booking(db, booking_id)


@router.post("/{booking_id}/transition", response_model=TransitionResponse)
async def transition_booking_endpoint(
    booking_id: str,
    body: TransitionRequest,
    actor_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """
    Move a booking along one edge of the lifecycle.

    Uses optimistic locking: if another request moved the booking first the
    edge is re-validated and retried, and an edge that no longer exists
    returns 409.
    """
    new_status = parse_status(body.status).value
    result = await transition_booking(
        db,
        booking_id,
        new_status,
        actor_id=actor_id,
        reason=body.reason,
        metadata=body.metadata,
    )
    await db.commit()

    runner = SideEffectRunner(db)
    await runner.apply_commands(result.commands)
    await runner.send_notifications(result.commands)

    return TransitionResponse(
        booking_id=booking_id,
        old_status=result.old_status,
        new_status=result.new_status,
        history_id=result.history_id,
        partial=runner.partial,
        side_effects=[
            {"name": r.name, "ok": r.ok, "skipped": r.skipped, "error": r.error}
            for r in runner.results
        ],
    )


@router.get("/{booking_id}/history", response_model=list[StatusHistoryResponse])
async def booking_history(
    booking_id: str,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """Every status change of the booking, oldest first."""
    return await get_booking_history(db, booking_id)
