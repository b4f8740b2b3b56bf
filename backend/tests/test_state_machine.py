"""
Tests for the booking transition table and the compare-and-swap transition.
"""

import itertools
from datetime import datetime, timezone

import pytest
from sqlalchemy import select, update

from bookingcore.core.errors import ConflictError, ValidationError
from bookingcore.models import Booking, BookingStatus, BookingStatusHistory
from bookingcore.services import booking_service
from bookingcore.services.booking_state_machine import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATES,
    BookingSnapshot,
    NotifyParty,
    ReleaseTables,
    ReverseOfferRedemption,
    can_transition,
    is_terminal,
    parse_status,
    plan_transition,
)
from tests.conftest import count_rows


def snapshot(status: str, user_id="user-1", applied_offer_id=None) -> BookingSnapshot:
    return BookingSnapshot(
        id="booking-1",
        restaurant_id="restaurant-1",
        user_id=user_id,
        status=status,
        party_size=2,
        booking_time=datetime(2026, 10, 23, 19, 30, tzinfo=timezone.utc),
        applied_offer_id=applied_offer_id,
        version=1,
    )


INVALID_EDGES = [
    (current.value, target.value)
    for current, target in itertools.product(BookingStatus, BookingStatus)
    if target not in ALLOWED_TRANSITIONS[current]
]


@pytest.mark.parametrize("current,target", INVALID_EDGES)
def test_invalid_edges_raise_conflict(current, target):
    with pytest.raises(ConflictError):
        plan_transition(snapshot(current), target)


def test_terminal_states_have_no_outgoing_edges():
    assert {s.value for s in TERMINAL_STATES} == {
        "completed", "declined_by_restaurant", "cancelled_by_user", "cancelled_by_restaurant", "no_show",
    }
    for status in TERMINAL_STATES:
        assert is_terminal(status.value)
        assert not any(can_transition(status.value, target.value) for target in BookingStatus)


def test_decline_only_from_pending():
    sources = [s for s in BookingStatus if can_transition(s.value, "declined_by_restaurant")]
    assert sources == [BookingStatus.PENDING]


def test_unknown_status_is_a_validation_error():
    with pytest.raises(ValidationError):
        parse_status("teleported")
    with pytest.raises(ValidationError):
        plan_transition(snapshot("pending"), "teleported")


def test_cancellation_with_offer_releases_reverses_then_notifies():
    commands = plan_transition(snapshot("confirmed", applied_offer_id="offer-9"), "cancelled_by_restaurant")

    assert [type(c) for c in commands] == [ReleaseTables, ReverseOfferRedemption, NotifyParty]
    assert commands[1].offer_id == "offer-9"
    notify = commands[2]
    assert notify.audience == "user"
    assert notify.priority == "high"


def test_user_cancellation_notifies_restaurant():
    commands = plan_transition(snapshot("pending"), "cancelled_by_user")
    notify = commands[-1]
    assert isinstance(notify, NotifyParty)
    assert notify.audience == "restaurant"
    assert notify.type == "booking_cancelled"
    # No offer applied, nothing to reverse
    assert not any(isinstance(c, ReverseOfferRedemption) for c in commands)


def test_no_show_releases_tables_without_reversing_offer():
    commands = plan_transition(snapshot("confirmed", applied_offer_id="offer-9"), "no_show")
    assert [type(c) for c in commands] == [ReleaseTables]


def test_guest_booking_confirmation_has_nobody_to_notify():
    assert plan_transition(snapshot("pending", user_id=None), "confirmed") == []


def test_dining_progress_has_no_side_effects():
    assert plan_transition(snapshot("seated"), "ordered") == []
    assert plan_transition(snapshot("dessert"), "completed") == []


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_valid_transition_appends_one_history_row(db_session, make_booking):
    booking = await make_booking("pending")
    assert await count_rows(db_session, BookingStatusHistory, BookingStatusHistory.booking_id == booking.id) == 1

    result = await booking_service.transition_booking(
        db_session, booking.id, "confirmed", actor_id="staff-7", reason="phoned guest"
    )
    await db_session.commit()

    assert result.old_status == "pending"
    assert result.new_status == "confirmed"
    history = (await db_session.execute(
        select(BookingStatusHistory)
        .where(BookingStatusHistory.booking_id == booking.id)
        .order_by(BookingStatusHistory.changed_at)
    )).scalars().all()
    assert len(history) == 2
    assert history[0].old_status is None
    assert history[1].old_status == "pending"
    assert history[1].new_status == "confirmed"
    assert history[1].changed_by == "staff-7"

    stored = await booking_service.get_booking(db_session, booking.id)
    assert stored.status == "confirmed"
    assert stored.version == 2
    # Leaving pending clears the request window
    assert stored.request_expires_at is None


@pytest.mark.asyncio
async def test_invalid_transition_leaves_booking_and_history_unchanged(db_session, make_booking):
    booking = await make_booking("completed")
    before = await count_rows(db_session, BookingStatusHistory, BookingStatusHistory.booking_id == booking.id)

    with pytest.raises(ConflictError):
        await booking_service.transition_booking(db_session, booking.id, "cancelled_by_user")
    await db_session.rollback()

    stored = await booking_service.get_booking(db_session, booking.id)
    assert stored.status == "completed"
    assert await count_rows(db_session, BookingStatusHistory, BookingStatusHistory.booking_id == booking.id) == before


@pytest.mark.asyncio
async def test_version_conflict_is_retried(db_session, make_booking, monkeypatch):
    """A concurrent writer bumps the version between read and update once."""
    booking = await make_booking("pending")
    real_get_booking = booking_service.get_booking
    calls = {"n": 0}

    async def racing_get_booking(db, booking_id):
        loaded = await real_get_booking(db, booking_id)
        calls["n"] += 1
        if calls["n"] == 1:
            await db.execute(
                update(Booking)
                .where(Booking.id == booking_id)
                .values(version=Booking.version + 1)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        return loaded

    monkeypatch.setattr(booking_service, "get_booking", racing_get_booking)

    result = await booking_service.transition_booking(db_session, booking.id, "confirmed")
    await db_session.commit()

    assert calls["n"] == 2
    assert result.booking.version == 3
    assert await count_rows(db_session, BookingStatusHistory, BookingStatusHistory.booking_id == booking.id) == 2


@pytest.mark.asyncio
async def test_persistent_version_conflict_gives_up(db_session, make_booking, monkeypatch):
    booking = await make_booking("pending")
    real_get_booking = booking_service.get_booking

    async def always_racing(db, booking_id):
        loaded = await real_get_booking(db, booking_id)
        await db.execute(
            update(Booking)
            .where(Booking.id == booking_id)
            .values(version=Booking.version + 1)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return loaded

    monkeypatch.setattr(booking_service, "get_booking", always_racing)

    with pytest.raises(ConflictError, match="modified concurrently"):
        await booking_service.transition_booking(db_session, booking.id, "confirmed", max_attempts=3)

    monkeypatch.undo()
    stored = await booking_service.get_booking(db_session, booking.id)
    assert stored.status == "pending"
    assert await count_rows(db_session, BookingStatusHistory, BookingStatusHistory.booking_id == booking.id) == 1


@pytest.mark.asyncio
async def test_reread_after_conflict_revalidates_edge(db_session, make_booking, monkeypatch):
    """Another writer cancels meanwhile: the retry sees a terminal state and stops."""
    booking = await make_booking("pending")
    real_get_booking = booking_service.get_booking
    calls = {"n": 0}

    async def cancelling_get_booking(db, booking_id):
        loaded = await real_get_booking(db, booking_id)
        calls["n"] += 1
        if calls["n"] == 1:
            await db.execute(
                update(Booking)
                .where(Booking.id == booking_id)
                .values(status="cancelled_by_user", version=Booking.version + 1)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        return loaded

    monkeypatch.setattr(booking_service, "get_booking", cancelling_get_booking)

    with pytest.raises(ConflictError, match="Cannot change status"):
        await booking_service.transition_booking(db_session, booking.id, "confirmed")
    assert calls["n"] == 2
