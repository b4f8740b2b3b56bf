"""
Booking status transition rules.

This module is pure: it knows which edges exist and which follow-up commands
a transition implies, and nothing about storage. booking_service applies the
result with a compare-and-swap update plus one history row.

Follow-up commands are data, not calls. Table release, offer reversal and the
notification to the other party are executed afterwards by side_effects, so a
failing side effect can never undo a committed transition.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Union

from bookingcore.core.errors import ConflictError, ValidationError
from bookingcore.models.booking import BookingStatus

S = BookingStatus

ALLOWED_TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    S.PENDING: frozenset({S.CONFIRMED, S.DECLINED_BY_RESTAURANT, S.CANCELLED_BY_USER}),
    S.CONFIRMED: frozenset({S.SEATED, S.NO_SHOW, S.CANCELLED_BY_USER, S.CANCELLED_BY_RESTAURANT}),
    S.SEATED: frozenset({S.ORDERED, S.COMPLETED, S.CANCELLED_BY_RESTAURANT}),
    S.ORDERED: frozenset({S.APPETIZERS, S.COMPLETED, S.CANCELLED_BY_RESTAURANT}),
    S.APPETIZERS: frozenset({S.MAIN_COURSE, S.COMPLETED, S.CANCELLED_BY_RESTAURANT}),
    S.MAIN_COURSE: frozenset({S.DESSERT, S.COMPLETED, S.CANCELLED_BY_RESTAURANT}),
    S.DESSERT: frozenset({S.COMPLETED, S.CANCELLED_BY_RESTAURANT}),
    S.COMPLETED: frozenset(),
    S.DECLINED_BY_RESTAURANT: frozenset(),
    S.CANCELLED_BY_USER: frozenset(),
    S.CANCELLED_BY_RESTAURANT: frozenset(),
    S.NO_SHOW: frozenset(),
}

TERMINAL_STATES = frozenset(status for status, targets in ALLOWED_TRANSITIONS.items() if not targets)

CANCELLATION_STATES = frozenset({S.CANCELLED_BY_USER, S.CANCELLED_BY_RESTAURANT})

# States that free the tables held for the booking
RELEASING_STATES = CANCELLATION_STATES | {S.DECLINED_BY_RESTAURANT, S.NO_SHOW}


@dataclass(frozen=True)
class BookingSnapshot:
    """Plain copy of the columns side effects need once the row is committed."""

    id: str
    restaurant_id: str
    user_id: Optional[str]
    status: str
    party_size: int
    booking_time: datetime
    applied_offer_id: Optional[str]
    version: int

    @classmethod
    def of(cls, booking) -> "BookingSnapshot":
        return cls(
            id=booking.id,
            restaurant_id=booking.restaurant_id,
            user_id=booking.user_id,
            status=booking.status,
            party_size=booking.party_size,
            booking_time=booking.booking_time,
            applied_offer_id=booking.applied_offer_id,
            version=booking.version,
        )


@dataclass(frozen=True)
class ReleaseTables:
    booking_id: str


@dataclass(frozen=True)
class ReverseOfferRedemption:
    booking_id: str
    offer_id: str


@dataclass(frozen=True)
class NotifyParty:
    """
    Tell the other side of the booking about a status change.
    audience "user" targets the diner, "restaurant" targets every staff device.
    """

    audience: str
    booking_id: str
    restaurant_id: str
    user_id: Optional[str]
    type: str
    title: str
    body: str
    priority: str = "normal"


Command = Union[ReleaseTables, ReverseOfferRedemption, NotifyParty]


@dataclass
class TransitionResult:
    booking: BookingSnapshot
    old_status: str
    new_status: str
    history_id: str
    commands: list[Command] = field(default_factory=list)


def parse_status(value: str) -> BookingStatus:
    try:
        return BookingStatus(value)
    except ValueError as e:
        raise ValidationError(f"Unknown booking status '{value}'") from e


def is_terminal(status: str) -> bool:
    return parse_status(status) in TERMINAL_STATES


def can_transition(current: str, new_status: str) -> bool:
    return parse_status(new_status) in ALLOWED_TRANSITIONS[parse_status(current)]


def validate_transition(current: str, new_status: str) -> None:
    """Raise ConflictError if there is no edge current -> new_status."""
    if not can_transition(current, new_status):
        raise ConflictError(f"Cannot change status from {current} to {new_status}")


_NOTIFICATIONS = {
    S.CONFIRMED: ("user", "booking_confirmed", "Booking Confirmed",
                  "Your booking has been confirmed by the restaurant", "normal"),
    S.DECLINED_BY_RESTAURANT: ("user", "booking_declined", "Booking Declined",
                               "The restaurant could not accept your booking request", "normal"),
    S.CANCELLED_BY_USER: ("restaurant", "booking_cancelled", "Booking Cancelled",
                          "A customer has cancelled their booking", "normal"),
    S.CANCELLED_BY_RESTAURANT: ("user", "booking_cancelled", "Booking Cancelled",
                                "Your booking has been cancelled by the restaurant", "high"),
}


def plan_transition(booking: BookingSnapshot, new_status: str) -> list[Command]:
    """
    Validate the edge and return the follow-up commands, in execution order.
    Notification commands always come last.
    """
    validate_transition(booking.status, new_status)
    target = parse_status(new_status)
    commands: list[Command] = []

    if target in RELEASING_STATES:
        commands.append(ReleaseTables(booking_id=booking.id))

    if target in CANCELLATION_STATES and booking.applied_offer_id:
        commands.append(ReverseOfferRedemption(booking_id=booking.id, offer_id=booking.applied_offer_id))

    notification = _NOTIFICATIONS.get(target)
    if notification:
        audience, kind, title, body, priority = notification
        # Guest bookings have nobody to push to on the diner side
        if audience == "restaurant" or booking.user_id:
            commands.append(NotifyParty(
                audience=audience,
                booking_id=booking.id,
                restaurant_id=booking.restaurant_id,
                user_id=booking.user_id,
                type=kind,
                title=title,
                body=body,
                priority=priority,
            ))

    return commands
