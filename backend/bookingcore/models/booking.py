"""
Booking and its audit trail.

Key design decisions:
- `status` is only ever written by the state machine's compare-and-swap update
- `version` column enables optimistic locking for concurrent transitions
- BookingStatusHistory is append-only: one row per successful transition
- Table assignments and offer redemptions are separate rows so releasing or
  reversing them never touches the booking row itself
"""

import enum
import secrets

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from bookingcore.db.base import Base, TimestampMixin, UTCDateTime, new_id, utcnow


class BookingStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    SEATED = "seated"
    ORDERED = "ordered"
    APPETIZERS = "appetizers"
    MAIN_COURSE = "main_course"
    DESSERT = "dessert"
    COMPLETED = "completed"
    DECLINED_BY_RESTAURANT = "declined_by_restaurant"
    CANCELLED_BY_USER = "cancelled_by_user"
    CANCELLED_BY_RESTAURANT = "cancelled_by_restaurant"
    NO_SHOW = "no_show"


_STATUS_VALUES = ", ".join(f"'{s.value}'" for s in BookingStatus)


def generate_confirmation_code() -> str:
    return secrets.token_hex(4).upper()


class Booking(Base, TimestampMixin):
    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True, default=new_id)
    restaurant_id = Column(String(36), nullable=False, index=True)
    user_id = Column(String(36), nullable=True, index=True)  # NULL for walk-in / guest bookings
    guest_name = Column(String(100), nullable=True)
    guest_email = Column(String(255), nullable=True)
    guest_phone = Column(String(40), nullable=True)
    party_size = Column(Integer, nullable=False)
    booking_time = Column(UTCDateTime(), nullable=False)
    turn_time_minutes = Column(Integer, nullable=False, default=120)
    status = Column(String(30), nullable=False, default=BookingStatus.PENDING.value)
    confirmation_code = Column(String(16), nullable=False, unique=True, default=generate_confirmation_code)
    applied_offer_id = Column(String(36), nullable=True)
    request_expires_at = Column(UTCDateTime(), nullable=True)

    # Optimistic locking version counter
    version = Column(Integer, nullable=False, default=1)

    history = relationship(
        "BookingStatusHistory",
        back_populates="booking",
        order_by="BookingStatusHistory.changed_at",
        lazy="noload",
    )

    __table_args__ = (
        CheckConstraint("party_size > 0", name="check_booking_party_size_positive"),
        CheckConstraint(f"status IN ({_STATUS_VALUES})", name="check_booking_status"),
        Index("ix_bookings_restaurant_time", "restaurant_id", "booking_time"),
        # Sweep for expired pending requests
        Index("ix_bookings_status_expiry", "status", "request_expires_at"),
    )

    def __repr__(self) -> str:
        return f"<Booking(id={self.id}, restaurant={self.restaurant_id}, status={self.status})>"


class BookingStatusHistory(Base):
    __tablename__ = "booking_status_history"

    id = Column(String(36), primary_key=True, default=new_id)
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=False, index=True)
    old_status = Column(String(30), nullable=True)
    new_status = Column(String(30), nullable=False)
    changed_by = Column(String(36), nullable=True)
    reason = Column(Text, nullable=True)
    metadata_ = Column("metadata", JSON, nullable=True)
    changed_at = Column(UTCDateTime(), nullable=False, default=utcnow)

    booking = relationship("Booking", back_populates="history")

    def __repr__(self) -> str:
        return f"<BookingStatusHistory(booking={self.booking_id}, {self.old_status}->{self.new_status})>"


class BookingTable(Base, TimestampMixin):
    __tablename__ = "booking_tables"

    id = Column(String(36), primary_key=True, default=new_id)
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=False, index=True)
    table_id = Column(String(36), nullable=False)

    __table_args__ = (
        UniqueConstraint("booking_id", "table_id", name="uq_booking_table"),
    )


class OfferRedemption(Base, TimestampMixin):
    __tablename__ = "offer_redemptions"

    id = Column(String(36), primary_key=True, default=new_id)
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=False, index=True)
    offer_id = Column(String(36), nullable=False)
    user_id = Column(String(36), nullable=True)
    status = Column(String(20), nullable=False, default="redeemed")  # redeemed, reversed
    reversed_at = Column(UTCDateTime(), nullable=True)

    __table_args__ = (
        CheckConstraint("status IN ('redeemed', 'reversed')", name="check_offer_redemption_status"),
    )


class ProcessedEvent(Base):
    """Receipt for a webhook event whose effect has no status to compare against."""

    __tablename__ = "processed_events"

    id = Column(String(36), primary_key=True, default=new_id)
    event_key = Column(String(255), nullable=False, unique=True)
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=False, index=True)
    processed_at = Column(UTCDateTime(), nullable=False, default=utcnow)
