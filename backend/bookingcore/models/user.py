"""
Diner accounts and per-restaurant behaviour tracking.

Accounts are owned by the auth service; this table is the read model the
broadcast selector pages over.
"""

from sqlalchemy import Boolean, Column, Integer, String, UniqueConstraint

from bookingcore.db.base import Base, TimestampMixin, new_id


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=new_id)
    email = Column(String(255), unique=True, index=True, nullable=False)
    full_name = Column(String(100), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email})>"


class UserRestaurantStats(Base, TimestampMixin):
    __tablename__ = "user_restaurant_stats"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), nullable=False)
    restaurant_id = Column(String(36), nullable=False)
    no_show_count = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("user_id", "restaurant_id", name="uq_user_restaurant_stats"),
    )


class FlaggedUser(Base, TimestampMixin):
    __tablename__ = "flagged_users"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), nullable=False)
    restaurant_id = Column(String(36), nullable=False)
    reason = Column(String(50), nullable=False)
    flag_count = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default="pending_review")

    __table_args__ = (
        UniqueConstraint("user_id", "restaurant_id", "reason", name="uq_flagged_user_reason"),
    )


class RestaurantStats(Base, TimestampMixin):
    __tablename__ = "restaurant_stats"

    id = Column(String(36), primary_key=True, default=new_id)
    restaurant_id = Column(String(36), nullable=False, unique=True)
    total_bookings = Column(Integer, nullable=False, default=0)
    completed_bookings = Column(Integer, nullable=False, default=0)
    cancelled_bookings = Column(Integer, nullable=False, default=0)
    no_show_bookings = Column(Integer, nullable=False, default=0)
