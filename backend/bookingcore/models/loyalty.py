"""
Restaurant loyalty rules and the ledger of awarded points.
"""

from sqlalchemy import JSON, Boolean, CheckConstraint, Column, Integer, String, Text, UniqueConstraint

from bookingcore.db.base import Base, TimestampMixin, UTCDateTime, new_id


class LoyaltyRule(Base, TimestampMixin):
    __tablename__ = "restaurant_loyalty_rules"

    id = Column(String(36), primary_key=True, default=new_id)
    restaurant_id = Column(String(36), nullable=False, index=True)
    rule_name = Column(String(100), nullable=False, default="")
    valid_from = Column(UTCDateTime(), nullable=False)
    valid_until = Column(UTCDateTime(), nullable=True)  # NULL = open-ended
    applicable_days = Column(JSON, nullable=False, default=list)  # 0 = Sunday .. 6 = Saturday
    minimum_party_size = Column(Integer, nullable=False, default=1)
    maximum_party_size = Column(Integer, nullable=True)
    start_time_minutes = Column(Integer, nullable=True)
    end_time_minutes = Column(Integer, nullable=True)
    points_to_award = Column(Integer, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        CheckConstraint("points_to_award >= 0", name="check_rule_points_non_negative"),
        CheckConstraint("minimum_party_size >= 1", name="check_rule_min_party_size"),
    )

    def __repr__(self) -> str:
        return f"<LoyaltyRule(id={self.id}, name={self.rule_name}, points={self.points_to_award})>"


class LoyaltyTransaction(Base, TimestampMixin):
    __tablename__ = "loyalty_transactions"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), nullable=False, index=True)
    restaurant_id = Column(String(36), nullable=False, index=True)
    booking_id = Column(String(36), nullable=True)
    points = Column(Integer, nullable=False)
    transaction_type = Column(String(20), nullable=False, default="earned")
    description = Column(Text, nullable=True)

    __table_args__ = (
        # A replayed booking.completed must not award twice
        UniqueConstraint("booking_id", "transaction_type", name="uq_loyalty_booking_type"),
    )


class LoyaltyBalance(Base, TimestampMixin):
    __tablename__ = "loyalty_balances"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), nullable=False)
    restaurant_id = Column(String(36), nullable=False)
    points = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("user_id", "restaurant_id", name="uq_loyalty_balance_user_restaurant"),
    )
