"""
Loyalty rule engine.

compute_points is a pure function over already-loaded rules. Rules are
independent and additive: every active, date-valid rule whose conditions
match contributes its points. There is no "best match".
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bookingcore.core.logging import get_logger
from bookingcore.core.metrics import loyalty_points_awarded
from bookingcore.models.loyalty import LoyaltyBalance, LoyaltyRule, LoyaltyTransaction

logger = get_logger(__name__)


@dataclass(frozen=True)
class LoyaltyContext:
    day_of_week: int  # 0 = Sunday
    party_size: int
    minutes_since_midnight: int
    now: datetime


def context_from_booking_time(booking_time: datetime, party_size: int, now: datetime) -> LoyaltyContext:
    """Read day and minute from the booking's own wall clock."""
    return LoyaltyContext(
        day_of_week=booking_time.isoweekday() % 7,
        party_size=party_size,
        minutes_since_midnight=booking_time.hour * 60 + booking_time.minute,
        now=now,
    )


def is_rule_valid(rule: LoyaltyRule, now: datetime) -> bool:
    if not rule.is_active:
        return False
    if rule.valid_from is not None and now < rule.valid_from:
        return False
    if rule.valid_until is not None and now > rule.valid_until:
        return False
    return True


def rule_matches(rule: LoyaltyRule, context: LoyaltyContext) -> bool:
    """All bounds are inclusive; a NULL bound is unbounded."""
    if context.day_of_week not in (rule.applicable_days or []):
        return False
    if context.party_size < rule.minimum_party_size:
        return False
    if rule.maximum_party_size is not None and context.party_size > rule.maximum_party_size:
        return False
    if rule.start_time_minutes is not None and context.minutes_since_midnight < rule.start_time_minutes:
        return False
    if rule.end_time_minutes is not None and context.minutes_since_midnight > rule.end_time_minutes:
        return False
    return True


def compute_points(rules: Iterable[LoyaltyRule], context: LoyaltyContext) -> int:
    return sum(
        rule.points_to_award
        for rule in rules
        if is_rule_valid(rule, context.now) and rule_matches(rule, context)
    )


async def get_active_rules(db: AsyncSession, restaurant_id: str) -> list[LoyaltyRule]:
    result = await db.execute(
        select(LoyaltyRule).where(
            LoyaltyRule.restaurant_id == restaurant_id,
            LoyaltyRule.is_active.is_(True),
        )
    )
    return list(result.scalars().all())


async def calculate_points_for_booking(
    db: AsyncSession,
    restaurant_id: str,
    party_size: int,
    booking_time: datetime,
    now: datetime,
) -> int:
    rules = await get_active_rules(db, restaurant_id)
    context = context_from_booking_time(booking_time, party_size, now)
    points = compute_points(rules, context)
    logger.debug(
        "loyalty_points_computed",
        restaurant_id=restaurant_id,
        rules_considered=len(rules),
        day_of_week=context.day_of_week,
        minutes=context.minutes_since_midnight,
        points=points,
    )
    return points


async def award_points(
    db: AsyncSession,
    user_id: str,
    restaurant_id: str,
    booking_id: str,
    points: int,
    description: str = "Points earned from completed booking",
) -> Optional[LoyaltyTransaction]:
    """
    Record an 'earned' transaction and bump the running balance.
    Returns None when there is nothing to award or the booking was already
    credited.
    """
    if points <= 0:
        return None

    existing = await db.execute(
        select(LoyaltyTransaction).where(
            LoyaltyTransaction.booking_id == booking_id,
            LoyaltyTransaction.transaction_type == "earned",
        )
    )
    if existing.scalar_one_or_none():
        logger.info("loyalty_already_awarded", booking_id=booking_id)
        return None

    transaction = LoyaltyTransaction(
        user_id=user_id,
        restaurant_id=restaurant_id,
        booking_id=booking_id,
        points=points,
        transaction_type="earned",
        description=description,
    )
    db.add(transaction)

    result = await db.execute(
        select(LoyaltyBalance).where(
            LoyaltyBalance.user_id == user_id,
            LoyaltyBalance.restaurant_id == restaurant_id,
        )
    )
    balance = result.scalar_one_or_none()
    if balance is None:
        db.add(LoyaltyBalance(user_id=user_id, restaurant_id=restaurant_id, points=points))
    else:
        balance.points = balance.points + points

    await db.flush()
    loyalty_points_awarded.inc(points)
    logger.info(
        "loyalty_points_awarded",
        user_id=user_id,
        restaurant_id=restaurant_id,
        booking_id=booking_id,
        points=points,
    )
    return transaction
