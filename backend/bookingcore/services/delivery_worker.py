"""
Outbox drain loop.

CLAIMING: Optimistic, same as booking transitions
=================================================
Two cron invocations can overlap. Each entry is claimed with

  UPDATE notification_outbox SET attempts = attempts + 1
  WHERE id = :id AND status = 'queued' AND attempts = :seen

and only the worker whose update hit a row delivers it. The claim is
committed before any network call.

FINALIZATION (status only moves forward)
========================================
  - suppressed, or nothing to deliver to   -> sent, suppressed_reason set
  - at least one attempt delivered         -> sent
  - every attempt failed                   -> failed
      unless OUTBOX_MAX_ATTEMPTS > 1, attempts are left and one failure was
      transient: stays queued, scheduled_for pushed back exponentially
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy import case, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from bookingcore.core.config import Settings
from bookingcore.core.errors import CoreError
from bookingcore.core.logging import get_logger
from bookingcore.db.base import utcnow
from bookingcore.models.notification import NotificationHistory, OutboxEntry
from bookingcore.services.interfaces.channel import DeliveryChannel, DeliveryReport
from bookingcore.services.subscription_registry import SubscriptionRegistry

logger = get_logger(__name__)

_PRIORITY_ORDER = case(
    (OutboxEntry.priority == "high", 0),
    (OutboxEntry.priority == "normal", 1),
    else_=2,
)


@dataclass
class DrainReport:
    processed: int = 0
    sent: int = 0
    failed: int = 0
    requeued: int = 0
    suppressed: int = 0


class DeliveryWorker:
    def __init__(
        self,
        channels: dict[str, DeliveryChannel],
        registry: SubscriptionRegistry,
        settings: Settings,
    ):
        self.channels = channels
        self.registry = registry
        self.settings = settings

    async def due_entry_ids(self, db: AsyncSession, now: datetime) -> list[str]:
        result = await db.execute(
            select(OutboxEntry.id)
            .where(OutboxEntry.status == "queued", OutboxEntry.scheduled_for <= now)
            .order_by(_PRIORITY_ORDER, OutboxEntry.scheduled_for.asc())
            .limit(self.settings.OUTBOX_BATCH_SIZE)
        )
        return list(result.scalars().all())

    async def drain(self, db: AsyncSession, now: Optional[datetime] = None) -> DrainReport:
        now = now or utcnow()
        report = DrainReport()

        for entry_id in await self.due_entry_ids(db, now):
            with structlog.contextvars.bound_contextvars(outbox_entry_id=entry_id):
                try:
                    outcome = await self.process_entry(db, entry_id, now)
                except (CoreError, SQLAlchemyError) as e:
                    await db.rollback()
                    logger.error("outbox_entry_processing_failed", error=str(e))
                    report.processed += 1
                    report.failed += 1
                    continue

            if outcome is None:
                continue
            report.processed += 1
            setattr(report, outcome, getattr(report, outcome) + 1)

        logger.info(
            "outbox_drained",
            processed=report.processed,
            sent=report.sent,
            failed=report.failed,
            requeued=report.requeued,
            suppressed=report.suppressed,
        )
        return report

    async def claim(self, db: AsyncSession, entry: OutboxEntry, now: datetime) -> bool:
        result = await db.execute(
            update(OutboxEntry)
            .where(
                OutboxEntry.id == entry.id,
                OutboxEntry.status == "queued",
                OutboxEntry.attempts == entry.attempts,
            )
            .values(attempts=OutboxEntry.attempts + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return False
        await db.commit()
        return True

    async def process_entry(self, db: AsyncSession, entry_id: str, now: datetime) -> Optional[str]:
        """
        Deliver one entry and commit its final state.
        Returns the DrainReport counter to bump, or None when another worker
        claimed the entry first.
        """
        entry = await db.get(OutboxEntry, entry_id, populate_existing=True)
        if entry is None or entry.status != "queued":
            return None
        if not await self.claim(db, entry, now):
            logger.info("outbox_entry_claimed_elsewhere")
            return None
        entry = await db.get(OutboxEntry, entry_id, populate_existing=True)

        channel = self.channels.get(entry.channel)
        if channel is None:
            entry.status = "failed"
            entry.last_error = "unsupported_channel"
            await db.commit()
            logger.warning("outbox_unsupported_channel", channel=entry.channel)
            return "failed"

        delivery = await channel.send(db, entry, now)
        self.write_history(db, entry, delivery, now)

        if delivery.permanent_failures:
            await self.registry.deactivate_by_ids(db, delivery.permanent_failures)
        delivered_ids = [a.subscription_id for a in delivery.attempts if a.delivered and a.subscription_id]
        await self.registry.touch(db, delivered_ids, now)

        outcome = self.finalize(entry, delivery, now)
        await db.commit()
        logger.info(
            "outbox_entry_processed",
            channel=entry.channel,
            outcome=outcome,
            attempts=len(delivery.attempts),
            delivered=delivery.delivered,
        )
        return outcome

    def write_history(self, db: AsyncSession, entry: OutboxEntry, delivery: DeliveryReport, now: datetime) -> None:
        for attempt in delivery.attempts:
            db.add(NotificationHistory(
                outbox_entry_id=entry.id,
                subscription_id=attempt.subscription_id,
                user_id=attempt.user_id,
                restaurant_id=entry.restaurant_id,
                channel=entry.channel,
                delivered=attempt.delivered,
                delivered_at=now if attempt.delivered else None,
                permanent_failure=attempt.permanent,
                error=attempt.error,
                created_at=now,
            ))

    def finalize(self, entry: OutboxEntry, delivery: DeliveryReport, now: datetime) -> str:
        if delivery.suppressed_reason or not delivery.attempts:
            entry.status = "sent"
            entry.sent_at = now
            entry.suppressed_reason = delivery.suppressed_reason or "no_subscriptions"
            return "suppressed"

        if delivery.delivered:
            entry.status = "sent"
            entry.sent_at = now
            entry.last_error = None
            return "sent"

        entry.last_error = next((a.error for a in delivery.attempts if a.error), "delivery_failed")
        retry_allowed = self.settings.OUTBOX_MAX_ATTEMPTS > 1 and entry.attempts < self.settings.OUTBOX_MAX_ATTEMPTS
        if retry_allowed and delivery.has_transient_failure:
            backoff = self.settings.OUTBOX_RETRY_BASE_SECONDS * 2 ** (entry.attempts - 1)
            entry.retry_count = (entry.retry_count or 0) + 1
            entry.scheduled_for = now + timedelta(seconds=backoff)
            logger.info("outbox_entry_requeued", attempts=entry.attempts, backoff_seconds=backoff)
            return "requeued"

        entry.status = "failed"
        return "failed"
