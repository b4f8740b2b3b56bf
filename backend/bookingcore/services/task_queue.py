"""
Deferred, time-driven work (review requests after a completed visit).

Tasks live in scheduled_tasks and are polled by a cron endpoint. Delivery is
at-least-once: a task can run again after a crash between its side effect
and being marked done, so every handler writes through an idempotency key.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from bookingcore.core.config import Settings
from bookingcore.core.errors import CoreError, ValidationError
from bookingcore.core.logging import get_logger
from bookingcore.db.base import utcnow
from bookingcore.models.task import ScheduledTask
from bookingcore.services.outbox_service import enqueue_notification

logger = get_logger(__name__)

TaskHandler = Callable[[AsyncSession, ScheduledTask], Awaitable[None]]


@dataclass
class TaskRunReport:
    processed: int = 0
    done: int = 0
    retried: int = 0
    failed: int = 0


async def send_review_request(db: AsyncSession, task: ScheduledTask) -> None:
    payload = task.payload or {}
    booking_id = payload.get("booking_id")
    user_id = payload.get("user_id")
    if not booking_id or not user_id:
        raise ValidationError("review_request task needs booking_id and user_id")

    for channel in ("push", "in_app"):
        await enqueue_notification(
            db,
            channel=channel,
            title="How was your visit?",
            body="Tell the restaurant about your experience",
            user_id=user_id,
            restaurant_id=payload.get("restaurant_id"),
            type="review_request",
            payload={"booking_id": booking_id, "restaurant_id": payload.get("restaurant_id")},
            idempotency_key=f"review_request:{booking_id}:{channel}",
            source="task",
        )


class TaskQueue:
    def __init__(self, settings: Settings, handlers: Optional[dict[str, TaskHandler]] = None):
        self.settings = settings
        self.handlers: dict[str, TaskHandler] = handlers or {"review_request": send_review_request}

    async def schedule(
        self,
        db: AsyncSession,
        task_type: str,
        due_at: datetime,
        payload: dict,
        idempotency_key: str,
    ) -> tuple[ScheduledTask, bool]:
        """Insert a task, or return the existing one for the same key."""
        if task_type not in self.handlers:
            raise ValidationError(f"Unknown task type '{task_type}'")

        result = await db.execute(select(ScheduledTask).where(ScheduledTask.idempotency_key == idempotency_key))
        existing = result.scalar_one_or_none()
        if existing:
            return existing, False

        task = ScheduledTask(
            task_type=task_type,
            due_at=due_at,
            payload=payload,
            status="pending",
            idempotency_key=idempotency_key,
        )
        db.add(task)
        await db.flush()
        logger.info("task_scheduled", task_id=task.id, task_type=task_type, due_at=due_at.isoformat())
        return task, True

    async def run_due(self, db: AsyncSession, now: Optional[datetime] = None) -> TaskRunReport:
        now = now or utcnow()
        report = TaskRunReport()

        result = await db.execute(
            select(ScheduledTask.id)
            .where(ScheduledTask.status == "pending", ScheduledTask.due_at <= now)
            .order_by(ScheduledTask.due_at.asc())
            .limit(self.settings.TASK_BATCH_SIZE)
        )
        for task_id in list(result.scalars().all()):
            with structlog.contextvars.bound_contextvars(task_id=task_id):
                outcome = await self.run_task(db, task_id, now)
            if outcome is None:
                continue
            report.processed += 1
            setattr(report, outcome, getattr(report, outcome) + 1)

        logger.info(
            "tasks_processed",
            processed=report.processed,
            done=report.done,
            retried=report.retried,
            failed=report.failed,
        )
        return report

    async def run_task(self, db: AsyncSession, task_id: str, now: datetime) -> Optional[str]:
        task = await db.get(ScheduledTask, task_id, populate_existing=True)
        if task is None or task.status != "pending":
            return None

        # Claim: only the runner whose update hits the row proceeds
        claimed = await db.execute(
            update(ScheduledTask)
            .where(
                ScheduledTask.id == task_id,
                ScheduledTask.status == "pending",
                ScheduledTask.attempts == task.attempts,
            )
            .values(attempts=ScheduledTask.attempts + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount == 0:
            return None
        await db.commit()
        task = await db.get(ScheduledTask, task_id, populate_existing=True)

        handler = self.handlers.get(task.task_type)
        try:
            if handler is None:
                raise ValidationError(f"No handler for task type '{task.task_type}'")
            await handler(db, task)
            task.status = "done"
            task.processed_at = now
            task.last_error = None
            await db.commit()
        except (CoreError, SQLAlchemyError) as e:
            await db.rollback()
            task = await db.get(ScheduledTask, task_id, populate_existing=True)
            task.last_error = str(e)
            exhausted = task.attempts >= self.settings.TASK_MAX_ATTEMPTS or handler is None
            if exhausted:
                task.status = "failed"
                task.processed_at = now
            await db.commit()
            logger.error("task_failed", task_type=task.task_type, attempts=task.attempts, final=exhausted, error=str(e))
            return "failed" if exhausted else "retried"

        logger.info("task_done", task_type=task.task_type)
        return "done"
