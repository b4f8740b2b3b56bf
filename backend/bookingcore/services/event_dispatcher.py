"""
Signed booking-event ingestion.

FLOW
====
  1. Verify X-Webhook-Signature against WEBHOOK_SECRET (constant time)
  2. Route by event name; unknown events are rejected before any read
  3. Validate `data` against the event's schema
  4. Apply the state transition and COMMIT it
  5. Run side effects one by one (SideEffectRunner); notifications last

Replays: an event whose booking already sits in the target status is
acknowledged as a duplicate and runs no side effects. booking.created has no
status change: a ProcessedEvent receipt, committed together with the stats
bump, and the idempotency key of the restaurant notification mark which of
its two effects already happened.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Awaitable, Callable, Optional

import structlog
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bookingcore.core.config import Settings
from bookingcore.core.errors import AuthenticationError, ValidationError
from bookingcore.core.logging import get_logger
from bookingcore.core.metrics import record_webhook_event
from bookingcore.core.security import verify_shared_secret
from bookingcore.db.base import utcnow
from bookingcore.models.booking import Booking, BookingStatus, ProcessedEvent
from bookingcore.models.notification import OutboxEntry
from bookingcore.schemas.webhook import (
    BookingCancelledData,
    BookingCompletedData,
    BookingConfirmedData,
    BookingCreatedData,
    BookingNoShowData,
    CancelledBy,
    SideEffectOut,
    WebhookResponse,
)
from bookingcore.services import loyalty_service
from bookingcore.services.booking_service import get_booking, transition_booking
from bookingcore.services.booking_state_machine import NotifyParty, TransitionResult
from bookingcore.services.side_effects import (
    Deadline,
    SideEffectResult,
    SideEffectRunner,
    created_event_key,
    increment_restaurant_stat,
    record_new_booking,
    record_no_show,
)
from bookingcore.services.task_queue import TaskQueue

logger = get_logger(__name__)


@dataclass
class DispatchResult:
    event: str
    booking_id: str
    duplicate: bool = False
    side_effects: list[SideEffectResult] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return any(not result.ok for result in self.side_effects)

    def to_response(self) -> WebhookResponse:
        return WebhookResponse(
            event=self.event,
            booking_id=self.booking_id,
            duplicate=self.duplicate,
            partial=self.partial,
            side_effects=[
                SideEffectOut(
                    name=r.name, ok=r.ok, skipped=r.skipped, error=r.error, detail=r.detail
                )
                for r in self.side_effects
            ],
        )


Handler = Callable[[AsyncSession, BaseModel, SideEffectRunner], Awaitable[bool]]


class EventDispatcher:
    def __init__(self, settings: Settings, task_queue: TaskQueue):
        self.settings = settings
        self.task_queue = task_queue
        self._routes: dict[str, tuple[type[BaseModel], Handler]] = {
            "booking.created": (BookingCreatedData, self._on_created),
            "booking.confirmed": (BookingConfirmedData, self._on_confirmed),
            "booking.cancelled": (BookingCancelledData, self._on_cancelled),
            "booking.completed": (BookingCompletedData, self._on_completed),
            "booking.no_show": (BookingNoShowData, self._on_no_show),
        }

    @property
    def events(self) -> list[str]:
        return list(self._routes)

    def verify(self, signature: Optional[str]) -> None:
        try:
            verify_shared_secret(signature, self.settings.WEBHOOK_SECRET)
        except AuthenticationError:
            record_webhook_event("unverified", "rejected")
            raise

    async def handle(
        self,
        db: AsyncSession,
        signature: Optional[str],
        event: str,
        payload: dict,
        deadline: Optional[Deadline] = None,
    ) -> DispatchResult:
        self.verify(signature)

        route = self._routes.get(event)
        if route is None:
            record_webhook_event("unknown", "rejected")
            logger.warning("webhook_unknown_event", webhook_event=event)
            raise ValidationError("Unknown event type")

        schema, handler = route
        try:
            data = schema.model_validate(payload or {})
        except PydanticValidationError as e:
            record_webhook_event(event, "rejected")
            fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
            raise ValidationError(f"Invalid data for {event}: {', '.join(fields)}") from e

        runner = SideEffectRunner(db, deadline or Deadline(self.settings.WEBHOOK_DEADLINE_SECONDS))
        with structlog.contextvars.bound_contextvars(webhook_event=event, booking_id=data.booking_id):
            applied = await handler(db, data, runner)

            result = DispatchResult(
                event=event,
                booking_id=data.booking_id,
                duplicate=not applied,
                side_effects=runner.results,
            )
            outcome = "duplicate" if result.duplicate else ("partial" if result.partial else "ok")
            record_webhook_event(event, outcome)
            logger.info("webhook_processed", outcome=outcome, side_effects=len(runner.results))
        return result

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load(self, db: AsyncSession, booking_id: str, restaurant_id: Optional[str]) -> Booking:
        booking = await get_booking(db, booking_id)
        if restaurant_id and booking.restaurant_id != restaurant_id:
            raise ValidationError("Booking does not belong to this restaurant")
        return booking

    async def _transition(
        self,
        db: AsyncSession,
        booking_id: str,
        restaurant_id: Optional[str],
        target: BookingStatus,
        event: str,
    ) -> Optional[TransitionResult]:
        """Commit the transition, or return None if the booking is already there."""
        booking = await self._load(db, booking_id, restaurant_id)
        if booking.status == target.value:
            logger.info("webhook_duplicate", status=booking.status)
            return None
        result = await transition_booking(db, booking_id, target.value, actor_id=None, reason=f"webhook:{event}")
        await db.commit()
        return result

    # ------------------------------------------------------------------
    # Handlers: return False for a replay, True once the event was applied
    # ------------------------------------------------------------------

    async def _on_created(self, db: AsyncSession, data: BookingCreatedData, runner: SideEffectRunner) -> bool:
        booking = await self._load(db, data.booking_id, data.restaurant_id)
        counted = await db.scalar(
            select(ProcessedEvent.id).where(ProcessedEvent.event_key == created_event_key(booking.id))
        )
        notified = await db.scalar(
            select(OutboxEntry.id).where(OutboxEntry.idempotency_key == f"new_booking:{booking.id}:push")
        )
        if counted and notified:
            logger.info("webhook_duplicate", status=booking.status)
            return False

        # A replay after a skipped or failed step only redoes the missing part
        if not counted:
            await runner.run("restaurant_stats", record_new_booking, data.booking_id, data.restaurant_id)
        if not notified:
            await runner.notify(NotifyParty(
                audience="restaurant",
                booking_id=data.booking_id,
                restaurant_id=data.restaurant_id,
                user_id=data.user_id,
                type="new_booking",
                title="New Booking",
                body=f"A new booking has been made for {data.party_size} guests",
            ))
        return True

    async def _on_confirmed(self, db: AsyncSession, data: BookingConfirmedData, runner: SideEffectRunner) -> bool:
        result = await self._transition(db, data.booking_id, None, BookingStatus.CONFIRMED, "booking.confirmed")
        if result is None:
            return False
        await runner.apply_commands(result.commands)
        await runner.send_notifications(result.commands)
        return True

    async def _on_cancelled(self, db: AsyncSession, data: BookingCancelledData, runner: SideEffectRunner) -> bool:
        target = (
            BookingStatus.CANCELLED_BY_USER
            if data.cancelled_by == CancelledBy.USER
            else BookingStatus.CANCELLED_BY_RESTAURANT
        )
        result = await self._transition(db, data.booking_id, data.restaurant_id, target, "booking.cancelled")
        if result is None:
            return False
        await runner.apply_commands(result.commands)
        await runner.run("restaurant_stats", increment_restaurant_stat, data.restaurant_id, "cancelled_bookings")
        await runner.send_notifications(result.commands)
        return True

    async def _on_completed(self, db: AsyncSession, data: BookingCompletedData, runner: SideEffectRunner) -> bool:
        result = await self._transition(
            db, data.booking_id, data.restaurant_id, BookingStatus.COMPLETED, "booking.completed"
        )
        if result is None:
            return False
        await runner.apply_commands(result.commands)
        await runner.run("loyalty_points", self._award_loyalty, data)
        await runner.run("review_request", self._schedule_review, data)
        await runner.run("restaurant_stats", increment_restaurant_stat, data.restaurant_id, "completed_bookings")
        await runner.send_notifications(result.commands)
        return True

    async def _on_no_show(self, db: AsyncSession, data: BookingNoShowData, runner: SideEffectRunner) -> bool:
        result = await self._transition(db, data.booking_id, data.restaurant_id, BookingStatus.NO_SHOW, "booking.no_show")
        if result is None:
            return False
        await runner.apply_commands(result.commands)
        await runner.run(
            "no_show_tracking",
            record_no_show,
            data.user_id,
            data.restaurant_id,
            self.settings.NO_SHOW_FLAG_THRESHOLD,
        )
        await runner.run("restaurant_stats", increment_restaurant_stat, data.restaurant_id, "no_show_bookings")
        await runner.send_notifications(result.commands)
        return True

    # ------------------------------------------------------------------
    # Side-effect steps bound to dispatcher settings
    # ------------------------------------------------------------------

    async def _award_loyalty(self, db: AsyncSession, data: BookingCompletedData) -> dict:
        points = await loyalty_service.calculate_points_for_booking(
            db, data.restaurant_id, data.party_size, data.booking_time, utcnow()
        )
        transaction = await loyalty_service.award_points(
            db, data.user_id, data.restaurant_id, data.booking_id, points
        )
        return {"points": points, "awarded": transaction is not None}

    async def _schedule_review(self, db: AsyncSession, data: BookingCompletedData) -> dict:
        task, created = await self.task_queue.schedule(
            db,
            "review_request",
            due_at=utcnow() + timedelta(hours=self.settings.REVIEW_REQUEST_DELAY_HOURS),
            payload={
                "booking_id": data.booking_id,
                "user_id": data.user_id,
                "restaurant_id": data.restaurant_id,
            },
            idempotency_key=f"review_request:{data.booking_id}",
        )
        return {"task_id": task.id, "created": created}
