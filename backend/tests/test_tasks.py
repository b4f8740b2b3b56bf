"""
Tests for deferred tasks (review requests) and pending-request expiry.
"""

from datetime import timedelta

import pytest
from sqlalchemy import select

from bookingcore.core.errors import PersistenceError, ValidationError
from bookingcore.db.base import utcnow
from bookingcore.models import Booking, BookingStatusHistory, OutboxEntry, ScheduledTask
from bookingcore.services.booking_service import expire_pending_requests
from bookingcore.services.task_queue import TaskQueue
from tests.conftest import RESTAURANT_ID, USER_ID, count_rows


def review_payload(booking_id="booking-1") -> dict:
    return {"booking_id": booking_id, "user_id": USER_ID, "restaurant_id": RESTAURANT_ID}


async def schedule_review(queue, db, booking_id="booking-1", due_in=timedelta(0)):
    task, created = await queue.schedule(
        db,
        "review_request",
        due_at=utcnow() + due_in,
        payload=review_payload(booking_id),
        idempotency_key=f"review_request:{booking_id}",
    )
    await db.commit()
    return task, created


@pytest.mark.asyncio
async def test_schedule_is_idempotent(db_session, services):
    first, created = await schedule_review(services.task_queue, db_session)
    again, created_again = await schedule_review(services.task_queue, db_session)

    assert created is True
    assert created_again is False
    assert again.id == first.id
    assert await count_rows(db_session, ScheduledTask) == 1


@pytest.mark.asyncio
async def test_unknown_task_type_is_rejected(db_session, services):
    with pytest.raises(ValidationError):
        await services.task_queue.schedule(db_session, "send_flowers", utcnow(), {}, "flowers:1")


@pytest.mark.asyncio
async def test_only_due_tasks_run(db_session, services):
    due, _ = await schedule_review(services.task_queue, db_session, "booking-due")
    later, _ = await schedule_review(services.task_queue, db_session, "booking-later", due_in=timedelta(hours=24))

    report = await services.task_queue.run_due(db_session, now=utcnow() + timedelta(seconds=1))

    assert report.processed == 1
    assert report.done == 1
    await db_session.refresh(due)
    await db_session.refresh(later)
    assert due.status == "done"
    assert due.attempts == 1
    assert due.processed_at is not None
    assert later.status == "pending"


@pytest.mark.asyncio
async def test_review_request_queues_push_and_in_app_once(db_session, services):
    task, _ = await schedule_review(services.task_queue, db_session)

    await services.task_queue.run_due(db_session, now=utcnow() + timedelta(seconds=1))

    entries = (await db_session.execute(select(OutboxEntry).order_by(OutboxEntry.channel))).scalars().all()
    assert [e.channel for e in entries] == ["in_app", "push"]
    assert all(e.user_id == USER_ID for e in entries)
    assert all(e.type == "review_request" for e in entries)
    assert entries[0].idempotency_key == "review_request:booking-1:in_app"

    # A re-run after a crash before "done" writes nothing new
    await services.task_queue.handlers["review_request"](db_session, task)
    await db_session.commit()
    assert await count_rows(db_session, OutboxEntry) == 2


@pytest.mark.asyncio
async def test_failing_task_is_retried_then_failed(db_session, settings):
    calls = []

    async def flaky(db, task):
        calls.append(task.id)
        raise PersistenceError("review service unavailable")

    queue = TaskQueue(settings, handlers={"review_request": flaky})
    task, _ = await schedule_review(queue, db_session)
    now = utcnow() + timedelta(seconds=1)

    outcomes = [await queue.run_due(db_session, now=now) for _ in range(settings.TASK_MAX_ATTEMPTS)]

    assert [r.retried for r in outcomes] == [1] * (settings.TASK_MAX_ATTEMPTS - 1) + [0]
    assert outcomes[-1].failed == 1
    assert len(calls) == settings.TASK_MAX_ATTEMPTS

    await db_session.refresh(task)
    assert task.status == "failed"
    assert task.attempts == settings.TASK_MAX_ATTEMPTS
    assert task.last_error == "review service unavailable"

    # Failed tasks are not picked up again
    assert (await queue.run_due(db_session, now=now)).processed == 0


@pytest.mark.asyncio
async def test_review_request_without_user_fails_validation(db_session, services):
    task, _ = await services.task_queue.schedule(
        db_session, "review_request", utcnow(), {"booking_id": "b-1"}, "review_request:b-1"
    )
    await db_session.commit()

    report = await services.task_queue.run_due(db_session, now=utcnow() + timedelta(seconds=1))

    assert report.retried == 1
    await db_session.refresh(task)
    assert "user_id" in task.last_error


@pytest.mark.asyncio
async def test_process_tasks_cron(client, cron_headers, db_session, services):
    await schedule_review(services.task_queue, db_session)

    response = await client.post("/api/v1/cron/process-tasks", headers=cron_headers)

    assert response.status_code == 200
    assert response.json()["done"] == 1


# ---------------------------------------------------------------------------
# Pending request expiry
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_expired_requests_are_declined(db_session, make_booking):
    first = await make_booking("pending")
    second = await make_booking("pending")
    confirmed = await make_booking("confirmed")

    report = await expire_pending_requests(db_session, now=first.request_expires_at + timedelta(seconds=1))

    # Both pending requests share the same window; the confirmed one has none
    assert sorted(report.booking_ids) == sorted([first.id, second.id])
    assert report.expired == 2
    for booking_id in (first.id, second.id):
        booking = await db_session.get(Booking, booking_id, populate_existing=True)
        assert booking.status == "declined_by_restaurant"
        last = (await db_session.execute(
            select(BookingStatusHistory)
            .where(BookingStatusHistory.booking_id == booking_id)
            .order_by(BookingStatusHistory.changed_at.desc())
            .limit(1)
        )).scalar_one()
        assert last.reason == "request_expired"
        assert last.changed_by is None

    assert (await db_session.get(Booking, confirmed.id, populate_existing=True)).status == "confirmed"
    # The diner hears about the decline on both channels
    declined = await count_rows(db_session, OutboxEntry, OutboxEntry.type == "booking_declined")
    assert declined == 4


@pytest.mark.asyncio
async def test_requests_inside_window_are_kept(db_session, make_booking):
    booking = await make_booking("pending")

    report = await expire_pending_requests(db_session, now=booking.request_expires_at - timedelta(seconds=1))

    assert report.expired == 0
    assert (await db_session.get(Booking, booking.id, populate_existing=True)).status == "pending"


@pytest.mark.asyncio
async def test_expire_requests_cron(client, cron_headers, db_session, make_booking):
    booking = await make_booking("pending")
    booking.request_expires_at = utcnow() - timedelta(minutes=1)
    await db_session.commit()

    response = await client.post("/api/v1/cron/expire-requests", headers=cron_headers)

    assert response.status_code == 200
    body = response.json()
    assert body["expired"] == 1
    assert body["booking_ids"] == [booking.id]


@pytest.mark.asyncio
async def test_expire_requests_cron_requires_secret(client):
    response = await client.post("/api/v1/cron/expire-requests")
    assert response.status_code == 401
